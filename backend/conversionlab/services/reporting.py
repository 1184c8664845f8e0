"""Reporting layer.

WHAT:
    Composes attribution and experiment results into reports and runs
    per-conversion / per-experiment work in a thread pool.

WHY:
    - A channel whose aggregate fails is dropped with a warning so the rest
      of the report still renders
    - Attribution and scoring read committed data only, so they run in
      parallel with one task (and one Session) per conversion or experiment

REFERENCES:
    - conversionlab/services/attribution_service.py
    - conversionlab/services/experiment_service.py
    - conversionlab/routers/attribution.py (channel + comparison endpoints)
    - conversionlab/workers/arq_worker.py (batch jobs)
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..deps import Settings, get_settings
from ..exceptions import EngineError
from ..telemetry import capture_exception
from .attribution_models import ALL_MODELS, DataDrivenStrategy, parse_model
from .attribution_service import AttributionService, ChannelAttributionRow
from .conversion_service import validate_day_range
from .experiment_service import ExperimentResults, ExperimentService

logger = logging.getLogger(__name__)

TOP_CHANNELS = 5


@dataclass
class ReportWarning:
    scope: str     # channel ("google/cpc") or model name
    message: str


@dataclass
class ChannelAttributionReport:
    short_code: str
    days: int
    model: str
    channels: List[ChannelAttributionRow] = field(default_factory=list)
    warnings: List[ReportWarning] = field(default_factory=list)

    @property
    def total_attributed_value(self) -> float:
        return sum(c.attribution_value for c in self.channels)


@dataclass
class ModelSummary:
    model: str
    total_value: float
    top_channels: List[ChannelAttributionRow]


@dataclass
class ModelComparisonReport:
    short_code: str
    days: int
    models: List[ModelSummary] = field(default_factory=list)
    warnings: List[ReportWarning] = field(default_factory=list)


@dataclass
class BatchResult:
    succeeded: Dict[str, int] = field(default_factory=dict)
    failed: Dict[str, str] = field(default_factory=dict)


@dataclass
class ScoringBatch:
    results: Dict[str, ExperimentResults] = field(default_factory=dict)
    failed: Dict[str, str] = field(default_factory=dict)


class ReportingService:
    """Builds reports; each report or task opens its own session."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        settings: Optional[Settings] = None,
        data_driven: Optional[DataDrivenStrategy] = None,
    ):
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.data_driven = data_driven

    def _attribution(self, db: Session) -> AttributionService:
        return AttributionService(db, self.settings, data_driven=self.data_driven)

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------

    def channel_report(self, short_code: str, days: int, model, owner_id: Optional[str] = None) -> ChannelAttributionReport:
        """Attributed value per channel; failing channels become warnings."""
        model = parse_model(model)
        validate_day_range(days)
        report = ChannelAttributionReport(short_code=short_code, days=days, model=model.value)

        with self.session_factory() as db:
            service = self._attribution(db)
            for source, medium in service.list_channels(short_code, days, model, owner_id):
                try:
                    report.channels.append(
                        service.channel_aggregate(short_code, days, model, source, medium, owner_id=owner_id)
                    )
                except SQLAlchemyError as e:
                    db.rollback()
                    channel = f"{source}/{medium}"
                    logger.warning("[REPORTING] Channel %s omitted from %s report: %s", channel, short_code, e)
                    capture_exception(e, extra={"short_code": short_code, "channel": channel, "model": model.value})
                    report.warnings.append(ReportWarning(scope=channel, message="Channel aggregate unavailable"))

        report.channels.sort(key=lambda c: c.attribution_value, reverse=True)
        return report

    def model_comparison(self, short_code: str, days: int, owner_id: Optional[str] = None) -> ModelComparisonReport:
        """Total credit and top channels under each model."""
        validate_day_range(days)
        report = ModelComparisonReport(short_code=short_code, days=days)

        with self.session_factory() as db:
            service = self._attribution(db)
            for model in ALL_MODELS:
                try:
                    channels = service.get_channel_attribution(short_code, days, model, owner_id)
                except (SQLAlchemyError, EngineError) as e:
                    db.rollback()
                    logger.warning("[REPORTING] Model %s skipped for %s: %s", model.value, short_code, e)
                    capture_exception(e, extra={"short_code": short_code, "model": model.value})
                    report.warnings.append(ReportWarning(scope=model.value, message="Model totals unavailable"))
                    continue
                report.models.append(ModelSummary(
                    model=model.value,
                    total_value=sum(c.attribution_value for c in channels),
                    top_channels=channels[:TOP_CHANNELS],
                ))
        return report

    # ------------------------------------------------------------------
    # Batches (one task per conversion / experiment)
    # ------------------------------------------------------------------

    def _attribute_one(self, conversion_id: str, model, owner_id: Optional[str]) -> int:
        with self.session_factory() as db:
            return len(self._attribution(db).calculate_attribution(conversion_id, model, owner_id))

    def attribute_conversions(
        self,
        conversion_ids: Iterable[str],
        model,
        owner_id: Optional[str] = None,
    ) -> BatchResult:
        """Attribute many conversions in parallel; failures are reported, not raised."""
        model = parse_model(model)
        ids = list(dict.fromkeys(conversion_ids))
        result = BatchResult()
        if not ids:
            return result

        with ThreadPoolExecutor(max_workers=max(self.settings.ATTRIBUTION_WORKERS, 1)) as pool:
            futures = {pool.submit(self._attribute_one, cid, model, owner_id): cid for cid in ids}
            for future in as_completed(futures):
                conversion_id = futures[future]
                try:
                    result.succeeded[conversion_id] = future.result()
                except EngineError as e:
                    result.failed[conversion_id] = e.to_user_message()
                except SQLAlchemyError as e:
                    capture_exception(e, extra={"conversion_id": conversion_id, "model": model.value})
                    result.failed[conversion_id] = "Database error"

        logger.info(
            "[REPORTING] Attributed %d/%d conversions with %s",
            len(result.succeeded), len(ids), model.value,
        )
        return result

    def attribute_pending(self, short_code: str, days: int, model, owner_id: Optional[str] = None) -> BatchResult:
        """Attribute every conversion in the window that has no credit for the model yet."""
        with self.session_factory() as db:
            pending = self._attribution(db).pending_conversion_ids(short_code, days, model, owner_id)
        return self.attribute_conversions(pending, model, owner_id)

    def _score_one(self, experiment_id: UUID) -> ExperimentResults:
        with self.session_factory() as db:
            return ExperimentService(db, self.settings).get_results(experiment_id)

    def score_experiments(self, experiment_ids: Iterable[UUID]) -> ScoringBatch:
        """Results for many experiments in parallel."""
        ids = list(dict.fromkeys(experiment_ids))
        batch = ScoringBatch()
        if not ids:
            return batch

        with ThreadPoolExecutor(max_workers=max(self.settings.ATTRIBUTION_WORKERS, 1)) as pool:
            futures = {pool.submit(self._score_one, eid): eid for eid in ids}
            for future in as_completed(futures):
                key = str(futures[future])
                try:
                    batch.results[key] = future.result()
                except EngineError as e:
                    batch.failed[key] = e.to_user_message()
                except SQLAlchemyError as e:
                    capture_exception(e, extra={"experiment_id": key})
                    batch.failed[key] = "Database error"
        return batch
