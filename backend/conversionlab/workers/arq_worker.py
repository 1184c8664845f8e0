"""ARQ async worker - background attribution and experiment scoring.

WHAT:
    Async worker for jobs that are too slow or too bursty for a request:
    - attribute_conversion_job: credit one conversion under one model
    - attribute_pending_job: credit every unattributed conversion of a short code
    - score_experiment_job: significance and winner for one experiment

WHY:
    - Conversions arrive in bursts; attribution can lag a little
    - Each job opens its own Session, so jobs never share ORM state
    - Service code is sync; it runs in a thread so the event loop stays free

USAGE:
    # Start worker
    arq conversionlab.workers.arq_worker.WorkerSettings

    # Or use the start script
    python -m conversionlab.workers.start_arq_worker

REFERENCES:
    - https://arq-docs.helpmanual.io/
    - conversionlab/services/attribution_service.py
    - conversionlab/services/reporting.py
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict
from uuid import UUID

from ..database import get_session_factory, get_sync_session
from ..exceptions import EngineError
from ..services.attribution_service import AttributionService
from ..services.experiment_service import ExperimentService
from ..services.reporting import ReportingService
from ..telemetry import capture_exception
from .arq_enqueue import QUEUE_NAME, get_redis_settings

logger = logging.getLogger(__name__)


# =============================================================================
# ATTRIBUTION JOBS
# =============================================================================

async def attribute_conversion_job(ctx: Dict, conversion_id: str, model: str = "last_touch") -> Dict:
    """Calculate and store credit for one conversion.

    Args:
        ctx: ARQ context
        conversion_id: External conversion id
        model: Attribution model name

    Returns:
        Dict with success status and number of credited touchpoints
    """
    logger.info("[ARQ] Attributing conversion %s with %s", conversion_id, model)

    with get_sync_session() as db:
        try:
            credits = await asyncio.to_thread(
                AttributionService(db).calculate_attribution, conversion_id, model
            )
            logger.info("[ARQ] Conversion %s credited to %d touchpoints", conversion_id, len(credits))
            return {"success": True, "conversion_id": conversion_id, "model": model, "touchpoints": len(credits)}

        except EngineError as e:
            # Bad input or empty journey: retrying will not help
            logger.warning("[ARQ] Attribution skipped for %s: %s", conversion_id, e)
            return {"success": False, "error": e.to_user_message(), "code": e.code}

        except Exception as e:
            logger.exception("[ARQ] Attribution job failed for %s", conversion_id)
            capture_exception(e, extra={"conversion_id": conversion_id, "model": model, "job": "attribute_conversion_job"})
            db.rollback()
            return {"success": False, "error": str(e)}


async def attribute_pending_job(ctx: Dict, short_code: str, days: int = 30, model: str = "last_touch") -> Dict:
    """Attribute every conversion in the window that has no credit for the model."""
    logger.info("[ARQ] Attributing pending conversions for %s (%s, %d days)", short_code, model, days)

    try:
        result = await asyncio.to_thread(
            ReportingService(get_session_factory()).attribute_pending, short_code, days, model
        )
        return {
            "success": not result.failed,
            "succeeded": len(result.succeeded),
            "failed": result.failed,
        }

    except EngineError as e:
        logger.warning("[ARQ] Pending attribution rejected for %s: %s", short_code, e)
        return {"success": False, "error": e.to_user_message(), "code": e.code}

    except Exception as e:
        logger.exception("[ARQ] Pending attribution failed for %s", short_code)
        capture_exception(e, extra={"short_code": short_code, "model": model, "job": "attribute_pending_job"})
        return {"success": False, "error": str(e)}


# =============================================================================
# EXPERIMENT JOBS
# =============================================================================

async def score_experiment_job(ctx: Dict, experiment_id: str) -> Dict:
    """Score one experiment (per-variant stats, significance, winner)."""
    logger.info("[ARQ] Scoring experiment %s", experiment_id)

    with get_sync_session() as db:
        try:
            results = await asyncio.to_thread(
                ExperimentService(db).get_results, UUID(experiment_id)
            )
            logger.info(
                "[ARQ] Experiment %s scored: significant=%s, winner=%s",
                experiment_id, results.significant, results.winner,
            )
            return {
                "success": True,
                "experiment_id": experiment_id,
                "total_sessions": results.total_sessions,
                "significant": results.significant,
                "winner": results.winner,
                "recommendation": results.recommendation,
            }

        except EngineError as e:
            logger.warning("[ARQ] Scoring skipped for %s: %s", experiment_id, e)
            return {"success": False, "error": e.to_user_message(), "code": e.code}

        except Exception as e:
            logger.exception("[ARQ] Scoring job failed for %s", experiment_id)
            capture_exception(e, extra={"experiment_id": experiment_id, "job": "score_experiment_job"})
            db.rollback()
            return {"success": False, "error": str(e)}


# =============================================================================
# LIFECYCLE HOOKS
# =============================================================================

async def startup(ctx: Dict) -> None:
    """Worker startup - initialize resources and log config."""
    import platform

    from ..telemetry import init_observability

    logger.info("=" * 60)
    logger.info("[ARQ] Worker starting up (attribution + scoring)")
    logger.info("=" * 60)
    logger.info(f"[ARQ] Python: {platform.python_version()}")
    logger.info(f"[ARQ] Host: {platform.node()}")
    logger.info(f"[ARQ] Queue: {QUEUE_NAME}")
    logger.info(f"[ARQ] Observability: {init_observability()}")
    logger.info("=" * 60)

    ctx['startup_time'] = datetime.now(timezone.utc)
    ctx['jobs_processed'] = 0


async def shutdown(ctx: Dict) -> None:
    """Worker shutdown - log stats."""
    jobs = ctx.get('jobs_processed', 0)
    uptime = datetime.now(timezone.utc) - ctx.get('startup_time', datetime.now(timezone.utc))

    logger.info("=" * 60)
    logger.info("[ARQ] Worker shutting down")
    logger.info(f"[ARQ] Jobs processed: {jobs}")
    logger.info(f"[ARQ] Uptime: {uptime}")
    logger.info("=" * 60)


async def on_job_end(ctx: Dict) -> None:
    """Called after each job completes."""
    ctx['jobs_processed'] = ctx.get('jobs_processed', 0) + 1


# =============================================================================
# WORKER SETTINGS
# =============================================================================

class WorkerSettings:
    """ARQ worker configuration.

    Production settings:
    - max_jobs=10: Up to 10 jobs at once (each holds one DB connection)
    - job_timeout=600: 10 minutes covers large pending-attribution batches
    - retry_jobs=True: Retry on transient failures
    - max_tries=3: Don't retry forever
    """

    functions = [
        attribute_conversion_job,
        attribute_pending_job,
        score_experiment_job,
    ]

    cron_jobs = []

    # Lifecycle hooks
    on_startup = startup
    on_shutdown = shutdown
    after_job_end = on_job_end

    # Redis connection
    redis_settings = get_redis_settings()

    # Performance settings
    max_jobs = 10
    job_timeout = 600
    keep_result = 3600
    retry_jobs = True
    max_tries = 3
    health_check_interval = 30

    queue_name = QUEUE_NAME
