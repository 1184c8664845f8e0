"""
Engine Exceptions
=================

Custom exception types raised by the experiment, attribution and
conversion services.

WHY THIS FILE EXISTS
--------------------
Every service validates synchronously and rejects bad input before anything
is written. Callers (routers, workers, reporting) need to tell those failures
apart from unknown identifiers and from illegal lifecycle transitions:

- ValidationError: bad configuration or request values (HTTP 422)
- NotFoundError: unknown experiment, variant, conversion or goal (HTTP 404)
- InvalidState: a lifecycle rule forbids the operation (HTTP 409)

RELATED FILES
-------------
- conversionlab/services/*.py: Raise these exceptions
- conversionlab/main.py: Maps them to JSON error responses
- conversionlab/workers/arq_worker.py: Reports them as failed job results
"""

from typing import Any, Optional


class EngineError(Exception):
    """
    Base exception for all engine errors.

    WHAT:
        Parent class for every error the analytics engine raises on purpose.

    USAGE:
        try:
            service.start_experiment(experiment_id)
        except EngineError as e:
            return {"error": e.code, "detail": e.to_user_message()}
    """

    status_code = 400
    code = "engine_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_user_message(self) -> str:
        """String suitable for API consumers."""
        return self.message


class ValidationError(EngineError):
    """Input rejected before anything was persisted.

    Raised for bad traffic splits, fewer than two variants, missing or
    duplicate controls, duplicate names, unknown attribution models, day
    ranges outside 1-365 and incomplete goal configuration.
    """

    status_code = 422
    code = "validation_error"

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class InvalidParameter(ValidationError):
    """A statistical parameter is outside its domain (rate, effect, confidence, power)."""

    code = "invalid_parameter"


class EmptyJourneyError(ValidationError):
    """No touchpoints fall inside the conversion's attribution window."""

    code = "empty_journey"

    def __init__(self, conversion_id: str):
        super().__init__(f"No touchpoints found for conversion {conversion_id}")
        self.conversion_id = conversion_id


class NotFoundError(EngineError):
    """
    Unknown identifier.

    ATTRIBUTES:
        entity: Kind of record looked up (experiment, variant, conversion, goal)
        identifier: The id that was not found
    """

    status_code = 404
    code = "not_found"

    def __init__(self, entity: str, identifier: Any, message: Optional[str] = None):
        self.entity = entity
        self.identifier = identifier
        super().__init__(message or f"{entity.replace('_', ' ').capitalize()} {identifier} not found")


class AssignmentNotFoundError(NotFoundError):
    """A conversion was reported for a session that was never assigned a variant."""

    code = "assignment_not_found"

    def __init__(self, experiment_id: Any, session_id: str):
        super().__init__(
            "assignment",
            session_id,
            message=f"Session {session_id} has no assignment in experiment {experiment_id}",
        )
        self.experiment_id = experiment_id
        self.session_id = session_id


class InvalidState(EngineError):
    """The experiment's lifecycle state does not allow the operation."""

    status_code = 409
    code = "invalid_state"

    def __init__(self, message: str, current_status: Optional[str] = None):
        super().__init__(message)
        self.current_status = current_status


class WriteConflictError(EngineError):
    """Concurrent writers kept colliding on a uniqueness constraint."""

    status_code = 409
    code = "write_conflict"


class NotRunning(InvalidState):
    """Assignments and conversions are only accepted while an experiment is running."""

    code = "not_running"

    def __init__(self, experiment_id: Any, current_status: str):
        super().__init__(
            f"Experiment {experiment_id} is {current_status}, not running",
            current_status=current_status,
        )
        self.experiment_id = experiment_id
