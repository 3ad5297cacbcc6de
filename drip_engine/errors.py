"""Error taxonomy for the drip engine.

Routers translate these into HTTP responses; services raise them and never
downgrade one outcome into another.
"""

from datetime import datetime

# AccessDenied reasons
NOT_YET_UNLOCKED = "not-yet-unlocked"
PREREQUISITE_INCOMPLETE = "prerequisite-incomplete"
CONDITION_NOT_MET = "condition-not-met"
SEQUENCE_EXITED = "sequence-exited"

ACCESS_REASONS = (
    NOT_YET_UNLOCKED,
    PREREQUISITE_INCOMPLETE,
    CONDITION_NOT_MET,
    SEQUENCE_EXITED,
)


class DripEngineError(Exception):
    """Base class for every error the engine raises."""

    code = "error"

    def to_dict(self) -> dict:
        return {"error": self.code, "message": str(self)}


class NotFound(DripEngineError):
    code = "not-found"


class AccessDenied(DripEngineError):
    """Gating failure with a machine-readable reason."""

    code = "access-denied"

    def __init__(self, reason: str, message: str = "", unlock_at: datetime | None = None,
                 item_id: str | None = None):
        if reason not in ACCESS_REASONS:
            raise ValueError(f"Unknown access reason: {reason}")
        super().__init__(message or reason)
        self.reason = reason
        self.unlock_at = unlock_at
        self.item_id = item_id

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["reason"] = self.reason
        data["item_id"] = self.item_id
        data["unlock_at"] = self.unlock_at.isoformat() if self.unlock_at else None
        return data


class Conflict(DripEngineError):
    code = "conflict"


class ValidationFailure(DripEngineError):
    code = "validation-failure"


class DependencyUnavailable(DripEngineError):
    """Persistence or dispatcher failure."""

    code = "dependency-unavailable"
