"""
Expedition Errors

Every error here is user-facing and recoverable: it is surfaced to the
caller with enough context to correct the action. Nothing in this module
is retried silently.
"""


class ExpeditionError(Exception):
    """Base class. ``code`` is the stable identifier exposed by the API."""
    code = "EXPEDITION_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(ExpeditionError):
    """Unknown expedition, pin, connection or student."""
    code = "NOT_FOUND"

    def __init__(self, entity: str, entity_id: str):
        super().__init__(f"{entity} '{entity_id}' not found")
        self.entity = entity
        self.entity_id = entity_id


class UnauthorizedError(ExpeditionError):
    """Caller acting on progress or a classroom that is not theirs."""
    code = "UNAUTHORIZED"


class GraphFrozenError(ExpeditionError):
    """Structural edit attempted on an expedition that is no longer DRAFT."""
    code = "GRAPH_FROZEN"

    def __init__(self, expedition_id: str, status: str):
        super().__init__(
            f"Expedition '{expedition_id}' is {status}; pins and connections are read-only"
        )
        self.expedition_id = expedition_id
        self.status = status


class EmptyGraphError(ExpeditionError):
    """Publish attempted on an expedition without pins."""
    code = "EMPTY_GRAPH"

    def __init__(self, expedition_id: str):
        super().__init__(f"Expedition '{expedition_id}' has no pins and cannot be published")
        self.expedition_id = expedition_id


class GraphValidationError(ExpeditionError):
    """Malformed authoring request (self-loop, foreign endpoint, duplicate edge)."""
    code = "INVALID_GRAPH"


class PinLockedError(ExpeditionError):
    """Attempt on a pin the student has not unlocked yet."""
    code = "PIN_LOCKED"

    def __init__(self, pin_id: str, student_profile_id: str):
        super().__init__(f"Pin '{pin_id}' is locked for student '{student_profile_id}'")
        self.pin_id = pin_id
        self.student_profile_id = student_profile_id


class InvalidTransitionError(ExpeditionError):
    """Requested transition is not allowed from the current state."""
    code = "INVALID_TRANSITION"


class AlreadyResolvedError(InvalidTransitionError):
    """Duplicate submission or decision on a pin that already resolved."""
    code = "ALREADY_RESOLVED"

    def __init__(self, pin_id: str, student_profile_id: str, status: str):
        super().__init__(
            f"Pin '{pin_id}' is already resolved ({status}) for student '{student_profile_id}'"
        )
        self.pin_id = pin_id
        self.student_profile_id = student_profile_id
        self.status = status


class ConcurrentUpdateError(InvalidTransitionError):
    """Another request changed the same pin progress first."""
    code = "CONCURRENT_UPDATE"


class UploadRejectedError(ExpeditionError):
    """File refused by storage (type or size)."""
    code = "UPLOAD_REJECTED"
