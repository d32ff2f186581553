"""Error taxonomy for the task engine.

Every failure surfaced by the engine carries a stable ``kind`` that the API
layer maps onto an HTTP status, plus a human-readable message.
"""
from typing import Optional


class TaskEngineError(Exception):
    """Base class for all task engine failures."""

    kind = "task_engine_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(TaskEngineError):
    """Raised when a required field is missing or a value is invalid."""

    kind = "validation_error"

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class NotFoundError(TaskEngineError):
    """Raised when a task, project or approval slot is absent or not visible to the tenant."""

    kind = "not_found"

    def __init__(self, entity: str, identifier):
        super().__init__(f"{entity} not found: {identifier}")
        self.entity = entity
        self.identifier = identifier


class AlreadyResolvedError(TaskEngineError):
    """Raised when approving or rejecting an approval slot that is no longer waiting."""

    kind = "already_resolved"

    def __init__(self, slot_id: int, sequence: int, current_status):
        super().__init__(
            f"Approval slot {slot_id} (sequence {sequence}) is already resolved "
            f"as {current_status.name.lower()}"
        )
        self.slot_id = slot_id
        self.sequence = sequence
        self.current_status = current_status


class ConflictError(TaskEngineError):
    """Raised when a task code collides and retries are exhausted."""

    kind = "conflict"


class StorageError(TaskEngineError):
    """Raised when the persistence layer fails."""

    kind = "storage_error"


class AttachmentError(TaskEngineError):
    """Raised when an uploaded file cannot be validated or stored."""

    kind = "attachment_error"

    def __init__(self, message: str, file_name: Optional[str] = None):
        super().__init__(message)
        self.file_name = file_name


class PermissionDeniedError(TaskEngineError):
    """Raised when the acting role lacks the capability for an operation."""

    kind = "permission_denied"

    def __init__(self, role_id, capability: str):
        super().__init__(f"Role {role_id} is not allowed to perform '{capability}'")
        self.role_id = role_id
        self.capability = capability
