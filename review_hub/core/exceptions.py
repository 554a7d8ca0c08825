"""
Platform-wide exception hierarchy.

Services raise these types; blueprints register handlers against them once
(see ``review_hub.utils.errors.register_error_handlers``) and get consistent
HTTP status codes everywhere.

Usage:
    from review_hub.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Request", resource_id=42)
    raise ValidationError("Response text is required", details={"response_text": "required"})
"""


class NotFoundError(Exception):
    """Raised when a requested record, link or project does not exist.

    Args:
        resource: Human-readable entity name (e.g. "Request", "ExternalProjectLink").
        resource_id: The key that was looked up. Included in logs and message.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input fails business-rule validation in the service layer.

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation clashes with the current state of a resource.

    Covers duplicate keys, already-confirmed manual responses, missing
    pending responses and dispatches already in flight.  Maps to HTTP 409.
    """

    def __init__(
        self,
        message: str,
        *,
        resource: str | None = None,
        field: str | None = None,
        value: str | None = None,
    ) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        super().__init__(message)


class InvalidTransitionError(ConflictError):
    """Raised when an internal status change is not allowed from the current state."""

    def __init__(self, current: str, target: str, reason: str | None = None) -> None:
        msg = f"Cannot move from '{current}' to '{target}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg, resource="internal_status", value=target)
        self.current_status = current
        self.target_status = target


class PermissionDenied(Exception):
    """Raised when a user's project membership does not allow an action.

    Maps to HTTP 403.  Never retried.
    """

    def __init__(self, user_id: str, action: str, role: str | None = None) -> None:
        role_msg = f" (role={role})" if role else ""
        super().__init__(f"User {user_id}{role_msg} is not allowed to '{action}'")
        self.user_id = user_id
        self.action = action
        self.role = role


class DataCorruptionError(Exception):
    """Raised when stored sync data (e.g. a captured manual response) cannot be parsed.

    Operators must re-sync the record to refresh the payload before retrying.
    """

    def __init__(self, message: str, *, record_ref: str | None = None) -> None:
        self.record_ref = record_ref
        super().__init__(message)


class ExternalCallError(Exception):
    """Raised when a call to ACC (or the file share) fails.

    Args:
        message: Error text from the gateway or adapter.
        status_code: HTTP status when the failure came from an HTTP response.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)
