"""
Platform-wide exception hierarchy.

Services raise these types; blueprints register handlers against them once
and map them to consistent HTTP status codes and machine-readable codes.
Every exception here is a rejected operation, never a crash: validation
failures are raised before any write reaches the session.

Usage:
    from app.core.exceptions import NotFoundError, InvalidTransitionError

    raise NotFoundError(resource="ProtocolApplication", resource_id=42)
    raise InvalidTransitionError("approve", "submitted")
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable model/entity name (e.g. "ProtocolApplication").
        resource_id: The PK that was looked up. Included in logs, not in HTTP response.
    """

    code = "ERR_NOT_FOUND"

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

    Distinct from HTTP 400 (malformed input, caught in blueprint); this
    exception signals that the data was well-formed but violated a business
    rule. Maps to HTTP 422 unless a subclass handler says otherwise.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    code = "ERR_VALIDATION_INVALID"

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would create a duplicate unique constraint violation.

    Maps to HTTP 409.
    """

    code = "ERR_CONFLICT_DUPLICATE"

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


# ── Workflow errors ──────────────────────────────────────────────────────────


class InvalidTransitionError(ValidationError):
    """Raised when an action is not legal from the application's current status.

    Also covers unknown actions and unknown decisions. Maps to HTTP 409.
    """

    code = "INVALID_TRANSITION"

    def __init__(self, action: str, current_status: str, reason: str | None = None) -> None:
        self.action = action
        self.current_status = current_status
        self.reason = reason
        msg = f"Cannot '{action}' a protocol in status '{current_status}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg, details={"action": action, "status": current_status})


class MissingCommentError(ValidationError):
    """Raised when an action requires a non-empty comment and none was given."""

    code = "MISSING_COMMENT"

    def __init__(self, action: str) -> None:
        self.action = action
        super().__init__(
            f"A comment is required for '{action}'",
            details={"comment": "required"},
        )


class ReviewerAssignmentError(ValidationError):
    """Base class for reviewer assignment validation failures."""


class UnknownReviewerError(ReviewerAssignmentError):
    """Raised when a reviewer id is missing or not in the active candidate pool."""

    code = "UNKNOWN_REVIEWER"

    def __init__(self, reviewer_id, role: str = "primary") -> None:
        self.reviewer_id = reviewer_id
        self.role = role
        if reviewer_id is None:
            msg = f"A {role} reviewer is required"
        else:
            msg = f"{role.capitalize()} reviewer {reviewer_id!r} is not an active board member"
        super().__init__(msg, details={f"{role}_reviewer_id": reviewer_id})


class DuplicateReviewerError(ReviewerAssignmentError):
    """Raised when the secondary reviewer is the same person as the primary."""

    code = "DUPLICATE_REVIEWER"

    def __init__(self, reviewer_id) -> None:
        self.reviewer_id = reviewer_id
        super().__init__(
            f"Secondary reviewer must differ from primary reviewer ({reviewer_id!r})",
            details={"secondary_reviewer_id": reviewer_id},
        )


class InvalidReviewTypeError(ReviewerAssignmentError):
    """Raised when the review-type classification is not one of the fixed set."""

    code = "INVALID_REVIEW_TYPE"

    def __init__(self, review_type, allowed) -> None:
        self.review_type = review_type
        super().__init__(
            f"Invalid review type {review_type!r}. Must be one of: {', '.join(sorted(allowed))}",
            details={"review_type": review_type},
        )


class ConcurrentModificationError(Exception):
    """Raised when a transition lost a race on the compare-and-set commit.

    The caller should re-read the application and retry. Maps to HTTP 409.
    """

    code = "CONCURRENT_MODIFICATION"

    def __init__(self, application_id: int, expected_version: int | None = None) -> None:
        self.application_id = application_id
        self.expected_version = expected_version
        msg = f"Protocol application id={application_id} was modified concurrently"
        if expected_version is not None:
            msg += f" (expected version {expected_version})"
        super().__init__(msg + "; re-read and retry")


class ActorNotPermittedError(Exception):
    """Raised when the acting user's role may not perform the requested action.

    Maps to HTTP 403.
    """

    code = "ERR_FORBIDDEN"

    def __init__(self, actor_role: str, action: str, reason: str | None = None) -> None:
        self.actor_role = actor_role
        self.action = action
        msg = f"Role '{actor_role}' may not perform '{action}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)
