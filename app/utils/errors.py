"""JSON error responses for the protocol API.

Every error body has the same shape::

    {"error": "<human-readable>", "code": "<machine code>", "details": {...}}

``details`` is omitted when empty. Blueprints either build a response from a
code (``api_error``) or hand over one of the typed exceptions from
``app.core.exceptions``, which already carry their ``code`` (``exception_response``).

    return api_error(E.VALIDATION_REQUIRED, "action is required")
    return exception_response(exc)          # status from the code table
"""

from __future__ import annotations

from flask import jsonify


class E:
    """Machine-readable error codes.

    ``ERR_*`` codes are generic request/resource errors; bare names are
    workflow rule violations a client is expected to branch on.
    """

    # Malformed request – 400
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"

    NOT_FOUND = "ERR_NOT_FOUND"
    FORBIDDEN = "ERR_FORBIDDEN"
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"

    # Workflow – 409
    INVALID_TRANSITION = "INVALID_TRANSITION"
    CONCURRENT_MODIFICATION = "CONCURRENT_MODIFICATION"

    # Workflow – 422
    MISSING_COMMENT = "MISSING_COMMENT"
    UNKNOWN_REVIEWER = "UNKNOWN_REVIEWER"
    DUPLICATE_REVIEWER = "DUPLICATE_REVIEWER"
    INVALID_REVIEW_TYPE = "INVALID_REVIEW_TYPE"

    DATABASE = "ERR_DATABASE"
    INTERNAL = "ERR_INTERNAL"


_STATUS_BY_CODE: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.NOT_FOUND: 404,
    E.FORBIDDEN: 403,
    E.CONFLICT_DUPLICATE: 409,
    E.INVALID_TRANSITION: 409,
    E.CONCURRENT_MODIFICATION: 409,
    E.MISSING_COMMENT: 422,
    E.UNKNOWN_REVIEWER: 422,
    E.DUPLICATE_REVIEWER: 422,
    E.INVALID_REVIEW_TYPE: 422,
    E.DATABASE: 500,
    E.INTERNAL: 500,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Return ``(jsonify(body), status)`` for an error code.

    Parameters
    ----------
    code : str
        One of the ``E.*`` constants.
    message : str
        Human-readable explanation.
    status : int, optional
        Overrides the code table; unknown codes default to 400.
    details : dict, optional
        Structured context such as the offending field or current status.
    """
    body: dict = {"error": message, "code": code}
    if details:
        body["details"] = details
    return jsonify(body), status or _STATUS_BY_CODE.get(code, 400)


def exception_response(exc: Exception, *, status: int | None = None):
    """Build the error response for a typed service exception."""
    code = getattr(exc, "code", E.INTERNAL)
    return api_error(code, str(exc), status=status, details=getattr(exc, "details", None))
