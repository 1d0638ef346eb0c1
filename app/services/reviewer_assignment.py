"""
Reviewer Assignment Resolver.

Pure validation of an office user's reviewer selection against the active
board-member pool. No database access happens here; callers pass the pool in
(see protocol_service.get_reviewer_pool).

Check order:
    1. secondary == primary           → DuplicateReviewerError
    2. primary missing / not in pool  → UnknownReviewerError
    3. secondary not in pool          → UnknownReviewerError
    4. review type outside fixed set  → InvalidReviewTypeError

Usage:
    from app.services.reviewer_assignment import resolve_assignment

    assignment = resolve_assignment(7, None, "expedited", pool)
    assignment.to_dict()
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable

from app.core.exceptions import (
    DuplicateReviewerError,
    InvalidReviewTypeError,
    UnknownReviewerError,
)


class ReviewType(str, Enum):
    EXEMPT = "exempt"
    EXPEDITED = "expedited"
    FULL_BOARD = "full_board"


REVIEW_TYPES = frozenset(t.value for t in ReviewType)


@dataclass(frozen=True)
class ReviewerCandidate:
    """Read-only projection of a board member offered for assignment."""
    id: int
    display_name: str
    is_active: bool = True

    def to_dict(self) -> dict:
        return {"id": self.id, "display_name": self.display_name, "is_active": self.is_active}


@dataclass(frozen=True)
class ReviewerAssignment:
    primary_reviewer_id: int
    secondary_reviewer_id: int | None
    review_type: str
    assigned_at: datetime

    def to_dict(self) -> dict:
        return {
            "primary_reviewer_id": self.primary_reviewer_id,
            "secondary_reviewer_id": self.secondary_reviewer_id,
            "review_type": self.review_type,
            "assigned_at": self.assigned_at.isoformat(),
        }


def normalize_review_type(value) -> str | None:
    """'Full Board', 'full-board' and 'FULL_BOARD' all map to 'full_board'."""
    if not isinstance(value, str):
        return None
    normalized = "_".join(value.strip().lower().replace("-", " ").split())
    return normalized or None


def _coerce_id(value):
    """Accept ints and digit strings; anything else is returned unchanged."""
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return None
        if stripped.isdigit():
            return int(stripped)
    return value


def resolve_assignment(
    primary_id,
    secondary_id,
    review_type,
    candidates: Iterable[ReviewerCandidate],
    *,
    now: datetime | None = None,
) -> ReviewerAssignment:
    """
    Validate a reviewer selection and return an immutable assignment.

    Args:
        primary_id: Required primary reviewer id (int or digit string).
        secondary_id: Optional secondary reviewer id; None or "" means none.
        review_type: One of exempt | expedited | full_board (case tolerant).
        candidates: Active reviewer pool.
        now: Assignment timestamp; defaults to the current UTC time.

    Raises:
        DuplicateReviewerError, UnknownReviewerError, InvalidReviewTypeError
    """
    primary = _coerce_id(primary_id)
    secondary = _coerce_id(secondary_id)

    if secondary is not None and primary is not None and secondary == primary:
        raise DuplicateReviewerError(secondary)

    pool = {c.id for c in candidates if c.is_active}

    if primary is None:
        raise UnknownReviewerError(None, role="primary")
    if primary not in pool:
        raise UnknownReviewerError(primary_id, role="primary")
    if secondary is not None and secondary not in pool:
        raise UnknownReviewerError(secondary_id, role="secondary")

    normalized = normalize_review_type(review_type)
    if normalized not in REVIEW_TYPES:
        raise InvalidReviewTypeError(review_type, REVIEW_TYPES)

    return ReviewerAssignment(
        primary_reviewer_id=primary,
        secondary_reviewer_id=secondary,
        review_type=normalized,
        assigned_at=now or datetime.now(timezone.utc),
    )
