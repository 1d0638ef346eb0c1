"""
Protocol Review: Application Record Store service.

Creation, lookup and listing of ProtocolApplication rows plus the active
reviewer pool. Status changes never happen here; they go through
app.services.protocol_lifecycle.

Protocol numbers:
    {PREFIX}-{YYYY}-{SEQ:03d}   e.g. IRB-2025-001, IBC-2025-004
    Sequence is scoped to committee prefix and calendar year.
"""

import logging
from datetime import date, datetime, timezone

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError

from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.models import db
from app.models.protocol import (
    COMMITTEES,
    PROTOCOL_STATUSES,
    BoardMember,
    ProtocolApplication,
)
from app.services.reviewer_assignment import ReviewerCandidate

logger = logging.getLogger(__name__)

_DESCRIPTIVE_FIELDS = ("short_title", "protocol_type", "description", "registration_number")


# ── Protocol number: {PREFIX}-{YYYY}-{SEQ} ───────────────────────────────────


def generate_protocol_number(committee: str, year: int) -> str:
    """Next protocol number for the committee and year: IRB-2025-001, IRB-2025-002, ..."""
    prefix = f"{COMMITTEES[committee]}-{year}-"
    count = (
        db.session.query(func.count(ProtocolApplication.id))
        .filter(ProtocolApplication.protocol_number.like(f"{prefix}%"))
        .scalar()
    ) or 0
    return f"{prefix}{count + 1:03d}"


# ── CRUD ─────────────────────────────────────────────────────────────────────


def create_application(data: dict, *, submit: bool = False, now: datetime | None = None) -> dict:
    """
    Create a protocol application as a draft, optionally submitting it at once.

    Args:
        data: title, principal_investigator_id, committee (irb|ibc) and
              optional descriptive fields. 'comment' is used for the submit event.
        submit: When True the draft is submitted by its investigator in the
                same unit of work.

    Returns:
        The created application as a dict.

    Raises:
        ValidationError, ConflictError
    """
    title = (data.get("title") or "").strip()
    if not title:
        raise ValidationError("title is required", details={"title": "required"})

    pi_raw = data.get("principal_investigator_id")
    if isinstance(pi_raw, bool) or pi_raw in (None, ""):
        raise ValidationError(
            "principal_investigator_id is required",
            details={"principal_investigator_id": "required"},
        )
    try:
        pi_id = int(pi_raw)
    except (TypeError, ValueError) as exc:
        raise ValidationError(
            "principal_investigator_id must be an integer",
            details={"principal_investigator_id": "invalid"},
        ) from exc

    committee = (data.get("committee") or "irb").strip().lower()
    if committee not in COMMITTEES:
        raise ValidationError(
            f"committee must be one of: {', '.join(sorted(COMMITTEES))}",
            details={"committee": committee},
        )

    now = now or datetime.now(timezone.utc)
    application = ProtocolApplication(
        protocol_number=generate_protocol_number(committee, now.year),
        committee=committee,
        title=title,
        principal_investigator_id=pi_id,
        form_data=data.get("form_data") if isinstance(data.get("form_data"), dict) else None,
        legacy_review_comments=data.get("legacy_review_comments"),
        legacy_pi_responses=data.get("legacy_pi_responses"),
        created_at=now,
    )
    for field in _DESCRIPTIVE_FIELDS:
        value = data.get(field)
        if isinstance(value, str) and value.strip():
            setattr(application, field, value.strip())

    db.session.add(application)
    try:
        db.session.flush()
    except IntegrityError as exc:
        db.session.rollback()
        raise ConflictError("ProtocolApplication", "protocol_number", application.protocol_number) from exc

    logger.info(
        "Protocol application created",
        extra={
            "application_id": application.id,
            "protocol_number": application.protocol_number,
            "committee": committee,
        },
    )

    if submit:
        from app.services.protocol_lifecycle import Actor, transition_application  # lazy import: avoid circular

        result = transition_application(
            application.id,
            "submit",
            Actor(id=pi_id, role="investigator"),
            comment=data.get("comment") or "Initial submission",
            now=now,
        )
        return result["application"]

    db.session.commit()
    return application.to_dict()


def get_application(application_id: int) -> ProtocolApplication:
    application = db.session.get(ProtocolApplication, application_id)
    if application is None:
        raise NotFoundError(resource="ProtocolApplication", resource_id=application_id)
    return application


def applications_query(status: str | None = None, committee: str | None = None):
    """Query of applications, newest first, optionally filtered by status and committee."""
    query = ProtocolApplication.query
    if status:
        if status not in PROTOCOL_STATUSES:
            raise ValidationError(
                f"Invalid status '{status}'. Must be one of: {', '.join(sorted(PROTOCOL_STATUSES))}",
                details={"status": status},
            )
        query = query.filter(ProtocolApplication.status == status)
    if committee:
        query = query.filter(ProtocolApplication.committee == committee.lower())
    return query.order_by(ProtocolApplication.id.desc())


# ── Reviewer pool ────────────────────────────────────────────────────────────


def get_reviewer_pool(
    committee: str = "irb",
    *,
    today: date | None = None,
    limit: int | None = None,
) -> list[ReviewerCandidate]:
    """Active board members of *committee* whose term has not ended.

    *limit* caps the listing offered to clients; assignment validation
    passes None so every eligible member is accepted.
    """
    today = today or datetime.now(timezone.utc).date()
    stmt = (
        select(BoardMember)
        .where(
            BoardMember.committee == committee,
            BoardMember.is_active.is_(True),
            or_(BoardMember.term_end_date.is_(None), BoardMember.term_end_date >= today),
        )
        .order_by(BoardMember.display_name, BoardMember.id)
    )
    if limit is not None:
        stmt = stmt.limit(limit)
    return [
        ReviewerCandidate(id=m.id, display_name=m.display_name, is_active=m.is_active)
        for m in db.session.execute(stmt).scalars().all()
    ]
