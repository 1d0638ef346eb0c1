"""
Protocol Review: Transition Engine

Moves a ProtocolApplication through its review lifecycle:
  - Action/decision resolution against PROTOCOL_TRANSITIONS (aliases accepted)
  - Actor checks (office vs. submitting investigator)
  - Comment requirement (all actions except assign_reviewers)
  - Reviewer assignment via reviewer_assignment.resolve_assignment
  - Side effects (dates, assignment, expiration)
  - Exactly one ReviewEvent appended per accepted transition

Every check runs before the first write. The status update and the event
insert are committed together; a lost race on the version column surfaces
as ConcurrentModificationError.

Usage:
    from app.services.protocol_lifecycle import Actor, transition_application

    result = transition_application(
        application_id=12,
        action="triage",
        actor=Actor(id=3, role="office"),
        decision="complete",
        comment="Looks complete",
    )
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone

from sqlalchemy.orm.exc import StaleDataError

from app.core.exceptions import (
    ActorNotPermittedError,
    ConcurrentModificationError,
    InvalidTransitionError,
    MissingCommentError,
    NotFoundError,
    ValidationError,
)
from app.models import db
from app.models.protocol import (
    ACTION_ALIASES,
    ASSIGNMENT_STATUSES,
    DECISION_ACTIONS,
    DECISION_ALIASES,
    PROTOCOL_TRANSITIONS,
    TERMINAL_STATUSES,
    ActorType,
    ProtocolApplication,
    ProtocolStatus,
    ReviewEvent,
    available_transitions,
)
from app.services.protocol_service import get_reviewer_pool
from app.services.reviewer_assignment import resolve_assignment

logger = logging.getLogger(__name__)

ACTOR_ROLES = frozenset(r.value for r in ActorType)

# Actions that may be recorded without a comment
_COMMENT_OPTIONAL = frozenset({"assign_reviewers"})


@dataclass(frozen=True)
class Actor:
    """Identity of whoever performs a transition, passed explicitly per call."""
    id: int
    role: str

    @classmethod
    def from_payload(cls, payload) -> "Actor":
        """Build an Actor from ``{"id": ..., "role": ...}``; ValueError if malformed."""
        if not isinstance(payload, dict):
            raise ValueError("actor must be an object with 'id' and 'role'")
        role = payload.get("role")
        if role not in ACTOR_ROLES:
            raise ValueError(f"actor.role must be one of: {', '.join(sorted(ACTOR_ROLES))}")
        raw_id = payload.get("id")
        if isinstance(raw_id, bool) or raw_id in (None, ""):
            raise ValueError("actor.id is required")
        try:
            actor_id = int(raw_id)
        except (TypeError, ValueError) as exc:
            raise ValueError("actor.id must be an integer") from exc
        return cls(id=actor_id, role=role)


def add_one_year(value: date) -> date:
    """Same calendar day one year later; 29 February maps to 28 February."""
    try:
        return value.replace(year=value.year + 1)
    except ValueError:
        return value.replace(year=value.year + 1, day=28)


def resolve_action(action, decision, current_status: str) -> tuple[str, str | None]:
    """
    Canonicalise an (action, decision) request into a PROTOCOL_TRANSITIONS key.

    Raises:
        InvalidTransitionError for unknown actions or decisions.
    """
    if not isinstance(action, str) or not action.strip():
        raise InvalidTransitionError(str(action), current_status, "Unknown action")
    name = action.strip().lower()
    name = ACTION_ALIASES.get(name, name)

    label = decision.strip().lower() if isinstance(decision, str) and decision.strip() else None

    if name in DECISION_ACTIONS:
        if label is None:
            raise InvalidTransitionError(name, current_status, "A decision is required")
        label = DECISION_ALIASES.get(name, {}).get(label, label)
        if (name, label) not in PROTOCOL_TRANSITIONS:
            raise InvalidTransitionError(name, current_status, f"Unknown decision: {decision}")
        return name, label

    if (name, None) not in PROTOCOL_TRANSITIONS:
        raise InvalidTransitionError(name, current_status, "Unknown action")
    if label is not None:
        raise InvalidTransitionError(name, current_status, f"'{name}' does not take a decision")
    return name, None


def validate_transition(application: ProtocolApplication, action, decision=None) -> dict:
    """
    Validate whether an action is legal for the current state.

    Returns:
        {"valid": bool, "action": str, "decision": str|None,
         "from": str, "to": str|None, "reason": str|None}
    """
    try:
        key = resolve_action(action, decision, application.status)
    except InvalidTransitionError as exc:
        return {"valid": False, "action": exc.action, "decision": decision,
                "from": application.status, "to": None, "reason": exc.reason}

    rule = PROTOCOL_TRANSITIONS[key]
    target = rule["to"] or application.status
    if application.status not in rule["from"]:
        return {"valid": False, "action": key[0], "decision": key[1],
                "from": application.status, "to": target,
                "reason": f"Not allowed from status '{application.status}'"}

    return {"valid": True, "action": key[0], "decision": key[1],
            "from": application.status, "to": target, "reason": None}


def _check_actor(application: ProtocolApplication, action: str, rule: dict, actor: Actor) -> None:
    if actor.role != rule["actor"]:
        raise ActorNotPermittedError(actor.role, action, f"requires role '{rule['actor']}'")
    if rule["actor"] == ActorType.INVESTIGATOR.value and actor.id != application.principal_investigator_id:
        raise ActorNotPermittedError(
            actor.role, action, "only the submitting investigator may act on this protocol",
        )


def _utc(now: datetime | None) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


def transition_application(
    application_id: int,
    action: str,
    actor: Actor,
    *,
    decision: str | None = None,
    comment: str | None = None,
    primary_reviewer_id=None,
    secondary_reviewer_id=None,
    review_type: str | None = None,
    registration_number: str | None = None,
    expected_version: int | None = None,
    now: datetime | None = None,
) -> dict:
    """
    Execute a protocol lifecycle transition.

    Args:
        application_id: PK of the ProtocolApplication.
        action: Transition action (aliases accepted, e.g. 'assign_reviewer').
        actor: Explicit acting identity.
        decision: Decision label for 'triage' and 'final_decision'.
        comment: Required for every action except 'assign_reviewers'.
        primary_reviewer_id / secondary_reviewer_id / review_type:
            Reviewer selection for 'assign_reviewers'.
        registration_number: Stored on final approval if none is set yet.
        expected_version: Optional optimistic-lock check before any write.
        now: Clock override; defaults to the current UTC time.

    Returns:
        {"application", "event", "previous_status", "new_status", "action"}

    Raises:
        NotFoundError, InvalidTransitionError, ActorNotPermittedError,
        MissingCommentError, ReviewerAssignmentError subclasses,
        ConcurrentModificationError
    """
    application = db.session.get(ProtocolApplication, application_id)
    if application is None:
        raise NotFoundError(resource="ProtocolApplication", resource_id=application_id)

    # 1. Resolve and validate the transition
    validation = validate_transition(application, action, decision)
    if not validation["valid"]:
        raise InvalidTransitionError(validation["action"], application.status, validation["reason"])
    action_name, decision_label = validation["action"], validation["decision"]
    rule = PROTOCOL_TRANSITIONS[(action_name, decision_label)]

    # 2. Actor
    _check_actor(application, action_name, rule, actor)

    # 3. Comment
    text = comment.strip() if isinstance(comment, str) else ""
    if not text and action_name not in _COMMENT_OPTIONAL:
        raise MissingCommentError(action_name)

    if registration_number is not None and not isinstance(registration_number, str):
        raise ValidationError(
            "registration_number must be a string",
            details={"registration_number": "invalid"},
        )

    now = _utc(now)

    # 4. Reviewer assignment
    assignment = None
    if action_name == "assign_reviewers":
        assignment = resolve_assignment(
            primary_reviewer_id,
            secondary_reviewer_id,
            review_type,
            get_reviewer_pool(application.committee, today=now.date()),
            now=now,
        )

    # 5. Optimistic lock
    if expected_version is not None and int(expected_version) != application.version:
        raise ConcurrentModificationError(application.id, expected_version)

    # 6. Execute transition
    previous_status = application.status
    new_status = validation["to"]
    application.status = new_status

    details = {}
    if action_name == "submit":
        application.submission_date = now
    elif action_name == "triage" and decision_label == "complete":
        application.triage_date = now
    elif assignment is not None:
        application.reviewer_assignment = assignment.to_dict()
        application.review_start_date = now
        details["reviewer_assignment"] = assignment.to_dict()
    elif new_status == ProtocolStatus.APPROVED.value:
        application.approval_date = now.date()
        application.expiration_date = add_one_year(application.approval_date)
        if registration_number and not application.registration_number:
            application.registration_number = registration_number.strip()
        details["approval_date"] = application.approval_date.isoformat()
        details["expiration_date"] = application.expiration_date.isoformat()

    if new_status not in ASSIGNMENT_STATUSES and application.reviewer_assignment is not None:
        application.reviewer_assignment = None

    # Dirty the row even when the status is unchanged so the versioned UPDATE runs
    application.updated_at = now

    if decision_label:
        details["decision"] = decision_label

    review_event = ReviewEvent(
        application_id=application.id,
        actor_type=rule["actor"],
        actor_id=actor.id,
        action=rule["event"],
        decision=decision_label,
        comment=text or None,
        from_status=previous_status,
        to_status=new_status,
        details=details or None,
        created_at=now,
    )
    db.session.add(review_event)

    # 7. Commit as one unit; the version column guards against lost updates
    try:
        db.session.commit()
    except StaleDataError as exc:
        db.session.rollback()
        logger.warning(
            "Protocol transition lost a concurrent update",
            extra={"application_id": application_id, "action": action_name},
        )
        raise ConcurrentModificationError(application_id, expected_version) from exc

    logger.info(
        "Protocol transition applied",
        extra={
            "application_id": application.id,
            "action": action_name,
            "decision": decision_label,
            "from_status": previous_status,
            "to_status": new_status,
            "actor_type": actor.role,
            "actor_id": actor.id,
        },
    )

    return {
        "application": application.to_dict(),
        "event": review_event.to_dict(),
        "previous_status": previous_status,
        "new_status": new_status,
        "action": action_name,
    }


def list_available_transitions(application_id: int, role: str | None = None) -> dict:
    """Legal (action, decision) pairs from the application's current status."""
    application = db.session.get(ProtocolApplication, application_id)
    if application is None:
        raise NotFoundError(resource="ProtocolApplication", resource_id=application_id)
    return {
        "application_id": application.id,
        "status": application.status,
        "version": application.version,
        "terminal": application.status in TERMINAL_STATUSES,
        "transitions": available_transitions(application.status, role),
    }
