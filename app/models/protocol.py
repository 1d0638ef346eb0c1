"""
Protocol Review domain models.

Models:
    - ProtocolApplication: one row per regulatory protocol (IRB / IBC).
    - ReviewEvent: immutable, append-only log of workflow actions.
    - BoardMember: committee members that can be assigned as reviewers.

The transition table (PROTOCOL_TRANSITIONS) lives here next to the status
enum so that every caller validates against one canonical mapping.
"""

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import event

from app.models import db


# ── Enums ────────────────────────────────────────────────────────────────────


class ProtocolStatus(str, Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    RESUBMITTED = "resubmitted"
    TRIAGE_COMPLETE = "triage_complete"
    UNDER_REVIEW = "under_review"
    REVISIONS_REQUESTED = "revisions_requested"
    APPROVED = "approved"
    REJECTED = "rejected"
    CLOSED = "closed"


class ActorType(str, Enum):
    OFFICE = "office"
    INVESTIGATOR = "investigator"


class ReviewAction(str, Enum):
    """Action recorded on a ReviewEvent row."""

    SUBMIT = "submit"
    TRIAGE_COMPLETE = "triage_complete"
    REVISIONS_REQUESTED = "revisions_requested"
    REJECT = "reject"
    ASSIGN_REVIEWERS = "assign_reviewers"
    FINAL_DECISION = "final_decision"
    PI_RESPONSE = "pi_response"
    WITHDRAW = "withdraw"
    RESUBMIT = "resubmit"
    CLOSE = "close"


PROTOCOL_STATUSES = frozenset(s.value for s in ProtocolStatus)
TERMINAL_STATUSES = frozenset({
    ProtocolStatus.APPROVED.value,
    ProtocolStatus.REJECTED.value,
    ProtocolStatus.CLOSED.value,
})

# Statuses in which a reviewer assignment may be present
ASSIGNMENT_STATUSES = frozenset({
    ProtocolStatus.UNDER_REVIEW.value,
    ProtocolStatus.APPROVED.value,
})

COMMITTEES = {
    "irb": "IRB",   # Institutional Review Board
    "ibc": "IBC",   # Institutional Biosafety Committee
}


# ── Transition table ─────────────────────────────────────────────────────────
#
# Keyed by (request action, decision). "to" of None keeps the current status.

_S = ProtocolStatus
_INTAKE = [_S.SUBMITTED.value, _S.RESUBMITTED.value]
_OPEN = [
    _S.SUBMITTED.value, _S.RESUBMITTED.value, _S.TRIAGE_COMPLETE.value,
    _S.UNDER_REVIEW.value, _S.REVISIONS_REQUESTED.value,
]

PROTOCOL_TRANSITIONS = {
    ("submit", None): {
        "from": [_S.DRAFT.value], "to": _S.SUBMITTED.value,
        "actor": ActorType.INVESTIGATOR.value, "event": ReviewAction.SUBMIT.value,
    },
    ("triage", "complete"): {
        "from": _INTAKE, "to": _S.TRIAGE_COMPLETE.value,
        "actor": ActorType.OFFICE.value, "event": ReviewAction.TRIAGE_COMPLETE.value,
    },
    ("triage", "revisions_required"): {
        "from": _INTAKE, "to": _S.REVISIONS_REQUESTED.value,
        "actor": ActorType.OFFICE.value, "event": ReviewAction.REVISIONS_REQUESTED.value,
    },
    ("triage", "reject"): {
        "from": _INTAKE, "to": _S.REJECTED.value,
        "actor": ActorType.OFFICE.value, "event": ReviewAction.REJECT.value,
    },
    ("assign_reviewers", None): {
        "from": [_S.TRIAGE_COMPLETE.value], "to": _S.UNDER_REVIEW.value,
        "actor": ActorType.OFFICE.value, "event": ReviewAction.ASSIGN_REVIEWERS.value,
    },
    ("final_decision", "approve"): {
        "from": [_S.UNDER_REVIEW.value], "to": _S.APPROVED.value,
        "actor": ActorType.OFFICE.value, "event": ReviewAction.FINAL_DECISION.value,
    },
    ("final_decision", "approve_with_modifications"): {
        "from": [_S.UNDER_REVIEW.value], "to": _S.REVISIONS_REQUESTED.value,
        "actor": ActorType.OFFICE.value, "event": ReviewAction.FINAL_DECISION.value,
    },
    ("final_decision", "defer"): {
        "from": [_S.UNDER_REVIEW.value], "to": _S.REVISIONS_REQUESTED.value,
        "actor": ActorType.OFFICE.value, "event": ReviewAction.FINAL_DECISION.value,
    },
    ("final_decision", "disapprove"): {
        "from": [_S.UNDER_REVIEW.value], "to": _S.REJECTED.value,
        "actor": ActorType.OFFICE.value, "event": ReviewAction.FINAL_DECISION.value,
    },
    ("request_revisions", None): {
        "from": [_S.UNDER_REVIEW.value], "to": _S.REVISIONS_REQUESTED.value,
        "actor": ActorType.OFFICE.value, "event": ReviewAction.REVISIONS_REQUESTED.value,
    },
    ("reject", None): {
        "from": [_S.UNDER_REVIEW.value], "to": _S.REJECTED.value,
        "actor": ActorType.OFFICE.value, "event": ReviewAction.REJECT.value,
    },
    ("resubmit", None): {
        "from": [_S.REVISIONS_REQUESTED.value], "to": _S.RESUBMITTED.value,
        "actor": ActorType.INVESTIGATOR.value, "event": ReviewAction.RESUBMIT.value,
    },
    ("withdraw", None): {
        "from": [_S.SUBMITTED.value, _S.RESUBMITTED.value,
                 _S.TRIAGE_COMPLETE.value, _S.UNDER_REVIEW.value],
        "to": _S.DRAFT.value,
        "actor": ActorType.INVESTIGATOR.value, "event": ReviewAction.WITHDRAW.value,
    },
    ("pi_response", None): {
        "from": [_S.REVISIONS_REQUESTED.value, _S.UNDER_REVIEW.value], "to": None,
        "actor": ActorType.INVESTIGATOR.value, "event": ReviewAction.PI_RESPONSE.value,
    },
    ("close", None): {
        "from": _OPEN, "to": _S.CLOSED.value,
        "actor": ActorType.OFFICE.value, "event": ReviewAction.CLOSE.value,
    },
}

# Actions that take a decision label
DECISION_ACTIONS = frozenset(action for action, decision in PROTOCOL_TRANSITIONS if decision)

# Input aliases observed on the two office screens of the previous system
ACTION_ALIASES = {
    "assign_reviewer": "assign_reviewers",
}

DECISION_ALIASES = {
    "triage": {
        "complete_triage": "complete",
        "triage_complete": "complete",
        "revisions_requested": "revisions_required",
        "rejected": "reject",
    },
    "final_decision": {
        "approved": "approve",
        "approved_with_modifications": "approve_with_modifications",
        "deferred": "defer",
        "disapproved": "disapprove",
    },
}


def available_transitions(status: str, role: str | None = None) -> list[dict]:
    """Return the (action, decision) pairs legal from *status*, optionally for one role."""
    result = []
    for (action, decision), rule in PROTOCOL_TRANSITIONS.items():
        if status not in rule["from"]:
            continue
        if role and rule["actor"] != role:
            continue
        result.append({
            "action": action,
            "decision": decision,
            "actor": rule["actor"],
            "to": rule["to"] or status,
        })
    return result


# ── Models ───────────────────────────────────────────────────────────────────


class ProtocolApplication(db.Model):
    """
    One regulatory protocol application.

    Business rules:
    - status is mutated only by app.services.protocol_lifecycle.
    - approval_date is set iff the protocol reached 'approved';
      expiration_date is always one calendar year later.
    - reviewer_assignment is replaced wholesale, never mutated in place.
    - Rows are never hard-deleted.
    """

    __tablename__ = "protocol_applications"
    __table_args__ = (
        db.Index("ix_protocol_status", "status"),
        db.Index("ix_protocol_committee_status", "committee", "status"),
        db.Index("ix_protocol_pi", "principal_investigator_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    protocol_number = db.Column(
        db.String(20), nullable=False, unique=True,
        comment="Internal number, e.g. IRB-2025-001",
    )
    registration_number = db.Column(
        db.String(64), nullable=True,
        comment="External registration number; null until formally issued",
    )
    committee = db.Column(db.String(10), nullable=False, default="irb", comment="irb | ibc")

    title = db.Column(db.String(500), nullable=False)
    short_title = db.Column(db.String(200), nullable=True)
    principal_investigator_id = db.Column(db.Integer, nullable=False)
    protocol_type = db.Column(db.String(50), nullable=True)
    description = db.Column(db.Text, nullable=True)
    form_data = db.Column(db.JSON, nullable=True)

    status = db.Column(
        db.String(30), nullable=False, default=ProtocolStatus.DRAFT.value,
        comment="draft | submitted | resubmitted | triage_complete | under_review | "
                "revisions_requested | approved | rejected | closed",
    )

    submission_date = db.Column(db.DateTime(timezone=True), nullable=True)
    triage_date = db.Column(db.DateTime(timezone=True), nullable=True)
    review_start_date = db.Column(db.DateTime(timezone=True), nullable=True)
    approval_date = db.Column(db.Date, nullable=True)
    expiration_date = db.Column(db.Date, nullable=True)

    reviewer_assignment = db.Column(
        db.JSON, nullable=True,
        comment='{"primary_reviewer_id", "secondary_reviewer_id", "review_type", "assigned_at"}',
    )

    # Historical comment blobs keyed by timestamp string; read-only
    legacy_review_comments = db.Column(db.JSON, nullable=True)
    legacy_pi_responses = db.Column(db.JSON, nullable=True)

    version = db.Column(db.Integer, nullable=False)

    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    events = db.relationship(
        "ReviewEvent",
        back_populates="application",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="ReviewEvent.id",
        lazy="dynamic",
    )

    __mapper_args__ = {"version_id_col": version}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "protocol_number": self.protocol_number,
            "registration_number": self.registration_number,
            "committee": self.committee,
            "title": self.title,
            "short_title": self.short_title,
            "principal_investigator_id": self.principal_investigator_id,
            "protocol_type": self.protocol_type,
            "description": self.description,
            "status": self.status,
            "submission_date": _iso(self.submission_date),
            "triage_date": _iso(self.triage_date),
            "review_start_date": _iso(self.review_start_date),
            "approval_date": _iso(self.approval_date),
            "expiration_date": _iso(self.expiration_date),
            "reviewer_assignment": self.reviewer_assignment,
            "version": self.version,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<ProtocolApplication {self.protocol_number} {self.status}>"


class ReviewEvent(db.Model):
    """
    Immutable record of one accepted workflow action.

    Exactly one row per accepted transition. Rows are never updated; the
    before_update listener below refuses any attempt.
    """

    __tablename__ = "review_events"
    __table_args__ = (
        db.Index("ix_review_event_app_created", "application_id", "created_at"),
        db.Index("ix_review_event_legacy", "application_id", "actor_type", "legacy_key"),
    )

    id = db.Column(db.Integer, primary_key=True)
    application_id = db.Column(
        db.Integer,
        db.ForeignKey("protocol_applications.id", ondelete="CASCADE"),
        nullable=False,
    )
    actor_type = db.Column(db.String(20), nullable=False, comment="office | investigator")
    actor_id = db.Column(db.Integer, nullable=True)
    action = db.Column(db.String(30), nullable=False)
    decision = db.Column(db.String(40), nullable=True)
    comment = db.Column(db.Text, nullable=True)
    from_status = db.Column(db.String(30), nullable=True)
    to_status = db.Column(db.String(30), nullable=True)
    details = db.Column(db.JSON, nullable=True)
    legacy_key = db.Column(
        db.String(40), nullable=True,
        comment="Original timestamp key when imported from a legacy comment blob",
    )
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    application = db.relationship("ProtocolApplication", back_populates="events")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "application_id": self.application_id,
            "actor_type": self.actor_type,
            "actor_id": self.actor_id,
            "action": self.action,
            "decision": self.decision,
            "comment": self.comment,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "details": self.details or {},
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<ReviewEvent #{self.id} app={self.application_id} {self.action}>"


@event.listens_for(ReviewEvent, "before_update")
def _refuse_review_event_update(mapper, connection, target):
    raise ValueError(f"ReviewEvent #{target.id} is append-only and cannot be updated")


class BoardMember(db.Model):
    """Committee member eligible for reviewer assignment while active."""

    __tablename__ = "board_members"
    __table_args__ = (
        db.Index("ix_board_member_committee_active", "committee", "is_active"),
    )

    id = db.Column(db.Integer, primary_key=True)
    scientist_id = db.Column(db.Integer, nullable=True)
    display_name = db.Column(db.String(200), nullable=False)
    committee = db.Column(db.String(10), nullable=False, default="irb")
    role = db.Column(db.String(20), nullable=False, default="member", comment="member | chair | deputy_chair")
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    term_end_date = db.Column(db.Date, nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "scientist_id": self.scientist_id,
            "display_name": self.display_name,
            "committee": self.committee,
            "role": self.role,
            "is_active": self.is_active,
            "term_end_date": _iso(self.term_end_date),
        }

    def __repr__(self):
        return f"<BoardMember {self.id}: {self.display_name}>"


def _iso(value):
    return value.isoformat() if value else None
