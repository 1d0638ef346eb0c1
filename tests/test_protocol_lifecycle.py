"""
Protocol Lifecycle Tests: service-level coverage for:
  - Every edge of PROTOCOL_TRANSITIONS (happy path + invalid transitions)
  - Decision aliases and unknown actions / decisions
  - Actor checks (office vs. submitting investigator)
  - Comment requirement
  - Side effects: dates, reviewer assignment, approval / expiration
  - Optimistic concurrency (expected_version + lost update on commit)
  - Full walk: draft → approved
"""

from datetime import date, datetime, timezone

import pytest
from sqlalchemy import func, select, update

from app.core.exceptions import (
    ActorNotPermittedError,
    ConcurrentModificationError,
    DuplicateReviewerError,
    InvalidReviewTypeError,
    InvalidTransitionError,
    MissingCommentError,
    NotFoundError,
    UnknownReviewerError,
    ValidationError,
)
from app.models import db as _db
from app.models.protocol import (
    PROTOCOL_STATUSES,
    PROTOCOL_TRANSITIONS,
    ProtocolApplication,
    ReviewEvent,
)
from app.services.protocol_lifecycle import (
    Actor,
    add_one_year,
    list_available_transitions,
    resolve_action,
    transition_application,
)

PI_ID = 501  # investigator fixture id
NOW = datetime(2025, 1, 10, 14, 0, tzinfo=timezone.utc)


# ═══════════════════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════════════════


def _make_application(status="submitted", **kwargs) -> ProtocolApplication:
    n = _db.session.scalar(select(func.count(ProtocolApplication.id))) + 1
    app_row = ProtocolApplication(
        protocol_number=f"IRB-2025-{n:03d}",
        committee="irb",
        title="Sleep and memory consolidation",
        principal_investigator_id=PI_ID,
        status=status,
        **kwargs,
    )
    _db.session.add(app_row)
    _db.session.commit()
    return app_row


def _under_review(reviewers) -> ProtocolApplication:
    return _make_application(
        status="under_review",
        reviewer_assignment={
            "primary_reviewer_id": reviewers[0],
            "secondary_reviewer_id": None,
            "review_type": "expedited",
            "assigned_at": "2025-01-02T09:00:00+00:00",
        },
    )


def _event_count(application_id) -> int:
    return _db.session.scalar(
        select(func.count(ReviewEvent.id)).where(ReviewEvent.application_id == application_id)
    )


# ═══════════════════════════════════════════════════════════════════════════
# Transition table
# ═══════════════════════════════════════════════════════════════════════════


class TestTransitionTable:
    def test_every_state_is_in_the_enum(self):
        for rule in PROTOCOL_TRANSITIONS.values():
            for state in rule["from"]:
                assert state in PROTOCOL_STATUSES
            assert rule["to"] is None or rule["to"] in PROTOCOL_STATUSES

    def test_terminal_states_have_no_exits(self):
        for status in ("approved", "rejected", "closed"):
            assert all(status not in rule["from"] for rule in PROTOCOL_TRANSITIONS.values())

    @pytest.mark.parametrize("raw, expected", [
        (("triage", "complete_triage"), ("triage", "complete")),
        (("triage", "revisions_requested"), ("triage", "revisions_required")),
        (("triage", "rejected"), ("triage", "reject")),
        (("final_decision", "approved"), ("final_decision", "approve")),
        (("final_decision", "approved_with_modifications"), ("final_decision", "approve_with_modifications")),
        (("final_decision", "deferred"), ("final_decision", "defer")),
        (("final_decision", "disapproved"), ("final_decision", "disapprove")),
        (("assign_reviewer", None), ("assign_reviewers", None)),
        (("Withdraw", ""), ("withdraw", None)),
    ])
    def test_aliases(self, raw, expected):
        assert resolve_action(raw[0], raw[1], "submitted") == expected

    @pytest.mark.parametrize("action, decision", [
        ("publish", None),
        ("triage", None),
        ("triage", "maybe"),
        ("final_decision", "approve_later"),
        ("submit", "complete"),
        ("", None),
    ])
    def test_unknown_action_or_decision(self, action, decision):
        with pytest.raises(InvalidTransitionError):
            resolve_action(action, decision, "submitted")


# ═══════════════════════════════════════════════════════════════════════════
# Triage
# ═══════════════════════════════════════════════════════════════════════════


class TestTriage:
    def test_triage_complete(self, office):
        a = _make_application("submitted")
        result = transition_application(
            a.id, "triage", office, decision="complete", comment="Complete package", now=NOW,
        )
        assert result["previous_status"] == "submitted"
        assert result["new_status"] == "triage_complete"
        assert result["action"] == "triage"
        assert result["application"]["triage_date"].startswith("2025-01-10T14:00:00")
        assert result["event"]["action"] == "triage_complete"
        assert result["event"]["comment"] == "Complete package"
        assert result["event"]["actor_type"] == "office"
        assert _event_count(a.id) == 1

    def test_triage_from_resubmitted(self, office):
        a = _make_application("resubmitted")
        result = transition_application(a.id, "triage", office, decision="complete_triage", comment="ok")
        assert result["new_status"] == "triage_complete"

    def test_triage_revisions_required(self, office):
        a = _make_application("submitted")
        result = transition_application(
            a.id, "triage", office, decision="revisions_required", comment="Consent form missing",
        )
        assert result["new_status"] == "revisions_requested"
        assert result["event"]["action"] == "revisions_requested"

    def test_triage_reject(self, office):
        a = _make_application("submitted")
        result = transition_application(a.id, "triage", office, decision="reject", comment="Out of scope")
        assert result["new_status"] == "rejected"
        assert result["event"]["action"] == "reject"

    def test_triage_requires_comment(self, office):
        a = _make_application("submitted")
        with pytest.raises(MissingCommentError):
            transition_application(a.id, "triage", office, decision="complete", comment="   ")
        assert _db.session.get(ProtocolApplication, a.id).status == "submitted"
        assert _event_count(a.id) == 0

    def test_triage_from_draft_is_invalid(self, office):
        a = _make_application("draft")
        with pytest.raises(InvalidTransitionError):
            transition_application(a.id, "triage", office, decision="complete", comment="x")


# ═══════════════════════════════════════════════════════════════════════════
# Reviewer assignment
# ═══════════════════════════════════════════════════════════════════════════


class TestAssignReviewers:
    def test_assign(self, office, reviewers):
        a = _make_application("triage_complete")
        result = transition_application(
            a.id, "assign_reviewers", office,
            primary_reviewer_id=reviewers[0], secondary_reviewer_id=reviewers[1],
            review_type="full_board", now=NOW,
        )
        assert result["new_status"] == "under_review"
        assignment = result["application"]["reviewer_assignment"]
        assert assignment["primary_reviewer_id"] == reviewers[0]
        assert assignment["secondary_reviewer_id"] == reviewers[1]
        assert assignment["review_type"] == "full_board"
        assert result["application"]["review_start_date"].startswith("2025-01-10")
        assert result["event"]["details"]["reviewer_assignment"] == assignment
        assert result["event"]["comment"] is None

    def test_assign_via_legacy_alias(self, office, reviewers):
        a = _make_application("triage_complete")
        result = transition_application(
            a.id, "assign_reviewer", office,
            primary_reviewer_id=str(reviewers[0]), review_type="Expedited",
        )
        assert result["action"] == "assign_reviewers"
        assert result["application"]["reviewer_assignment"]["review_type"] == "expedited"

    def test_duplicate_reviewer_rejected(self, office, reviewers):
        a = _make_application("triage_complete")
        with pytest.raises(DuplicateReviewerError):
            transition_application(
                a.id, "assign_reviewers", office,
                primary_reviewer_id=reviewers[0], secondary_reviewer_id=reviewers[0],
                review_type="expedited",
            )
        refreshed = _db.session.get(ProtocolApplication, a.id)
        assert refreshed.status == "triage_complete"
        assert refreshed.reviewer_assignment is None
        assert _event_count(a.id) == 0

    def test_unknown_reviewer(self, office, reviewers):
        a = _make_application("triage_complete")
        with pytest.raises(UnknownReviewerError):
            transition_application(
                a.id, "assign_reviewers", office,
                primary_reviewer_id=9999, review_type="expedited",
            )

    def test_missing_primary(self, office, reviewers):
        a = _make_application("triage_complete")
        with pytest.raises(UnknownReviewerError):
            transition_application(a.id, "assign_reviewers", office, review_type="expedited")

    def test_inactive_member_not_assignable(self, office):
        from app.models.protocol import BoardMember
        m = BoardMember(display_name="Dr. Past", committee="irb", is_active=False)
        expired = BoardMember(display_name="Dr. Expired", committee="irb", term_end_date=date(2000, 1, 1))
        _db.session.add_all([m, expired])
        _db.session.commit()
        a = _make_application("triage_complete")
        for member in (m, expired):
            with pytest.raises(UnknownReviewerError):
                transition_application(
                    a.id, "assign_reviewers", office,
                    primary_reviewer_id=member.id, review_type="exempt",
                )

    def test_other_committee_member_not_assignable(self, office):
        from app.models.protocol import BoardMember
        m = BoardMember(display_name="Dr. Biosafety", committee="ibc")
        _db.session.add(m)
        _db.session.commit()
        a = _make_application("triage_complete")
        with pytest.raises(UnknownReviewerError):
            transition_application(
                a.id, "assign_reviewers", office, primary_reviewer_id=m.id, review_type="exempt",
            )

    def test_member_past_listing_limit_is_assignable(self, app, office, reviewers, monkeypatch):
        from app.models.protocol import BoardMember
        monkeypatch.setitem(app.config, "REVIEWER_POOL_LIMIT", 2)
        m = BoardMember(display_name="Dr. Cyd Reviewer", committee="irb")
        _db.session.add(m)
        _db.session.commit()
        a = _make_application("triage_complete")
        result = transition_application(
            a.id, "assign_reviewers", office, primary_reviewer_id=m.id, review_type="exempt",
        )
        assert result["application"]["reviewer_assignment"]["primary_reviewer_id"] == m.id

    def test_term_end_uses_clock_override(self, office):
        from app.models.protocol import BoardMember
        m = BoardMember(display_name="Dr. Sabbatical", committee="irb", term_end_date=date(2025, 6, 30))
        _db.session.add(m)
        _db.session.commit()
        a = _make_application("triage_complete")
        result = transition_application(
            a.id, "assign_reviewers", office,
            primary_reviewer_id=m.id, review_type="exempt", now=NOW,
        )
        assert result["new_status"] == "under_review"

    def test_invalid_review_type(self, office, reviewers):
        a = _make_application("triage_complete")
        with pytest.raises(InvalidReviewTypeError):
            transition_application(
                a.id, "assign_reviewers", office,
                primary_reviewer_id=reviewers[0], review_type="speedy",
            )


# ═══════════════════════════════════════════════════════════════════════════
# Final decision and formal review outcomes
# ═══════════════════════════════════════════════════════════════════════════


class TestFinalDecision:
    def test_approve_sets_dates(self, office, reviewers):
        a = _under_review(reviewers)
        result = transition_application(
            a.id, "final_decision", office, decision="approve", comment="Approved as submitted",
            registration_number="REG-7781", now=NOW,
        )
        body = result["application"]
        assert result["new_status"] == "approved"
        assert body["approval_date"] == "2025-01-10"
        assert body["expiration_date"] == "2026-01-10"
        assert body["registration_number"] == "REG-7781"
        assert body["reviewer_assignment"]["primary_reviewer_id"] == reviewers[0]
        assert result["event"]["decision"] == "approve"

    def test_approve_on_leap_day(self, office, reviewers):
        a = _under_review(reviewers)
        result = transition_application(
            a.id, "final_decision", office, decision="approved", comment="ok",
            now=datetime(2024, 2, 29, 12, tzinfo=timezone.utc),
        )
        assert result["application"]["approval_date"] == "2024-02-29"
        assert result["application"]["expiration_date"] == "2025-02-28"

    def test_existing_registration_number_kept(self, office, reviewers):
        a = _under_review(reviewers)
        a.registration_number = "REG-1"
        _db.session.commit()
        result = transition_application(
            a.id, "final_decision", office, decision="approve", comment="ok", registration_number="REG-2",
        )
        assert result["application"]["registration_number"] == "REG-1"

    def test_non_string_registration_number_rejected_before_any_write(self, office, reviewers):
        a = _under_review(reviewers)
        with pytest.raises(ValidationError):
            transition_application(
                a.id, "final_decision", office, decision="approve", comment="ok", registration_number=12345,
            )
        refreshed = _db.session.get(ProtocolApplication, a.id)
        assert refreshed.status == "under_review"
        assert refreshed.approval_date is None
        assert _event_count(a.id) == 0

    @pytest.mark.parametrize("decision, expected", [
        ("approve_with_modifications", "revisions_requested"),
        ("defer", "revisions_requested"),
        ("disapprove", "rejected"),
    ])
    def test_other_decisions(self, office, reviewers, decision, expected):
        a = _under_review(reviewers)
        result = transition_application(a.id, "final_decision", office, decision=decision, comment="see notes")
        assert result["new_status"] == expected
        assert result["application"]["approval_date"] is None
        assert result["application"]["expiration_date"] is None
        assert result["application"]["reviewer_assignment"] is None

    def test_request_revisions_clears_assignment(self, office, reviewers):
        a = _under_review(reviewers)
        result = transition_application(a.id, "request_revisions", office, comment="Clarify recruitment")
        assert result["new_status"] == "revisions_requested"
        assert result["event"]["action"] == "revisions_requested"
        assert result["application"]["reviewer_assignment"] is None

    def test_reject_from_review(self, office, reviewers):
        a = _under_review(reviewers)
        result = transition_application(a.id, "reject", office, comment="Unacceptable risk")
        assert result["new_status"] == "rejected"

    def test_approve_from_submitted_is_invalid_and_side_effect_free(self, office):
        a = _make_application("submitted")
        version = a.version
        with pytest.raises(InvalidTransitionError):
            transition_application(a.id, "final_decision", office, decision="approve", comment="x")
        refreshed = _db.session.get(ProtocolApplication, a.id)
        assert refreshed.status == "submitted"
        assert refreshed.approval_date is None
        assert refreshed.version == version
        assert _event_count(a.id) == 0

    @pytest.mark.parametrize("status", ["approved", "rejected", "closed"])
    def test_terminal_states_reject_everything(self, office, status):
        a = _make_application(status)
        with pytest.raises(InvalidTransitionError):
            transition_application(a.id, "close", office, comment="again")


# ═══════════════════════════════════════════════════════════════════════════
# Investigator actions
# ═══════════════════════════════════════════════════════════════════════════


class TestInvestigatorActions:
    def test_submit_draft(self, investigator):
        a = _make_application("draft")
        result = transition_application(a.id, "submit", investigator, comment="Ready", now=NOW)
        assert result["new_status"] == "submitted"
        assert result["application"]["submission_date"].startswith("2025-01-10")
        assert result["event"]["actor_type"] == "investigator"

    def test_resubmit(self, investigator):
        a = _make_application("revisions_requested")
        result = transition_application(a.id, "resubmit", investigator, comment="Updated consent form")
        assert result["new_status"] == "resubmitted"
        assert result["event"]["action"] == "resubmit"

    def test_pi_response_keeps_status(self, investigator, reviewers):
        a = _under_review(reviewers)
        result = transition_application(a.id, "pi_response", investigator, comment="Answers attached")
        assert result["previous_status"] == result["new_status"] == "under_review"
        assert result["application"]["reviewer_assignment"] is not None
        assert result["event"]["action"] == "pi_response"

    def test_withdraw_clears_assignment(self, investigator, reviewers):
        a = _under_review(reviewers)
        result = transition_application(a.id, "withdraw", investigator, comment="Funding ended")
        assert result["new_status"] == "draft"
        assert result["application"]["reviewer_assignment"] is None

    def test_withdraw_requires_comment(self, investigator):
        a = _make_application("submitted")
        with pytest.raises(MissingCommentError):
            transition_application(a.id, "withdraw", investigator)

    def test_office_cannot_submit(self, office):
        a = _make_application("draft")
        with pytest.raises(ActorNotPermittedError):
            transition_application(a.id, "submit", office, comment="x")

    def test_other_investigator_cannot_resubmit(self):
        a = _make_application("revisions_requested")
        with pytest.raises(ActorNotPermittedError):
            transition_application(a.id, "resubmit", Actor(id=PI_ID + 1, role="investigator"), comment="x")
        assert _event_count(a.id) == 0

    def test_investigator_cannot_triage(self, investigator):
        a = _make_application("submitted")
        with pytest.raises(ActorNotPermittedError):
            transition_application(a.id, "triage", investigator, decision="complete", comment="x")


# ═══════════════════════════════════════════════════════════════════════════
# Concurrency, not-found and misc
# ═══════════════════════════════════════════════════════════════════════════


class TestConcurrency:
    def test_version_increments(self, office):
        a = _make_application("submitted")
        assert a.version == 1
        result = transition_application(a.id, "triage", office, decision="complete", comment="ok")
        assert result["application"]["version"] == 2

    def test_expected_version_mismatch(self, office):
        a = _make_application("submitted")
        with pytest.raises(ConcurrentModificationError):
            transition_application(
                a.id, "triage", office, decision="complete", comment="ok", expected_version=5,
            )
        assert _event_count(a.id) == 0

    def test_expected_version_match(self, office):
        a = _make_application("submitted")
        result = transition_application(
            a.id, "triage", office, decision="complete", comment="ok", expected_version=1,
        )
        assert result["new_status"] == "triage_complete"

    def test_lost_update_is_reported(self, office):
        a = _make_application("submitted")
        loaded = _db.session.get(ProtocolApplication, a.id)
        assert loaded.version == 1
        # Another writer bumps the row behind the session's back
        _db.session.execute(
            update(ProtocolApplication)
            .where(ProtocolApplication.id == a.id)
            .values(version=ProtocolApplication.version + 1)
            .execution_options(synchronize_session=False)
        )
        with pytest.raises(ConcurrentModificationError):
            transition_application(a.id, "triage", office, decision="complete", comment="ok")
        assert _event_count(a.id) == 0
        assert _db.session.get(ProtocolApplication, a.id).status == "submitted"

    def test_lost_update_is_reported_when_status_is_unchanged(self, investigator, reviewers):
        a = _under_review(reviewers)
        assert a.version == 1
        # Another writer rejects the protocol behind the session's back
        _db.session.execute(
            update(ProtocolApplication)
            .where(ProtocolApplication.id == a.id)
            .values(status="rejected", version=ProtocolApplication.version + 1)
            .execution_options(synchronize_session=False)
        )
        with pytest.raises(ConcurrentModificationError):
            transition_application(a.id, "pi_response", investigator, comment="Answers attached")
        assert _event_count(a.id) == 0

    def test_pi_response_bumps_version(self, investigator, reviewers):
        a = _under_review(reviewers)
        result = transition_application(a.id, "pi_response", investigator, comment="Answers attached")
        assert result["previous_status"] == result["new_status"] == "under_review"
        assert result["application"]["version"] == 2


class TestMisc:
    def test_not_found(self, office):
        with pytest.raises(NotFoundError):
            transition_application(424242, "triage", office, decision="complete", comment="x")

    def test_add_one_year(self):
        assert add_one_year(date(2025, 1, 10)) == date(2026, 1, 10)
        assert add_one_year(date(2024, 2, 29)) == date(2025, 2, 28)

    def test_available_transitions_for_office(self):
        a = _make_application("under_review")
        result = list_available_transitions(a.id, "office")
        pairs = {(t["action"], t["decision"]) for t in result["transitions"]}
        assert ("final_decision", "approve") in pairs
        assert ("request_revisions", None) in pairs
        assert ("close", None) in pairs
        assert all(t["actor"] == "office" for t in result["transitions"])

    def test_available_transitions_terminal(self):
        a = _make_application("approved")
        result = list_available_transitions(a.id)
        assert result["terminal"] is True
        assert result["transitions"] == []

    def test_full_walk(self, office, investigator, reviewers):
        a = _make_application("draft")
        transition_application(a.id, "submit", investigator, comment="Initial")
        transition_application(a.id, "triage", office, decision="revisions_required", comment="Fix")
        transition_application(a.id, "resubmit", investigator, comment="Fixed")
        transition_application(a.id, "triage", office, decision="complete", comment="Good")
        transition_application(
            a.id, "assign_reviewers", office,
            primary_reviewer_id=reviewers[0], review_type="expedited",
        )
        result = transition_application(a.id, "final_decision", office, decision="approve", comment="Done")
        assert result["new_status"] == "approved"
        events = _db.session.scalars(
            select(ReviewEvent).where(ReviewEvent.application_id == a.id).order_by(ReviewEvent.id)
        ).all()
        assert [e.action for e in events] == [
            "submit", "revisions_requested", "resubmit",
            "triage_complete", "assign_reviewers", "final_decision",
        ]

    def test_events_are_append_only(self, office):
        a = _make_application("submitted")
        transition_application(a.id, "triage", office, decision="complete", comment="ok")
        ev = _db.session.scalars(select(ReviewEvent).where(ReviewEvent.application_id == a.id)).one()
        ev.comment = "rewritten"
        with pytest.raises(ValueError):
            _db.session.flush()
        _db.session.rollback()
