"""
Legacy comment import tests.

import_legacy_comments() copies the historical JSON blobs into review_events
without touching the blobs, and can be re-run safely.
"""

from datetime import datetime

import pytest
from sqlalchemy import select

from app.models import db as _db
from app.models.protocol import ProtocolApplication, ReviewEvent
from app.services.legacy_comments import (
    import_legacy_comments,
    map_office_action,
    parse_blob,
)
from app.services.timeline import get_timeline

REVIEW_BLOB = {
    "1700006400000": {"action": "approve", "comments": "Approved at convened meeting",
                      "reviewerId": 12, "decision": "approved",
                      "timestamp": "2023-11-15T00:00:00.000Z"},
    "1699920000000": {"action": "assign_reviewer", "comments": "", "reviewerId": "12"},
    "1699833600000": {"action": "triage", "decision": "complete_triage", "comments": "Complete"},
    "1699747200000": {"action": "reviewer_feedback", "comments": "Minor issues"},
    "garbage-key": {"action": "reject", "comments": "no usable time"},
}
PI_BLOB = {
    "1699800000000": {"timestamp": "2023-11-12T14:40:00.000Z", "comment": "Consent form updated",
                      "workflowStatus": "revisions_requested"},
}


def _make_legacy_application(number="IRB-2023-014") -> ProtocolApplication:
    a = ProtocolApplication(
        protocol_number=number,
        committee="irb",
        title="Legacy protocol",
        principal_investigator_id=501,
        status="approved",
        legacy_review_comments=REVIEW_BLOB,
        legacy_pi_responses=PI_BLOB,
    )
    _db.session.add(a)
    _db.session.commit()
    return a


def _events(application_id):
    return _db.session.scalars(
        select(ReviewEvent).where(ReviewEvent.application_id == application_id).order_by(ReviewEvent.id)
    ).all()


class TestParseBlob:
    def test_dict(self):
        assert parse_blob({"1": {"a": 1}}) == [("1", {"a": 1})]

    def test_json_text(self):
        assert parse_blob('{"1": {"a": 1}, "2": "x"}') == [("1", {"a": 1}), ("2", "x")]

    @pytest.mark.parametrize("blob", [None, "", "{not json", "[1, 2]", 5])
    def test_unusable(self, blob):
        assert parse_blob(blob) == []


class TestMapOfficeAction:
    @pytest.mark.parametrize("action, decision, expected", [
        ("approve", None, ("final_decision", "approve")),
        ("reject", None, ("reject", None)),
        ("request_revisions", None, ("revisions_requested", None)),
        ("assign_reviewer", None, ("assign_reviewers", None)),
        ("triage", "complete_triage", ("triage_complete", "complete")),
        ("triage", "rejected", ("reject", "reject")),
        ("final_decision", "deferred", ("final_decision", "defer")),
    ])
    def test_known(self, action, decision, expected):
        assert map_office_action(action, decision) == expected

    @pytest.mark.parametrize("action, decision", [
        ("reviewer_feedback", None), ("triage", "maybe"), (None, None),
    ])
    def test_unmappable(self, action, decision):
        assert map_office_action(action, decision) is None


class TestImport:
    def test_import_creates_events(self):
        a = _make_legacy_application()
        stats = import_legacy_comments()
        assert stats == {
            "applications": 1,
            "imported": 4,
            "skipped_existing": 0,
            "skipped_unmappable": 1,
            "skipped_invalid": 1,
        }
        events = _events(a.id)
        assert [(e.actor_type, e.action) for e in events] == [
            ("office", "final_decision"),
            ("office", "assign_reviewers"),
            ("office", "triage_complete"),
            ("investigator", "pi_response"),
        ]
        assert events[0].legacy_key == "1700006400000"
        assert events[0].actor_id == 12
        assert events[0].decision == "approve"
        assert events[3].actor_id == 501
        assert events[3].details["workflow_status"] == "revisions_requested"

    def test_entry_without_usable_timestamp_is_skipped(self):
        b = ProtocolApplication(
            protocol_number="IRB-2023-015", committee="irb", title="Other",
            principal_investigator_id=501, status="rejected",
            legacy_review_comments={"garbage-key": {"action": "reject", "comments": "bad"}},
        )
        _db.session.add(b)
        _db.session.commit()
        stats = import_legacy_comments(application_id=b.id)
        assert stats["skipped_invalid"] == 1
        assert stats["imported"] == 0
        assert _events(b.id) == []

    def test_payload_timestamp_used_when_key_unreadable(self):
        b = ProtocolApplication(
            protocol_number="IRB-2023-016", committee="irb", title="Other",
            principal_investigator_id=501, status="rejected",
            legacy_review_comments={"row-1": {"action": "reject", "comments": "late",
                                              "timestamp": "2023-11-15T00:00:00Z"}},
        )
        _db.session.add(b)
        _db.session.commit()
        import_legacy_comments(application_id=b.id)
        events = _events(b.id)
        assert len(events) == 1
        assert events[0].legacy_key == "row-1"
        assert events[0].created_at.replace(tzinfo=None) == datetime(2023, 11, 15)

    def test_rerun_is_idempotent(self):
        a = _make_legacy_application()
        import_legacy_comments()
        stats = import_legacy_comments()
        assert stats["imported"] == 0
        assert stats["skipped_existing"] == 4
        assert len(_events(a.id)) == 4

    def test_blobs_are_not_modified(self):
        a = _make_legacy_application()
        import_legacy_comments(a.id)
        refreshed = _db.session.get(ProtocolApplication, a.id)
        assert refreshed.legacy_review_comments == REVIEW_BLOB
        assert refreshed.legacy_pi_responses == PI_BLOB
        assert refreshed.version == 1

    def test_timeline_unchanged_by_import(self):
        a = _make_legacy_application()
        before = get_timeline(a.id)
        import_legacy_comments(a.id)
        after = get_timeline(a.id)
        fields = ("source", "timestamp", "action", "decision", "comment", "actor_id")
        assert [tuple(e[f] for f in fields) for e in before] == \
               [tuple(e[f] for f in fields) for e in after]
        assert all(e["legacy"] for e in after)

    def test_unimported_entries_use_event_vocabulary(self):
        a = _make_legacy_application()
        pairs = [(e["action"], e["decision"]) for e in get_timeline(a.id) if e["source"] == "office"]
        assert pairs == [
            ("final_decision", "approve"),
            ("assign_reviewers", None),
            ("triage_complete", "complete"),
            ("reviewer_feedback", None),
        ]

    def test_cli_command(self, app):
        _make_legacy_application()
        runner = app.test_cli_runner()
        result = runner.invoke(args=["import-legacy-comments"])
        assert result.exit_code == 0
        assert "Imported 4 event(s) from 1 protocol(s)" in result.output
