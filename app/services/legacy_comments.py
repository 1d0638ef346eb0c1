"""
Legacy review-comment blobs → ReviewEvent rows.

Protocols written by the previous system carry two JSON blobs keyed by a
timestamp string (either epoch milliseconds or an ISO-8601 instant):

    legacy_review_comments  {"1700006400000": {"action", "comments", "reviewerId",
                                                "decision", "timestamp"}}
    legacy_pi_responses     {"1700006400000": {"timestamp", "comment", "workflowStatus"}}

The blobs are retained untouched. import_legacy_comments() copies their
entries into the typed event table, keyed on (application_id, actor_type,
legacy_key) so repeated runs never duplicate rows. Until an entry is
imported the timeline reads it straight from the blob.

Usage (CLI):
    flask import-legacy-comments
    flask import-legacy-comments --application-id 12
"""

import json
import logging

from sqlalchemy import select

from app.models import db
from app.models.protocol import (
    DECISION_ALIASES,
    ActorType,
    ProtocolApplication,
    ReviewAction,
    ReviewEvent,
)

logger = logging.getLogger(__name__)

# Flat office actions → (event action, decision)
_OFFICE_ACTION_MAP = {
    "approve": (ReviewAction.FINAL_DECISION.value, "approve"),
    "reject": (ReviewAction.REJECT.value, None),
    "request_revisions": (ReviewAction.REVISIONS_REQUESTED.value, None),
    "revisions_requested": (ReviewAction.REVISIONS_REQUESTED.value, None),
    "assign_reviewer": (ReviewAction.ASSIGN_REVIEWERS.value, None),
    "assign_reviewers": (ReviewAction.ASSIGN_REVIEWERS.value, None),
    "close": (ReviewAction.CLOSE.value, None),
}

# Triage decision → event action
_TRIAGE_DECISION_MAP = {
    "complete": ReviewAction.TRIAGE_COMPLETE.value,
    "revisions_required": ReviewAction.REVISIONS_REQUESTED.value,
    "reject": ReviewAction.REJECT.value,
}

_FINAL_DECISIONS = frozenset({"approve", "approve_with_modifications", "defer", "disapprove"})


def parse_blob(blob) -> list[tuple[str, object]]:
    """Return (key, payload) pairs in stored order. Accepts a dict or its JSON text."""
    if blob is None or blob == "":
        return []
    if isinstance(blob, str):
        try:
            blob = json.loads(blob)
        except ValueError:
            logger.warning("Unreadable legacy comment blob ignored", extra={"blob_length": len(blob)})
            return []
    if not isinstance(blob, dict):
        return []
    return [(str(key), payload) for key, payload in blob.items()]


def _actor_id(value):
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def map_office_action(action, decision) -> tuple[str, str | None] | None:
    """
    Map a legacy office action (and decision) to (event action, decision).

    Returns None for actions with no counterpart, e.g. 'reviewer_feedback'.
    """
    if not isinstance(action, str):
        return None
    action = action.strip().lower()
    label = decision.strip().lower() if isinstance(decision, str) and decision.strip() else None

    if action == "triage":
        label = DECISION_ALIASES["triage"].get(label, label)
        mapped = _TRIAGE_DECISION_MAP.get(label)
        return (mapped, label) if mapped else None

    if action == "final_decision":
        label = DECISION_ALIASES["final_decision"].get(label, label)
        return (ReviewAction.FINAL_DECISION.value, label) if label in _FINAL_DECISIONS else None

    return _OFFICE_ACTION_MAP.get(action)


def office_entries(application: ProtocolApplication) -> list[dict]:
    """Raw office entries from the legacy review-comments blob."""
    entries = []
    for key, payload in parse_blob(application.legacy_review_comments):
        if not isinstance(payload, dict):
            entries.append({"legacy_key": key, "payload": payload, "source": ActorType.OFFICE.value})
            continue
        entries.append({
            "source": ActorType.OFFICE.value,
            "legacy_key": key,
            "payload": payload,
            "timestamp": key,
            "fallback_timestamp": payload.get("timestamp"),
            "action": payload.get("action"),
            "decision": payload.get("decision"),
            "comment": payload.get("comments"),
            "actor_id": _actor_id(payload.get("reviewerId")),
        })
    return entries


def investigator_entries(application: ProtocolApplication) -> list[dict]:
    """Raw investigator entries from the legacy PI-responses blob."""
    entries = []
    for key, payload in parse_blob(application.legacy_pi_responses):
        if not isinstance(payload, dict):
            entries.append({"legacy_key": key, "payload": payload, "source": ActorType.INVESTIGATOR.value})
            continue
        entries.append({
            "source": ActorType.INVESTIGATOR.value,
            "legacy_key": key,
            "payload": payload,
            "timestamp": key,
            "fallback_timestamp": payload.get("timestamp"),
            "action": ReviewAction.PI_RESPONSE.value,
            "decision": None,
            "comment": payload.get("comment"),
            "actor_id": application.principal_investigator_id,
            "workflow_status": payload.get("workflowStatus"),
        })
    return entries


def imported_keys(application_id: int) -> set[tuple[str, str]]:
    """(actor_type, legacy_key) pairs already copied into review_events."""
    rows = db.session.execute(
        select(ReviewEvent.actor_type, ReviewEvent.legacy_key).where(
            ReviewEvent.application_id == application_id,
            ReviewEvent.legacy_key.is_not(None),
        )
    ).all()
    return {(actor_type, key) for actor_type, key in rows}


def import_legacy_comments(application_id: int | None = None) -> dict:
    """
    Copy legacy blob entries into ReviewEvent rows. Idempotent.

    Returns:
        {"applications", "imported", "skipped_existing",
         "skipped_unmappable", "skipped_invalid"}
    """
    from app.services.timeline import normalize_timestamp  # lazy import: avoid circular

    stmt = select(ProtocolApplication).order_by(ProtocolApplication.id)
    if application_id is not None:
        stmt = stmt.where(ProtocolApplication.id == application_id)
    applications = db.session.execute(stmt).scalars().all()

    stats = {
        "applications": 0,
        "imported": 0,
        "skipped_existing": 0,
        "skipped_unmappable": 0,
        "skipped_invalid": 0,
    }

    for application in applications:
        if not application.legacy_review_comments and not application.legacy_pi_responses:
            continue
        stats["applications"] += 1
        seen = imported_keys(application.id)

        for entry in office_entries(application) + investigator_entries(application):
            marker = (entry["source"], entry["legacy_key"])
            if marker in seen:
                stats["skipped_existing"] += 1
                continue
            if "timestamp" not in entry:
                stats["skipped_invalid"] += 1
                continue
            created_at = normalize_timestamp(entry["timestamp"]) or normalize_timestamp(
                entry["fallback_timestamp"]
            )
            if created_at is None:
                stats["skipped_invalid"] += 1
                continue

            if entry["source"] == ActorType.OFFICE.value:
                mapped = map_office_action(entry["action"], entry["decision"])
                if mapped is None:
                    stats["skipped_unmappable"] += 1
                    logger.info(
                        "Legacy office action has no event counterpart",
                        extra={"application_id": application.id, "legacy_action": entry["action"]},
                    )
                    continue
                action, decision = mapped
            else:
                action, decision = entry["action"], None

            details = {"legacy_action": entry["action"]}
            if entry.get("workflow_status"):
                details["workflow_status"] = entry["workflow_status"]

            db.session.add(ReviewEvent(
                application_id=application.id,
                actor_type=entry["source"],
                actor_id=entry["actor_id"],
                action=action,
                decision=decision,
                comment=entry["comment"] if isinstance(entry["comment"], str) else None,
                details=details,
                legacy_key=entry["legacy_key"],
                created_at=created_at,
            ))
            seen.add(marker)
            stats["imported"] += 1

    db.session.commit()
    logger.info("Legacy comment import finished", extra=stats)
    return stats
