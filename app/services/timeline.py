"""
Protocol Review: Timeline Reconstructor.

Builds the chronological (most-recent-first) history of a protocol from:
  - ReviewEvent rows, split by actor type (office / investigator)
  - legacy blob entries that have not been imported yet (legacy=True), with
    office actions mapped to the same event vocabulary the importer writes
  - optionally, status-date milestones (source="milestone")

Timestamps are normalised numeric-first: a number or a numeric string is
epoch milliseconds, anything else is parsed as ISO-8601 ("Z" accepted,
naive values are UTC, a bare date is midnight UTC). Entries whose comment or
action equals an excluded sentinel, and entries that cannot be read, are
dropped before sorting. The sort is stable, so equal instants keep their
collection order.
"""

import math
import re
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Iterable

from flask import current_app
from sqlalchemy import select

from app.models import db
from app.models.protocol import ActorType, ReviewEvent
from app.services import legacy_comments
from app.services.protocol_service import get_application

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_NUMERIC = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")

# (field, milestone label)
_MILESTONES = (
    ("created_at", "created"),
    ("submission_date", "submitted"),
    ("triage_date", "triage_complete"),
    ("review_start_date", "review_started"),
    ("approval_date", "approved"),
    ("expiration_date", "expires"),
)


def _from_millis(value: float) -> datetime | None:
    if math.isnan(value) or math.isinf(value):
        return None
    try:
        return _EPOCH + timedelta(milliseconds=value)
    except OverflowError:
        return None


def normalize_timestamp(value) -> datetime | None:
    """Return a timezone-aware UTC datetime, or None when *value* is not a timestamp."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return _from_millis(float(value))
    if not isinstance(value, str):
        return None

    text = value.strip()
    if not text:
        return None
    if _NUMERIC.match(text):
        return _from_millis(float(text))

    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _excluded(entry: dict, sentinels: tuple, predicate: Callable[[dict], bool] | None) -> bool:
    if entry.get("comment") in sentinels or entry.get("action") in sentinels:
        return True
    return bool(predicate and predicate(entry))


def merge_timeline(
    entries: Iterable[dict],
    *,
    excluded_values: Iterable[str] = ("test",),
    exclude: Callable[[dict], bool] | None = None,
) -> list[dict]:
    """
    Filter, normalise and order raw timeline entries, most recent first.

    Each raw entry is a dict with at least 'source' and 'timestamp'. Entries
    that are not dicts or whose timestamp cannot be read are dropped.
    """
    sentinels = tuple(excluded_values)
    kept = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        instant = normalize_timestamp(entry.get("timestamp"))
        if instant is None:
            instant = normalize_timestamp(entry.get("fallback_timestamp"))
        if instant is None:
            continue
        if _excluded(entry, sentinels, exclude):
            continue
        kept.append((instant, entry))

    kept.sort(key=lambda pair: pair[0], reverse=True)

    return [
        {
            "source": entry["source"],
            "action": entry.get("action"),
            "decision": entry.get("decision"),
            "comment": entry.get("comment"),
            "actor_id": entry.get("actor_id"),
            "timestamp": instant.isoformat(),
            "event_id": entry.get("event_id"),
            "legacy": bool(entry.get("legacy")),
        }
        for instant, entry in kept
    ]


def _event_entries(application_id: int) -> list[dict]:
    events = db.session.execute(
        select(ReviewEvent)
        .where(ReviewEvent.application_id == application_id)
        .order_by(ReviewEvent.id)
    ).scalars().all()
    return [
        {
            "source": ev.actor_type,
            "action": ev.action,
            "decision": ev.decision,
            "comment": ev.comment,
            "actor_id": ev.actor_id,
            "timestamp": ev.created_at,
            "event_id": ev.id,
            "legacy": ev.legacy_key is not None,
        }
        for ev in events
    ]


def _legacy_entries(application) -> list[dict]:
    imported = legacy_comments.imported_keys(application.id)
    entries = []
    for raw in legacy_comments.office_entries(application) + legacy_comments.investigator_entries(application):
        if (raw["source"], raw["legacy_key"]) in imported:
            continue
        if not isinstance(raw["payload"], dict):
            continue
        entry = {**raw, "legacy": True}
        if raw["source"] == ActorType.OFFICE.value:
            # Same vocabulary as the importer writes; raw value kept for exclude predicates
            mapped = legacy_comments.map_office_action(raw["action"], raw["decision"])
            if mapped is not None:
                entry["legacy_action"] = raw["action"]
                entry["action"], entry["decision"] = mapped
        entries.append(entry)
    return entries


def _milestone_entries(application) -> list[dict]:
    entries = []
    for field, label in _MILESTONES:
        value = getattr(application, field)
        if value is None:
            continue
        entries.append({
            "source": "milestone",
            "action": label,
            "decision": None,
            "comment": None,
            "actor_id": None,
            "timestamp": value,
        })
    return entries


def get_timeline(
    application_id: int,
    *,
    include_milestones: bool = False,
    exclude: Callable[[dict], bool] | None = None,
) -> list[dict]:
    """
    Reconstruct the review history of one application, most recent first.

    Raises:
        NotFoundError when the application does not exist.
    """
    application = get_application(application_id)

    entries = _event_entries(application.id) + _legacy_entries(application)
    if include_milestones:
        entries += _milestone_entries(application)

    return merge_timeline(
        entries,
        excluded_values=current_app.config.get("TIMELINE_EXCLUDED_VALUES", ("test",)),
        exclude=exclude,
    )
