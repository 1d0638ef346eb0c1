"""Shared request-parsing helpers for blueprints."""

from flask import request


def parse_bool_arg(name: str, default: bool = False) -> bool:
    """Read a boolean query parameter (true/1/yes/on, case-insensitive)."""
    raw = request.args.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def parse_int(value):
    """Return int(value) for ints and digit strings, None otherwise."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        return value
    try:
        return int(str(value).strip())
    except ValueError:
        return None
