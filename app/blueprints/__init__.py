"""
Protocol Review Workflow Engine
Blueprint package: protocol_bp (workflow API) and health_bp (probes).
"""

from flask import request


def paginate_query(query, default_limit=100, max_limit=500):
    """Slice a query by the ?limit= and ?offset= request args.

    Bad values fall back to the defaults. Returns (items, total) where
    total is the unpaginated row count.
    """
    total = query.count()
    try:
        limit = max(min(int(request.args.get("limit", default_limit)), max_limit), 1)
    except (ValueError, TypeError):
        limit = default_limit
    try:
        offset = max(int(request.args.get("offset", 0)), 0)
    except (ValueError, TypeError):
        offset = 0
    return query.limit(limit).offset(offset).all(), total
