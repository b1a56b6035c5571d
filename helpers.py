import math
from datetime import datetime, UTC

from bson import ObjectId
from bson.errors import InvalidId


def utc_now():
    # Stored as naive UTC, which is what pymongo hands back
    return datetime.now(UTC).replace(tzinfo=None)


def as_naive_utc(value):
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(UTC).replace(tzinfo=None)
    return value


def parse_datetime(value):
    """Parse an ISO 8601 string (or pass through a datetime). Returns None when invalid."""
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return as_naive_utc(value)
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace('Z', '+00:00'))
    except ValueError:
        return None
    return as_naive_utc(parsed)


def to_object_id(value):
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def round_half_up(value):
    return int(math.floor(value + 0.5))


def serialize_doc(data):
    """Recursively converts ObjectId and datetime fields into JSON-compatible values.

    Password hashes never leave the server.
    """
    if isinstance(data, list):
        return [serialize_doc(item) for item in data]
    elif isinstance(data, dict):
        return {key: serialize_doc(value) for key, value in data.items() if key != "password"}
    elif isinstance(data, ObjectId):
        return str(data)
    elif isinstance(data, datetime):
        return data.isoformat()
    else:
        return data


def parse_pagination(args, default_limit=10, max_limit=100):
    try:
        page = max(1, int(args.get('page', 1)))
    except (TypeError, ValueError):
        page = 1
    try:
        limit = int(args.get('limit', default_limit))
    except (TypeError, ValueError):
        limit = default_limit
    limit = min(max(1, limit), max_limit)
    return page, limit


def pagination_meta(page, limit, total):
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "pages": math.ceil(total / limit) if limit else 0
    }
