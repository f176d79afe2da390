# /gamewatch/gamewatch/util.py

from datetime import datetime, timezone


def timestamp_to_date(s):
    """Converts a unix timestamp (IGDB, xREL) into a 'YYYY-MM-DD' string."""
    if s is None:
        return None
    try:
        # The timestamp can come as a string, int or float depending on the API
        return datetime.fromtimestamp(int(float(s)), tz=timezone.utc).strftime('%Y-%m-%d')
    except (ValueError, TypeError, OSError, OverflowError):
        # OSError can happen for out-of-range timestamps
        return None


def parse_date(value):
    """Parses a stored 'YYYY-MM-DD' string into an aware UTC datetime."""
    if not value:
        return None
    try:
        return datetime.strptime(value, '%Y-%m-%d').replace(tzinfo=timezone.utc)
    except (ValueError, TypeError):
        return None


def utcnow():
    return datetime.now(timezone.utc)


def safe_int(value, default=0):
    try:
        return int(value) if value is not None else default
    except (ValueError, TypeError):
        return default


def chunked(items, size):
    """Yields successive slices of at most `size` items."""
    items = list(items)
    for start in range(0, len(items), size):
        yield items[start:start + size]


def is_magnet(url):
    return bool(url) and url.strip().lower().startswith('magnet:')
