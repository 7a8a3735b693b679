"""Small helpers shared by the watchers."""

import uuid
from datetime import datetime, timezone


def iso_now() -> str:
    """UTC timestamp in the 0000-00-00T00:00:00.000Z form used on the wire."""
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


def new_uuid() -> str:
    return str(uuid.uuid4())


def truncate(value, length: int) -> str:
    """Cut *value* to *length* characters, appending ``...{n}`` with the number dropped."""
    text = str(value)
    if len(text) <= length:
        return text
    return f"{text[:length]}...{{{len(text) - length}}}"


def escape_url(url) -> str:
    return str(url).replace(" ", "%20").replace("\t", "%09")
