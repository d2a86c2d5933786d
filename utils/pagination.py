"""
Opaque keyset cursors for the signal listing.

A cursor is ``base64url({"ts": <occurred_at>, "id": <signal id>})`` naming the
last row of the previous page.  Decoding is strict because the value comes
straight from a query string.
"""

from __future__ import annotations

import base64
import binascii
import json
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

MAX_CURSOR_LENGTH = 512
MAX_CURSOR_SKEW = timedelta(days=365)


class InvalidPageCursor(ValueError):
    pass


def encode_cursor(occurred_at: datetime, signal_id: uuid.UUID) -> str:
    body = json.dumps({"ts": occurred_at.isoformat(), "id": str(signal_id)}, separators=(",", ":"))
    return base64.urlsafe_b64encode(body.encode("utf-8")).decode("ascii").rstrip("=")


def decode_cursor(cursor: str, now: Optional[datetime] = None) -> Tuple[datetime, uuid.UUID]:
    if not cursor or len(cursor) > MAX_CURSOR_LENGTH:
        raise InvalidPageCursor("cursor length out of range")
    padded = cursor + "=" * (-len(cursor) % 4)
    try:
        data = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
        occurred_at = datetime.fromisoformat(data["ts"])
        signal_id = uuid.UUID(data["id"])
    except (binascii.Error, UnicodeError, ValueError, KeyError, TypeError):
        raise InvalidPageCursor("malformed cursor") from None

    if occurred_at.tzinfo is None:
        occurred_at = occurred_at.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    if abs(occurred_at - now) > MAX_CURSOR_SKEW:
        raise InvalidPageCursor("cursor timestamp out of range")
    return occurred_at, signal_id
