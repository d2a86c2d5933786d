"""
Tests for the signal listing's opaque page cursors.
"""

import base64
import json
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from utils.pagination import MAX_CURSOR_LENGTH, InvalidPageCursor, decode_cursor, encode_cursor

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def _raw_cursor(data) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


class TestPageCursor:
    def test_encoded_cursor_decodes_to_position(self):
        signal_id = uuid.uuid4()
        cursor = encode_cursor(NOW, signal_id)
        assert "=" not in cursor
        assert decode_cursor(cursor, now=NOW) == (NOW, signal_id)

    def test_naive_timestamp_treated_as_utc(self):
        signal_id = uuid.uuid4()
        cursor = _raw_cursor({"ts": "2024-06-01T10:00:00", "id": str(signal_id)})
        occurred_at, _ = decode_cursor(cursor, now=NOW)
        assert occurred_at == datetime(2024, 6, 1, 10, 0, tzinfo=timezone.utc)

    @pytest.mark.parametrize(
        "cursor",
        [
            "",
            "x" * (MAX_CURSOR_LENGTH + 1),
            "!!!not-base64!!!",
            _raw_cursor({"ts": "2024-06-01T10:00:00+00:00"}),
            _raw_cursor({"ts": "yesterday", "id": str(uuid.uuid4())}),
            _raw_cursor({"ts": "2024-06-01T10:00:00+00:00", "id": "not-a-uuid"}),
            _raw_cursor(["a", "b"]),
        ],
    )
    def test_malformed_cursor_rejected(self, cursor):
        with pytest.raises(InvalidPageCursor):
            decode_cursor(cursor, now=NOW)

    def test_timestamp_beyond_skew_rejected(self):
        cursor = encode_cursor(NOW - timedelta(days=400), uuid.uuid4())
        with pytest.raises(InvalidPageCursor):
            decode_cursor(cursor, now=NOW)
