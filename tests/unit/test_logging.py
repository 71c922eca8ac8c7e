"""
Tests for the JSON log formatter.
"""

import json
import logging

from src.core.observability.logging import StructuredFormatter


def _record(**extra):
    record = logging.LogRecord(
        name="src.core.outbox.processor",
        level=logging.WARNING,
        pathname=__file__,
        lineno=1,
        msg="Outbox event %s failed",
        args=("evt-1",),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestStructuredFormatter:
    """Test StructuredFormatter output."""

    def test_basic_fields(self):
        entry = json.loads(StructuredFormatter().format(_record()))

        assert entry["level"] == "WARNING"
        assert entry["service"] == "pos-cloud-sync"
        assert entry["message"] == "Outbox event evt-1 failed"
        assert entry["trace_id"] is None

    def test_extra_fields_are_included(self):
        entry = json.loads(StructuredFormatter().format(
            _record(event_id="evt-1", location_id="loc-1", evicted_ids=["a", "b"])
        ))

        assert entry["event_id"] == "evt-1"
        assert entry["location_id"] == "loc-1"
        assert entry["evicted_ids"] == ["a", "b"]

    def test_unserializable_extra_is_stringified(self):
        entry = json.loads(StructuredFormatter().format(_record(payload=object())))
        assert entry["payload"].startswith("<object object")
