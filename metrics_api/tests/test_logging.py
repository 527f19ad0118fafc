import json
from datetime import datetime, timezone
from decimal import Decimal

from ..utils.logging import StructuredLogger, Timer


def test_log_entry_is_json_with_request_id():
    log = StructuredLogger()
    log.set_request_id("req-1")
    try:
        entry = json.loads(log._format_log("INFO", "CACHE_SET", "Cached k", data={"key": "k"}))
    finally:
        log.set_request_id(None)

    assert entry["request_id"] == "req-1"
    assert entry["event_type"] == "CACHE_SET"
    assert entry["data"] == {"key": "k"}
    assert "error" not in entry


def test_error_traceback_and_non_json_values_serialize():
    log = StructuredLogger()
    try:
        raise RuntimeError("boom")
    except RuntimeError as e:
        raw = log._format_log(
            "ERROR", "DB_QUERY_ERROR", "Query failed",
            data={"at": datetime(2025, 8, 1, tzinfo=timezone.utc), "amount": Decimal("1.50")},
            error=e,
        )

    entry = json.loads(raw)
    assert entry["error"]["type"] == "RuntimeError"
    assert "boom" in entry["error"]["traceback"]
    assert entry["data"]["amount"] == "1.50"


def test_timer_measures_elapsed_time():
    with Timer() as timer:
        running = timer.elapsed_ms
    assert running >= 0
    assert timer.elapsed_ms >= running
    assert Timer().elapsed_ms == 0.0
