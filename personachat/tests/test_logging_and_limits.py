"""Structured logging, request_id propagation and the fixed-window limiter."""

import json
import logging

from personachat.core.logging import JsonFormatter, _safe_truncate, latency_bucket_ms, log_event
from personachat.core.rate_limit import WINDOW_SECONDS, FixedWindowLimiter


def test_request_id_in_response_and_logs(client, caplog):
    with caplog.at_level(logging.INFO, logger="personachat"):
        response = client.get("/healthz")
    rid = response.headers.get("x-request-id")
    assert rid
    records = [r for r in caplog.records if getattr(r, "request_id", None) == rid]
    assert records, "Expected logs to contain request_id from response"
    assert any(r.getMessage() == "request.complete" for r in records)


def test_log_event_truncates_extras(caplog):
    with caplog.at_level(logging.INFO, logger="personachat"):
        log_event("warning", "chat.test", request_id="rid-1", user_id="u1", extra={"blob": "x" * 900})
    record = next(r for r in caplog.records if r.getMessage() == "chat.test")
    assert record.levelno == logging.WARNING
    assert record.request_id == "rid-1"
    assert record.blob.endswith("...<truncated>")


def test_json_formatter_includes_extras():
    record = logging.LogRecord("personachat", logging.INFO, __file__, 1, "quota.blocked", None, None)
    record.request_id = "rid-2"
    record.plan = "free"
    line = json.loads(JsonFormatter().format(record))
    assert line["message"] == "quota.blocked"
    assert line["request_id"] == "rid-2"
    assert line["plan"] == "free"


def test_latency_buckets_and_truncation():
    assert latency_bucket_ms(None) == "unknown"
    assert latency_bucket_ms(5) != latency_bucket_ms(5000)
    assert _safe_truncate("short") == "short"


def test_limiter_blocks_then_resets_with_window():
    now = [1000.0]
    limiter = FixedWindowLimiter(2, time_fn=lambda: now[0])

    assert limiter.allow("chat:u1")
    assert limiter.allow("chat:u1")
    assert not limiter.allow("chat:u1")
    assert limiter.allow("chat:u2")

    now[0] += WINDOW_SECONDS
    assert limiter.allow("chat:u1")
    assert limiter.allow("chat:u1")
    assert not limiter.allow("chat:u1")


def test_limiter_drops_stale_windows():
    now = [1000.0]
    limiter = FixedWindowLimiter(5, time_fn=lambda: now[0])
    for uid in ("a", "b", "c"):
        assert limiter.allow(f"chat:{uid}")
    assert len(limiter.windows) == 3

    now[0] += WINDOW_SECONDS
    assert limiter.allow("chat:d")
    assert set(limiter.windows) == {"chat:d"}

    now[0] += 1
    assert limiter.allow("chat:a")
    assert set(limiter.windows) == {"chat:a", "chat:d"}


def test_limiter_reset():
    limiter = FixedWindowLimiter(1)
    assert limiter.allow("k")
    assert not limiter.allow("k")
    limiter.reset()
    assert limiter.allow("k")
