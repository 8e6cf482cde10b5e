from __future__ import annotations

import json
import os
import logging

import redis

from .schema import EventEnvelope
from .metrics import get_events_total, get_orders_rejected_total


STREAM_EVENTS = os.getenv("EVENTS_STREAM", "perpledger.events")
STREAM_DLQ = os.getenv("EVENTS_DLQ", "perpledger.dlq")

log = logging.getLogger("perpledger.events")

_client = None


def _disabled() -> bool:
    return os.getenv("EVENTS_DISABLED", "0") == "1"


def _get_redis():
    global _client
    if _client is None:
        url = os.getenv("REDIS_URL", "redis://localhost:6379/0")
        _client = redis.Redis.from_url(url, decode_responses=True, socket_connect_timeout=0.5)
    return _client


def publish(env: EventEnvelope) -> None:
    """Publish an event to Redis Streams and log a single-line JSON for Loki.

    Safe: swallow Redis errors to avoid impacting the backtest loop; the log
    line is always written.
    """
    try:
        get_events_total().labels(env.event.event_type).inc()
        if env.event.event_type == "order_rejected":
            reason = getattr(env.event, "reason", "unknown")
            get_orders_rejected_total().labels(reason).inc()
    except Exception:
        pass

    line = json.dumps({
        "schema_version": env.schema_version,
        "correlation_id": env.correlation_id,
        "sequence": env.sequence,
        "event": env.event.model_dump(),
    }, separators=(",", ":"))
    if not _disabled():
        try:
            _get_redis().xadd(STREAM_EVENTS, {"json": line})
        except redis.RedisError:
            try:
                # best-effort DLQ
                _get_redis().xadd(STREAM_DLQ, {"json": line})
            except redis.RedisError:
                log.debug("event dropped: redis unavailable")
    log.info(line)

