from __future__ import annotations

from typing import Optional
from prometheus_client import Counter

from ..metrics.ledger import _safe_counter

_events_total: Optional[Counter] = None
_orders_rejected_total: Optional[Counter] = None


def get_events_total():
    global _events_total
    if _events_total is None:
        _events_total = _safe_counter("ledger_events_total", "Ledger events published", ["type"])
    return _events_total


def get_orders_rejected_total():
    global _orders_rejected_total
    if _orders_rejected_total is None:
        _orders_rejected_total = _safe_counter("ledger_event_rejections_total", "Rejected decisions published", ["reason"])
    return _orders_rejected_total
