from __future__ import annotations

from typing import Optional
import os
from prometheus_client import Counter, Gauge, REGISTRY

_orders_blocked: Optional[Counter] = None
_fees_paid_total: Optional[Counter] = None
_realized_pnl_total: Optional[Counter] = None
_equity_gauge: Optional[Gauge] = None
_open_positions_gauge: Optional[Gauge] = None
_risk_triggers_total: Optional[Counter] = None


class _NoOp:
    def labels(self, *args, **kwargs):
        return self
    def inc(self, *args, **kwargs):
        return None
    def set(self, *args, **kwargs):
        return None


def _disabled() -> bool:
    return os.getenv("DISABLE_PROMETHEUS", "0") == "1"


def _existing_collector(name: str):
    # Counters register under both `name` and `name_total`; look up either.
    try:
        names = getattr(REGISTRY, "_names_to_collectors", {})
        coll = names.get(name) or names.get(f"{name}_total")
        if coll is not None:
            return coll
        for coll in list(getattr(REGISTRY, "_collector_to_names", {}).keys()):  # type: ignore[attr-defined]
            if getattr(coll, "_name", None) == name:
                return coll
    except Exception:
        pass
    return None


def _safe_counter(name: str, doc: str, labelnames):
    if _disabled():
        return _NoOp()
    try:
        return Counter(name, doc, labelnames)
    except ValueError:
        return _existing_collector(name) or _NoOp()


def _safe_gauge_labels(name: str, doc: str, labelnames):
    if _disabled():
        return _NoOp()
    try:
        return Gauge(name, doc, labelnames)
    except ValueError:
        coll = _existing_collector(name)
        if isinstance(coll, Gauge):
            return coll
        return _NoOp()


def get_orders_blocked_total():
    global _orders_blocked
    if _orders_blocked is None:
        _orders_blocked = _safe_counter("ledger_orders_blocked_total", "Ledger operations rejected", ["reason", "symbol"])
    return _orders_blocked


def get_fees_paid_total():
    global _fees_paid_total
    if _fees_paid_total is None:
        _fees_paid_total = _safe_counter("ledger_fees_paid_total", "Fees debited from cash", ["symbol"])
    return _fees_paid_total


def get_realized_pnl_total():
    """Counter: positive realized PnL only (counters cannot decrease)."""
    global _realized_pnl_total
    if _realized_pnl_total is None:
        _realized_pnl_total = _safe_counter("ledger_realized_pnl_total", "Realized PnL", ["symbol"])
    return _realized_pnl_total


def get_equity_gauge():
    global _equity_gauge
    if _equity_gauge is None:
        _equity_gauge = _safe_gauge_labels("ledger_equity", "Account equity", ["account"])
    return _equity_gauge


def get_open_positions_gauge():
    global _open_positions_gauge
    if _open_positions_gauge is None:
        _open_positions_gauge = _safe_gauge_labels("ledger_open_positions", "Open positions", ["account"])
    return _open_positions_gauge


def get_risk_triggers_total():
    """Counter: risk_triggers_total{trigger_type,symbol}"""
    global _risk_triggers_total
    if _risk_triggers_total is None:
        _risk_triggers_total = _safe_counter(
            "risk_triggers_total", "Stop-loss, take-profit and liquidation triggers", ["trigger_type", "symbol"]
        )
    return _risk_triggers_total


def inc_blocked(reason: str, symbol: str) -> None:
    try:
        get_orders_blocked_total().labels(reason, symbol).inc()
    except Exception:
        pass


def inc_risk_trigger(trigger_type: str, symbol: str) -> None:
    try:
        get_risk_triggers_total().labels(trigger_type, symbol).inc()
    except Exception:
        pass


def set_account_gauges(account_id: str, equity: float, open_positions: int) -> None:
    try:
        get_equity_gauge().labels(account_id).set(float(equity))
        get_open_positions_gauge().labels(account_id).set(int(open_positions))
    except Exception:
        # Metrics are optional in constrained environments
        pass
