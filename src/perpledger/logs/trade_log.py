from __future__ import annotations

import json
import logging
import os
from typing import Any, Dict, List

from ..metrics.ledger import _safe_counter

logger = logging.getLogger(__name__)


def _get_append_counters():
    app = _safe_counter("trade_log_appends_total", "Trade records appended", ["run_id"])
    err = _safe_counter("trade_log_errors_total", "Trade log errors", ["reason", "run_id"])
    return app, err


REQUIRED_KEYS = {
    "ts", "run_id", "symbol", "action", "side", "qty", "price",
    "fee", "slippage", "order_value", "realized_pnl", "leverage", "position_after",
}


def validate_record(rec: Dict[str, Any]) -> List[str]:
    return sorted(k for k in REQUIRED_KEYS if k not in rec)


def append_jsonl(path: str, rec: Dict[str, Any]) -> bool:
    """Append one trade record as a JSON line. Returns False when skipped.

    Records missing required keys are counted and dropped, never written
    half-formed. I/O errors are counted and logged; the trading loop keeps
    running.
    """
    run_id = str(rec.get("run_id", "unknown"))
    app, err = _get_append_counters()
    missing = validate_record(rec)
    if missing:
        err.labels("missing_fields", run_id).inc()
        logger.warning("trade record missing fields %s; skipped", missing)
        return False
    directory = os.path.dirname(path)
    try:
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(rec, ensure_ascii=False) + "\n")
    except OSError as e:
        err.labels("io_error", run_id).inc()
        logger.warning("trade log write to %s failed: %s", path, e)
        return False
    app.labels(run_id).inc()
    return True
