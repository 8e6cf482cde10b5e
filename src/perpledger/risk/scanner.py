"""Risk-trigger detection over an account's open positions.

The scanner is read-only. It reports which positions should be closed and
at what level; the caller realises each trigger with `Account.close`. Two
steps, query then mutation, so a level changed between calls (for example
a stop moved by the decision engine) is observed on the very next scan.

Triggers are returned ordered by (symbol, side) to keep replays
reproducible.
"""
from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, List, Mapping, Optional

from ..ledger.model import Bar, Position, Trigger
from ..metrics.ledger import inc_risk_trigger

if TYPE_CHECKING:  # pragma: no cover
    from ..ledger.account import Account

logger = logging.getLogger(__name__)


def _stop_hit(pos: Position, low: float, high: float) -> bool:
    if pos.stop_loss <= 0:
        return False
    return low <= pos.stop_loss if pos.side == "long" else high >= pos.stop_loss


def _take_profit_hit(pos: Position, low: float, high: float) -> bool:
    if pos.take_profit <= 0:
        return False
    return high >= pos.take_profit if pos.side == "long" else low <= pos.take_profit


def _liquidation_hit(pos: Position, low: float, high: float) -> bool:
    if pos.liquidation_price <= 0:
        return False
    return low <= pos.liquidation_price if pos.side == "long" else high >= pos.liquidation_price


def _emit(pos: Position, trigger_type: str, level: float, mark: float) -> Trigger:
    inc_risk_trigger(trigger_type, pos.symbol)
    logger.info(json.dumps({
        "event": "risk_triggered",
        "trigger_type": trigger_type,
        "symbol": pos.symbol,
        "side": pos.side,
        "trigger_price": level,
        "mark_price": mark,
        "quantity": pos.quantity,
    }))
    return Trigger(position=pos, trigger_type=trigger_type, trigger_price=level, mark_price=mark)  # type: ignore[arg-type]


def _mark(prices: Mapping[str, float], symbol: str) -> Optional[float]:
    px = prices.get(symbol)
    if px is None or px <= 0:
        return None
    return float(px)


def check_stop_loss_take_profit(account: "Account", prices: Mapping[str, float]) -> List[Trigger]:
    """Evaluate stop-loss and take-profit levels against one mark per symbol.

    At most one trigger per position. Stop-loss wins when both levels are
    satisfied by the same mark. The trigger price is the configured level,
    not the observed mark.
    """
    triggers: List[Trigger] = []
    for pos in account.positions():
        mark = _mark(prices, pos.symbol)
        if mark is None:
            continue
        if _stop_hit(pos, mark, mark):
            triggers.append(_emit(pos, "stop_loss", pos.stop_loss, mark))
        elif _take_profit_hit(pos, mark, mark):
            triggers.append(_emit(pos, "take_profit", pos.take_profit, mark))
    return triggers


def check_liquidation(account: "Account", prices: Mapping[str, float]) -> List[Trigger]:
    """Report positions whose mark has reached their liquidation price."""
    triggers: List[Trigger] = []
    for pos in account.positions():
        mark = _mark(prices, pos.symbol)
        if mark is None:
            continue
        if _liquidation_hit(pos, mark, mark):
            triggers.append(_emit(pos, "liquidation", pos.liquidation_price, mark))
    return triggers


def check_risk_events_ohlc(account: "Account", bars: Mapping[str, Bar]) -> List[Trigger]:
    """Intrabar variant: use each bar's low and high instead of a single mark.

    Long positions test the low for liquidation and stop-loss and the high
    for take-profit; shorts mirror. Priority is liquidation, then stop-loss,
    then take-profit. Bars with a non-positive high, low or close are skipped.
    """
    triggers: List[Trigger] = []
    for pos in account.positions():
        bar = bars.get(pos.symbol)
        if bar is None or bar.close <= 0 or bar.high <= 0 or bar.low <= 0:
            continue
        if _liquidation_hit(pos, bar.low, bar.high):
            triggers.append(_emit(pos, "liquidation", pos.liquidation_price, bar.close))
        elif _stop_hit(pos, bar.low, bar.high):
            triggers.append(_emit(pos, "stop_loss", pos.stop_loss, bar.close))
        elif _take_profit_hit(pos, bar.low, bar.high):
            triggers.append(_emit(pos, "take_profit", pos.take_profit, bar.close))
    return triggers
