from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal

from ..ledger.model import Position

Action = Literal[
    "open_long",
    "open_short",
    "close_long",
    "close_short",
    "update_stop_loss",
    "update_take_profit",
    "hold",
    "wait",
]


@dataclass
class Decision:
    """One instruction from the decision engine.

    Attributes:
        action: what to do (see `Action`)
        symbol: instrument symbol (e.g., "BTCUSDT")
        leverage: requested leverage; 0 lets the runner pick its default
        position_size_usd: notional to open; 0 uses the runner default
        stop_loss / take_profit: levels for opens (0 = unset)
        new_stop_loss / new_take_profit: levels for update actions
        reasoning: free text kept for auditability
    """

    action: str
    symbol: str
    leverage: int = 0
    position_size_usd: float = 0.0
    stop_loss: float = 0.0
    take_profit: float = 0.0
    new_stop_loss: float = 0.0
    new_take_profit: float = 0.0
    reasoning: str = ""


@dataclass
class DecisionContext:
    ts: int
    bar_index: int
    equity: float
    cash: float
    margin_used: float
    prices: Dict[str, float]
    positions: List[Position]
    history: Dict[str, List[float]] = field(default_factory=dict)


@dataclass
class TradeEvent:
    ts: int
    run_id: str
    symbol: str
    action: str
    side: str
    qty: float
    price: float
    fee: float
    realized_pnl: float
    leverage: int
    position_after: float
    slippage: float = 0.0
    order_value: float = 0.0
    liquidation: bool = False
    note: str = ""

    def to_record(self) -> Dict[str, Any]:
        return dict(self.__dict__)


@dataclass
class EquityRow:
    ts: int
    equity: float
    cash: float
    unrealized_pnl: float
    margin_used: float
    margin_used_pct: float
    drawdown: float
    open_positions: int


@dataclass
class Rejection:
    ts: int
    symbol: str
    action: str
    reason: str
    message: str
