from __future__ import annotations

from dataclasses import dataclass, asdict
from typing import Any, Dict, Literal, NamedTuple, Optional

Side = Literal["long", "short"]
TriggerType = Literal["stop_loss", "take_profit", "liquidation"]

SIDES = ("long", "short")


class PositionKey(NamedTuple):
    symbol: str
    side: str


def position_key(symbol: str, side: str) -> PositionKey:
    return PositionKey(symbol, side)


@dataclass
class Position:
    """One open exposure to a symbol+side.

    `notional` and `margin_used` are always derived from `entry_price`,
    never from a close or mark price.
    """

    symbol: str
    side: Side
    quantity: float
    leverage: int
    entry_price: float
    notional: float
    margin_used: float
    liquidation_price: float
    stop_loss: float = 0.0
    take_profit: float = 0.0
    open_time: int = 0
    updated_time: int = 0

    @property
    def key(self) -> PositionKey:
        return PositionKey(self.symbol, self.side)

    def to_snapshot(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Trigger:
    position: Position
    trigger_type: TriggerType
    trigger_price: float
    mark_price: float = 0.0


@dataclass
class OpenResult:
    position: Position
    fee: float
    entry_price: float


@dataclass
class CloseResult:
    realized_pnl: float
    fee: float
    fill_price: float
    position: Position
    closed: bool

    @property
    def net_pnl(self) -> float:
        return self.realized_pnl - self.fee


@dataclass
class EquitySnapshot:
    equity: float
    unrealized_pnl: float
    margin_used: float
    margin_used_pct: float


@dataclass
class Bar:
    """OHLC values of one symbol for one bar."""

    open: float
    high: float
    low: float
    close: float
    ts: Optional[int] = None
