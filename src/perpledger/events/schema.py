from __future__ import annotations

from typing import List, Literal, Optional
from pydantic import BaseModel


# ---- Base + envelope ----

class BaseEvent(BaseModel):
    event_type: str
    ts: int
    run_id: str = "r1"
    market: str
    symbol: str
    side: Optional[str] = None  # long|short
    tags: List[str] = []


class EventEnvelope(BaseModel):
    schema_version: str = "v1"
    correlation_id: str
    sequence: int = 0
    event: BaseEvent


# ---- Event types ----

class PositionOpened(BaseEvent):
    event_type: Literal["position_opened"] = "position_opened"
    qty: float
    price: float
    leverage: int
    fee: float = 0.0
    position_qty: float
    liquidation_price: float
    stop_loss: float = 0.0
    take_profit: float = 0.0


class PositionClosed(BaseEvent):
    event_type: Literal["position_closed"] = "position_closed"
    action: str
    qty: float
    price: float
    fee: float = 0.0
    realized_pnl: float
    position_qty: float


class OrderRejected(BaseEvent):
    event_type: Literal["order_rejected"] = "order_rejected"
    action: str
    reason: str
    message: str = ""


class RiskTriggered(BaseEvent):
    event_type: Literal["risk_triggered"] = "risk_triggered"
    trigger_type: Literal["stop_loss", "take_profit", "liquidation"]
    trigger_price: float
    mark_price: float


class RunCompleted(BaseEvent):
    event_type: Literal["run_completed"] = "run_completed"
    equity: float
    bars: int
    trades: int
    liquidated: bool = False

