"""Ledger package.

Public API:
- Account: cash and a (symbol, side) keyed book of leveraged positions.
- Position, Trigger, OpenResult, CloseResult, EquitySnapshot, Bar: data records.
- LedgerError and its subclasses: typed rejections.
"""

from .account import Account  # re-export
from .errors import (
    InvalidOrderError,
    LedgerError,
    LeverageLimitError,
    NotionalLimitError,
    PositionLimitError,
    PositionNotFoundError,
    QuantityExceedsPositionError,
)
from .model import Bar, CloseResult, EquitySnapshot, OpenResult, Position, PositionKey, Trigger

__all__ = [
    "Account",
    "Bar",
    "CloseResult",
    "EquitySnapshot",
    "InvalidOrderError",
    "LedgerError",
    "LeverageLimitError",
    "NotionalLimitError",
    "OpenResult",
    "Position",
    "PositionKey",
    "PositionLimitError",
    "PositionNotFoundError",
    "QuantityExceedsPositionError",
    "Trigger",
]
