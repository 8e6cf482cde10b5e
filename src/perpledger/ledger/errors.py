"""Typed rejections raised by the account.

Every error carries a short ``reason`` code. The code is used as the
Prometheus label for blocked orders and as the ``reason`` of published
``order_rejected`` events, so callers can tell leverage, position-count and
notional rejections apart without parsing messages.
"""
from __future__ import annotations


class LedgerError(ValueError):
    reason = "ledger_error"

    def __init__(self, message: str, symbol: str = "", side: str = ""):
        super().__init__(message)
        self.symbol = symbol
        self.side = side


class InvalidOrderError(LedgerError):
    reason = "invalid_order"


class LeverageLimitError(LedgerError):
    reason = "leverage_limit"


class PositionLimitError(LedgerError):
    reason = "max_positions"


class NotionalLimitError(LedgerError):
    reason = "notional_limit"


class PositionNotFoundError(LedgerError):
    reason = "position_not_found"


class QuantityExceedsPositionError(LedgerError):
    reason = "quantity_exceeds_position"
