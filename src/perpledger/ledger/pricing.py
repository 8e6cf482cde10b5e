"""Fee, slippage and liquidation arithmetic.

All functions are pure. Rates are in basis points (1 bps = 0.0001) and the
slippage convention is always adverse: the trader gets the worse price on
both the opening and the closing fill.
"""
from __future__ import annotations

BPS = 10_000.0


def _direction(side: str) -> float:
    return 1.0 if side == "long" else -1.0


def open_fill_price(price: float, side: str, slippage_bps: float) -> float:
    """Long pays up, short receives less."""
    return price * (1.0 + _direction(side) * slippage_bps / BPS)


def close_fill_price(price: float, side: str, slippage_bps: float) -> float:
    """Long sells lower, short buys back higher."""
    return price * (1.0 - _direction(side) * slippage_bps / BPS)


def fee_for(notional: float, fee_bps: float) -> float:
    return abs(notional) * fee_bps / BPS


def directional_pnl(side: str, entry_price: float, exit_price: float, quantity: float) -> float:
    return (exit_price - entry_price) * quantity * _direction(side)


def liquidation_price(entry_price: float, leverage: int, side: str) -> float:
    """Bankruptcy price of a position: the mark at which its margin is gone.

    No maintenance-margin tiers; a 1x long therefore liquidates at zero.
    """
    if leverage <= 0:
        return 0.0
    return entry_price * (1.0 - _direction(side) / float(leverage))


def weighted_entry(entry_price: float, quantity: float, add_price: float, add_quantity: float) -> float:
    total = quantity + add_quantity
    if total <= 0:
        return entry_price
    return (entry_price * quantity + add_price * add_quantity) / total
