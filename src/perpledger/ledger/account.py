from __future__ import annotations

import json
import logging
import math
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional

from .errors import (
    InvalidOrderError,
    LedgerError,
    LeverageLimitError,
    NotionalLimitError,
    PositionLimitError,
    PositionNotFoundError,
    QuantityExceedsPositionError,
)
from .model import (
    SIDES,
    CloseResult,
    EquitySnapshot,
    OpenResult,
    Position,
    PositionKey,
    Trigger,
    position_key,
)
from .pricing import (
    close_fill_price,
    directional_pnl,
    fee_for,
    liquidation_price,
    open_fill_price,
    weighted_entry,
)
from ..metrics.ledger import get_fees_paid_total, get_realized_pnl_total, inc_blocked

if TYPE_CHECKING:  # pragma: no cover
    from ..config.loader import LedgerConfig

logger = logging.getLogger(__name__)

# Relative tolerance under which a close quantity counts as the whole position.
FULL_CLOSE_REL_TOL = 1e-9


class Account:
    """Leveraged derivatives account: cash plus a hedged book of positions.

    Positions are keyed by (symbol, side), so a symbol can carry one long and
    one short at the same time. Cash only moves on realized PnL and fees;
    margin is tracked per position but never debited from cash.

    The account is meant for sequential use by a single driver. It performs
    no I/O beyond logging and in-process metrics, and every failed operation
    raises a `LedgerError` subclass before touching any state.
    """

    def __init__(
        self,
        initial_balance: float = 10_000.0,
        fee_bps: float = 5.0,
        slippage_bps: float = 2.0,
        max_leverage: int = 100,
        max_positions: int = 20,
        max_notional_multiple: float = 50.0,
        account_id: str = "default",
    ):
        self.initial_balance = float(initial_balance)
        self.cash = float(initial_balance)
        self.fee_bps = float(fee_bps)
        self.slippage_bps = float(slippage_bps)
        self.max_leverage = int(max_leverage)
        self.max_positions = int(max_positions)
        self.max_notional_multiple = float(max_notional_multiple)
        self.account_id = account_id
        self.realized_pnl = 0.0
        self.fees_paid = 0.0
        self._positions: Dict[PositionKey, Position] = {}
        self._fees_counter = get_fees_paid_total()
        self._realized_counter = get_realized_pnl_total()

    @classmethod
    def from_config(cls, cfg: "LedgerConfig", account_id: str = "default") -> "Account":
        return cls(
            initial_balance=cfg.initial_balance,
            fee_bps=cfg.fee_bps,
            slippage_bps=cfg.slippage_bps,
            max_leverage=cfg.max_leverage,
            max_positions=cfg.max_positions,
            max_notional_multiple=cfg.max_notional_multiple,
            account_id=account_id,
        )

    # ---- queries ----

    def positions(self) -> List[Position]:
        """Open positions ordered by (symbol, side). The list is new per call."""
        return [self._positions[k] for k in sorted(self._positions)]

    def get_position(self, symbol: str, side: str) -> Optional[Position]:
        return self._positions.get(position_key(symbol, side))

    def position_leverage(self, symbol: str, side: str) -> int:
        pos = self.get_position(symbol, side)
        return pos.leverage if pos is not None else 0

    def total_equity(self, prices: Optional[Mapping[str, float]] = None) -> EquitySnapshot:
        """Mark the book to `prices` and return equity and margin figures.

        Symbols missing from `prices` (or with a non-positive price) are
        marked at their entry price, i.e. contribute zero unrealized PnL.
        """
        prices = prices or {}
        unrealized = 0.0
        margin_used = 0.0
        for pos in self._positions.values():
            mark = prices.get(pos.symbol)
            if mark is None or mark <= 0:
                mark = pos.entry_price
            unrealized += directional_pnl(pos.side, pos.entry_price, float(mark), pos.quantity)
            margin_used += pos.margin_used
        equity = self.cash + unrealized
        margin_pct = (margin_used / equity * 100.0) if equity > 0 else 0.0
        return EquitySnapshot(
            equity=equity,
            unrealized_pnl=unrealized,
            margin_used=margin_used,
            margin_used_pct=margin_pct,
        )

    def check_stop_loss_take_profit(self, prices: Mapping[str, float]) -> List[Trigger]:
        from ..risk.scanner import check_stop_loss_take_profit

        return check_stop_loss_take_profit(self, prices)

    # ---- mutations ----

    def open(
        self,
        symbol: str,
        side: str,
        quantity: float,
        leverage: int,
        price: float,
        stop_loss: float = 0.0,
        take_profit: float = 0.0,
        slippage_bps: Optional[float] = None,
        ts: int = 0,
    ) -> OpenResult:
        """Open a position, or add to the existing one for (symbol, side).

        Adding re-averages the entry price by quantity and overwrites
        leverage, stop-loss and take-profit with this call's values (0 clears
        a level). The fee is charged on the slippage-adjusted notional.
        """
        if leverage > self.max_leverage:
            raise self._reject(LeverageLimitError(
                f"leverage {leverage}x exceeds maximum allowed leverage {self.max_leverage}x",
                symbol, side,
            ))
        self._validate_open_inputs(symbol, side, quantity, leverage, price, stop_loss, take_profit, slippage_bps)

        key = position_key(symbol, side)
        existing = self._positions.get(key)
        if existing is None and len(self._positions) >= self.max_positions:
            raise self._reject(PositionLimitError(
                f"reached maximum position count {self.max_positions}; cannot open {symbol} {side}",
                symbol, side,
            ))

        slip = self.slippage_bps if slippage_bps is None else float(slippage_bps)
        entry = open_fill_price(float(price), side, slip)
        notional = entry * float(quantity)
        # Cap against pre-trade equity, marking this symbol at the reference price.
        equity = self.total_equity({symbol: float(price)}).equity
        cap = self.max_notional_multiple * equity
        if notional > cap:
            raise self._reject(NotionalLimitError(
                f"notional {notional:.2f} exceeds maximum allowed {cap:.2f} "
                f"({self.max_notional_multiple:g}x equity {equity:.2f})",
                symbol, side,
            ))

        fee = fee_for(notional, self.fee_bps)
        self.cash -= fee
        self.fees_paid += fee
        lev = int(leverage)

        if existing is None:
            pos = Position(
                symbol=symbol,
                side=side,  # type: ignore[arg-type]
                quantity=float(quantity),
                leverage=lev,
                entry_price=entry,
                notional=notional,
                margin_used=notional / lev,
                liquidation_price=liquidation_price(entry, lev, side),
                stop_loss=float(stop_loss or 0.0),
                take_profit=float(take_profit or 0.0),
                open_time=int(ts),
                updated_time=int(ts),
            )
            self._positions[key] = pos
        else:
            pos = existing
            new_qty = pos.quantity + float(quantity)
            pos.entry_price = weighted_entry(pos.entry_price, pos.quantity, entry, float(quantity))
            pos.quantity = new_qty
            pos.leverage = lev
            pos.notional = pos.entry_price * new_qty
            pos.margin_used = pos.notional / lev
            pos.liquidation_price = liquidation_price(pos.entry_price, lev, side)
            pos.stop_loss = float(stop_loss or 0.0)
            pos.take_profit = float(take_profit or 0.0)
            pos.updated_time = int(ts)

        self._record_fee(symbol, fee)
        self._log_fill("position_opened", pos, quantity=float(quantity), price=entry, fee=fee, added=existing is not None)
        return OpenResult(position=pos, fee=fee, entry_price=entry)

    def close(self, symbol: str, side: str, quantity: float, price: float, ts: int = 0) -> CloseResult:
        """Close `quantity` of the (symbol, side) position at `price`.

        A partial close keeps entry price and leverage; notional and margin
        are recomputed from the entry price and the remaining quantity.
        """
        pos = self._require(symbol, side)
        if not _positive(quantity) or not _positive(price):
            raise self._reject(InvalidOrderError(
                f"close quantity and price must be positive (got qty={quantity}, price={price})",
                symbol, side,
            ))
        full = math.isclose(float(quantity), pos.quantity, rel_tol=FULL_CLOSE_REL_TOL)
        if not full and quantity > pos.quantity:
            raise self._reject(QuantityExceedsPositionError(
                f"close quantity {quantity} exceeds position size {pos.quantity} for {symbol} {side}",
                symbol, side,
            ))

        close_qty = pos.quantity if full else float(quantity)
        fill = close_fill_price(float(price), side, self.slippage_bps)
        pnl = directional_pnl(side, pos.entry_price, fill, close_qty)
        fee = fee_for(fill * close_qty, self.fee_bps)
        self.cash += pnl - fee
        self.realized_pnl += pnl
        self.fees_paid += fee

        if full:
            del self._positions[pos.key]
            pos.quantity = 0.0
            pos.notional = 0.0
            pos.margin_used = 0.0
        else:
            pos.quantity -= close_qty
            pos.notional = pos.entry_price * pos.quantity
            pos.margin_used = pos.notional / pos.leverage
        pos.updated_time = int(ts)

        self._record_fee(symbol, fee)
        if pnl > 0:
            try:
                self._realized_counter.labels(symbol).inc(pnl)
            except Exception:
                pass
        self._log_fill("position_closed", pos, quantity=close_qty, price=fill, fee=fee, realized_pnl=pnl)
        return CloseResult(realized_pnl=pnl, fee=fee, fill_price=fill, position=pos, closed=full)

    def update_stop_loss(self, symbol: str, side: str, stop_loss: float, ts: int = 0) -> Position:
        pos = self._require(symbol, side)
        self._check_level(symbol, side, "stop_loss", stop_loss)
        pos.stop_loss = float(stop_loss)
        if ts:
            pos.updated_time = int(ts)
        return pos

    def update_take_profit(self, symbol: str, side: str, take_profit: float, ts: int = 0) -> Position:
        pos = self._require(symbol, side)
        self._check_level(symbol, side, "take_profit", take_profit)
        pos.take_profit = float(take_profit)
        if ts:
            pos.updated_time = int(ts)
        return pos

    # ---- checkpointing ----

    def snapshot(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "initial_balance": self.initial_balance,
            "cash": self.cash,
            "realized_pnl": self.realized_pnl,
            "fees_paid": self.fees_paid,
            "positions": [p.to_snapshot() for p in self.positions()],
        }

    def restore(self, state: Mapping[str, Any]) -> None:
        """Replace cash, totals and positions with a `snapshot()` payload."""
        rows = list(state.get("positions", []))
        if len(rows) > self.max_positions:
            raise InvalidOrderError(
                f"snapshot holds {len(rows)} positions; maximum position count is {self.max_positions}"
            )
        restored: Dict[PositionKey, Position] = {}
        for row in rows:
            pos = Position(**row)
            if pos.side not in SIDES or pos.quantity <= 0 or pos.entry_price <= 0:
                raise InvalidOrderError(f"invalid position in snapshot: {row}", pos.symbol, pos.side)
            if not 1 <= pos.leverage <= self.max_leverage:
                raise InvalidOrderError(
                    f"invalid leverage {pos.leverage}x in snapshot for {pos.symbol} {pos.side}; "
                    f"expected 1..{self.max_leverage}",
                    pos.symbol, pos.side,
                )
            # Derived fields are recomputed rather than trusted.
            pos.notional = pos.entry_price * pos.quantity
            pos.margin_used = pos.notional / pos.leverage
            pos.liquidation_price = liquidation_price(pos.entry_price, pos.leverage, pos.side)
            restored[pos.key] = pos
        self.cash = float(state.get("cash", self.cash))
        self.realized_pnl = float(state.get("realized_pnl", 0.0))
        self.fees_paid = float(state.get("fees_paid", 0.0))
        self._positions = restored

    # ---- helpers ----

    def _require(self, symbol: str, side: str) -> Position:
        pos = self._positions.get(position_key(symbol, side))
        if pos is None:
            raise self._reject(PositionNotFoundError(f"position not found: {symbol} {side}", symbol, side))
        return pos

    def _validate_open_inputs(self, symbol, side, quantity, leverage, price, stop_loss, take_profit, slippage_bps) -> None:
        problem = None
        if side not in SIDES:
            problem = f"unknown side {side!r}; expected 'long' or 'short'"
        elif not _positive(quantity):
            problem = f"quantity must be positive (got {quantity})"
        elif not _positive(price):
            problem = f"price must be positive (got {price})"
        elif int(leverage) != leverage or leverage < 1:
            problem = f"leverage must be an integer >= 1 (got {leverage})"
        elif (stop_loss or 0) < 0 or (take_profit or 0) < 0:
            problem = "stop_loss and take_profit must be >= 0 (0 = unset)"
        elif slippage_bps is not None and slippage_bps < 0:
            problem = f"slippage override must be >= 0 bps (got {slippage_bps})"
        if problem:
            raise self._reject(InvalidOrderError(problem, symbol, side))

    def _check_level(self, symbol: str, side: str, name: str, level: float) -> None:
        if level is None or level < 0 or not math.isfinite(level):
            raise self._reject(InvalidOrderError(f"{name} must be >= 0 (got {level})", symbol, side))

    def _reject(self, exc: LedgerError) -> LedgerError:
        inc_blocked(exc.reason, exc.symbol or "unknown")
        logger.info(json.dumps({
            "event": "ledger_rejected",
            "account": self.account_id,
            "reason": exc.reason,
            "symbol": exc.symbol,
            "side": exc.side,
            "message": str(exc),
        }))
        return exc

    def _record_fee(self, symbol: str, fee: float) -> None:
        try:
            self._fees_counter.labels(symbol).inc(fee)
        except Exception:
            pass

    def _log_fill(self, event: str, pos: Position, **fields: Any) -> None:
        payload = {
            "event": event,
            "account": self.account_id,
            "symbol": pos.symbol,
            "side": pos.side,
            "leverage": pos.leverage,
            "position_qty": pos.quantity,
            "entry_price": pos.entry_price,
            "cash": self.cash,
        }
        payload.update(fields)
        logger.debug(json.dumps(payload))


def _positive(value: Any) -> bool:
    try:
        v = float(value)
    except (TypeError, ValueError):
        return False
    return math.isfinite(v) and v > 0
