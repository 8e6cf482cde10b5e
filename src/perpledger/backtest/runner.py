"""perpledger.backtest.runner

Bar-by-bar replay driver around an `Account`.

Each step (one timestamp) runs, in order:
1. a risk pass: liquidation, stop-loss and take-profit triggers are closed
   at their trigger price for the full position;
2. on decision bars, the decision callback and the execution of its
   `Decision`s (closes first, then opens, then the rest);
3. a second risk pass, so levels changed or positions opened in step 2 are
   checked against the same bar;
4. an equity snapshot.

A liquidation marks the run as liquidated; the rest of that step still runs
(decisions on surviving positions included) and the run stops after it.
Rejected decisions are recorded and published; they never stop the run.

Bars are a long-format DataFrame with integer millisecond timestamps:
`timestamp, symbol, open, high, low, close`.
"""
from __future__ import annotations

import json
import logging
import os
from typing import Callable, Dict, Iterable, List, Optional

import pandas as pd

from ..config.loader import RunnerConfig
from ..events.bus import publish as publish_event
from ..events.schema import (
    EventEnvelope,
    OrderRejected,
    PositionClosed,
    PositionOpened,
    RiskTriggered,
    RunCompleted,
)
from ..ledger.account import Account
from ..ledger.errors import InvalidOrderError, LedgerError, PositionNotFoundError
from ..ledger.model import SIDES, Bar, Trigger
from ..logs.trade_log import append_jsonl
from ..metrics.ledger import set_account_gauges
from ..risk.scanner import check_liquidation, check_risk_events_ohlc, check_stop_loss_take_profit
from .model import Decision, DecisionContext, EquityRow, Rejection, TradeEvent

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = {"timestamp", "symbol", "open", "high", "low", "close"}

OPEN_ACTIONS = {"open_long": "long", "open_short": "short"}
CLOSE_ACTIONS = {"close_long": "long", "close_short": "short"}
MAJOR_SYMBOLS = {"BTCUSDT", "ETHUSDT"}

DecideFn = Callable[[DecisionContext], Iterable[Decision]]


def sort_decisions_by_priority(decisions: List[Decision]) -> List[Decision]:
    """Closes before opens before holds; anything else last. Stable."""
    def priority(action: str) -> int:
        if action in CLOSE_ACTIONS:
            return 1
        if action in OPEN_ACTIONS:
            return 2
        if action in ("hold", "wait"):
            return 3
        return 99

    return sorted(decisions, key=lambda d: priority(d.action))


def adverse_slippage(side: str, opening: bool, base_price: float, exec_price: float) -> float:
    """Price cost of a fill versus its reference price; positive when adverse."""
    buying = (side == "long") == opening
    return exec_price - base_price if buying else base_price - exec_price


def bar_vwap(bar: Bar) -> float:
    values = [v for v in (bar.open, bar.high, bar.low, bar.close) if v > 0]
    if not values:
        return 0.0
    return sum(values) / len(values)


class BacktestRunner:
    def __init__(
        self,
        account: Account,
        bars: pd.DataFrame,
        decide: Optional[DecideFn] = None,
        config: Optional[RunnerConfig] = None,
    ):
        missing = REQUIRED_COLUMNS - set(bars.columns)
        if missing:
            raise ValueError(f"bars missing required columns: {sorted(missing)}")
        self.account = account
        self.bars = bars.sort_values(["timestamp", "symbol"], kind="stable")
        self.decide = decide
        self.cfg = config or RunnerConfig()
        self.trades: List[TradeEvent] = []
        self.equity_curve: List[EquityRow] = []
        self.rejections: List[Rejection] = []
        self.history: Dict[str, List[float]] = {}
        self.liquidated = False
        self.liquidation_note = ""
        self.bar_index = 0
        self.peak_equity = account.total_equity().equity
        self._sequence = 0

    # ---- driving ----

    def run(self) -> "BacktestRunner":
        for ts, group in self.bars.groupby("timestamp", sort=True):
            bars = {
                str(row.symbol): Bar(
                    open=float(row.open),
                    high=float(row.high),
                    low=float(row.low),
                    close=float(row.close),
                    ts=int(ts),
                )
                for row in group.itertuples(index=False)
            }
            self.step(int(ts), bars)
            if self.liquidated:
                logger.warning("run %s liquidated: %s", self.cfg.run_id, self.liquidation_note)
                break
        final = self.equity_curve[-1].equity if self.equity_curve else self.account.total_equity().equity
        self._publish(
            "run",
            RunCompleted(
                ts=self.equity_curve[-1].ts if self.equity_curve else 0,
                run_id=self.cfg.run_id,
                market=self.cfg.market,
                symbol="ACCOUNT",
                equity=final,
                bars=self.bar_index,
                trades=len(self.trades),
                liquidated=self.liquidated,
            ),
        )
        return self

    def step(self, ts: int, bars: Dict[str, Bar]) -> None:
        prices = {sym: b.close for sym, b in bars.items() if b.close > 0}
        for sym, px in prices.items():
            self.history.setdefault(sym, []).append(px)

        self._risk_pass(ts, bars, prices)

        if self.decide is not None and self.bar_index % self.cfg.decision_interval_bars == 0:
            ctx = self._context(ts, prices)
            decisions = sort_decisions_by_priority(list(self.decide(ctx) or []))
            for dec in decisions:
                self.execute_decision(dec, bars, ts)
            # Levels moved or positions opened above are checked on this same bar.
            self._risk_pass(ts, bars, prices)

        self._record_equity(ts, prices)
        self.bar_index += 1

    # ---- decisions ----

    def execute_decision(self, dec: Decision, bars: Dict[str, Bar], ts: int) -> Optional[TradeEvent]:
        """Apply one decision; a `LedgerError` is recorded as a rejection."""
        try:
            return self._apply(dec, bars, ts)
        except LedgerError as e:
            self._reject(ts, dec, e)
            return None

    def _apply(self, dec: Decision, bars: Dict[str, Bar], ts: int) -> Optional[TradeEvent]:
        if dec.action in ("hold", "wait"):
            return None
        bar = bars.get(dec.symbol)
        if bar is None or bar.close <= 0:
            raise InvalidOrderError(f"price unavailable for {dec.symbol}", dec.symbol)
        if dec.action in ("update_stop_loss", "update_take_profit"):
            self._update_level(dec, ts)
            return None

        fill_price = self.execution_price(bar)
        if dec.action in OPEN_ACTIONS:
            side = OPEN_ACTIONS[dec.action]
            qty = self.determine_quantity(dec, bar.close)
            leverage = self.resolve_leverage(dec.leverage, dec.symbol)
            res = self.account.open(
                dec.symbol, side, qty, leverage, fill_price,
                stop_loss=dec.stop_loss, take_profit=dec.take_profit, ts=ts,
            )
            pos = res.position
            trade = TradeEvent(
                ts=ts, run_id=self.cfg.run_id, symbol=dec.symbol, action=dec.action, side=side,
                qty=qty, price=res.entry_price, fee=res.fee, realized_pnl=0.0,
                slippage=adverse_slippage(side, True, bar.close, res.entry_price),
                order_value=res.entry_price * qty,
                leverage=pos.leverage, position_after=pos.quantity, note=dec.reasoning,
            )
            self._record_trade(trade)
            self._publish(dec.symbol, PositionOpened(
                ts=ts, run_id=self.cfg.run_id, market=self.cfg.market, symbol=dec.symbol, side=side,
                qty=qty, price=res.entry_price, leverage=pos.leverage, fee=res.fee,
                position_qty=pos.quantity, liquidation_price=pos.liquidation_price,
                stop_loss=pos.stop_loss, take_profit=pos.take_profit,
            ))
            return trade

        if dec.action in CLOSE_ACTIONS:
            side = CLOSE_ACTIONS[dec.action]
            pos = self.account.get_position(dec.symbol, side)
            qty = pos.quantity if pos is not None else 0.0
            # Closing a missing position raises PositionNotFoundError from the account.
            return self._close(
                ts, dec.symbol, side, qty, fill_price, dec.action, base_price=bar.close, note=dec.reasoning,
            )

        raise InvalidOrderError(f"unsupported action {dec.action}", dec.symbol)

    def _update_level(self, dec: Decision, ts: int) -> None:
        is_stop = dec.action == "update_stop_loss"
        level = dec.new_stop_loss if is_stop else dec.new_take_profit
        for side in SIDES:
            if self.account.get_position(dec.symbol, side) is None:
                continue
            if is_stop:
                self.account.update_stop_loss(dec.symbol, side, level, ts=ts)
            else:
                self.account.update_take_profit(dec.symbol, side, level, ts=ts)
            logger.info(json.dumps({
                "event": dec.action, "symbol": dec.symbol, "side": side, "level": level, "ts": ts,
            }))
            return
        name = "stop loss" if is_stop else "take profit"
        raise PositionNotFoundError(f"no position to update {name} for {dec.symbol}", dec.symbol)

    def determine_quantity(self, dec: Decision, price: float) -> float:
        equity = self.equity_curve[-1].equity if self.equity_curve else self.account.total_equity().equity
        if equity <= 0:
            equity = self.account.initial_balance
        size_usd = dec.position_size_usd if dec.position_size_usd > 0 else self.cfg.default_position_pct * equity
        return max(size_usd / price, 0.0)

    def resolve_leverage(self, requested: int, symbol: str) -> int:
        if requested > 0:
            return requested
        if symbol.upper() in MAJOR_SYMBOLS:
            return self.cfg.btc_eth_leverage
        return self.cfg.altcoin_leverage

    def execution_price(self, bar: Bar) -> float:
        if self.cfg.fill_policy == "mid" and bar.high > 0 and bar.low > 0:
            return (bar.high + bar.low) / 2.0
        if self.cfg.fill_policy == "bar_vwap":
            vwap = bar_vwap(bar)
            if vwap > 0:
                return vwap
        return bar.close

    # ---- risk ----

    def _risk_pass(self, ts: int, bars: Dict[str, Bar], prices: Dict[str, float]) -> None:
        if self.cfg.use_ohlc_triggers:
            triggers = check_risk_events_ohlc(self.account, bars)
        else:
            triggers = check_liquidation(self.account, prices)
            liquidating = {t.position.key for t in triggers}
            triggers += [t for t in check_stop_loss_take_profit(self.account, prices) if t.position.key not in liquidating]
        for trig in triggers:
            self._close_trigger(ts, trig)

    def _close_trigger(self, ts: int, trig: Trigger) -> None:
        pos = trig.position
        self._publish(pos.symbol, RiskTriggered(
            ts=ts, run_id=self.cfg.run_id, market=self.cfg.market, symbol=pos.symbol, side=pos.side,
            trigger_type=trig.trigger_type, trigger_price=trig.trigger_price, mark_price=trig.mark_price,
        ))
        is_liq = trig.trigger_type == "liquidation"
        action = f"auto_close_{pos.side}_{trig.trigger_type}"
        note = f"{trig.trigger_type} at {trig.trigger_price:.4f} (mark {trig.mark_price:.4f})"
        self._close(ts, pos.symbol, pos.side, pos.quantity, trig.trigger_price, action, liquidation=is_liq, note=note)
        if is_liq:
            self.liquidated = True
            entry = f"{pos.symbol} {pos.side} @ {trig.trigger_price:.4f}"
            self.liquidation_note = f"{self.liquidation_note}; {entry}" if self.liquidation_note else entry

    def _close(
        self, ts: int, symbol: str, side: str, qty: float, price: float, action: str,
        liquidation: bool = False, note: str = "", base_price: Optional[float] = None,
    ) -> TradeEvent:
        leverage = self.account.position_leverage(symbol, side)
        res = self.account.close(symbol, side, qty, price, ts=ts)
        trade = TradeEvent(
            ts=ts, run_id=self.cfg.run_id, symbol=symbol, action=action, side=side,
            qty=qty, price=res.fill_price, fee=res.fee, realized_pnl=res.net_pnl,
            slippage=adverse_slippage(side, False, price if base_price is None else base_price, res.fill_price),
            order_value=res.fill_price * qty,
            leverage=leverage, position_after=res.position.quantity, liquidation=liquidation, note=note,
        )
        self._record_trade(trade)
        self._publish(symbol, PositionClosed(
            ts=ts, run_id=self.cfg.run_id, market=self.cfg.market, symbol=symbol, side=side,
            action=action, qty=qty, price=res.fill_price, fee=res.fee,
            realized_pnl=res.net_pnl, position_qty=res.position.quantity,
        ))
        return trade

    # ---- bookkeeping ----

    def _context(self, ts: int, prices: Dict[str, float]) -> DecisionContext:
        snap = self.account.total_equity(prices)
        return DecisionContext(
            ts=ts,
            bar_index=self.bar_index,
            equity=snap.equity,
            cash=self.account.cash,
            margin_used=snap.margin_used,
            prices=dict(prices),
            positions=self.account.positions(),
            history={sym: list(v) for sym, v in self.history.items()},
        )

    def _record_trade(self, trade: TradeEvent) -> None:
        self.trades.append(trade)
        if self.cfg.trade_log_path:
            append_jsonl(self.cfg.trade_log_path, trade.to_record())

    def _record_equity(self, ts: int, prices: Dict[str, float]) -> None:
        snap = self.account.total_equity(prices)
        if snap.equity > self.peak_equity:
            self.peak_equity = snap.equity
        drawdown = 1.0 - (snap.equity / self.peak_equity if self.peak_equity > 0 else 1.0)
        open_positions = len(self.account.positions())
        self.equity_curve.append(EquityRow(
            ts=ts,
            equity=snap.equity,
            cash=self.account.cash,
            unrealized_pnl=snap.unrealized_pnl,
            margin_used=snap.margin_used,
            margin_used_pct=snap.margin_used_pct,
            drawdown=max(0.0, drawdown),
            open_positions=open_positions,
        ))
        set_account_gauges(self.account.account_id, snap.equity, open_positions)

    def _reject(self, ts: int, dec: Decision, exc: LedgerError) -> None:
        self.rejections.append(Rejection(ts=ts, symbol=dec.symbol, action=dec.action, reason=exc.reason, message=str(exc)))
        logger.warning("decision %s %s rejected (%s): %s", dec.action, dec.symbol, exc.reason, exc)
        self._publish(dec.symbol, OrderRejected(
            ts=ts, run_id=self.cfg.run_id, market=self.cfg.market, symbol=dec.symbol,
            side=exc.side or None, action=dec.action, reason=exc.reason, message=str(exc),
        ))

    def _publish(self, key: str, event) -> None:
        self._sequence += 1
        publish_event(EventEnvelope(correlation_id=f"{self.cfg.run_id}:{key}", sequence=self._sequence, event=event))

    # ---- outputs ----

    def trades_frame(self) -> pd.DataFrame:
        return pd.DataFrame([t.to_record() for t in self.trades])

    def equity_frame(self) -> pd.DataFrame:
        return pd.DataFrame([r.__dict__ for r in self.equity_curve])

    def write_parquet(self, base_dir: str = "data") -> None:
        os.makedirs(base_dir, exist_ok=True)
        self.trades_frame().to_parquet(os.path.join(base_dir, "trades.parquet"))
        self.equity_frame().to_parquet(os.path.join(base_dir, "equity.parquet"))
