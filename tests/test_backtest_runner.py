import json

import pandas as pd
import pytest

from perpledger.backtest.model import Decision
from perpledger.backtest.runner import BacktestRunner, sort_decisions_by_priority
from perpledger.config.loader import RunnerConfig
from perpledger.events.schema import OrderRejected, RiskTriggered
from perpledger.ledger.account import Account
from perpledger.ledger.model import Bar


def _bars(rows):
    return pd.DataFrame(rows, columns=["timestamp", "symbol", "open", "high", "low", "close"])


def _flat_bar(ts, symbol, close):
    return (ts, symbol, close, close, close, close)


@pytest.fixture
def published(monkeypatch):
    events = []
    monkeypatch.setattr("perpledger.backtest.runner.publish_event", lambda env: events.append(env))
    return events


def test_stop_loss_closed_at_trigger_price(published):
    acc = Account(10_000.0, fee_bps=0, slippage_bps=0)
    acc.open("BTCUSDT", "long", 0.1, 10, 50_000.0, stop_loss=49_000.0, take_profit=52_000.0)
    bars = _bars([
        (1, "BTCUSDT", 50_000.0, 50_600.0, 50_400.0, 50_500.0),
        (2, "BTCUSDT", 50_500.0, 49_500.0, 48_800.0, 48_900.0),
    ])

    runner = BacktestRunner(acc, bars).run()

    assert [t.action for t in runner.trades] == ["auto_close_long_stop_loss"]
    trade = runner.trades[0]
    assert trade.price == 49_000.0
    assert trade.realized_pnl == pytest.approx(-100.0)
    assert trade.position_after == 0.0
    assert acc.positions() == []
    assert [r.equity for r in runner.equity_curve] == pytest.approx([10_050.0, 9_900.0])
    triggered = [e.event for e in published if isinstance(e.event, RiskTriggered)]
    assert [(t.trigger_type, t.mark_price) for t in triggered] == [("stop_loss", 48_900.0)]
    assert published[-1].event.event_type == "run_completed"


def test_second_risk_pass_catches_levels_set_by_decisions(published):
    acc = Account(10_000.0, fee_bps=0, slippage_bps=0)

    def decide(ctx):
        if ctx.bar_index == 0:
            # Stop above the current price: breached as soon as it is set.
            return [Decision(action="open_long", symbol="SOLUSDT", position_size_usd=1_000.0, leverage=5, stop_loss=101.0)]
        return []

    runner = BacktestRunner(acc, _bars([_flat_bar(1, "SOLUSDT", 100.0)]), decide=decide).run()

    assert [t.action for t in runner.trades] == ["open_long", "auto_close_long_stop_loss"]
    assert runner.trades[0].qty == pytest.approx(10.0)
    assert runner.trades[1].price == 101.0
    assert acc.positions() == []
    assert acc.cash == pytest.approx(10_010.0)


def test_rejected_decision_is_recorded_and_published(published):
    acc = Account(10_000.0, fee_bps=5, slippage_bps=2)
    decide = lambda ctx: [Decision(action="open_long", symbol="BTCUSDT", leverage=150)]

    runner = BacktestRunner(acc, _bars([_flat_bar(1, "BTCUSDT", 50_000.0)]), decide=decide).run()

    assert runner.trades == []
    assert [(r.action, r.reason) for r in runner.rejections] == [("open_long", "leverage_limit")]
    rejected = [e.event for e in published if isinstance(e.event, OrderRejected)]
    assert rejected and rejected[0].reason == "leverage_limit"
    assert acc.cash == 10_000.0


def test_unknown_action_and_missing_price_rejected(published):
    acc = Account(10_000.0)
    decide = lambda ctx: [
        Decision(action="partial_close", symbol="BTCUSDT"),
        Decision(action="open_long", symbol="DOGEUSDT"),
        Decision(action="close_short", symbol="BTCUSDT"),
        Decision(action="hold", symbol="BTCUSDT"),
    ]
    runner = BacktestRunner(acc, _bars([_flat_bar(1, "BTCUSDT", 50_000.0)]), decide=decide).run()
    reasons = sorted(r.reason for r in runner.rejections)
    assert reasons == ["invalid_order", "invalid_order", "position_not_found"]


def test_liquidation_stops_the_run(published):
    acc = Account(10_000.0, fee_bps=0, slippage_bps=0)
    acc.open("BTCUSDT", "long", 1.0, 10, 50_000.0)
    bars = _bars([_flat_bar(1, "BTCUSDT", 44_000.0), _flat_bar(2, "BTCUSDT", 50_000.0)])

    runner = BacktestRunner(acc, bars).run()

    assert runner.liquidated is True
    assert len(runner.equity_curve) == 1
    trade = runner.trades[0]
    assert trade.liquidation is True
    assert trade.price == pytest.approx(45_000.0)
    assert trade.realized_pnl == pytest.approx(-5_000.0)
    assert "BTCUSDT long" in runner.liquidation_note
    assert published[-1].event.liquidated is True


def test_ohlc_mode_uses_intrabar_low(published):
    acc = Account(10_000.0, fee_bps=0, slippage_bps=0)
    acc.open("BTCUSDT", "long", 0.1, 10, 50_000.0, stop_loss=49_000.0)
    bars = _bars([(1, "BTCUSDT", 50_000.0, 51_000.0, 48_000.0, 49_500.0)])

    close_only = BacktestRunner(acc, bars, config=RunnerConfig(use_ohlc_triggers=False)).run()
    assert close_only.trades == []

    intrabar = BacktestRunner(acc, bars, config=RunnerConfig(use_ohlc_triggers=True)).run()
    assert [t.action for t in intrabar.trades] == ["auto_close_long_stop_loss"]


def test_update_stop_loss_decision_finds_short(published):
    acc = Account(10_000.0, fee_bps=0, slippage_bps=0)
    acc.open("ETHUSDT", "short", 1.0, 10, 3_000.0, stop_loss=3_100.0)
    decide = lambda ctx: [Decision(action="update_stop_loss", symbol="ETHUSDT", new_stop_loss=3_050.0)]

    BacktestRunner(acc, _bars([_flat_bar(1, "ETHUSDT", 3_000.0)]), decide=decide).run()

    assert acc.get_position("ETHUSDT", "short").stop_loss == 3_050.0


def test_default_sizing_and_leverage(published):
    acc = Account(10_000.0, fee_bps=0, slippage_bps=0)
    decide = lambda ctx: [Decision(action="open_long", symbol="BTCUSDT"), Decision(action="open_short", symbol="SOLUSDT")]
    cfg = RunnerConfig(btc_eth_leverage=10, altcoin_leverage=3, default_position_pct=0.05)
    bars = _bars([_flat_bar(1, "BTCUSDT", 50_000.0), _flat_bar(1, "SOLUSDT", 100.0)])

    BacktestRunner(acc, bars, decide=decide, config=cfg).run()

    btc = acc.get_position("BTCUSDT", "long")
    sol = acc.get_position("SOLUSDT", "short")
    assert btc.quantity == pytest.approx(0.01)
    assert btc.leverage == 10
    assert sol.quantity == pytest.approx(5.0)
    assert sol.leverage == 3


def test_close_decision_closes_full_position(published):
    acc = Account(10_000.0, fee_bps=0, slippage_bps=0)
    acc.open("BTCUSDT", "long", 0.3, 10, 50_000.0)
    decide = lambda ctx: [Decision(action="close_long", symbol="BTCUSDT")]

    runner = BacktestRunner(acc, _bars([_flat_bar(1, "BTCUSDT", 51_000.0)]), decide=decide).run()

    assert acc.positions() == []
    assert runner.trades[0].realized_pnl == pytest.approx(300.0)
    assert runner.trades[0].leverage == 10


def test_decision_interval(published):
    calls = []
    acc = Account(10_000.0)
    decide = lambda ctx: calls.append(ctx.bar_index) or []
    bars = _bars([_flat_bar(ts, "BTCUSDT", 50_000.0) for ts in range(1, 7)])

    BacktestRunner(acc, bars, decide=decide, config=RunnerConfig(decision_interval_bars=3)).run()

    assert calls == [0, 3]


def test_execution_price_policies():
    acc = Account(10_000.0)
    bars = _bars([_flat_bar(1, "BTCUSDT", 100.0)])
    bar = Bar(open=100.0, high=110.0, low=90.0, close=104.0)
    assert BacktestRunner(acc, bars).execution_price(bar) == 104.0
    assert BacktestRunner(acc, bars, config=RunnerConfig(fill_policy="mid")).execution_price(bar) == 100.0
    assert BacktestRunner(acc, bars, config=RunnerConfig(fill_policy="bar_vwap")).execution_price(bar) == pytest.approx(101.0)


def test_sort_decisions_by_priority():
    decisions = [
        Decision(action="open_long", symbol="A"),
        Decision(action="hold", symbol="B"),
        Decision(action="close_short", symbol="C"),
        Decision(action="update_stop_loss", symbol="D"),
        Decision(action="close_long", symbol="E"),
    ]
    assert [d.symbol for d in sort_decisions_by_priority(decisions)] == ["C", "E", "A", "B", "D"]


def test_missing_columns_rejected():
    with pytest.raises(ValueError, match="missing required columns"):
        BacktestRunner(Account(), pd.DataFrame({"timestamp": [1], "symbol": ["X"], "close": [1.0]}))


def test_trade_log_and_frames(tmp_path, published):
    acc = Account(10_000.0, fee_bps=0, slippage_bps=0)
    acc.open("BTCUSDT", "long", 0.1, 10, 50_000.0, take_profit=51_000.0)
    log_path = tmp_path / "trades.jsonl"
    cfg = RunnerConfig(run_id="t9", trade_log_path=str(log_path))

    runner = BacktestRunner(acc, _bars([_flat_bar(1, "BTCUSDT", 51_500.0)]), config=cfg).run()

    rows = [json.loads(line) for line in log_path.read_text().splitlines()]
    assert [(r["run_id"], r["action"]) for r in rows] == [("t9", "auto_close_long_take_profit")]
    trades = runner.trades_frame()
    assert list(trades["action"]) == ["auto_close_long_take_profit"]
    assert trades["realized_pnl"].iloc[0] == pytest.approx(100.0)
    equity = runner.equity_frame()
    assert equity["equity"].iloc[-1] == pytest.approx(10_100.0)
    assert equity["open_positions"].iloc[-1] == 0


def test_decisions_still_run_on_the_liquidation_bar(published):
    acc = Account(10_000.0, fee_bps=0, slippage_bps=0)
    acc.open("BTCUSDT", "long", 1.0, 10, 50_000.0)
    acc.open("ETHUSDT", "long", 1.0, 2, 3_000.0)
    calls = []

    def decide(ctx):
        calls.append(ctx.bar_index)
        return [Decision(action="close_long", symbol="ETHUSDT")]

    bars = _bars([
        _flat_bar(1, "BTCUSDT", 44_000.0),
        _flat_bar(1, "ETHUSDT", 3_100.0),
        _flat_bar(2, "BTCUSDT", 50_000.0),
        _flat_bar(2, "ETHUSDT", 3_100.0),
    ])

    runner = BacktestRunner(acc, bars, decide=decide).run()

    assert calls == [0]
    assert runner.liquidated is True
    assert [t.action for t in runner.trades] == ["auto_close_long_liquidation", "close_long"]
    assert runner.trades[1].realized_pnl == pytest.approx(100.0)
    assert acc.positions() == []
    assert acc.cash == pytest.approx(5_100.0)
    assert len(runner.equity_curve) == 1


def test_trades_report_slippage_and_order_value(published):
    acc = Account(10_000.0, fee_bps=0, slippage_bps=10)

    def decide(ctx):
        if ctx.bar_index == 0:
            return [Decision(action="open_long", symbol="BTCUSDT", position_size_usd=5_000.0, leverage=10)]
        return [Decision(action="close_long", symbol="BTCUSDT")]

    bars = _bars([_flat_bar(1, "BTCUSDT", 50_000.0), _flat_bar(2, "BTCUSDT", 50_000.0)])

    runner = BacktestRunner(acc, bars, decide=decide).run()

    opened, closed = runner.trades
    assert opened.price == pytest.approx(50_050.0)
    assert opened.slippage == pytest.approx(50.0)
    assert opened.order_value == pytest.approx(5_005.0)
    assert closed.price == pytest.approx(49_950.0)
    assert closed.slippage == pytest.approx(50.0)
    assert closed.order_value == pytest.approx(4_995.0)
    assert list(runner.trades_frame()["slippage"]) == pytest.approx([50.0, 50.0])
