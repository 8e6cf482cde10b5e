"""
Main entrypoint for perpledger.

What it does:
- Loads runtime settings from `config/config.yaml` (or `PERPLEDGER_CONFIG`).
- Starts the Prometheus metrics server unless `PROMETHEUS_PORT=0`.
- Generates synthetic random-walk OHLC bars for the configured symbols.
- Replays them through `BacktestRunner` with a moving-average demo decision
  function, logs a summary and writes parquet outputs under `data/`.

Where it is used:
- Invoked by `python -m perpledger.main` or the `perpledger-demo` script.

Key related modules:
- `perpledger.config.loader.Settings` and `load_settings`
- `perpledger.ledger.account.Account`
- `perpledger.backtest.runner.BacktestRunner`
"""
import logging
import os
import time
from typing import List

import numpy as np
import pandas as pd
from prometheus_client import start_http_server

from perpledger.backtest.model import Decision, DecisionContext
from perpledger.backtest.runner import BacktestRunner
from perpledger.config.loader import load_settings
from perpledger.ledger.account import Account

FAST_WINDOW = 5
SLOW_WINDOW = 20


def synthetic_bars(symbols: List[str], n_bars: int = 300, seed: int = 7, timeframe_ms: int = 60_000) -> pd.DataFrame:
    """Random-walk candles, one row per (timestamp, symbol)."""
    rng = np.random.default_rng(seed)
    start = int(time.time() * 1000) - n_bars * timeframe_ms
    frames = []
    for i, symbol in enumerate(symbols):
        base = 100.0 * (10 ** (len(symbols) - i))
        closes = base * np.exp(np.cumsum(rng.normal(0.0, 0.004, n_bars)))
        opens = np.concatenate([[base], closes[:-1]])
        spread = np.abs(rng.normal(0.0, 0.002, n_bars)) * closes
        frames.append(pd.DataFrame({
            "timestamp": start + np.arange(n_bars) * timeframe_ms,
            "symbol": symbol,
            "open": opens,
            "high": np.maximum(opens, closes) + spread,
            "low": np.minimum(opens, closes) - spread,
            "close": closes,
        }))
    return pd.concat(frames, ignore_index=True)


def moving_average_decisions(ctx: DecisionContext) -> List[Decision]:
    """Go long on a fast/slow SMA cross up, exit on the cross down."""
    decisions: List[Decision] = []
    held = {p.symbol for p in ctx.positions if p.side == "long"}
    for symbol, closes in ctx.history.items():
        if len(closes) < SLOW_WINDOW:
            continue
        fast = float(np.mean(closes[-FAST_WINDOW:]))
        slow = float(np.mean(closes[-SLOW_WINDOW:]))
        price = closes[-1]
        if fast > slow and symbol not in held:
            decisions.append(Decision(
                action="open_long", symbol=symbol,
                stop_loss=price * 0.98, take_profit=price * 1.04,
                reasoning=f"sma{FAST_WINDOW} {fast:.2f} > sma{SLOW_WINDOW} {slow:.2f}",
            ))
        elif fast < slow and symbol in held:
            decisions.append(Decision(action="close_long", symbol=symbol, reasoning="sma cross down"))
    return decisions


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    settings = load_settings()
    logging.info(f"Symbols: {settings.symbols}, run_id: {settings.runner.run_id}")

    prom_port = int(os.getenv("PROMETHEUS_PORT", "8000"))
    if prom_port:
        try:
            start_http_server(prom_port)
            logging.info(f"Prometheus metrics server started on :{prom_port}")
        except OSError as e:
            logging.warning(f"Failed to start Prometheus server on :{prom_port}: {e}")

    account = Account.from_config(settings.ledger, account_id=settings.runner.run_id)
    bars = synthetic_bars(settings.symbols, n_bars=int(os.getenv("DEMO_BARS", "300")))
    runner = BacktestRunner(account, bars, decide=moving_average_decisions, config=settings.runner).run()

    final = runner.equity_curve[-1] if runner.equity_curve else None
    logging.info(
        "Run %s finished: bars=%d trades=%d rejections=%d liquidated=%s equity=%.2f max_dd=%.2f%%",
        settings.runner.run_id,
        runner.bar_index,
        len(runner.trades),
        len(runner.rejections),
        runner.liquidated,
        final.equity if final else account.cash,
        100.0 * max((r.drawdown for r in runner.equity_curve), default=0.0),
    )
    runner.write_parquet(os.getenv("DATA_DIR", "data"))


if __name__ == "__main__":
    main()
