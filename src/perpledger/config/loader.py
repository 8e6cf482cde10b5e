"""
Configuration loader for perpledger.

What it does:
- Reads static settings from `config/config.yaml` (or the path in the
  `PERPLEDGER_CONFIG` environment variable).
- Validates account economics and risk limits (`LedgerConfig`) and backtest
  driver options (`RunnerConfig`) using Pydantic models.

Where it is used:
- `perpledger.main` builds an `Account` and a `BacktestRunner` from the
  resulting `Settings`.

Invalid values raise before any trade is attempted, so a misconfigured
account never starts trading.
"""

import os
from typing import List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

DEFAULT_CONFIG_PATH = "config/config.yaml"


class LedgerConfig(BaseModel):
    """Account economics and hard risk limits."""
    initial_balance: float = Field(10_000.0, gt=0)
    fee_bps: float = Field(5.0, ge=0)
    slippage_bps: float = Field(2.0, ge=0)
    max_leverage: int = Field(100, ge=1, le=100)
    max_positions: int = Field(20, ge=1)
    max_notional_multiple: float = Field(50.0, gt=0)


class RunnerConfig(BaseModel):
    """Backtest driver options."""
    run_id: str = "r1"
    market: str = "crypto"
    fill_policy: Literal["close", "mid", "bar_vwap"] = "close"
    use_ohlc_triggers: bool = False
    decision_interval_bars: int = Field(1, ge=1)
    btc_eth_leverage: int = Field(5, ge=1, le=100)
    altcoin_leverage: int = Field(5, ge=1, le=100)
    default_position_pct: float = Field(0.05, gt=0, le=1)
    trade_log_path: Optional[str] = None


class Settings(BaseModel):
    """Runtime settings assembled from YAML."""
    symbols: List[str] = Field(default_factory=lambda: ["BTCUSDT", "ETHUSDT"])
    ledger: LedgerConfig = Field(default_factory=LedgerConfig)
    runner: RunnerConfig = Field(default_factory=RunnerConfig)

    @field_validator("symbols")
    @classmethod
    def not_empty(cls, v):
        if not v:
            raise ValueError("At least one symbol must be configured")
        return v


def load_settings(path: Optional[str] = None) -> Settings:
    """Load YAML config and return validated Settings.

    Missing sections fall back to the model defaults; unknown keys inside
    a section are ignored by Pydantic.
    """
    path = path or os.getenv("PERPLEDGER_CONFIG", DEFAULT_CONFIG_PATH)
    with open(path, "r") as f:
        config = yaml.safe_load(f) or {}
    if not isinstance(config, dict):
        raise ValueError(f"Config file {path} must contain a mapping at the top level")
    return Settings(**config)
