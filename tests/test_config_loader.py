import pytest
from pydantic import ValidationError

from perpledger.config.loader import LedgerConfig, RunnerConfig, Settings, load_settings
from perpledger.ledger.account import Account


def _write(tmp_path, text: str) -> str:
    p = tmp_path / "config.yaml"
    p.write_text(text)
    return str(p)


def test_load_settings_reads_sections(tmp_path):
    path = _write(tmp_path, """
symbols: [BTCUSDT]
ledger:
  initial_balance: 2500
  fee_bps: 4
  slippage_bps: 1
runner:
  run_id: t1
  fill_policy: mid
  use_ohlc_triggers: true
""")
    s = load_settings(path)
    assert s.symbols == ["BTCUSDT"]
    assert s.ledger.initial_balance == 2_500.0
    assert s.ledger.max_positions == 20
    assert s.runner.fill_policy == "mid"
    assert s.runner.use_ohlc_triggers is True

    acc = Account.from_config(s.ledger, account_id=s.runner.run_id)
    assert acc.cash == 2_500.0
    assert acc.fee_bps == 4.0
    assert acc.max_notional_multiple == 50.0
    assert acc.account_id == "t1"


def test_env_var_selects_config(tmp_path, monkeypatch):
    path = _write(tmp_path, "symbols: [ETHUSDT]\n")
    monkeypatch.setenv("PERPLEDGER_CONFIG", path)
    s = load_settings()
    assert s.symbols == ["ETHUSDT"]
    assert s.ledger == LedgerConfig()
    assert s.runner == RunnerConfig()


@pytest.mark.parametrize(
    "section",
    [
        "ledger: {max_leverage: 150}",
        "ledger: {fee_bps: -1}",
        "ledger: {initial_balance: 0}",
        "runner: {fill_policy: next_open}",
        "runner: {decision_interval_bars: 0}",
        "symbols: []",
    ],
)
def test_invalid_config_rejected(tmp_path, section):
    with pytest.raises(ValidationError):
        load_settings(_write(tmp_path, section + "\n"))


def test_non_mapping_config_rejected(tmp_path):
    with pytest.raises(ValueError):
        load_settings(_write(tmp_path, "- just\n- a list\n"))


def test_defaults_match_account_limits():
    s = Settings()
    assert s.ledger.max_leverage == 100
    assert s.ledger.max_positions == 20
    assert s.ledger.max_notional_multiple == 50.0
