"""Risk-trigger scanning over open positions."""

from .scanner import check_liquidation, check_risk_events_ohlc, check_stop_loss_take_profit

__all__ = ["check_liquidation", "check_risk_events_ohlc", "check_stop_loss_take_profit"]
