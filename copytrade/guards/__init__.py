from copytrade.guards.drawdown_guard import DrawdownGuard, DrawdownLevel, DrawdownSnapshot
from copytrade.guards.sltp_guard import SLTPLevels, StopLossTakeProfitGuard, TriggerType, WatchedPosition

__all__ = [
    "DrawdownGuard",
    "DrawdownLevel",
    "DrawdownSnapshot",
    "SLTPLevels",
    "StopLossTakeProfitGuard",
    "TriggerType",
    "WatchedPosition",
]
