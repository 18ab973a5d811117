from copytrade.monitoring.position_monitor import PositionMonitor, diff_snapshots

__all__ = ["PositionMonitor", "diff_snapshots"]
