"""Execution layer for the copy-trading pipeline.

Every mirrored trade goes through sizing, a pre-trade risk gate and the
order executor; failed orders are handed to the retry scheduler.

Modules:
    position_sizer  -- Copy amount from allocation, proportion and slippage
    risk_gate       -- Ordered pre-trade checks against global/trader limits
    order_executor  -- Order placement, trade audit records, position ledger
    retry_scheduler -- Exponential-backoff retries for FAILED trades
"""

from copytrade.execution.order_executor import ExecuteParams, ExecutionResult, OrderExecutor
from copytrade.execution.position_sizer import PositionSizer, SizingResult
from copytrade.execution.retry_scheduler import RetryJob, RetryScheduler
from copytrade.execution.risk_gate import RiskCheckParams, RiskCheckResult, RiskGate, RiskMetrics

__all__ = [
    "ExecuteParams",
    "ExecutionResult",
    "OrderExecutor",
    "PositionSizer",
    "RetryJob",
    "RetryScheduler",
    "RiskCheckParams",
    "RiskCheckResult",
    "RiskGate",
    "RiskMetrics",
    "SizingResult",
]
