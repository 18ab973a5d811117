"""Retry scheduler: re-attempts failed trades with exponential backoff."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Optional

from pydantic import BaseModel

from copytrade.config import RETRY_LOAD_LIMIT, RETRY_SWEEP_LIMIT
from copytrade.errors import RetryNotAllowed
from copytrade.execution.order_executor import OrderExecutor
from copytrade.models import ActivityType, RetryPolicy, TradeRecord, TradeStatus, utcnow
from copytrade.scheduling import JobScheduler
from copytrade.storage.repository import Repository, log_activity

logger = logging.getLogger(__name__)


class RetryJob(BaseModel):
    trade_id: str
    attempt: int
    next_retry_at: datetime


class RetryScheduler:
    """In-memory retry queue mirrored to ``TradeRecord.next_retry_at``.

    The attempt number is ``retry_count + 1``; once it would exceed the
    policy's max attempts the trade becomes PERMANENTLY_FAILED and is never
    scheduled again. A periodic sweep picks up FAILED trades whose retry
    time has passed but which this process is not tracking (e.g. after a
    restart).
    """

    def __init__(
        self,
        repository: Repository,
        executor: OrderExecutor,
        policy: Optional[RetryPolicy] = None,
    ) -> None:
        self._repo = repository
        self._executor = executor
        self.policy = policy or RetryPolicy()
        self._jobs: dict[str, RetryJob] = {}
        self._scheduler = JobScheduler("retry")
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True

        failed = await self._repo.list_retryable_trades(self.policy.max_attempts, RETRY_LOAD_LIMIT)
        for trade in failed:
            await self.schedule_retry(trade.id)

        self._scheduler.every(self.policy.sweep_interval, self.sweep, "sweep")
        logger.info("retry_scheduler_started", extra={"loaded": len(failed)})

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        self._scheduler.shutdown()
        self._jobs.clear()
        logger.info("retry_scheduler_stopped")

    async def schedule_retry(self, trade_id: str) -> bool:
        """Arm a retry for a FAILED trade. Returns False if nothing was scheduled."""
        if not self._running:
            logger.warning("retry_scheduler_not_running", extra={"trade_id": trade_id})
            return False

        trade = await self._repo.get_trade(trade_id)
        if trade is None:
            logger.warning("retry_trade_not_found", extra={"trade_id": trade_id})
            return False
        if trade.status != TradeStatus.FAILED:
            logger.debug("retry_trade_not_failed", extra={"trade_id": trade_id, "status": trade.status.value})
            return False

        attempt = trade.retry_count + 1
        if attempt > self.policy.max_attempts:
            await self._mark_permanently_failed(trade)
            return False

        await self._arm(trade_id, attempt)
        return True

    def cancel_retry(self, trade_id: str) -> bool:
        job = self._jobs.pop(trade_id, None)
        self._scheduler.cancel(self._job_id(trade_id))
        if job is not None:
            logger.info("retry_cancelled", extra={"trade_id": trade_id})
        return job is not None

    def status(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "pending": len(self._jobs),
            "jobs": [job.model_dump(mode="json") for job in self._jobs.values()],
            "max_attempts": self.policy.max_attempts,
        }

    async def sweep(self) -> None:
        """Re-arm FAILED trades whose retry time passed and that are not queued."""
        if not self._running:
            return
        now = utcnow()
        failed = await self._repo.list_trades(status=TradeStatus.FAILED)
        stale = [
            t for t in failed
            if t.id not in self._jobs and t.next_retry_at is not None and t.next_retry_at < now
        ]
        stale.sort(key=lambda t: t.next_retry_at)
        for trade in stale[:RETRY_SWEEP_LIMIT]:
            if not self._running:
                return
            logger.info("retry_sweep_rescheduling", extra={"trade_id": trade.id})
            await self.schedule_retry(trade.id)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    @staticmethod
    def _job_id(trade_id: str) -> str:
        return f"retry:{trade_id}"

    async def _arm(self, trade_id: str, attempt: int) -> None:
        delay = self.policy.delay_for(attempt)
        next_retry_at = utcnow() + timedelta(seconds=delay)
        await self._repo.update_trade(trade_id, next_retry_at=next_retry_at)
        self._jobs[trade_id] = RetryJob(trade_id=trade_id, attempt=attempt, next_retry_at=next_retry_at)
        self._scheduler.after(delay, self._run_retry, self._job_id(trade_id), trade_id)
        logger.info(
            "retry_scheduled",
            extra={"trade_id": trade_id, "attempt": attempt, "delay": delay},
        )

    async def _run_retry(self, trade_id: str) -> None:
        job = self._jobs.pop(trade_id, None)
        self._scheduler.cancel(self._job_id(trade_id))
        if job is None or not self._running:
            return

        logger.info("retry_executing", extra={"trade_id": trade_id, "attempt": job.attempt})
        try:
            result = await self._executor.retry_trade(trade_id)
        except RetryNotAllowed as exc:
            logger.warning("retry_not_allowed", extra={"trade_id": trade_id, "error": exc.message})
            trade = await self._repo.get_trade(trade_id)
            if trade is not None and trade.status == TradeStatus.FAILED:
                await self._mark_permanently_failed(trade)
            return
        except Exception as exc:
            logger.error("retry_exception", extra={"trade_id": trade_id, "error": str(exc)}, exc_info=True)
            if self._running:
                await self._after_failure(trade_id, job)
            return

        if not self._running:
            return

        if result.success:
            logger.info("retry_succeeded", extra={"trade_id": trade_id, "attempt": job.attempt})
            await log_activity(
                self._repo,
                ActivityType.INFO,
                f"Trade retry successful on attempt {job.attempt}",
                trade_id=trade_id,
                attempt=job.attempt,
                executed_amount=result.executed_amount,
            )
            return

        logger.warning("retry_failed", extra={"trade_id": trade_id, "error": result.error})
        await self._after_failure(trade_id, job)

    async def _after_failure(self, trade_id: str, job: RetryJob) -> None:
        trade = await self._repo.get_trade(trade_id)
        if trade is None or trade.status != TradeStatus.FAILED:
            return
        # A thrown attempt may not have bumped retry_count; job.attempt still bounds it.
        next_attempt = max(trade.retry_count + 1, job.attempt + 1)
        if next_attempt > self.policy.max_attempts:
            await self._mark_permanently_failed(trade)
        else:
            await self._arm(trade_id, next_attempt)

    async def _mark_permanently_failed(self, trade: TradeRecord) -> None:
        self._jobs.pop(trade.id, None)
        self._scheduler.cancel(self._job_id(trade.id))
        await self._repo.update_trade(
            trade.id,
            status=TradeStatus.PERMANENTLY_FAILED,
            failure_reason="Max retry attempts exceeded",
            next_retry_at=None,
        )
        await log_activity(
            self._repo,
            ActivityType.ERROR,
            "Trade permanently failed after max retries",
            trader_id=trade.trader_id,
            trade_id=trade.id,
            max_attempts=self.policy.max_attempts,
            last_error=trade.failure_reason,
        )
        logger.error("trade_permanently_failed", extra={"trade_id": trade.id})
