"""
Scheduler/poller: finds due executions, claims them and runs them.

A poll is a bounded batch job. Overlapping polls (several workers, or a
manual trigger during a timer tick) are safe because each execution is
claimed with a conditional update before anything is sent.
"""
import asyncio
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from collections_engine.core.config import Settings, get_settings
from collections_engine.core.logging import get_logger, log_business_event, performance_timing
from collections_engine.database.repository import WorkflowStore
from collections_engine.models.workflow import Execution, ExecutionStatus
from collections_engine.services.step_executor import StepExecutor
from collections_engine.utils.clock import to_naive_utc, utcnow

logger = get_logger(__name__)

# Plan skips can make the following step due immediately; a poll picks
# those up in further passes, up to this many.
MAX_PASSES_PER_POLL = 10


@dataclass
class PollResult:
    executed: int = 0
    skipped: int = 0
    failed: int = 0
    deferred: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class WorkflowScheduler:
    """Polls the execution ledger and drives due executions."""

    def __init__(
        self,
        store: WorkflowStore,
        executor: StepExecutor,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.executor = executor
        self.settings = settings or get_settings()
        self._task: Optional[asyncio.Task] = None

    async def poll(
        self, now: Optional[datetime] = None, batch_limit: Optional[int] = None
    ) -> PollResult:
        """
        Run one batch of due executions.

        Args:
            now: Batch time; defaults to the current UTC time
            batch_limit: Maximum executions to select, capped by settings

        Returns:
            PollResult with per-outcome counts and reported errors
        """
        now = to_naive_utc(now) if now else utcnow()
        limit = min(batch_limit or self.settings.poll_batch_size, self.settings.poll_max_batch_size)
        result = PollResult()

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.poll_deadline_seconds

        with performance_timing("workflow_poll", batch_limit=limit):
            await self._recover_stale(now)

            remaining = limit
            for _ in range(MAX_PASSES_PER_POLL):
                due = await self.store.list_due_executions(now, remaining)
                if not due:
                    break

                follow_up_due = await self._run_batch(due, now, deadline, result)
                remaining -= len(due)
                if not follow_up_due or remaining <= 0 or loop.time() >= deadline:
                    break

        log_business_event(
            "workflow_poll_completed",
            executed=result.executed,
            skipped=result.skipped,
            failed=result.failed,
            deferred=result.deferred,
            error_count=len(result.errors),
        )
        return result

    async def _run_batch(
        self,
        due: List[Execution],
        now: datetime,
        deadline: float,
        result: PollResult,
    ) -> bool:
        loop = asyncio.get_running_loop()
        semaphore = asyncio.Semaphore(self.settings.poll_concurrency)

        async def run_one(execution: Execution) -> bool:
            async with semaphore:
                if loop.time() >= deadline:
                    result.deferred += 1
                    return False

                try:
                    claimed_ok = await self.store.claim_execution(execution.id, now)
                except Exception as e:
                    # Left pending for the next poll
                    logger.error("Failed to claim execution", execution_id=execution.id, error=str(e))
                    result.errors.append(f"Execution {execution.id}: {str(e)}")
                    return False
                if not claimed_ok:
                    # Another worker owns it
                    return False

                claimed = execution.model_copy(
                    update={"status": ExecutionStatus.EXECUTING, "claimed_at": now}
                )
                try:
                    step_result = await self.executor.execute(claimed, now)
                except Exception as e:
                    logger.error(
                        "Unexpected error executing step",
                        execution_id=execution.id,
                        error=str(e),
                        exc_info=True
                    )
                    await self._fail_unexpected(claimed, now, str(e))
                    result.failed += 1
                    result.errors.append(f"Execution {execution.id}: {str(e)}")
                    return False

                if step_result.outcome == ExecutionStatus.COMPLETED:
                    result.executed += 1
                elif step_result.outcome == ExecutionStatus.FAILED:
                    result.failed += 1
                else:
                    result.skipped += 1

                if step_result.reported and step_result.error:
                    result.errors.append(f"Execution {execution.id}: {step_result.error}")

                return step_result.follow_up_due

        outcomes = await asyncio.gather(
            *(run_one(execution) for execution in due), return_exceptions=True
        )
        for execution, outcome in zip(due, outcomes):
            if isinstance(outcome, Exception):
                logger.error("Execution task crashed", execution_id=execution.id, error=str(outcome))
                result.errors.append(f"Execution {execution.id}: {str(outcome)}")
        return any(outcome is True for outcome in outcomes)

    async def _fail_unexpected(self, execution: Execution, now: datetime, error: str) -> None:
        try:
            failed = await self.store.update_execution(
                execution.id,
                {"status": ExecutionStatus.FAILED, "executed_at": now, "error_message": error},
                expected_status=ExecutionStatus.EXECUTING.value,
            )
            if failed:
                await self.executor.apply_retry_policy(
                    execution, execution.enrollment_id, now, retryable=True
                )
        except Exception as e:
            logger.error("Failed to record execution failure", execution_id=execution.id, error=str(e))

    async def _recover_stale(self, now: datetime) -> None:
        stale_minutes = self.settings.stale_execution_minutes
        cutoff = now - timedelta(minutes=stale_minutes)
        try:
            stale = await self.store.list_stale_executions(cutoff)
        except Exception as e:
            logger.error("Failed to load stale executions", error=str(e))
            return

        for execution in stale:
            try:
                await self.executor.recover_stale(execution, now, stale_minutes)
            except Exception as e:
                logger.error("Failed to recover stale execution", execution_id=execution.id, error=str(e))

    # Background polling

    async def start(self) -> None:
        """Start polling on a background task."""
        if self._task and not self._task.done():
            logger.warning("Workflow scheduler already running")
            return

        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            "Workflow scheduler started",
            interval_seconds=self.settings.scheduler_interval_seconds
        )

    async def stop(self) -> None:
        """Stop the background polling task."""
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            logger.info("Workflow scheduler stopped")
        self._task = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run_loop(self) -> None:
        while True:
            try:
                await self.poll()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Workflow poll failed", error=str(e), exc_info=True)

            await asyncio.sleep(self.settings.scheduler_interval_seconds)
