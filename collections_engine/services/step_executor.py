"""
Step executor: runs one claimed execution to a terminal status.

    pending -> executing -> completed | failed | skipped

The transition out of executing is always a conditional write, so a stop
that lands while a dispatch is in flight wins and the enrollment is not
advanced.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional

from collections_engine.core.config import Settings, get_settings
from collections_engine.core.logging import correlation_context, get_logger, log_business_event
from collections_engine.database.repository import WorkflowStore
from collections_engine.models.workflow import (
    Enrollment,
    EnrollmentStatus,
    Execution,
    ExecutionStatus,
    HALTING_DEBTOR_STATUSES,
    StepType,
    WorkflowStep,
)
from collections_engine.services.channel_dispatchers import ChannelDispatcher, DispatchContext
from collections_engine.services.enrollment_service import EnrollmentService
from collections_engine.utils.plan_gate import get_upgrade_message, is_step_allowed, restriction_reason

logger = get_logger(__name__)


@dataclass
class StepResult:
    """Outcome of one execution."""
    outcome: ExecutionStatus
    error: Optional[str] = None
    # Whether the error belongs in the batch error list
    reported: bool = False
    # A follow-up execution was scheduled that may already be due
    follow_up_due: bool = False


def retry_delay(attempt: int, base_minutes: int, max_minutes: int) -> timedelta:
    """Exponential backoff for the attempt that just failed (1-based)."""
    minutes = min(base_minutes * 2 ** (attempt - 1), max_minutes)
    return timedelta(minutes=minutes)


class StepExecutor:
    """Executes claimed workflow steps."""

    def __init__(
        self,
        store: WorkflowStore,
        enrollments: EnrollmentService,
        dispatchers: Dict[StepType, ChannelDispatcher],
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.enrollments = enrollments
        self.dispatchers = dispatchers
        self.settings = settings or get_settings()

    async def execute(self, execution: Execution, now: datetime) -> StepResult:
        """
        Run a claimed execution.

        Args:
            execution: Execution already moved to executing by the scheduler
            now: Batch time used for every timestamp written

        Returns:
            StepResult describing the terminal status
        """
        with correlation_context(enrollment_id=execution.enrollment_id, execution_id=execution.id):
            return await self._execute(execution, now)

    async def _execute(self, execution: Execution, now: datetime) -> StepResult:
        enrollment = await self.store.get_enrollment(execution.enrollment_id)
        if enrollment is None or enrollment.status != EnrollmentStatus.ACTIVE:
            return await self._skip(execution, now, "Workflow not active")

        debtor = await self.store.get_debtor(enrollment.debtor_id)
        if debtor is None:
            return await self._fail(
                execution, enrollment, now, "Debtor not found", retryable=False
            )

        if debtor.status in HALTING_DEBTOR_STATUSES:
            reason = f"Debtor marked as {debtor.status}"
            # Stopping skips every open execution, this one included
            await self.enrollments.stop_enrollment(debtor.id, reason, now)
            log_business_event(
                "enrollment_halted",
                enrollment_id=enrollment.id,
                debtor_id=debtor.id,
                debtor_status=debtor.status,
            )
            return StepResult(outcome=ExecutionStatus.SKIPPED, error=reason)

        workflow = await self.store.get_workflow(enrollment.workflow_id)
        step = None
        if workflow is not None:
            step = await self.store.get_workflow_step(workflow.id, execution.step_number)
        if step is None:
            return await self._heal_missing_step(execution, enrollment, now)

        tenant = await self.store.get_tenant_settings(workflow.tenant_id)

        if not is_step_allowed(tenant.plan, step.step_type):
            reason = restriction_reason(tenant.plan, step.step_type)
            if not await self._mark_skipped(execution, now, reason):
                return StepResult(outcome=ExecutionStatus.SKIPPED, error="Workflow not active")

            logger.info(
                "Step skipped by plan",
                step_type=step.step_type.value,
                plan=tenant.plan.value,
                upgrade_hint=get_upgrade_message(tenant.plan, step.step_type),
            )
            follow_up = await self.enrollments.advance_after_execution(
                enrollment.id, step.step_number, now
            )
            return StepResult(
                outcome=ExecutionStatus.SKIPPED,
                error=reason,
                follow_up_due=follow_up is not None and follow_up.scheduled_at <= now,
            )

        template = None
        if step.template_id:
            template = await self.store.get_template(step.template_id)

        dispatcher = self.dispatchers[step.step_type]
        channel_result = await dispatcher.send(
            debtor,
            template,
            tenant,
            DispatchContext(
                workflow_name=workflow.name,
                step_number=step.step_number,
                execution_id=execution.id,
                now=now,
            ),
        )

        if not channel_result.success:
            return await self._fail(
                execution,
                enrollment,
                now,
                channel_result.error or "Dispatch failed",
                retryable=channel_result.retryable,
                step=step,
                communication_record_id=channel_result.communication_record_id,
            )

        completed = await self.store.update_execution(
            execution.id,
            {
                "status": ExecutionStatus.COMPLETED,
                "executed_at": now,
                "error_message": None,
                "communication_record_id": channel_result.communication_record_id,
            },
            expected_status=ExecutionStatus.EXECUTING.value,
        )
        if not completed:
            # Stopped while the dispatch was in flight
            logger.info("Execution finished after enrollment stopped", step_number=step.step_number)
            return StepResult(outcome=ExecutionStatus.SKIPPED, error="Workflow not active")

        await self.enrollments.advance_after_execution(enrollment.id, step.step_number, now)

        log_business_event(
            "execution_completed",
            enrollment_id=enrollment.id,
            execution_id=execution.id,
            step_number=step.step_number,
            step_type=step.step_type.value,
        )
        return StepResult(outcome=ExecutionStatus.COMPLETED)

    async def _mark_skipped(self, execution: Execution, now: datetime, reason: str) -> bool:
        return await self.store.update_execution(
            execution.id,
            {"status": ExecutionStatus.SKIPPED, "executed_at": now, "error_message": reason},
            expected_status=ExecutionStatus.EXECUTING.value,
        )

    async def _skip(self, execution: Execution, now: datetime, reason: str) -> StepResult:
        if not await self._mark_skipped(execution, now, reason):
            return StepResult(outcome=ExecutionStatus.SKIPPED, error="Execution no longer executing")
        logger.info("Execution skipped", reason=reason)
        return StepResult(outcome=ExecutionStatus.SKIPPED, error=reason)

    async def _fail(
        self,
        execution: Execution,
        enrollment: Enrollment,
        now: datetime,
        error: str,
        retryable: bool,
        step: Optional[WorkflowStep] = None,
        communication_record_id: Optional[str] = None,
    ) -> StepResult:
        failed = await self.store.update_execution(
            execution.id,
            {
                "status": ExecutionStatus.FAILED,
                "executed_at": now,
                "error_message": error,
                "communication_record_id": communication_record_id,
            },
            expected_status=ExecutionStatus.EXECUTING.value,
        )
        if not failed:
            return StepResult(outcome=ExecutionStatus.SKIPPED, error="Workflow not active")

        await self.apply_retry_policy(execution, enrollment.id, now, retryable, step)

        logger.warning(
            "Execution failed",
            step_number=execution.step_number,
            attempt=execution.attempt,
            retryable=retryable,
            error=error,
        )
        return StepResult(outcome=ExecutionStatus.FAILED, error=error, reported=True)

    async def apply_retry_policy(
        self,
        execution: Execution,
        enrollment_id: str,
        now: datetime,
        retryable: bool,
        step: Optional[WorkflowStep] = None,
    ) -> Optional[Execution]:
        """Schedule another attempt, or leave the enrollment waiting for a manual retry."""
        if retryable and execution.attempt < self.settings.execution_max_attempts:
            delay = retry_delay(
                execution.attempt,
                self.settings.retry_base_delay_minutes,
                self.settings.retry_max_delay_minutes,
            )
            retry = await self.enrollments.schedule_attempt(
                enrollment_id,
                execution.step_number,
                step.id if step else execution.workflow_step_id,
                now + delay,
                attempt=execution.attempt + 1,
            )
            if retry is not None:
                logger.info(
                    "Retry scheduled",
                    step_number=execution.step_number,
                    attempt=retry.attempt,
                    scheduled_at=retry.scheduled_at.isoformat(),
                )
                return retry

        await self.enrollments.mark_stalled(enrollment_id)
        return None

    async def recover_stale(self, execution: Execution, now: datetime, stale_minutes: int) -> bool:
        """Fail an execution abandoned in executing and feed it through the retry policy."""
        with correlation_context(enrollment_id=execution.enrollment_id, execution_id=execution.id):
            error = f"Execution abandoned after {stale_minutes} minutes in executing"
            failed = await self.store.update_execution(
                execution.id,
                {"status": ExecutionStatus.FAILED, "executed_at": now, "error_message": error},
                expected_status=ExecutionStatus.EXECUTING.value,
            )
            if not failed:
                return False

            logger.warning("Stale execution failed", error=error)
            enrollment = await self.store.get_enrollment(execution.enrollment_id)
            if enrollment is not None and enrollment.status == EnrollmentStatus.ACTIVE:
                await self.apply_retry_policy(execution, enrollment.id, now, retryable=True)
            return True

    async def _heal_missing_step(
        self, execution: Execution, enrollment: Enrollment, now: datetime
    ) -> StepResult:
        steps = await self.store.get_workflow_steps(enrollment.workflow_id)

        if not steps:
            note = (
                f"Workflow has no steps; enrollment force-completed "
                f"at step {execution.step_number}"
            )
            result = await self._skip(execution, now, note)
            await self.enrollments.force_complete(enrollment.id, note, now)
        else:
            note = (
                f"Step {execution.step_number} not found; "
                f"restarted from step {steps[0].step_number}"
            )
            result = await self._skip(execution, now, note)
            await self.enrollments.restart_from_first_step(enrollment.id, note, now)

        log_business_event("enrollment_self_healed", enrollment_id=enrollment.id, note=note)
        result.reported = False
        return result
