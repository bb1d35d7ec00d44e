"""
Enrollment lifecycle: starting, advancing, stopping and healing enrollments.
"""
from datetime import datetime, timedelta
from typing import Optional

from collections_engine.core.config import Settings, get_settings
from collections_engine.core.exceptions import (
    AlreadyEnrolledError,
    DebtorNotFoundError,
    EnrollmentNotFoundError,
    RetryNotAllowedError,
    WorkflowHasNoStepsError,
    WorkflowNotFoundError,
)
from collections_engine.core.logging import get_logger, log_business_event
from collections_engine.database.repository import WorkflowStore
from collections_engine.models.workflow import (
    Enrollment,
    EnrollmentStatus,
    EnrollmentTimeline,
    Execution,
    ExecutionStatus,
    OPEN_EXECUTION_STATUSES,
    WorkflowStep,
)
from collections_engine.services.webhook_notifier import WebhookNotifier
from collections_engine.utils.clock import utcnow

logger = get_logger(__name__)


def step_delay(step: WorkflowStep) -> timedelta:
    return timedelta(days=step.delay_days or 0, hours=step.delay_hours or 0)


class EnrollmentService:
    """Owns every state change of an enrollment."""

    def __init__(
        self,
        store: WorkflowStore,
        settings: Optional[Settings] = None,
        notifier: Optional[WebhookNotifier] = None,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self.notifier = notifier

    async def start_enrollment(
        self, debtor_id: str, workflow_id: str, now: Optional[datetime] = None
    ) -> Enrollment:
        """
        Enroll a debtor and schedule the first step immediately.

        The first step ignores its own delay.

        Raises:
            AlreadyEnrolledError: Debtor already has an active enrollment
            WorkflowNotFoundError: Unknown or inactive workflow
            DebtorNotFoundError: Unknown debtor
            WorkflowHasNoStepsError: Workflow has no first step
        """
        now = now or utcnow()

        existing = await self.store.get_active_enrollment(debtor_id)
        if existing:
            raise AlreadyEnrolledError(debtor_id, enrollment_id=existing.id)

        workflow = await self.store.get_workflow(workflow_id)
        if workflow is None or not workflow.is_active:
            raise WorkflowNotFoundError(workflow_id)

        debtor = await self.store.get_debtor(debtor_id)
        if debtor is None:
            raise DebtorNotFoundError(debtor_id)

        steps = await self.store.get_workflow_steps(workflow_id)
        if not steps:
            raise WorkflowHasNoStepsError(workflow_id)
        first_step = steps[0]

        enrollment = await self.store.create_enrollment(debtor_id, workflow_id, now)
        await self.store.create_execution(
            enrollment_id=enrollment.id,
            step_number=first_step.step_number,
            workflow_step_id=first_step.id,
            scheduled_at=now,
        )

        log_business_event(
            "enrollment_started",
            enrollment_id=enrollment.id,
            debtor_id=debtor_id,
            workflow_id=workflow_id,
            tenant_id=workflow.tenant_id,
        )
        return enrollment

    async def stop_enrollment(
        self, debtor_id: str, reason: str, now: Optional[datetime] = None
    ) -> Optional[Enrollment]:
        """
        Stop the debtor's active enrollment and skip its open executions.

        Returns:
            The stopped enrollment, or None when nothing was active
        """
        now = now or utcnow()

        enrollment = await self.store.get_active_enrollment(debtor_id)
        if enrollment is None:
            logger.info("No active enrollment to stop", debtor_id=debtor_id)
            return None

        stopped = await self.store.update_enrollment(
            enrollment.id,
            {
                "status": EnrollmentStatus.STOPPED,
                "completed_at": now,
                "next_action_at": None,
                "status_reason": reason,
            },
            expected_status=EnrollmentStatus.ACTIVE.value,
        )
        if not stopped:
            return None

        skipped = await self.store.skip_open_executions(enrollment.id, reason, now)

        log_business_event(
            "enrollment_stopped",
            enrollment_id=enrollment.id,
            debtor_id=debtor_id,
            reason=reason,
            skipped_executions=skipped,
        )
        return await self.store.get_enrollment(enrollment.id)

    async def advance_after_execution(
        self, enrollment_id: str, completed_step_number: int, executed_at: datetime
    ) -> Optional[Execution]:
        """
        Move an enrollment past a finished step.

        Schedules the following step relative to ``executed_at``, or
        completes the enrollment when there is none.

        Returns:
            The newly scheduled execution, if any
        """
        enrollment = await self.store.get_enrollment(enrollment_id)
        if enrollment is None or enrollment.status != EnrollmentStatus.ACTIVE:
            return None

        next_step = await self.store.get_workflow_step(
            enrollment.workflow_id, completed_step_number + 1
        )

        if next_step is None:
            await self._complete(enrollment, completed_step_number, executed_at)
            return None

        scheduled_at = executed_at + step_delay(next_step)
        updated = await self.store.update_enrollment(
            enrollment_id,
            {"current_step_number": completed_step_number, "next_action_at": scheduled_at},
            expected_status=EnrollmentStatus.ACTIVE.value,
        )
        if not updated:
            return None

        execution = await self.store.create_execution(
            enrollment_id=enrollment_id,
            step_number=next_step.step_number,
            workflow_step_id=next_step.id,
            scheduled_at=scheduled_at,
        )
        logger.info(
            "Next step scheduled",
            enrollment_id=enrollment_id,
            step_number=next_step.step_number,
            scheduled_at=scheduled_at.isoformat(),
        )
        return execution

    async def _complete(
        self, enrollment: Enrollment, completed_step_number: int, completed_at: datetime
    ) -> None:
        updated = await self.store.update_enrollment(
            enrollment.id,
            {
                "current_step_number": completed_step_number,
                "status": EnrollmentStatus.COMPLETED,
                "completed_at": completed_at,
                "next_action_at": None,
            },
            expected_status=EnrollmentStatus.ACTIVE.value,
        )
        if not updated:
            return

        log_business_event(
            "enrollment_completed",
            enrollment_id=enrollment.id,
            debtor_id=enrollment.debtor_id,
            workflow_id=enrollment.workflow_id,
        )

        if self.notifier:
            workflow = await self.store.get_workflow(enrollment.workflow_id)
            if workflow:
                await self.notifier.notify(workflow.tenant_id, "campaign.completed", {
                    "debtor_id": enrollment.debtor_id,
                    "workflow_id": workflow.id,
                    "workflow_name": workflow.name,
                    "final_status": EnrollmentStatus.COMPLETED.value,
                    "completed_at": completed_at.isoformat(),
                })

    async def force_complete(self, enrollment_id: str, note: str, now: datetime) -> bool:
        """Complete an enrollment that can no longer make progress."""
        updated = await self.store.update_enrollment(
            enrollment_id,
            {
                "status": EnrollmentStatus.COMPLETED,
                "completed_at": now,
                "next_action_at": None,
                "status_reason": note,
            },
            expected_status=EnrollmentStatus.ACTIVE.value,
        )
        if updated:
            logger.warning("Enrollment force-completed", enrollment_id=enrollment_id, note=note)
        return updated

    async def restart_from_first_step(
        self, enrollment_id: str, note: str, now: datetime
    ) -> Optional[Execution]:
        """Reset an enrollment to step 0 and reschedule its first step at ``now``."""
        enrollment = await self.store.get_enrollment(enrollment_id)
        if enrollment is None or enrollment.status != EnrollmentStatus.ACTIVE:
            return None

        steps = await self.store.get_workflow_steps(enrollment.workflow_id)
        if not steps:
            await self.force_complete(enrollment_id, note, now)
            return None
        first_step = steps[0]

        updated = await self.store.update_enrollment(
            enrollment_id,
            {"current_step_number": 0, "next_action_at": now, "status_reason": note},
            expected_status=EnrollmentStatus.ACTIVE.value,
        )
        if not updated:
            return None

        logger.warning("Enrollment restarted from first step", enrollment_id=enrollment_id, note=note)
        return await self.store.create_execution(
            enrollment_id=enrollment_id,
            step_number=first_step.step_number,
            workflow_step_id=first_step.id,
            scheduled_at=now,
        )

    async def schedule_attempt(
        self,
        enrollment_id: str,
        step_number: int,
        workflow_step_id: Optional[str],
        scheduled_at: datetime,
        attempt: int,
    ) -> Optional[Execution]:
        """Schedule another attempt at the same step."""
        updated = await self.store.update_enrollment(
            enrollment_id,
            {"next_action_at": scheduled_at},
            expected_status=EnrollmentStatus.ACTIVE.value,
        )
        if not updated:
            return None

        return await self.store.create_execution(
            enrollment_id=enrollment_id,
            step_number=step_number,
            workflow_step_id=workflow_step_id,
            scheduled_at=scheduled_at,
            attempt=attempt,
        )

    async def mark_stalled(self, enrollment_id: str) -> None:
        """Leave the enrollment active without a next action (awaits manual retry)."""
        await self.store.update_enrollment(
            enrollment_id,
            {"next_action_at": None},
            expected_status=EnrollmentStatus.ACTIVE.value,
        )

    async def retry_failed_step(
        self, enrollment_id: str, now: Optional[datetime] = None
    ) -> Execution:
        """
        Manually retry the most recent failed step.

        Raises:
            EnrollmentNotFoundError: Unknown enrollment
            RetryNotAllowedError: Enrollment is not active, already has an
                open execution, or its latest execution did not fail
        """
        now = now or utcnow()

        enrollment = await self.store.get_enrollment(enrollment_id)
        if enrollment is None:
            raise EnrollmentNotFoundError(enrollment_id)
        if enrollment.status != EnrollmentStatus.ACTIVE:
            raise RetryNotAllowedError(enrollment_id, "enrollment is not active")

        executions = await self.store.list_executions(enrollment_id)
        if any(e.status.value in OPEN_EXECUTION_STATUSES for e in executions):
            raise RetryNotAllowedError(enrollment_id, "an execution is already scheduled")

        latest = executions[-1] if executions else None
        if latest is None or latest.status != ExecutionStatus.FAILED:
            raise RetryNotAllowedError(enrollment_id, "latest execution has not failed")

        execution = await self.schedule_attempt(
            enrollment_id,
            latest.step_number,
            latest.workflow_step_id,
            now,
            attempt=latest.attempt + 1,
        )
        if execution is None:
            raise RetryNotAllowedError(enrollment_id, "enrollment is not active")

        log_business_event(
            "execution_retry_requested",
            enrollment_id=enrollment_id,
            execution_id=execution.id,
            step_number=execution.step_number,
            attempt=execution.attempt,
        )
        return execution

    async def get_timeline(self, enrollment_id: str) -> EnrollmentTimeline:
        enrollment = await self.store.get_enrollment(enrollment_id)
        if enrollment is None:
            raise EnrollmentNotFoundError(enrollment_id)
        executions = await self.store.list_executions(enrollment_id)
        return EnrollmentTimeline(enrollment=enrollment, executions=executions)
