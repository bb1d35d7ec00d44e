"""
Tests for the workflow scheduler: claiming, progression, halting and recovery.
"""
import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from collections_engine.core.exceptions import DatabaseError, ExternalServiceError
from collections_engine.models.workflow import EnrollmentStatus, ExecutionStatus
from collections_engine.services.external import SenderClients, SimulatedSender
from collections_engine.services.scheduler import MAX_PASSES_PER_POLL, PollResult


class FailingEmailSender(SimulatedSender):
    """Email transport that always answers 503."""

    def __init__(self):
        super().__init__("sendgrid")
        self.calls = 0

    async def send_email(self, message):
        self.calls += 1
        raise ExternalServiceError("sendgrid", "HTTP 503: unavailable", status_code=503)


def two_step_workflow(seed, plan="enterprise", delay_days=3, delay_hours=0):
    seed.tenant(plan=plan)
    email_template = seed.template(channel="email")
    letter_template = seed.template(channel="physical")
    return seed.workflow([
        {"step_type": "email", "template_id": email_template},
        {
            "step_type": "physical",
            "template_id": letter_template,
            "delay_days": delay_days,
            "delay_hours": delay_hours,
        },
    ])


class TestPollResult:
    """Test cases for PollResult."""

    def test_to_dict(self):
        result = PollResult(executed=2, skipped=1, failed=0, deferred=3, errors=["x"])

        assert result.to_dict() == {
            "executed": 2,
            "skipped": 1,
            "failed": 0,
            "deferred": 3,
            "errors": ["x"],
        }


class TestClaiming:
    """Executions are dispatched at most once."""

    @pytest.mark.asyncio
    async def test_concurrent_polls_claim_each_execution_once(self, harness, seed, store, now):
        """Overlapping polls never send the same step twice."""
        workflow_id = two_step_workflow(seed)
        debtor_ids = [seed.debtor(email=f"debtor{i}@example.com") for i in range(5)]
        for debtor_id in debtor_ids:
            await harness.enrollments.start_enrollment(debtor_id, workflow_id, now=now)

        results = await asyncio.gather(*(harness.scheduler.poll(now=now) for _ in range(4)))

        assert sum(r.executed for r in results) == 5
        assert sum(r.failed for r in results) == 0
        assert len(harness.senders.email.sent) == 5
        recipients = sorted(m.to_email for m in harness.senders.email.sent)
        assert recipients == sorted(f"debtor{i}@example.com" for i in range(5))

        for debtor_id in debtor_ids:
            enrollment = await store.get_active_enrollment(debtor_id)
            executions = await store.list_executions(enrollment.id)
            assert [e.status for e in executions] == [
                ExecutionStatus.COMPLETED, ExecutionStatus.PENDING
            ]

    @pytest.mark.asyncio
    async def test_back_to_back_polls_do_not_resend(self, harness, seed, now):
        """A second poll at the same time finds nothing due."""
        workflow_id = two_step_workflow(seed)
        debtor_id = seed.debtor()
        await harness.enrollments.start_enrollment(debtor_id, workflow_id, now=now)

        first = await harness.scheduler.poll(now=now)
        second = await harness.scheduler.poll(now=now)

        assert first.executed == 1
        assert second.executed == 0
        assert second.skipped == 0
        assert len(harness.senders.email.sent) == 1

    @pytest.mark.asyncio
    async def test_claim_lost_to_other_worker_is_ignored(self, harness, seed, store, now):
        """An execution claimed elsewhere between selection and claim is left alone."""
        workflow_id = two_step_workflow(seed)
        debtor_id = seed.debtor()
        enrollment = await harness.enrollments.start_enrollment(debtor_id, workflow_id, now=now)
        execution = (await store.list_executions(enrollment.id))[0]

        assert await store.claim_execution(execution.id, now) is True

        result = await harness.scheduler.poll(now=now)

        assert result.executed == 0
        assert harness.senders.email.sent == []


class TestProgression:
    """Step progression, completion and plan skips."""

    @pytest.mark.asyncio
    async def test_next_step_delay_measured_from_execution_time(self, harness, seed, store, now):
        workflow_id = two_step_workflow(seed, delay_days=3, delay_hours=2)
        debtor_id = seed.debtor()
        enrollment = await harness.enrollments.start_enrollment(
            debtor_id, workflow_id, now=now - timedelta(hours=5)
        )

        await harness.scheduler.poll(now=now)

        executions = await store.list_executions(enrollment.id)
        assert executions[0].executed_at == now
        assert executions[1].step_number == 2
        assert executions[1].scheduled_at == now + timedelta(days=3, hours=2)

        refreshed = await store.get_enrollment(enrollment.id)
        assert refreshed.current_step_number == 1
        assert refreshed.next_action_at == now + timedelta(days=3, hours=2)

    @pytest.mark.asyncio
    async def test_step_not_run_before_due(self, harness, seed, now):
        workflow_id = two_step_workflow(seed, delay_days=3)
        debtor_id = seed.debtor()
        await harness.enrollments.start_enrollment(debtor_id, workflow_id, now=now)
        await harness.scheduler.poll(now=now)

        early = await harness.scheduler.poll(now=now + timedelta(days=2, hours=23))

        assert early.executed == 0
        assert harness.senders.physical.sent == []

    @pytest.mark.asyncio
    async def test_two_step_workflow_completes(self, harness, seed, store, now):
        workflow_id = two_step_workflow(seed, delay_days=1)
        debtor_id = seed.debtor()
        enrollment = await harness.enrollments.start_enrollment(debtor_id, workflow_id, now=now)

        await harness.scheduler.poll(now=now)
        result = await harness.scheduler.poll(now=now + timedelta(days=1))

        assert result.executed == 1
        refreshed = await store.get_enrollment(enrollment.id)
        assert refreshed.status == EnrollmentStatus.COMPLETED
        assert refreshed.completed_at == now + timedelta(days=1)
        assert refreshed.current_step_number == 2
        assert refreshed.next_action_at is None

        executions = await store.list_executions(enrollment.id)
        assert [e.status for e in executions] == [ExecutionStatus.COMPLETED] * 2
        assert all(e.communication_record_id for e in executions)
        assert len(harness.senders.physical.sent) == 1

    @pytest.mark.asyncio
    async def test_plan_skip_runs_following_step_in_same_poll(self, harness, seed, store, now):
        """A skipped SMS step on the free plan does not delay the email after it."""
        seed.tenant(plan="free")
        sms_template = seed.template(channel="sms")
        email_template = seed.template(channel="email")
        workflow_id = seed.workflow([
            {"step_type": "sms", "template_id": sms_template},
            {"step_type": "email", "template_id": email_template},
        ])
        debtor_id = seed.debtor()
        enrollment = await harness.enrollments.start_enrollment(debtor_id, workflow_id, now=now)

        result = await harness.scheduler.poll(now=now)

        assert result.skipped == 1
        assert result.executed == 1
        assert result.errors == []
        assert harness.senders.sms.sent == []
        assert len(harness.senders.email.sent) == 1

        executions = await store.list_executions(enrollment.id)
        assert executions[0].status == ExecutionStatus.SKIPPED
        assert executions[0].error_message == "sms step not available on free plan"
        assert executions[1].status == ExecutionStatus.COMPLETED

        refreshed = await store.get_enrollment(enrollment.id)
        assert refreshed.status == EnrollmentStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_wait_step_completes_without_sending(self, harness, seed, store, now):
        seed.tenant(plan="professional")
        email_template = seed.template(channel="email")
        workflow_id = seed.workflow([
            {"step_type": "wait"},
            {"step_type": "email", "template_id": email_template, "delay_days": 2},
        ])
        debtor_id = seed.debtor()
        enrollment = await harness.enrollments.start_enrollment(debtor_id, workflow_id, now=now)

        result = await harness.scheduler.poll(now=now)

        assert result.executed == 1
        executions = await store.list_executions(enrollment.id)
        assert executions[0].status == ExecutionStatus.COMPLETED
        assert executions[0].communication_record_id is None
        assert executions[1].scheduled_at == now + timedelta(days=2)

    @pytest.mark.asyncio
    async def test_batch_limit_bounds_work(self, harness, seed, now):
        workflow_id = two_step_workflow(seed)
        for i in range(3):
            debtor_id = seed.debtor(email=f"d{i}@example.com")
            await harness.enrollments.start_enrollment(debtor_id, workflow_id, now=now)

        first = await harness.scheduler.poll(now=now, batch_limit=2)
        second = await harness.scheduler.poll(now=now, batch_limit=2)

        assert first.executed == 2
        assert second.executed == 1

    def test_pass_limit_is_bounded(self):
        assert MAX_PASSES_PER_POLL >= 2


class TestHalting:
    """Debtor resolution ends the enrollment."""

    @pytest.mark.asyncio
    async def test_paid_debtor_is_halted_before_next_step(self, harness, seed, store, now):
        workflow_id = two_step_workflow(seed, delay_days=3)
        debtor_id = seed.debtor()
        enrollment = await harness.enrollments.start_enrollment(debtor_id, workflow_id, now=now)
        await harness.scheduler.poll(now=now)

        seed.set_debtor_status(debtor_id, "paid")
        result = await harness.scheduler.poll(now=now + timedelta(days=3))

        assert result.skipped == 1
        assert result.executed == 0
        assert result.errors == []
        assert harness.senders.physical.sent == []

        refreshed = await store.get_enrollment(enrollment.id)
        assert refreshed.status == EnrollmentStatus.STOPPED
        assert refreshed.status_reason == "Debtor marked as paid"

        executions = await store.list_executions(enrollment.id)
        assert executions[-1].status == ExecutionStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_stopped_enrollment_has_nothing_due(self, harness, seed, now):
        workflow_id = two_step_workflow(seed)
        debtor_id = seed.debtor()
        await harness.enrollments.start_enrollment(debtor_id, workflow_id, now=now)
        await harness.enrollments.stop_enrollment(debtor_id, "Stopped manually", now=now)

        result = await harness.scheduler.poll(now=now)

        assert result.executed == 0
        assert harness.senders.email.sent == []


class TestSelfHealing:
    """Configuration problems repair the enrollment instead of failing it."""

    @pytest.mark.asyncio
    async def test_workflow_without_steps_force_completes(self, harness, seed, store, now):
        workflow_id = two_step_workflow(seed)
        debtor_id = seed.debtor()
        enrollment = await harness.enrollments.start_enrollment(debtor_id, workflow_id, now=now)
        seed.delete_steps(workflow_id)

        result = await harness.scheduler.poll(now=now)

        assert result.skipped == 1
        assert result.failed == 0
        assert result.errors == []

        refreshed = await store.get_enrollment(enrollment.id)
        assert refreshed.status == EnrollmentStatus.COMPLETED
        assert refreshed.status_reason == (
            "Workflow has no steps; enrollment force-completed at step 1"
        )

    @pytest.mark.asyncio
    async def test_missing_step_restarts_from_first_step(self, harness, seed, store, now):
        workflow_id = two_step_workflow(seed, delay_days=1)
        debtor_id = seed.debtor()
        enrollment = await harness.enrollments.start_enrollment(debtor_id, workflow_id, now=now)
        await harness.scheduler.poll(now=now)
        seed.delete_steps(workflow_id, step_number=2)

        later = now + timedelta(days=1)
        result = await harness.scheduler.poll(now=later)

        assert result.skipped == 1
        assert result.errors == []

        refreshed = await store.get_enrollment(enrollment.id)
        assert refreshed.status == EnrollmentStatus.ACTIVE
        assert refreshed.current_step_number == 0
        assert refreshed.status_reason == "Step 2 not found; restarted from step 1"

        executions = await store.list_executions(enrollment.id)
        assert executions[-1].step_number == 1
        assert executions[-1].status == ExecutionStatus.PENDING
        assert executions[-1].scheduled_at == later


class TestFailures:
    """Failure reporting and the retry policy."""

    @pytest.mark.asyncio
    async def test_transport_failure_schedules_backoff_retries(self, make_harness, seed, store, now):
        sender = FailingEmailSender()
        harness = make_harness(senders=SenderClients(
            email=sender, sms=SimulatedSender("twilio"), physical=SimulatedSender("lob")
        ))
        workflow_id = two_step_workflow(seed)
        debtor_id = seed.debtor()
        enrollment = await harness.enrollments.start_enrollment(debtor_id, workflow_id, now=now)

        first = await harness.scheduler.poll(now=now)

        assert first.failed == 1
        assert len(first.errors) == 1
        assert first.errors[0].endswith("[sendgrid] HTTP 503: unavailable")

        executions = await store.list_executions(enrollment.id)
        assert executions[0].status == ExecutionStatus.FAILED
        assert executions[1].status == ExecutionStatus.PENDING
        assert executions[1].attempt == 2
        assert executions[1].scheduled_at == now + timedelta(minutes=15)

        await harness.scheduler.poll(now=now + timedelta(minutes=15))
        executions = await store.list_executions(enrollment.id)
        assert executions[2].attempt == 3
        assert executions[2].scheduled_at == now + timedelta(minutes=45)

        last = await harness.scheduler.poll(now=now + timedelta(minutes=45))
        assert last.failed == 1

        executions = await store.list_executions(enrollment.id)
        assert len(executions) == 3
        assert sender.calls == 3

        refreshed = await store.get_enrollment(enrollment.id)
        assert refreshed.status == EnrollmentStatus.ACTIVE
        assert refreshed.next_action_at is None

    @pytest.mark.asyncio
    async def test_single_attempt_setting_disables_retries(self, make_harness, seed, store, now):
        harness = make_harness(
            senders=SenderClients(
                email=FailingEmailSender(),
                sms=SimulatedSender("twilio"),
                physical=SimulatedSender("lob"),
            ),
            execution_max_attempts=1,
        )
        workflow_id = two_step_workflow(seed)
        enrollment = await harness.enrollments.start_enrollment(seed.debtor(), workflow_id, now=now)

        await harness.scheduler.poll(now=now)

        executions = await store.list_executions(enrollment.id)
        assert len(executions) == 1
        assert executions[0].status == ExecutionStatus.FAILED

    @pytest.mark.asyncio
    async def test_validation_failure_is_not_retried(self, harness, seed, store, now):
        workflow_id = two_step_workflow(seed)
        debtor_id = seed.debtor(email=None)
        enrollment = await harness.enrollments.start_enrollment(debtor_id, workflow_id, now=now)

        result = await harness.scheduler.poll(now=now)

        executions = await store.list_executions(enrollment.id)
        assert result.failed == 1
        assert result.errors == [f"Execution {executions[0].id}: Debtor has no email address"]
        assert len(executions) == 1
        assert executions[0].communication_record_id is None

    @pytest.mark.asyncio
    async def test_unexpected_error_is_isolated(self, harness, seed, store, now):
        """One execution blowing up is reported and does not abort the poll."""
        workflow_id = two_step_workflow(seed)
        enrollment = await harness.enrollments.start_enrollment(seed.debtor(), workflow_id, now=now)
        execution_id = (await store.list_executions(enrollment.id))[0].id
        harness.executor.execute = AsyncMock(side_effect=RuntimeError("boom"))

        result = await harness.scheduler.poll(now=now)

        assert result.failed == 1
        assert result.errors == [f"Execution {execution_id}: boom"]

        executions = await store.list_executions(enrollment.id)
        assert executions[0].status == ExecutionStatus.FAILED
        assert executions[0].error_message == "boom"
        assert executions[1].attempt == 2
        assert executions[1].status == ExecutionStatus.PENDING

    @pytest.mark.asyncio
    async def test_claim_error_is_isolated(self, harness, seed, store, now, monkeypatch):
        """A store error while claiming one execution leaves the rest of the batch running."""
        workflow_id = two_step_workflow(seed)
        enrollments = [
            await harness.enrollments.start_enrollment(
                seed.debtor(email=f"d{i}@example.com"), workflow_id, now=now
            )
            for i in range(3)
        ]
        broken_id = (await store.list_executions(enrollments[1].id))[0].id
        claim = store.claim_execution

        async def flaky_claim(execution_id, claimed_at):
            if execution_id == broken_id:
                raise DatabaseError("Failed to claim execution: database is locked")
            return await claim(execution_id, claimed_at)

        monkeypatch.setattr(store, "claim_execution", flaky_claim)

        result = await harness.scheduler.poll(now=now)

        assert result.executed == 2
        assert result.errors == [
            f"Execution {broken_id}: Failed to claim execution: database is locked"
        ]
        assert (await store.get_execution(broken_id)).status == ExecutionStatus.PENDING

        monkeypatch.setattr(store, "claim_execution", claim)
        retry = await harness.scheduler.poll(now=now)

        assert retry.executed == 1
        assert len(harness.senders.email.sent) == 3

    @pytest.mark.asyncio
    async def test_sent_bookkeeping_error_does_not_resend(self, harness, seed, store, now, monkeypatch):
        workflow_id = two_step_workflow(seed)
        enrollment = await harness.enrollments.start_enrollment(seed.debtor(), workflow_id, now=now)
        monkeypatch.setattr(
            store, "update_communication", AsyncMock(side_effect=DatabaseError("transient"))
        )

        first = await harness.scheduler.poll(now=now)
        second = await harness.scheduler.poll(now=now + timedelta(hours=1))

        assert first.executed == 1
        assert first.failed == 0
        assert second.executed == 0
        assert len(harness.senders.email.sent) == 1

        executions = await store.list_executions(enrollment.id)
        assert executions[0].status == ExecutionStatus.COMPLETED
        assert executions[1].step_number == 2
        assert executions[1].status == ExecutionStatus.PENDING

    @pytest.mark.asyncio
    async def test_deadline_defers_remaining_work(self, make_harness, seed, store, now):
        harness = make_harness(poll_deadline_seconds=0.000001)
        workflow_id = two_step_workflow(seed)
        for i in range(2):
            await harness.enrollments.start_enrollment(
                seed.debtor(email=f"d{i}@example.com"), workflow_id, now=now
            )

        result = await harness.scheduler.poll(now=now)

        assert result.deferred == 2
        assert result.executed == 0
        assert len(await store.list_due_executions(now, 10)) == 2

    @pytest.mark.asyncio
    async def test_stale_execution_is_recovered(self, harness, seed, store, now):
        workflow_id = two_step_workflow(seed)
        enrollment = await harness.enrollments.start_enrollment(
            seed.debtor(), workflow_id, now=now - timedelta(hours=2)
        )
        execution = (await store.list_executions(enrollment.id))[0]
        await store.claim_execution(execution.id, now - timedelta(hours=1))

        await harness.scheduler.poll(now=now)

        executions = await store.list_executions(enrollment.id)
        assert executions[0].status == ExecutionStatus.FAILED
        assert "abandoned" in executions[0].error_message
        assert executions[1].attempt == 2
        assert executions[1].scheduled_at == now + timedelta(minutes=15)


class TestBackgroundLoop:
    """Test cases for start/stop of the polling task."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, harness):
        harness.scheduler.poll = AsyncMock(return_value=PollResult())

        await harness.scheduler.start()
        assert harness.scheduler.is_running is True
        await asyncio.sleep(0)

        await harness.scheduler.stop()
        assert harness.scheduler.is_running is False
        harness.scheduler.poll.assert_awaited()
