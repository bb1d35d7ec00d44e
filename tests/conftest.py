"""
Pytest configuration and fixtures for the Collections Workflow Engine.
"""
from datetime import datetime
from typing import Generator, List, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from collections_engine.core.config import Settings, get_settings
from collections_engine.core.dependencies import (
    get_delivery_event_service,
    get_enrollment_service,
    get_scheduler,
    get_sender_clients,
    get_store,
)
from collections_engine.database.session import create_db_engine, create_session_factory, init_db
from collections_engine.database.sqlalchemy_store import SQLAlchemyWorkflowStore
from collections_engine.models.database import (
    CompanySettingsRecord,
    DebtorRecord,
    TemplateRecord,
    WorkflowRecord,
    WorkflowStepRecord,
)
from collections_engine.services.channel_dispatchers import build_dispatchers
from collections_engine.services.delivery_events import DeliveryEventService
from collections_engine.services.enrollment_service import EnrollmentService
from collections_engine.services.external import SenderClients, SimulatedSender
from collections_engine.services.scheduler import WorkflowScheduler
from collections_engine.services.step_executor import StepExecutor

T0 = datetime(2026, 3, 2, 9, 0, 0)


def make_settings(**overrides) -> Settings:
    """Settings for tests: simulated transports, no background scheduler."""
    values = {
        "database_url": "sqlite://",
        "scheduler_enabled": False,
        "mock_external_services": True,
        "dispatch_timeout_seconds": 2.0,
        "poll_deadline_seconds": 60.0,
        "public_base_url": "https://engine.test",
        "delivery_webhook_secret": None,
    }
    values.update(overrides)
    return Settings(**values)


class Seeder:
    """Writes fixture rows straight through the ORM."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def _add(self, row) -> str:
        session = self.session_factory()
        try:
            session.add(row)
            session.commit()
            return row.id
        finally:
            session.close()

    def tenant(self, tenant_id: str = "tenant-1", plan: str = "enterprise", **fields) -> str:
        return self._add(CompanySettingsRecord(tenant_id=tenant_id, plan=plan, **fields))

    def template(self, tenant_id: str = "tenant-1", channel: str = "email", **fields) -> str:
        values = {
            "name": f"{channel.title()} Notice",
            "email_subject": "Balance due for {{name}}",
            "html_content": "<p>Hello {{name}}, you owe {{balance}}.</p>",
            "sms_content": "Hi {{name}}, your balance is {{balance}}.",
            "physical_content": "<p>Dear {{name}}, {{balance}} is past due.</p>",
        }
        values.update(fields)
        return self._add(TemplateRecord(tenant_id=tenant_id, channel=channel, **values))

    def debtor(self, tenant_id: str = "tenant-1", **fields) -> str:
        values = {
            "name": "Jane Doe",
            "email": "jane@example.com",
            "phone": "+15555550100",
            "address": "123 Main St",
            "city": "Springfield",
            "state": "IL",
            "zip": "62701",
            "balance_cents": 125000,
            "account_number": "ACCT-1001",
            "status": "active",
        }
        values.update(fields)
        return self._add(DebtorRecord(tenant_id=tenant_id, **values))

    def workflow(
        self,
        steps: List[dict],
        tenant_id: str = "tenant-1",
        name: str = "Standard Collections",
        is_active: bool = True,
    ) -> str:
        """Create a workflow; ``steps`` are numbered from 1 in order."""
        workflow_id = self._add(WorkflowRecord(tenant_id=tenant_id, name=name, is_active=is_active))
        for number, step in enumerate(steps, start=1):
            self._add(WorkflowStepRecord(
                workflow_id=workflow_id,
                step_number=number,
                step_type=step["step_type"],
                delay_days=step.get("delay_days", 0),
                delay_hours=step.get("delay_hours", 0),
                template_id=step.get("template_id"),
            ))
        return workflow_id

    def set_debtor_status(self, debtor_id: str, status: str) -> None:
        session = self.session_factory()
        try:
            session.get(DebtorRecord, debtor_id).status = status
            session.commit()
        finally:
            session.close()

    def delete_steps(self, workflow_id: str, step_number: Optional[int] = None) -> None:
        session = self.session_factory()
        try:
            query = session.query(WorkflowStepRecord).filter(
                WorkflowStepRecord.workflow_id == workflow_id
            )
            if step_number is not None:
                query = query.filter(WorkflowStepRecord.step_number == step_number)
            query.delete(synchronize_session=False)
            session.commit()
        finally:
            session.close()


class EngineHarness:
    """The engine services wired over one store with simulated transports."""

    def __init__(self, store, settings: Settings, senders: Optional[SenderClients] = None, notifier=None):
        self.store = store
        self.settings = settings
        self.senders = senders or SenderClients(
            email=SimulatedSender("sendgrid"),
            sms=SimulatedSender("twilio"),
            physical=SimulatedSender("lob"),
        )
        self.enrollments = EnrollmentService(store, settings, notifier)
        self.dispatchers = build_dispatchers(store, self.senders, settings, notifier)
        self.executor = StepExecutor(store, self.enrollments, self.dispatchers, settings)
        self.scheduler = WorkflowScheduler(store, self.executor, settings)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def settings_factory():
    return make_settings


@pytest.fixture
def session_factory() -> sessionmaker:
    """In-memory SQLite database, fresh per test."""
    engine = create_db_engine("sqlite://")
    init_db(engine)
    return create_session_factory(engine)


@pytest.fixture
def store(session_factory: sessionmaker) -> SQLAlchemyWorkflowStore:
    return SQLAlchemyWorkflowStore(session_factory)


@pytest.fixture
def seed(session_factory: sessionmaker) -> Seeder:
    return Seeder(session_factory)


@pytest.fixture
def harness(store, settings) -> EngineHarness:
    return EngineHarness(store, settings)


@pytest.fixture
def make_harness(store):
    """Build a harness with custom settings or transports."""
    def _make(senders: Optional[SenderClients] = None, notifier=None, **setting_overrides) -> EngineHarness:
        return EngineHarness(store, make_settings(**setting_overrides), senders, notifier)
    return _make


@pytest.fixture
def now() -> datetime:
    return T0


@pytest.fixture
def client() -> Generator[TestClient, None, None]:
    """
    Create a test client for the FastAPI application.

    Startup hooks are not run, so the background scheduler stays off.
    Dependency overrides are cleared afterwards.
    """
    from collections_engine.main import app

    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def api(client: TestClient, harness: EngineHarness) -> TestClient:
    """Test client whose engine dependencies resolve to the test harness."""
    from collections_engine.main import app

    overrides = {
        get_settings: lambda: harness.settings,
        get_store: lambda: harness.store,
        get_sender_clients: lambda: harness.senders,
        get_enrollment_service: lambda: harness.enrollments,
        get_scheduler: lambda: harness.scheduler,
        get_delivery_event_service: lambda: DeliveryEventService(harness.store),
    }
    app.dependency_overrides.update(overrides)
    return client


@pytest.fixture
def sample_headers() -> dict:
    """Sample request headers with correlation ID."""
    return {
        "X-Correlation-ID": "test-correlation-123",
        "Content-Type": "application/json",
    }
