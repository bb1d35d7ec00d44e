"""
SQLAlchemy implementation of the workflow store.

Each operation runs in its own short session and commits once, so every
progression write is a single-row transaction. Conditional updates report
the affected row count, which is what makes claiming safe across workers.
"""

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Sequence

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
import structlog

from collections_engine.core.exceptions import AlreadyEnrolledError, DatabaseError
from collections_engine.database.repository import WorkflowStore, plain_fields
from collections_engine.models.database import (
    CommunicationRecordRow,
    CompanySettingsRecord,
    DebtorRecord,
    DeliveryEventRecord,
    EnrollmentRecord,
    ExecutionRecord,
    TemplateRecord,
    TenantWebhookRecord,
    WorkflowRecord,
    WorkflowStepRecord,
)
from collections_engine.models.workflow import (
    CommunicationRecord,
    Debtor,
    Enrollment,
    EnrollmentStatus,
    Execution,
    ExecutionStatus,
    OPEN_EXECUTION_STATUSES,
    Template,
    TenantSettings,
    TenantWebhookConfig,
    WorkflowDefinition,
    WorkflowStep,
)
from collections_engine.utils.clock import utcnow

logger = structlog.get_logger(__name__)


class SQLAlchemyWorkflowStore(WorkflowStore):
    """
    Workflow store backed by a SQLAlchemy session factory.

    Args:
        session_factory: ``sessionmaker`` bound to the engine database
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    @contextmanager
    def _session(self, operation: str) -> Iterator[Session]:
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except (AlreadyEnrolledError, DatabaseError):
            session.rollback()
            raise
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(
                "Database operation failed",
                operation=operation,
                error=str(e),
                exc_info=True
            )
            raise DatabaseError(f"Failed to {operation}: {str(e)}", operation=operation)
        finally:
            session.close()

    # Definitions

    async def get_workflow(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        with self._session("get workflow") as session:
            row = session.get(WorkflowRecord, workflow_id)
            return WorkflowDefinition.model_validate(row) if row else None

    async def get_workflow_steps(self, workflow_id: str) -> List[WorkflowStep]:
        with self._session("get workflow steps") as session:
            rows = session.query(WorkflowStepRecord).filter(
                WorkflowStepRecord.workflow_id == workflow_id
            ).order_by(WorkflowStepRecord.step_number).all()
            return [WorkflowStep.model_validate(row) for row in rows]

    async def get_workflow_step(
        self, workflow_id: str, step_number: int
    ) -> Optional[WorkflowStep]:
        with self._session("get workflow step") as session:
            row = session.query(WorkflowStepRecord).filter(
                WorkflowStepRecord.workflow_id == workflow_id,
                WorkflowStepRecord.step_number == step_number,
            ).first()
            return WorkflowStep.model_validate(row) if row else None

    async def get_template(self, template_id: str) -> Optional[Template]:
        with self._session("get template") as session:
            row = session.get(TemplateRecord, template_id)
            return Template.model_validate(row) if row else None

    async def get_debtor(self, debtor_id: str) -> Optional[Debtor]:
        with self._session("get debtor") as session:
            row = session.get(DebtorRecord, debtor_id)
            return Debtor.model_validate(row) if row else None

    async def get_tenant_settings(self, tenant_id: str) -> TenantSettings:
        with self._session("get tenant settings") as session:
            row = session.query(CompanySettingsRecord).filter(
                CompanySettingsRecord.tenant_id == tenant_id
            ).first()
            if row is None:
                return TenantSettings(tenant_id=tenant_id)
            return TenantSettings.model_validate(row)

    # Enrollments

    async def get_enrollment(self, enrollment_id: str) -> Optional[Enrollment]:
        with self._session("get enrollment") as session:
            row = session.get(EnrollmentRecord, enrollment_id)
            return Enrollment.model_validate(row) if row else None

    async def get_active_enrollment(self, debtor_id: str) -> Optional[Enrollment]:
        with self._session("get active enrollment") as session:
            row = session.query(EnrollmentRecord).filter(
                EnrollmentRecord.debtor_id == debtor_id,
                EnrollmentRecord.status == EnrollmentStatus.ACTIVE.value,
            ).first()
            return Enrollment.model_validate(row) if row else None

    async def create_enrollment(
        self, debtor_id: str, workflow_id: str, now: datetime
    ) -> Enrollment:
        with self._session("create enrollment") as session:
            row = EnrollmentRecord(
                debtor_id=debtor_id,
                workflow_id=workflow_id,
                status=EnrollmentStatus.ACTIVE.value,
                current_step_number=0,
                next_action_at=now,
                started_at=now,
            )
            session.add(row)
            try:
                session.flush()
            except IntegrityError:
                session.rollback()
                raise AlreadyEnrolledError(debtor_id)
            return Enrollment.model_validate(row)

    async def update_enrollment(
        self,
        enrollment_id: str,
        fields: Dict[str, Any],
        expected_status: Optional[str] = None,
    ) -> bool:
        with self._session("update enrollment") as session:
            query = session.query(EnrollmentRecord).filter(EnrollmentRecord.id == enrollment_id)
            if expected_status is not None:
                query = query.filter(EnrollmentRecord.status == expected_status)
            return query.update(plain_fields(fields), synchronize_session=False) > 0

    # Execution ledger

    async def create_execution(
        self,
        enrollment_id: str,
        step_number: int,
        workflow_step_id: Optional[str],
        scheduled_at: datetime,
        attempt: int = 1,
    ) -> Execution:
        with self._session("create execution") as session:
            row = ExecutionRecord(
                enrollment_id=enrollment_id,
                workflow_step_id=workflow_step_id,
                step_number=step_number,
                status=ExecutionStatus.PENDING.value,
                attempt=attempt,
                scheduled_at=scheduled_at,
            )
            session.add(row)
            session.flush()
            return Execution.model_validate(row)

    async def get_execution(self, execution_id: str) -> Optional[Execution]:
        with self._session("get execution") as session:
            row = session.get(ExecutionRecord, execution_id)
            return Execution.model_validate(row) if row else None

    async def list_due_executions(self, now: datetime, limit: int) -> List[Execution]:
        with self._session("list due executions") as session:
            rows = session.query(ExecutionRecord).filter(
                ExecutionRecord.status == ExecutionStatus.PENDING.value,
                ExecutionRecord.scheduled_at <= now,
            ).order_by(
                ExecutionRecord.scheduled_at, ExecutionRecord.created_at
            ).limit(limit).all()
            return [Execution.model_validate(row) for row in rows]

    async def claim_execution(self, execution_id: str, now: datetime) -> bool:
        with self._session("claim execution") as session:
            changed = session.query(ExecutionRecord).filter(
                ExecutionRecord.id == execution_id,
                ExecutionRecord.status == ExecutionStatus.PENDING.value,
            ).update(
                {"status": ExecutionStatus.EXECUTING.value, "claimed_at": now},
                synchronize_session=False,
            )
            return changed > 0

    async def update_execution(
        self,
        execution_id: str,
        fields: Dict[str, Any],
        expected_status: Optional[str] = None,
    ) -> bool:
        with self._session("update execution") as session:
            query = session.query(ExecutionRecord).filter(ExecutionRecord.id == execution_id)
            if expected_status is not None:
                query = query.filter(ExecutionRecord.status == expected_status)
            return query.update(plain_fields(fields), synchronize_session=False) > 0

    async def skip_open_executions(
        self, enrollment_id: str, reason: str, now: datetime
    ) -> int:
        with self._session("skip open executions") as session:
            return session.query(ExecutionRecord).filter(
                ExecutionRecord.enrollment_id == enrollment_id,
                ExecutionRecord.status.in_(OPEN_EXECUTION_STATUSES),
            ).update(
                {
                    "status": ExecutionStatus.SKIPPED.value,
                    "error_message": reason,
                    "executed_at": now,
                },
                synchronize_session=False,
            )

    async def list_executions(self, enrollment_id: str) -> List[Execution]:
        with self._session("list executions") as session:
            rows = session.query(ExecutionRecord).filter(
                ExecutionRecord.enrollment_id == enrollment_id
            ).order_by(
                ExecutionRecord.scheduled_at, ExecutionRecord.created_at
            ).all()
            return [Execution.model_validate(row) for row in rows]

    async def list_stale_executions(self, claimed_before: datetime) -> List[Execution]:
        with self._session("list stale executions") as session:
            rows = session.query(ExecutionRecord).filter(
                ExecutionRecord.status == ExecutionStatus.EXECUTING.value,
                ExecutionRecord.claimed_at < claimed_before,
            ).all()
            return [Execution.model_validate(row) for row in rows]

    # Communication records

    async def create_communication(self, fields: Dict[str, Any]) -> CommunicationRecord:
        with self._session("create communication record") as session:
            row = CommunicationRecordRow(**plain_fields(fields))
            session.add(row)
            session.flush()
            return CommunicationRecord.model_validate(row)

    async def update_communication(
        self,
        record_id: str,
        fields: Dict[str, Any],
        expected_statuses: Optional[Sequence[str]] = None,
    ) -> bool:
        with self._session("update communication record") as session:
            query = session.query(CommunicationRecordRow).filter(
                CommunicationRecordRow.id == record_id
            )
            if expected_statuses is not None:
                query = query.filter(CommunicationRecordRow.status.in_(list(expected_statuses)))
            return query.update(plain_fields(fields), synchronize_session=False) > 0

    async def get_communication_by_correlation(
        self, correlation_id: str
    ) -> Optional[CommunicationRecord]:
        with self._session("get communication record") as session:
            row = session.query(CommunicationRecordRow).filter(
                CommunicationRecordRow.correlation_id == correlation_id
            ).first()
            return CommunicationRecord.model_validate(row) if row else None

    # Delivery events

    async def record_delivery_event(
        self,
        correlation_id: str,
        event_type: str,
        occurred_at: datetime,
        provider_event_id: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> bool:
        with self._session("record delivery event") as session:
            session.add(DeliveryEventRecord(
                correlation_id=correlation_id,
                event_type=event_type,
                occurred_at=occurred_at,
                provider_event_id=provider_event_id,
                payload=payload,
            ))
            try:
                session.flush()
            except IntegrityError:
                session.rollback()
                return False
            return True

    # Tenant webhooks

    async def get_webhook_config(self, tenant_id: str) -> Optional[TenantWebhookConfig]:
        with self._session("get webhook config") as session:
            row = session.query(TenantWebhookRecord).filter(
                TenantWebhookRecord.tenant_id == tenant_id
            ).first()
            return TenantWebhookConfig.model_validate(row) if row else None

    async def upsert_webhook_config(
        self, config: TenantWebhookConfig
    ) -> TenantWebhookConfig:
        with self._session("upsert webhook config") as session:
            row = session.query(TenantWebhookRecord).filter(
                TenantWebhookRecord.tenant_id == config.tenant_id
            ).first()
            if row is None:
                row = TenantWebhookRecord(tenant_id=config.tenant_id)
                session.add(row)
            row.url = config.url
            row.secret = config.secret
            row.events = list(config.events)
            row.is_active = config.is_active
            row.updated_at = utcnow()
            session.flush()
            return TenantWebhookConfig.model_validate(row)

    async def health_check(self) -> bool:
        try:
            with self._session("health check") as session:
                session.execute(text("SELECT 1"))
            return True
        except DatabaseError:
            return False
