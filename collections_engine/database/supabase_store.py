"""Workflow store backed by Supabase (PostgREST)."""

from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Type, TypeVar

from pydantic import BaseModel
from supabase import Client, create_client

from collections_engine.core.exceptions import AlreadyEnrolledError, DatabaseError
from collections_engine.core.logging import get_logger
from collections_engine.core.retry import create_async_retry_decorator, get_database_retry_config
from collections_engine.database.repository import WorkflowStore, plain_fields
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
from collections_engine.utils.clock import to_naive_utc, utcnow

logger = get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

UNIQUE_VIOLATION = "23505"

db_retry = create_async_retry_decorator(get_database_retry_config(), service_name="supabase")


def _serialize(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Prepare a field dict for PostgREST (enums unwrapped, datetimes as ISO strings)."""
    return {
        key: value.isoformat() if isinstance(value, datetime) else value
        for key, value in plain_fields(fields).items()
    }


def _to_model(model: Type[ModelT], row: Dict[str, Any]) -> ModelT:
    """Validate a row and normalize timestamptz values to naive UTC."""
    instance = model.model_validate(row)
    for name, value in list(instance):
        if isinstance(value, datetime):
            setattr(instance, name, to_naive_utc(value))
    return instance


def _first(response) -> Optional[Dict[str, Any]]:
    return response.data[0] if response.data else None


def _is_unique_violation(error: Exception) -> bool:
    return getattr(error, "code", None) == UNIQUE_VIOLATION


class SupabaseWorkflowStore(WorkflowStore):
    """Workflow store using the Supabase client."""

    def __init__(self, client: Client):
        self.client = client

    @classmethod
    def from_settings(cls, supabase_url: str, supabase_key: str) -> "SupabaseWorkflowStore":
        return cls(create_client(supabase_url, supabase_key))

    def _fail(self, operation: str, error: Exception) -> DatabaseError:
        logger.error("Supabase operation failed", operation=operation, error=str(error))
        return DatabaseError(f"Failed to {operation}: {str(error)}", operation=operation)

    # Definitions

    @db_retry
    async def get_workflow(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        response = self.client.table("workflows").select("*").eq("id", workflow_id).limit(1).execute()
        row = _first(response)
        return _to_model(WorkflowDefinition, row) if row else None

    @db_retry
    async def get_workflow_steps(self, workflow_id: str) -> List[WorkflowStep]:
        response = self.client.table("workflow_steps").select("*") \
            .eq("workflow_id", workflow_id).order("step_number").execute()
        return [_to_model(WorkflowStep, row) for row in response.data or []]

    @db_retry
    async def get_workflow_step(
        self, workflow_id: str, step_number: int
    ) -> Optional[WorkflowStep]:
        response = self.client.table("workflow_steps").select("*") \
            .eq("workflow_id", workflow_id).eq("step_number", step_number).limit(1).execute()
        row = _first(response)
        return _to_model(WorkflowStep, row) if row else None

    @db_retry
    async def get_template(self, template_id: str) -> Optional[Template]:
        response = self.client.table("templates").select("*").eq("id", template_id).limit(1).execute()
        row = _first(response)
        return _to_model(Template, row) if row else None

    @db_retry
    async def get_debtor(self, debtor_id: str) -> Optional[Debtor]:
        response = self.client.table("debtors").select("*").eq("id", debtor_id).limit(1).execute()
        row = _first(response)
        return _to_model(Debtor, row) if row else None

    @db_retry
    async def get_tenant_settings(self, tenant_id: str) -> TenantSettings:
        response = self.client.table("company_settings").select("*") \
            .eq("tenant_id", tenant_id).limit(1).execute()
        row = _first(response)
        if row is None:
            return TenantSettings(tenant_id=tenant_id)
        return _to_model(TenantSettings, row)

    # Enrollments

    @db_retry
    async def get_enrollment(self, enrollment_id: str) -> Optional[Enrollment]:
        response = self.client.table("debtor_workflows").select("*") \
            .eq("id", enrollment_id).limit(1).execute()
        row = _first(response)
        return _to_model(Enrollment, row) if row else None

    @db_retry
    async def get_active_enrollment(self, debtor_id: str) -> Optional[Enrollment]:
        response = self.client.table("debtor_workflows").select("*") \
            .eq("debtor_id", debtor_id).eq("status", EnrollmentStatus.ACTIVE.value) \
            .limit(1).execute()
        row = _first(response)
        return _to_model(Enrollment, row) if row else None

    async def create_enrollment(
        self, debtor_id: str, workflow_id: str, now: datetime
    ) -> Enrollment:
        data = _serialize({
            "debtor_id": debtor_id,
            "workflow_id": workflow_id,
            "status": EnrollmentStatus.ACTIVE,
            "current_step_number": 0,
            "next_action_at": now,
            "started_at": now,
        })
        try:
            response = self.client.table("debtor_workflows").insert(data).execute()
        except Exception as e:
            if _is_unique_violation(e):
                raise AlreadyEnrolledError(debtor_id)
            raise self._fail("create enrollment", e)
        return _to_model(Enrollment, response.data[0])

    async def update_enrollment(
        self,
        enrollment_id: str,
        fields: Dict[str, Any],
        expected_status: Optional[str] = None,
    ) -> bool:
        try:
            query = self.client.table("debtor_workflows").update(_serialize(fields)) \
                .eq("id", enrollment_id)
            if expected_status is not None:
                query = query.eq("status", expected_status)
            response = query.execute()
        except Exception as e:
            raise self._fail("update enrollment", e)
        return len(response.data) > 0

    # Execution ledger

    async def create_execution(
        self,
        enrollment_id: str,
        step_number: int,
        workflow_step_id: Optional[str],
        scheduled_at: datetime,
        attempt: int = 1,
    ) -> Execution:
        data = _serialize({
            "enrollment_id": enrollment_id,
            "workflow_step_id": workflow_step_id,
            "step_number": step_number,
            "status": ExecutionStatus.PENDING,
            "attempt": attempt,
            "scheduled_at": scheduled_at,
        })
        try:
            response = self.client.table("workflow_executions").insert(data).execute()
        except Exception as e:
            raise self._fail("create execution", e)
        return _to_model(Execution, response.data[0])

    @db_retry
    async def get_execution(self, execution_id: str) -> Optional[Execution]:
        response = self.client.table("workflow_executions").select("*") \
            .eq("id", execution_id).limit(1).execute()
        row = _first(response)
        return _to_model(Execution, row) if row else None

    @db_retry
    async def list_due_executions(self, now: datetime, limit: int) -> List[Execution]:
        response = self.client.table("workflow_executions").select("*") \
            .eq("status", ExecutionStatus.PENDING.value) \
            .lte("scheduled_at", now.isoformat()) \
            .order("scheduled_at").limit(limit).execute()
        return [_to_model(Execution, row) for row in response.data or []]

    async def claim_execution(self, execution_id: str, now: datetime) -> bool:
        # The status filter makes this a compare-and-set; only one caller gets the row back
        try:
            response = self.client.table("workflow_executions").update({
                "status": ExecutionStatus.EXECUTING.value,
                "claimed_at": now.isoformat(),
            }).eq("id", execution_id).eq("status", ExecutionStatus.PENDING.value).execute()
        except Exception as e:
            raise self._fail("claim execution", e)
        return len(response.data) > 0

    async def update_execution(
        self,
        execution_id: str,
        fields: Dict[str, Any],
        expected_status: Optional[str] = None,
    ) -> bool:
        try:
            query = self.client.table("workflow_executions").update(_serialize(fields)) \
                .eq("id", execution_id)
            if expected_status is not None:
                query = query.eq("status", expected_status)
            response = query.execute()
        except Exception as e:
            raise self._fail("update execution", e)
        return len(response.data) > 0

    async def skip_open_executions(
        self, enrollment_id: str, reason: str, now: datetime
    ) -> int:
        try:
            response = self.client.table("workflow_executions").update(_serialize({
                "status": ExecutionStatus.SKIPPED,
                "error_message": reason,
                "executed_at": now,
            })).eq("enrollment_id", enrollment_id) \
                .in_("status", list(OPEN_EXECUTION_STATUSES)).execute()
        except Exception as e:
            raise self._fail("skip open executions", e)
        return len(response.data)

    @db_retry
    async def list_executions(self, enrollment_id: str) -> List[Execution]:
        response = self.client.table("workflow_executions").select("*") \
            .eq("enrollment_id", enrollment_id) \
            .order("scheduled_at").order("created_at").execute()
        return [_to_model(Execution, row) for row in response.data or []]

    @db_retry
    async def list_stale_executions(self, claimed_before: datetime) -> List[Execution]:
        response = self.client.table("workflow_executions").select("*") \
            .eq("status", ExecutionStatus.EXECUTING.value) \
            .lt("claimed_at", claimed_before.isoformat()).execute()
        return [_to_model(Execution, row) for row in response.data or []]

    # Communication records

    async def create_communication(self, fields: Dict[str, Any]) -> CommunicationRecord:
        try:
            response = self.client.table("letters").insert(_serialize(fields)).execute()
        except Exception as e:
            raise self._fail("create communication record", e)
        return _to_model(CommunicationRecord, response.data[0])

    async def update_communication(
        self,
        record_id: str,
        fields: Dict[str, Any],
        expected_statuses: Optional[Sequence[str]] = None,
    ) -> bool:
        try:
            query = self.client.table("letters").update(_serialize(fields)).eq("id", record_id)
            if expected_statuses is not None:
                query = query.in_("status", list(expected_statuses))
            response = query.execute()
        except Exception as e:
            raise self._fail("update communication record", e)
        return len(response.data) > 0

    @db_retry
    async def get_communication_by_correlation(
        self, correlation_id: str
    ) -> Optional[CommunicationRecord]:
        response = self.client.table("letters").select("*") \
            .eq("correlation_id", correlation_id).limit(1).execute()
        row = _first(response)
        return _to_model(CommunicationRecord, row) if row else None

    # Delivery events

    async def record_delivery_event(
        self,
        correlation_id: str,
        event_type: str,
        occurred_at: datetime,
        provider_event_id: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> bool:
        data = _serialize({
            "correlation_id": correlation_id,
            "event_type": event_type,
            "occurred_at": occurred_at,
            "provider_event_id": provider_event_id,
            "payload": payload,
        })
        try:
            self.client.table("delivery_events").insert(data).execute()
        except Exception as e:
            if _is_unique_violation(e):
                return False
            raise self._fail("record delivery event", e)
        return True

    # Tenant webhooks

    @db_retry
    async def get_webhook_config(self, tenant_id: str) -> Optional[TenantWebhookConfig]:
        response = self.client.table("tenant_webhooks").select("*") \
            .eq("tenant_id", tenant_id).limit(1).execute()
        row = _first(response)
        return _to_model(TenantWebhookConfig, row) if row else None

    async def upsert_webhook_config(
        self, config: TenantWebhookConfig
    ) -> TenantWebhookConfig:
        data = _serialize({
            "tenant_id": config.tenant_id,
            "url": config.url,
            "secret": config.secret,
            "events": list(config.events),
            "is_active": config.is_active,
            "updated_at": utcnow(),
        })
        try:
            response = self.client.table("tenant_webhooks") \
                .upsert(data, on_conflict="tenant_id").execute()
        except Exception as e:
            raise self._fail("upsert webhook config", e)
        return _to_model(TenantWebhookConfig, response.data[0])

    async def health_check(self) -> bool:
        try:
            self.client.table("workflows").select("id").limit(1).execute()
            return True
        except Exception as e:
            logger.error("Supabase health check failed", error=str(e))
            return False
