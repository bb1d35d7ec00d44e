from typing import List, Optional

from pydantic import BaseModel, Field

from collections_engine.models.workflow import Enrollment, Execution


class StartWorkflowRequest(BaseModel):
    """Enroll a debtor in a workflow"""
    debtor_id: str = Field(..., min_length=1)
    workflow_id: str = Field(..., min_length=1)


class StartWorkflowResponse(BaseModel):
    success: bool = True
    enrollment_id: str


class StopWorkflowRequest(BaseModel):
    """Stop a debtor's active workflow"""
    debtor_id: str = Field(..., min_length=1)
    reason: str = Field(default="Stopped manually")


class StopWorkflowResponse(BaseModel):
    success: bool = True
    stopped: bool
    enrollment_id: Optional[str] = None


class RetryEnrollmentResponse(BaseModel):
    success: bool = True
    execution_id: str


class ExecuteWorkflowsResponse(BaseModel):
    """Counts from one scheduler poll"""
    executed: int
    skipped: int
    failed: int
    deferred: int
    errors: List[str] = []


class EnrollmentTimelineResponse(BaseModel):
    """Enrollment with its execution ledger"""
    enrollment: Enrollment
    executions: List[Execution] = []
