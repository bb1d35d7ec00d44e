"""
Workflow API endpoints.

Enrollment lifecycle operations and the manual poll trigger.
"""
from fastapi import APIRouter, Depends

from collections_engine.core.dependencies import get_enrollment_service, get_scheduler
from collections_engine.core.exceptions import (
    AlreadyEnrolledError,
    BusinessRuleError,
    ConflictError,
    DebtorNotFoundError,
    EnrollmentNotFoundError,
    NotFoundError,
    RetryNotAllowedError,
    WorkflowHasNoStepsError,
    WorkflowNotFoundError,
)
from collections_engine.core.logging import get_logger
from collections_engine.schemas.workflow import (
    EnrollmentTimelineResponse,
    ExecuteWorkflowsResponse,
    RetryEnrollmentResponse,
    StartWorkflowRequest,
    StartWorkflowResponse,
    StopWorkflowRequest,
    StopWorkflowResponse,
)
from collections_engine.services.enrollment_service import EnrollmentService
from collections_engine.services.scheduler import WorkflowScheduler

logger = get_logger(__name__)

router = APIRouter(tags=["workflows"])


@router.post("/execute-workflows", response_model=ExecuteWorkflowsResponse)
async def execute_workflows(scheduler: WorkflowScheduler = Depends(get_scheduler)):
    """
    Run one scheduler poll.

    Per-execution failures are reported in ``errors``; the poll itself
    always answers 200.
    """
    result = await scheduler.poll()
    return ExecuteWorkflowsResponse(**result.to_dict())


@router.post("/workflows/start", response_model=StartWorkflowResponse)
async def start_workflow(
    request: StartWorkflowRequest,
    enrollments: EnrollmentService = Depends(get_enrollment_service)
):
    """
    Enroll a debtor in a workflow.

    Raises:
        ConflictError: Debtor already has an active workflow
        NotFoundError: Unknown or inactive workflow, unknown debtor
        BusinessRuleError: The workflow has no steps
    """
    try:
        enrollment = await enrollments.start_enrollment(request.debtor_id, request.workflow_id)
    except AlreadyEnrolledError as e:
        raise ConflictError(
            e.detail,
            context={"debtor_id": e.debtor_id, "enrollment_id": e.enrollment_id}
        )
    except WorkflowNotFoundError:
        raise NotFoundError("Workflow", request.workflow_id)
    except DebtorNotFoundError:
        raise NotFoundError("Debtor", request.debtor_id)
    except WorkflowHasNoStepsError as e:
        raise BusinessRuleError(e.detail, entity_id=request.workflow_id)

    logger.info(
        "Workflow started",
        enrollment_id=enrollment.id,
        debtor_id=request.debtor_id,
        workflow_id=request.workflow_id
    )
    return StartWorkflowResponse(enrollment_id=enrollment.id)


@router.post("/workflows/stop", response_model=StopWorkflowResponse)
async def stop_workflow(
    request: StopWorkflowRequest,
    enrollments: EnrollmentService = Depends(get_enrollment_service)
):
    """Stop a debtor's active workflow; a debtor with none reports stopped=false."""
    enrollment = await enrollments.stop_enrollment(request.debtor_id, request.reason)
    return StopWorkflowResponse(
        stopped=enrollment is not None,
        enrollment_id=enrollment.id if enrollment else None,
    )


@router.post("/enrollments/{enrollment_id}/retry", response_model=RetryEnrollmentResponse)
async def retry_enrollment(
    enrollment_id: str,
    enrollments: EnrollmentService = Depends(get_enrollment_service)
):
    """Schedule a new attempt of the enrollment's latest failed step."""
    try:
        execution = await enrollments.retry_failed_step(enrollment_id)
    except EnrollmentNotFoundError:
        raise NotFoundError("Enrollment", enrollment_id)
    except RetryNotAllowedError as e:
        raise ConflictError(str(e), context={"enrollment_id": enrollment_id, "reason": e.reason})

    return RetryEnrollmentResponse(execution_id=execution.id)


@router.get("/enrollments/{enrollment_id}", response_model=EnrollmentTimelineResponse)
async def get_enrollment(
    enrollment_id: str,
    enrollments: EnrollmentService = Depends(get_enrollment_service)
):
    """Enrollment with its full execution history."""
    try:
        timeline = await enrollments.get_timeline(enrollment_id)
    except EnrollmentNotFoundError:
        raise NotFoundError("Enrollment", enrollment_id)

    return EnrollmentTimelineResponse(
        enrollment=timeline.enrollment,
        executions=timeline.executions,
    )
