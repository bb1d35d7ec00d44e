"""
Models package for the Collections Workflow Engine.
"""
from .workflow import (
    CommunicationRecord,
    CommunicationStatus,
    Debtor,
    Enrollment,
    EnrollmentStatus,
    EnrollmentTimeline,
    Execution,
    ExecutionStatus,
    PlanTier,
    StepType,
    Template,
    TenantSettings,
    TenantWebhookConfig,
    WorkflowDefinition,
    WorkflowStep,
)

__all__ = [
    "CommunicationRecord",
    "CommunicationStatus",
    "Debtor",
    "Enrollment",
    "EnrollmentStatus",
    "EnrollmentTimeline",
    "Execution",
    "ExecutionStatus",
    "PlanTier",
    "StepType",
    "Template",
    "TenantSettings",
    "TenantWebhookConfig",
    "WorkflowDefinition",
    "WorkflowStep",
]
