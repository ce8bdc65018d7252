"""practiceflow: trigger-driven workflow automation for practice management."""

from .capabilities import Capabilities, in_memory_capabilities
from .contracts import (
    EventKind,
    ObjectType,
    ReentryMode,
    TriggerType,
    WorkflowDefinition,
)
from .engine import WorkflowEngine
from .persistence import ExecutionStatus, WorkflowExecution, get_repository
from .scheduler import ResumeScheduler, SweepResult
from .transports import get_transport
from .triggers import TriggerDispatcher
from .validation import ValidationResult, validate_workflow
from .worker import ExecutionWorker

__version__ = "0.1.0"
__all__ = [
    "Capabilities",
    "EventKind",
    "ExecutionStatus",
    "ExecutionWorker",
    "ObjectType",
    "ReentryMode",
    "ResumeScheduler",
    "SweepResult",
    "TriggerDispatcher",
    "TriggerType",
    "ValidationResult",
    "WorkflowDefinition",
    "WorkflowEngine",
    "WorkflowExecution",
    "get_repository",
    "get_transport",
    "in_memory_capabilities",
    "validate_workflow",
]
