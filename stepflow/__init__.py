"""Stepflow: declarative multi-step workflow execution."""

from .contracts import (
    ErrorHandlingPolicy,
    OnError,
    RetrySpec,
    Step,
    StepType,
    WorkflowDefinition,
    WorkflowStatus,
)
from .engine import ExecutionEngine
from .execution import Execution, ExecutionStatus, StepResult
from .executors import ExecutorRegistry, get_registry
from .persistence import get_repository
from .resolver import resolve
from .store import InMemoryDefinitionStore, load_definition
from .transports import get_transport

__version__ = "0.1.0"
__all__ = [
    "ErrorHandlingPolicy",
    "Execution",
    "ExecutionEngine",
    "ExecutionStatus",
    "ExecutorRegistry",
    "InMemoryDefinitionStore",
    "OnError",
    "RetrySpec",
    "Step",
    "StepResult",
    "StepType",
    "WorkflowDefinition",
    "WorkflowStatus",
    "get_registry",
    "get_repository",
    "get_transport",
    "load_definition",
    "resolve",
]
