"""Core workflow engine components"""

from .engine import WorkflowEngine, TriggerRequest
from .scheduler import DagScheduler, ExecutionSnapshot, ResourceManager, ResourceQuota, RunOutcome
from .parser import WorkflowParser, content_hash
from .validator import DslValidator, ValidationIssue, ValidationResult, Severity
from .graph import ValidGraph, topological_layers
from .cancellation import CancellationToken
from .retry import RetryPolicy, RetryStrategy, classify_failure
from .parameters import ParameterResolver, VariableResolver

__all__ = [
    "WorkflowEngine",
    "TriggerRequest",
    "DagScheduler",
    "ExecutionSnapshot",
    "ResourceManager",
    "ResourceQuota",
    "RunOutcome",
    "WorkflowParser",
    "content_hash",
    "DslValidator",
    "ValidationIssue",
    "ValidationResult",
    "Severity",
    "ValidGraph",
    "topological_layers",
    "CancellationToken",
    "RetryPolicy",
    "RetryStrategy",
    "classify_failure",
    "ParameterResolver",
    "VariableResolver",
]
