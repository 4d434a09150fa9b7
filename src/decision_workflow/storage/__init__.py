"""Storage and repository interfaces"""

from .repository import (
    WorkflowRepository,
    ExecutionRepository,
    ExperimentRepository,
    InMemoryWorkflowRepository,
    InMemoryExecutionRepository,
    InMemoryExperimentRepository
)

__all__ = [
    "WorkflowRepository",
    "ExecutionRepository",
    "ExperimentRepository",
    "InMemoryWorkflowRepository",
    "InMemoryExecutionRepository",
    "InMemoryExperimentRepository"
]
