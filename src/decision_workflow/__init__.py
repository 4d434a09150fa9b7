"""
Decision Workflow Engine - 商品决策工作流引擎
"""

__version__ = "0.1.0"

from .core.engine import WorkflowEngine, TriggerRequest
from .core.parser import WorkflowParser
from .core.validator import DslValidator
from .core.scheduler import DagScheduler
from .rules.engine import RuleEvaluationEngine
from .experiments.router import ExperimentRouter
from .telemetry.consistency import ConsistencyValidator
from .models.workflow import WorkflowDsl, WorkflowNode, WorkflowEdge
from .models.execution import WorkflowExecution, NodeExecutionRecord

__all__ = [
    "WorkflowEngine",
    "TriggerRequest",
    "WorkflowParser",
    "DslValidator",
    "DagScheduler",
    "RuleEvaluationEngine",
    "ExperimentRouter",
    "ConsistencyValidator",
    "WorkflowDsl",
    "WorkflowNode",
    "WorkflowEdge",
    "WorkflowExecution",
    "NodeExecutionRecord"
]
