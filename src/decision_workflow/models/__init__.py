"""Workflow, execution, rule and experiment models"""

from .workflow import (
    NodeType, EdgeType, JoinPolicy, VersionStatus, RuntimePolicy,
    WorkflowNode, WorkflowEdge, WorkflowDsl, WorkflowDefinition, WorkflowVersion
)
from .execution import (
    ExecutionStatus, NodeExecutionStatus, FailureCategory,
    NodeExecutionRecord, WorkflowExecution
)
from .rules import (
    RuleLayer, RuleOperator, DecisionRule, DecisionRulePack,
    ParameterItem, ParameterSet
)
from .experiment import Experiment, ExperimentStatus, Variant, VariantMetrics

__all__ = [
    "NodeType",
    "EdgeType",
    "JoinPolicy",
    "VersionStatus",
    "RuntimePolicy",
    "WorkflowNode",
    "WorkflowEdge",
    "WorkflowDsl",
    "WorkflowDefinition",
    "WorkflowVersion",
    "ExecutionStatus",
    "NodeExecutionStatus",
    "FailureCategory",
    "NodeExecutionRecord",
    "WorkflowExecution",
    "RuleLayer",
    "RuleOperator",
    "DecisionRule",
    "DecisionRulePack",
    "ParameterItem",
    "ParameterSet",
    "Experiment",
    "ExperimentStatus",
    "Variant",
    "VariantMetrics",
]
