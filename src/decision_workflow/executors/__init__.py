"""Node executors behind one execution contract"""

from .base import NodeExecutor, NodeResult, NodeExecutionContext
from .registry import ExecutorRegistry, create_default_registry
from .data_fetch import DataFetchNodeExecutor
from .rule_pack_eval import RulePackEvalNodeExecutor
from .agents import (
    SingleAgentNodeExecutor, DebateRoundNodeExecutor, JudgeAgentNodeExecutor, JudgePolicy
)
from .risk_gate import RiskGateNodeExecutor, RiskLevel, GateAction, DegradeAction
from .join import JoinNodeExecutor
from .notify import NotifyNodeExecutor

__all__ = [
    "NodeExecutor",
    "NodeResult",
    "NodeExecutionContext",
    "ExecutorRegistry",
    "create_default_registry",
    "DataFetchNodeExecutor",
    "RulePackEvalNodeExecutor",
    "SingleAgentNodeExecutor",
    "DebateRoundNodeExecutor",
    "JudgeAgentNodeExecutor",
    "JudgePolicy",
    "RiskGateNodeExecutor",
    "RiskLevel",
    "GateAction",
    "DegradeAction",
    "JoinNodeExecutor",
    "NotifyNodeExecutor",
]
