"""
节点执行器契约
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, FrozenSet, Mapping, Optional, Tuple

from ..core.cancellation import CancellationToken
from ..models.execution import FailureCategory, NodeExecutionStatus
from ..models.rules import DecisionRulePack
from ..models.workflow import NodeType, WorkflowNode


@dataclass(frozen=True)
class NodeResult:
    """执行器输出契约 {status, output, message}"""
    status: NodeExecutionStatus
    output: Any = None
    message: str = ""
    retryable: bool = False
    failure_category: Optional[FailureCategory] = None

    @classmethod
    def success(cls, output: Any = None, message: str = "") -> 'NodeResult':
        return cls(NodeExecutionStatus.SUCCESS, output, message)

    @classmethod
    def failed(
        cls,
        message: str,
        category: FailureCategory = FailureCategory.EXECUTOR,
        retryable: bool = False,
        output: Any = None
    ) -> 'NodeResult':
        return cls(NodeExecutionStatus.FAILED, output, message, retryable, category)

    @classmethod
    def skipped(cls, message: str = "", output: Any = None) -> 'NodeResult':
        return cls(NodeExecutionStatus.SKIPPED, output, message)

    @classmethod
    def waiting(cls, output: Any = None, message: str = "") -> 'NodeResult':
        return cls(NodeExecutionStatus.WAITING, output, message)

    @property
    def is_success(self) -> bool:
        return self.status == NodeExecutionStatus.SUCCESS

    @property
    def is_failed(self) -> bool:
        return self.status == NodeExecutionStatus.FAILED


@dataclass(frozen=True)
class NodeExecutionContext:
    """节点执行上下文，执行器只读"""
    execution_id: str
    workflow_definition_id: str
    version_id: str
    node: WorkflowNode
    input: Any = None
    params: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    rule_packs: Tuple[DecisionRulePack, ...] = ()
    upstream_outputs: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    predecessor_status: Mapping[str, NodeExecutionStatus] = field(
        default_factory=lambda: MappingProxyType({})
    )
    cancellation: CancellationToken = field(default_factory=CancellationToken)
    attempt: int = 1
    idempotency_key: Optional[str] = None

    @property
    def config(self) -> Mapping[str, Any]:
        return self.node.config

    @property
    def request_identity(self) -> str:
        """请求标识：幂等键优先，否则执行ID"""
        return self.idempotency_key or self.execution_id


class NodeExecutor(ABC):
    """节点执行器基类"""

    # 支持的节点类型，注册表据此构建查找表
    node_types: Tuple[NodeType, ...] = ()
    # 声明的输出字段，None 表示输出结构开放
    output_fields: Optional[FrozenSet[str]] = None

    @property
    def name(self) -> str:
        return type(self).__name__

    def supports(self, node: WorkflowNode) -> bool:
        """是否支持该节点"""
        return node.node_type in self.node_types

    def declared_output_fields(self, node: WorkflowNode) -> Optional[FrozenSet[str]]:
        """节点可产出的字段"""
        return self.output_fields

    @abstractmethod
    async def execute(self, context: NodeExecutionContext) -> NodeResult:
        """执行节点，只通过返回值产出结果"""
        pass
