"""
节点执行器注册表

进程启动时一次性构建 {节点类型: 执行器} 查找表；
同一类型被多个执行器声明时记录冲突，由 DSL 校验报告。
"""
import logging
from typing import Dict, Iterable, List, Optional, Tuple

from ..exceptions import WorkflowEngineError
from ..integrations.agent import AgentInvoker, MockAgentInvoker
from ..integrations.approval import ApprovalGateway
from ..integrations.connectors import DataConnector
from ..integrations.notifications import InMemoryNotificationChannel, NotificationChannel
from ..integrations.references import ReferenceRegistry
from ..models.workflow import NodeType, WorkflowNode
from ..rules.engine import RuleEvaluationEngine
from .agents import DebateRoundNodeExecutor, JudgeAgentNodeExecutor, SingleAgentNodeExecutor
from .base import NodeExecutor
from .data_fetch import DataFetchNodeExecutor
from .join import JoinNodeExecutor
from .notify import NotifyNodeExecutor
from .risk_gate import RiskGateNodeExecutor
from .rule_pack_eval import RulePackEvalNodeExecutor


logger = logging.getLogger(__name__)


class ExecutorRegistry:
    """执行器注册表"""

    def __init__(self, executors: Iterable[NodeExecutor]):
        self.executors: Tuple[NodeExecutor, ...] = tuple(executors)
        self._table: Dict[NodeType, NodeExecutor] = {}
        self.conflicts: Dict[NodeType, List[str]] = {}

        for executor in self.executors:
            for node_type in executor.node_types:
                existing = self._table.get(node_type)
                if existing is None:
                    self._table[node_type] = executor
                    continue
                # 先注册者生效，冲突留待校验报告
                names = self.conflicts.setdefault(node_type, [existing.name])
                names.append(executor.name)
                logger.warning(
                    f"Node type '{node_type.value}' claimed by multiple executors: {', '.join(names)}"
                )

    def get(self, node: WorkflowNode) -> Optional[NodeExecutor]:
        """查找执行器，未知类型返回 None"""
        node_type = node.node_type
        if node_type is None:
            return None
        return self._table.get(node_type)

    def resolve(self, node: WorkflowNode) -> NodeExecutor:
        """解析节点对应的执行器"""
        executor = self.get(node)
        if executor is None:
            raise WorkflowEngineError(f"No executor registered for node type '{node.type}'")
        return executor

    def supports(self, node: WorkflowNode) -> bool:
        executor = self.get(node)
        return executor is not None and executor.supports(node)

    @property
    def known_types(self) -> Tuple[NodeType, ...]:
        return tuple(self._table.keys())


def create_default_registry(
    agent_invoker: Optional[AgentInvoker] = None,
    connector: Optional[DataConnector] = None,
    notification_channel: Optional[NotificationChannel] = None,
    approval_gateway: Optional[ApprovalGateway] = None,
    references: Optional[ReferenceRegistry] = None,
    rule_engine: Optional[RuleEvaluationEngine] = None
) -> ExecutorRegistry:
    """构建内置执行器注册表"""
    invoker = agent_invoker or MockAgentInvoker()
    return ExecutorRegistry([
        DataFetchNodeExecutor(NodeType.DATA_FETCH, connector, synthetic_by_default=True),
        DataFetchNodeExecutor(NodeType.EXTERNAL_DATA_FETCH, connector, synthetic_by_default=False),
        RulePackEvalNodeExecutor(rule_engine),
        SingleAgentNodeExecutor(invoker, references),
        DebateRoundNodeExecutor(invoker, references),
        JudgeAgentNodeExecutor(invoker, references),
        RiskGateNodeExecutor(approval_gateway),
        JoinNodeExecutor(),
        NotifyNodeExecutor(notification_channel or InMemoryNotificationChannel()),
    ])
