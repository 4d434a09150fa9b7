"""
汇聚执行器

何时执行以及汇聚是否满足由编排器依据汇聚策略判定，
执行器只负责合并前驱输出。
"""
from typing import Any, Dict

from ..models.execution import NodeExecutionStatus
from ..models.frozen import thaw
from ..models.workflow import JoinPolicy, NodeType, WorkflowNode
from .base import NodeExecutionContext, NodeExecutor, NodeResult


def join_policy(node: WorkflowNode) -> JoinPolicy:
    """节点声明的汇聚策略，默认 ALL"""
    return JoinPolicy(str(node.config.get("joinPolicy", JoinPolicy.ALL.value)).upper())


def quorum_size(node: WorkflowNode) -> Any:
    return node.config.get("quorum", node.config.get("quorumBranches"))


class JoinNodeExecutor(NodeExecutor):
    """汇聚执行器"""

    node_types = (NodeType.JOIN,)
    output_fields = frozenset({"branches", "joinPolicy", "succeeded", "failed", "skipped", "canceled", "_meta"})

    async def execute(self, context: NodeExecutionContext) -> NodeResult:
        statuses = context.predecessor_status
        succeeded = [node_id for node_id, status in statuses.items() if status == NodeExecutionStatus.SUCCESS]
        branches: Dict[str, Any] = {
            node_id: thaw(context.upstream_outputs.get(node_id)) for node_id in succeeded
        }
        return NodeResult.success({
            "branches": branches,
            "joinPolicy": join_policy(context.node).value,
            "succeeded": succeeded,
            "failed": [n for n, s in statuses.items() if s == NodeExecutionStatus.FAILED],
            "skipped": [n for n, s in statuses.items() if s == NodeExecutionStatus.SKIPPED],
            "canceled": [n for n, s in statuses.items() if s == NodeExecutionStatus.CANCELED],
            "_meta": {"executor": self.name},
        })
