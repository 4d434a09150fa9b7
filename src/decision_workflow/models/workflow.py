"""
工作流定义模型
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple
from uuid import uuid4


class NodeType(Enum):
    """节点类型（封闭集合）"""
    DATA_FETCH = "data-fetch"
    EXTERNAL_DATA_FETCH = "external-data-fetch"
    RULE_PACK_EVAL = "rule-pack-eval"
    SINGLE_AGENT = "single-agent"
    DEBATE_ROUND = "debate-round"
    JUDGE_AGENT = "judge-agent"
    RISK_GATE = "risk-gate"
    JOIN = "join"
    NOTIFY = "notify"

    @classmethod
    def from_tag(cls, tag: str) -> Optional['NodeType']:
        """根据标签获取节点类型，未知标签返回 None"""
        try:
            return cls(tag)
        except ValueError:
            return None


class EdgeType(Enum):
    """边类型"""
    NORMAL = "NORMAL"
    ERROR_ROUTE = "ERROR_ROUTE"


class JoinPolicy(Enum):
    """汇聚策略"""
    ALL = "ALL"
    ANY = "ANY"
    QUORUM = "QUORUM"


class VersionStatus(Enum):
    """版本状态"""
    DRAFT = "DRAFT"
    PUBLISHED = "PUBLISHED"


@dataclass(frozen=True)
class RuntimePolicy:
    """节点运行策略"""
    timeout_ms: int = 30000
    max_retries: int = 0
    retry_backoff_ms: int = 0
    retry_on_timeout: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timeoutMs": self.timeout_ms,
            "maxRetries": self.max_retries,
            "retryBackoffMs": self.retry_backoff_ms,
            "retryOnTimeout": self.retry_on_timeout,
        }


@dataclass(frozen=True)
class WorkflowNode:
    """工作流节点"""
    id: str
    type: str
    name: str = ""
    config: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    enabled: bool = True
    runtime_policy: RuntimePolicy = field(default_factory=RuntimePolicy)
    input_bindings: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def node_type(self) -> Optional[NodeType]:
        """节点类型枚举，未知类型为 None"""
        return NodeType.from_tag(self.type)


@dataclass(frozen=True)
class WorkflowEdge:
    """工作流边"""
    id: str
    source: str
    target: str
    edge_type: EdgeType = EdgeType.NORMAL
    condition: Any = None  # 条件：布尔值或 {field, operator, value}


@dataclass(frozen=True)
class WorkflowDsl:
    """工作流 DSL（不可变）"""
    nodes: Tuple[WorkflowNode, ...] = ()
    edges: Tuple[WorkflowEdge, ...] = ()
    param_set_bindings: Tuple[str, ...] = ()
    agent_bindings: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    run_policy: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    name: str = ""

    def get_node(self, node_id: str) -> Optional[WorkflowNode]:
        """根据ID获取节点"""
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def get_edge(self, edge_id: str) -> Optional[WorkflowEdge]:
        """根据ID获取边"""
        for edge in self.edges:
            if edge.id == edge_id:
                return edge
        return None


@dataclass
class WorkflowDefinition:
    """工作流定义（可变元数据）"""
    id: str = field(default_factory=lambda: str(uuid4()))
    name: str = ""
    description: Optional[str] = None
    active: bool = True
    latest_version_id: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class WorkflowVersion:
    """工作流版本，发布后 DSL 与内容哈希不再变化"""
    workflow_definition_id: str
    version_number: int
    dsl: WorkflowDsl
    content_hash: str
    id: str = field(default_factory=lambda: str(uuid4()))
    status: VersionStatus = VersionStatus.DRAFT
    created_at: datetime = field(default_factory=datetime.utcnow)
    published_at: Optional[datetime] = None

    @property
    def is_published(self) -> bool:
        return self.status == VersionStatus.PUBLISHED

    def publish(self):
        """发布版本"""
        self.status = VersionStatus.PUBLISHED
        self.published_at = datetime.utcnow()
