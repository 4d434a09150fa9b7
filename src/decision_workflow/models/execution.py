"""
工作流执行模型
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from ..exceptions import StateTransitionError


class ExecutionStatus(Enum):
    """工作流执行状态"""
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    CANCELED = "CANCELED"


class NodeExecutionStatus(Enum):
    """节点执行状态"""
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    WAITING = "WAITING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"
    CANCELED = "CANCELED"


class FailureCategory(Enum):
    """失败分类"""
    VALIDATION = "VALIDATION"
    EXECUTOR = "EXECUTOR"
    TIMEOUT = "TIMEOUT"
    CONNECTOR_UNAVAILABLE = "CONNECTOR_UNAVAILABLE"
    RISK_BLOCKED = "RISK_BLOCKED"


TERMINAL_STATUSES = (
    ExecutionStatus.SUCCESS,
    ExecutionStatus.FAILED,
    ExecutionStatus.CANCELED,
)

# 合法状态迁移
_TRANSITIONS = {
    ExecutionStatus.PENDING: (ExecutionStatus.RUNNING, ExecutionStatus.FAILED, ExecutionStatus.CANCELED),
    ExecutionStatus.RUNNING: TERMINAL_STATUSES,
}


@dataclass
class NodeExecutionRecord:
    """节点单次尝试的执行记录（只追加）"""
    execution_id: str
    node_id: str
    node_type: str
    attempt: int = 1
    id: str = field(default_factory=lambda: str(uuid4()))
    status: NodeExecutionStatus = NodeExecutionStatus.RUNNING
    input_data: Any = None
    output: Any = None
    message: str = ""
    failure_category: Optional[FailureCategory] = None
    retryable: bool = False
    started_at: datetime = field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None

    def finish(
        self,
        status: NodeExecutionStatus,
        output: Any = None,
        message: str = "",
        failure_category: FailureCategory = None,
        retryable: bool = False
    ):
        """结束本次尝试"""
        self.status = status
        self.output = output
        self.message = message
        self.failure_category = failure_category
        self.retryable = retryable
        self.completed_at = datetime.utcnow()
        self.duration_ms = int((self.completed_at - self.started_at).total_seconds() * 1000)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "nodeId": self.node_id,
            "nodeType": self.node_type,
            "attempt": self.attempt,
            "status": self.status.value,
            "output": self.output,
            "message": self.message,
            "failureCategory": self.failure_category.value if self.failure_category else None,
            "retryable": self.retryable,
            "startedAt": self.started_at.isoformat(),
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
            "durationMs": self.duration_ms,
        }


@dataclass
class WorkflowExecution:
    """工作流执行实例，仅由所属执行任务写入"""
    workflow_definition_id: str
    version_id: str
    id: str = field(default_factory=lambda: str(uuid4()))
    status: ExecutionStatus = ExecutionStatus.PENDING
    failure_category: Optional[FailureCategory] = None
    failed_node_id: Optional[str] = None
    error_message: Optional[str] = None
    params: Dict[str, Any] = field(default_factory=dict)
    idempotency_key: Optional[str] = None
    experiment_id: Optional[str] = None
    variant: Optional[str] = None
    node_states: Dict[str, NodeExecutionStatus] = field(default_factory=dict)
    node_records: List[NodeExecutionRecord] = field(default_factory=list)
    outputs: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None

    def _transition(self, target: ExecutionStatus):
        allowed = _TRANSITIONS.get(self.status, ())
        if target not in allowed:
            raise StateTransitionError(self.status.value, target.value)
        self.status = target

    def _close(self):
        self.completed_at = datetime.utcnow()
        if self.started_at:
            self.duration_ms = int((self.completed_at - self.started_at).total_seconds() * 1000)

    def start(self):
        """开始执行"""
        self._transition(ExecutionStatus.RUNNING)
        self.started_at = datetime.utcnow()

    def succeed(self):
        """执行成功"""
        self._transition(ExecutionStatus.SUCCESS)
        self._close()

    def fail(self, category: FailureCategory, message: str, node_id: Optional[str] = None):
        """执行失败"""
        self._transition(ExecutionStatus.FAILED)
        self.failure_category = category
        self.failed_node_id = node_id
        self.error_message = message
        self._close()

    def cancel(self, reason: str = None):
        """取消执行"""
        self._transition(ExecutionStatus.CANCELED)
        self.error_message = reason
        self._close()

    def is_terminal_state(self) -> bool:
        """是否为终止状态"""
        return self.status in TERMINAL_STATUSES

    def append_record(self, record: NodeExecutionRecord):
        """追加节点执行记录"""
        self.node_records.append(record)

    def records_for(self, node_id: str) -> List[NodeExecutionRecord]:
        """获取节点全部尝试记录"""
        return [record for record in self.node_records if record.node_id == node_id]

    def to_status_dict(self) -> Dict[str, Any]:
        """执行状态查询结果"""
        return {
            "executionId": self.id,
            "workflowDefinitionId": self.workflow_definition_id,
            "versionId": self.version_id,
            "status": self.status.value,
            "failureCategory": self.failure_category.value if self.failure_category else None,
            "failedNodeId": self.failed_node_id,
            "errorMessage": self.error_message,
            "experimentId": self.experiment_id,
            "variant": self.variant,
            "nodeStates": {node_id: state.value for node_id, state in self.node_states.items()},
            "nodeRecords": [record.to_dict() for record in self.node_records],
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
            "durationMs": self.duration_ms,
        }
