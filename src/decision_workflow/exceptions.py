"""
决策工作流引擎异常定义
"""
from typing import Any, List, Optional


class WorkflowEngineError(Exception):
    """工作流引擎基础异常"""
    pass


class WorkflowParseError(WorkflowEngineError):
    """工作流解析异常"""
    pass


class DslValidationError(WorkflowEngineError):
    """DSL 校验异常，携带全部校验问题"""
    def __init__(self, issues: List[Any], message: str = None):
        self.issues = list(issues)
        if message is None:
            codes = ", ".join(sorted({issue.code for issue in self.issues}))
            message = f"DSL validation failed with {len(self.issues)} issue(s): {codes}"
        super().__init__(message)


class WorkflowNotFoundError(WorkflowEngineError):
    """工作流或版本不存在"""
    pass


class VersionImmutableError(WorkflowEngineError):
    """已发布版本不可修改"""
    def __init__(self, version_id: str):
        self.version_id = version_id
        super().__init__(f"Workflow version '{version_id}' is published and immutable")


class WorkflowExecutionError(WorkflowEngineError):
    """工作流执行异常"""
    pass


class NodeExecutionError(WorkflowExecutionError):
    """节点执行异常"""
    def __init__(
        self,
        node_id: str,
        message: str,
        category: Any = None,
        retryable: bool = False,
        cause: Exception = None
    ):
        self.node_id = node_id
        self.category = category
        self.retryable = retryable
        self.cause = cause
        super().__init__(f"Node '{node_id}' execution failed: {message}")


class ConnectorUnavailableError(WorkflowEngineError):
    """外部数据连接器不可用（可重试）"""
    def __init__(self, connector_code: str, message: str = None):
        self.connector_code = connector_code
        msg = f"Connector '{connector_code}' unavailable"
        if message:
            msg += f": {message}"
        super().__init__(msg)


class ConnectorRequestError(WorkflowEngineError):
    """连接器请求被拒绝（不可重试）"""
    def __init__(self, connector_code: str, message: str = None):
        self.connector_code = connector_code
        msg = f"Connector '{connector_code}' rejected request"
        if message:
            msg += f": {message}"
        super().__init__(msg)


class AgentInvocationError(WorkflowEngineError):
    """智能体调用异常"""
    def __init__(self, agent_code: str, message: str = None):
        self.agent_code = agent_code
        msg = f"Agent '{agent_code}' invocation failed"
        if message:
            msg += f": {message}"
        super().__init__(msg)


class NotificationError(WorkflowEngineError):
    """通知渠道异常"""
    pass


class RiskBlockedError(WorkflowExecutionError):
    """风控拦截"""
    pass


class ExecutionCancelledError(WorkflowExecutionError):
    """执行被取消"""
    pass


class ResourceAllocationError(WorkflowEngineError):
    """资源分配异常"""
    pass


class ConcurrencyLimitError(ResourceAllocationError):
    """并发限制错误"""
    def __init__(self, workflow_definition_id: str, limit: int):
        self.workflow_definition_id = workflow_definition_id
        self.limit = limit
        super().__init__(
            f"Workflow '{workflow_definition_id}' reached concurrent execution limit {limit}"
        )


class StateTransitionError(WorkflowEngineError):
    """状态转换异常"""
    def __init__(self, current_state: str, target_state: str, message: str = None):
        self.current_state = current_state
        self.target_state = target_state
        msg = f"Invalid state transition from '{current_state}' to '{target_state}'"
        if message:
            msg += f": {message}"
        super().__init__(msg)


class ConsistencyError(WorkflowEngineError):
    """外部引用一致性校验失败"""
    def __init__(self, issues: List[Any], version_id: Optional[str] = None):
        self.issues = list(issues)
        self.version_id = version_id
        refs = ", ".join(f"{issue.kind}:{issue.code}" for issue in self.issues)
        super().__init__(f"Unresolved references in workflow version '{version_id}': {refs}")


class ExperimentError(WorkflowEngineError):
    """实验异常"""
    pass


class ExperimentNotFoundError(ExperimentError):
    """实验不存在"""
    pass


class ApprovalNotFoundError(WorkflowEngineError):
    """审批请求不存在"""
    pass
