"""
API 请求和响应模型
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..models.workflow import WorkflowDefinition, WorkflowVersion
from ..core.parser import WorkflowParser


class ApiModel(BaseModel):
    """请求/响应基类：对外使用 camelCase，同时接受字段名"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class VariantEnum(str, Enum):
    """实验分组（API）"""
    A = "A"
    B = "B"


class ExecutionStatusEnum(str, Enum):
    """执行状态（API）"""
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    CANCELED = "CANCELED"


# 工作流定义与版本

class DefinitionCreateRequest(ApiModel):
    """创建工作流定义请求"""
    name: str = Field(..., min_length=1, description="工作流名称")
    description: Optional[str] = Field(None, description="描述")
    dsl: Optional[Dict[str, Any]] = Field(None, description="初始草稿 DSL")


class DraftSaveRequest(ApiModel):
    """保存草稿请求"""
    dsl: Dict[str, Any] = Field(..., description="DSL 文档")
    version_id: Optional[str] = Field(None, description="覆盖的草稿版本ID")


class DslValidateRequest(ApiModel):
    """DSL 校验请求"""
    dsl: Dict[str, Any] = Field(..., description="DSL 文档")


class DefinitionResponse(ApiModel):
    """工作流定义响应"""
    id: str
    name: str
    description: Optional[str] = None
    active: bool = True
    latest_version_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_definition(cls, definition: WorkflowDefinition) -> 'DefinitionResponse':
        return cls(
            id=definition.id,
            name=definition.name,
            description=definition.description,
            active=definition.active,
            latest_version_id=definition.latest_version_id,
            created_at=definition.created_at,
            updated_at=definition.updated_at,
        )


class VersionResponse(ApiModel):
    """工作流版本响应"""
    id: str
    workflow_definition_id: str
    version_number: int
    status: str
    content_hash: str
    created_at: datetime
    published_at: Optional[datetime] = None
    dsl: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_version(cls, version: WorkflowVersion) -> 'VersionResponse':
        return cls(
            id=version.id,
            workflow_definition_id=version.workflow_definition_id,
            version_number=version.version_number,
            status=version.status.value,
            content_hash=version.content_hash,
            created_at=version.created_at,
            published_at=version.published_at,
            dsl=WorkflowParser.to_dict(version.dsl),
        )


class ValidationResponse(ApiModel):
    """DSL 校验结果"""
    valid: bool
    issues: List[Dict[str, Any]] = Field(default_factory=list)
    layers: Optional[List[List[str]]] = None


# 执行

class TriggerExecutionRequest(ApiModel):
    """触发执行请求"""
    workflow_definition_id: str = Field(..., description="工作流定义ID")
    version_id: Optional[str] = Field(None, description="指定版本，缺省为最新发布版本")
    experiment_id: Optional[str] = Field(None, description="实验ID，由实验路由选择版本")
    params: Dict[str, Any] = Field(default_factory=dict, description="触发参数")
    idempotency_key: Optional[str] = Field(None, description="幂等键")
    wait: bool = Field(False, description="是否等待执行结束")
    timeout_seconds: Optional[float] = Field(None, gt=0, description="等待超时（秒）")


class CancelRequest(ApiModel):
    """取消执行请求"""
    reason: str = Field("canceled by user", description="取消原因")


class ApprovalDecisionRequest(ApiModel):
    """审批结论请求"""
    approved: bool
    comment: Optional[str] = None
    decided_by: Optional[str] = None


class ApprovalResponse(ApiModel):
    """审批请求响应"""
    id: str
    execution_id: str
    node_id: str
    decision: Optional[str] = None
    comment: Optional[str] = None
    decided_by: Optional[str] = None
    decided_at: Optional[datetime] = None


# 实验

class ExperimentCreateRequest(ApiModel):
    """创建实验请求"""
    workflow_definition_id: str
    variant_a_version_id: str
    variant_b_version_id: str
    traffic_split_percent: int = Field(50, ge=0, le=100, description="B 组流量百分比")
    experiment_code: str = ""
    bad_case_threshold: float = Field(0.2, ge=0, le=1)
    auto_stop_enabled: bool = True
    min_sample_size: int = Field(10, ge=1)
    max_executions: Optional[int] = Field(None, gt=0)


class ExperimentConcludeRequest(ApiModel):
    """结束实验请求"""
    winner: VariantEnum
    summary: Optional[str] = None


class ExperimentAbortRequest(ApiModel):
    """终止实验请求"""
    reason: Optional[str] = None


class RouteRequest(ApiModel):
    """实验路由请求"""
    routing_key: str = Field(..., min_length=1)


# 通用

class ErrorResponse(ApiModel):
    """错误响应"""
    error: str
    message: str
    details: Optional[Any] = None


class HealthCheckResponse(ApiModel):
    """健康检查响应"""
    status: str
    timestamp: datetime
    version: str
    checks: Dict[str, bool]
