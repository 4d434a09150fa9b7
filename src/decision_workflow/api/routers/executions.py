"""
工作流执行 API 路由
"""
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Response, status

from ..models import (
    ApprovalDecisionRequest, ApprovalResponse, CancelRequest, ExecutionStatusEnum,
    TriggerExecutionRequest
)
from ..dependencies import get_workflow_engine
from ...core.engine import TriggerRequest, WorkflowEngine
from ...models.execution import ExecutionStatus


logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("", status_code=status.HTTP_202_ACCEPTED)
async def trigger_execution(
    request: TriggerExecutionRequest,
    response: Response,
    engine: WorkflowEngine = Depends(get_workflow_engine)
) -> Dict[str, Any]:
    """触发执行；wait=true 时等待执行结束"""
    trigger = TriggerRequest(
        workflow_definition_id=request.workflow_definition_id,
        version_id=request.version_id,
        experiment_id=request.experiment_id,
        params=request.params,
        idempotency_key=request.idempotency_key,
    )
    if request.wait:
        execution = await engine.run(trigger, timeout=request.timeout_seconds)
        response.status_code = status.HTTP_200_OK
    else:
        execution = await engine.trigger(trigger)
    return execution.to_status_dict()


@router.get("")
async def list_executions(
    workflow_definition_id: str = Query(..., alias="workflowDefinitionId", description="工作流定义ID"),
    status_filter: Optional[ExecutionStatusEnum] = Query(None, alias="status", description="执行状态"),
    offset: int = Query(0, ge=0, description="偏移量"),
    limit: int = Query(20, ge=1, le=100, description="每页数量"),
    engine: WorkflowEngine = Depends(get_workflow_engine)
) -> List[Dict[str, Any]]:
    """列出执行实例"""
    executions = await engine.execution_repository.list_by_workflow(
        workflow_definition_id,
        status=ExecutionStatus(status_filter.value) if status_filter else None,
        offset=offset,
        limit=limit
    )
    return [execution.to_status_dict() for execution in executions]


@router.get("/{execution_id}")
async def get_execution_status(
    execution_id: str,
    engine: WorkflowEngine = Depends(get_workflow_engine)
) -> Dict[str, Any]:
    """获取执行状态与节点记录"""
    return await engine.get_status(execution_id)


@router.post("/{execution_id}/cancel")
async def cancel_execution(
    execution_id: str,
    request: Optional[CancelRequest] = None,
    engine: WorkflowEngine = Depends(get_workflow_engine)
) -> Dict[str, Any]:
    """取消执行"""
    reason = request.reason if request else "canceled by user"
    execution = await engine.cancel(execution_id, reason)
    return execution.to_status_dict()


@router.post("/approvals/{request_id}/decision", response_model=ApprovalResponse)
async def decide_approval(
    request_id: str,
    request: ApprovalDecisionRequest,
    engine: WorkflowEngine = Depends(get_workflow_engine)
) -> ApprovalResponse:
    """提交风控审批结论"""
    approval = await engine.resolve_approval(
        request_id, request.approved, request.comment, request.decided_by
    )
    return ApprovalResponse(
        id=approval.id,
        execution_id=approval.execution_id,
        node_id=approval.node_id,
        decision=approval.decision.value if approval.decision else None,
        comment=approval.comment,
        decided_by=approval.decided_by,
        decided_at=approval.decided_at,
    )
