"""
实验 API 路由
"""
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, status

from ..models import (
    ExperimentAbortRequest, ExperimentConcludeRequest, ExperimentCreateRequest, RouteRequest
)
from ..dependencies import get_experiment_router, get_workflow_engine
from ...core.engine import WorkflowEngine
from ...experiments.router import ExperimentRouter
from ...models.experiment import Variant


logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_experiment(
    request: ExperimentCreateRequest,
    engine: WorkflowEngine = Depends(get_workflow_engine)
) -> Dict[str, Any]:
    """创建实验"""
    experiment = await engine.create_experiment(
        request.workflow_definition_id,
        request.variant_a_version_id,
        request.variant_b_version_id,
        traffic_split_percent=request.traffic_split_percent,
        experiment_code=request.experiment_code,
        bad_case_threshold=request.bad_case_threshold,
        auto_stop_enabled=request.auto_stop_enabled,
        min_sample_size=request.min_sample_size,
        max_executions=request.max_executions,
    )
    return experiment.to_dict()


@router.get("")
async def list_experiments(
    workflow_definition_id: Optional[str] = Query(None, alias="workflowDefinitionId"),
    experiments: ExperimentRouter = Depends(get_experiment_router)
) -> List[Dict[str, Any]]:
    """列出实验"""
    items = await experiments.repository.list(workflow_definition_id)
    return [experiment.to_dict() for experiment in items]


@router.get("/{experiment_id}")
async def get_experiment(
    experiment_id: str,
    experiments: ExperimentRouter = Depends(get_experiment_router)
) -> Dict[str, Any]:
    experiment = await experiments.get(experiment_id)
    return experiment.to_dict()


@router.post("/{experiment_id}/start")
async def start_experiment(
    experiment_id: str,
    experiments: ExperimentRouter = Depends(get_experiment_router)
) -> Dict[str, Any]:
    return (await experiments.start(experiment_id)).to_dict()


@router.post("/{experiment_id}/pause")
async def pause_experiment(
    experiment_id: str,
    experiments: ExperimentRouter = Depends(get_experiment_router)
) -> Dict[str, Any]:
    return (await experiments.pause(experiment_id)).to_dict()


@router.post("/{experiment_id}/abort")
async def abort_experiment(
    experiment_id: str,
    request: Optional[ExperimentAbortRequest] = None,
    experiments: ExperimentRouter = Depends(get_experiment_router)
) -> Dict[str, Any]:
    reason = request.reason if request else None
    return (await experiments.abort(experiment_id, reason)).to_dict()


@router.post("/{experiment_id}/conclude")
async def conclude_experiment(
    experiment_id: str,
    request: ExperimentConcludeRequest,
    experiments: ExperimentRouter = Depends(get_experiment_router)
) -> Dict[str, Any]:
    """选定胜出分组并结束实验"""
    experiment = await experiments.conclude(experiment_id, Variant(request.winner.value), request.summary)
    return experiment.to_dict()


@router.post("/{experiment_id}/route")
async def route_experiment(
    experiment_id: str,
    request: RouteRequest,
    experiments: ExperimentRouter = Depends(get_experiment_router)
) -> Dict[str, Any]:
    """按路由键选择分组（计入分组执行数）"""
    decision = await experiments.route(experiment_id, request.routing_key)
    return decision.to_dict()


@router.get("/{experiment_id}/evaluation")
async def evaluate_experiment(
    experiment_id: str,
    experiments: ExperimentRouter = Depends(get_experiment_router)
) -> Dict[str, Any]:
    """基于当前指标给出结论建议"""
    return await experiments.evaluate(experiment_id)
