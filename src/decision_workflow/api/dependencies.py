"""
FastAPI 依赖注入
"""
import logging
from typing import Any, Dict

from fastapi import HTTPException, status

from ..core.engine import WorkflowEngine
from ..experiments.router import ExperimentRouter


logger = logging.getLogger(__name__)


# 全局实例
app_state: Dict[str, Any] = {}


def get_app_state() -> Dict[str, Any]:
    """获取应用状态"""
    return app_state


def get_workflow_engine() -> WorkflowEngine:
    """获取工作流引擎实例"""
    engine = app_state.get("engine")

    if not engine:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "error": "service_unavailable",
                "message": "Workflow engine not initialized"
            }
        )

    return engine


def get_experiment_router() -> ExperimentRouter:
    """获取实验路由器"""
    return get_workflow_engine().experiments
