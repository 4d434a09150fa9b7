"""
监控 API 路由
"""
import logging
from datetime import datetime
from typing import Any, Dict

from fastapi import APIRouter, Depends

from ..models import HealthCheckResponse
from ..dependencies import get_workflow_engine
from ...core.engine import WorkflowEngine


logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(
    engine: WorkflowEngine = Depends(get_workflow_engine)
) -> HealthCheckResponse:
    """健康检查"""
    from ... import __version__

    checks = {}
    try:
        await engine.workflow_repository.list_definitions(limit=1)
        checks["database"] = True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        checks["database"] = False

    checks["executors"] = len(engine.registry.known_types) > 0

    return HealthCheckResponse(
        status="healthy" if all(checks.values()) else "unhealthy",
        timestamp=datetime.utcnow(),
        version=__version__,
        checks=checks,
    )


@router.get("/resources")
async def resource_usage(
    engine: WorkflowEngine = Depends(get_workflow_engine)
) -> Dict[str, Any]:
    """并发资源使用情况"""
    stats = engine.resource_manager.get_usage_stats()
    stats["running_executions"] = engine.running_count
    return stats
