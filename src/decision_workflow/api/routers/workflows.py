"""
工作流定义与版本 API 路由
"""
import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, Query, status

from ..models import (
    DefinitionCreateRequest, DefinitionResponse, DraftSaveRequest, DslValidateRequest,
    ValidationResponse, VersionResponse
)
from ..dependencies import get_workflow_engine
from ...core.engine import WorkflowEngine


logger = logging.getLogger(__name__)
router = APIRouter()
versions_router = APIRouter()


@router.post("", response_model=DefinitionResponse, status_code=status.HTTP_201_CREATED)
async def create_workflow(
    request: DefinitionCreateRequest,
    engine: WorkflowEngine = Depends(get_workflow_engine)
) -> DefinitionResponse:
    """创建工作流定义，可同时保存首个草稿"""
    definition = await engine.create_definition(request.name, request.description)
    if request.dsl is not None:
        await engine.save_draft(definition.id, request.dsl)
    return DefinitionResponse.from_definition(definition)


@router.get("", response_model=List[DefinitionResponse])
async def list_workflows(
    offset: int = Query(0, ge=0, description="偏移量"),
    limit: int = Query(20, ge=1, le=100, description="每页数量"),
    engine: WorkflowEngine = Depends(get_workflow_engine)
) -> List[DefinitionResponse]:
    """列出工作流定义"""
    definitions = await engine.workflow_repository.list_definitions(offset=offset, limit=limit)
    return [DefinitionResponse.from_definition(d) for d in definitions]


@router.post("/validate", response_model=ValidationResponse)
async def validate_dsl(
    request: DslValidateRequest,
    engine: WorkflowEngine = Depends(get_workflow_engine)
) -> ValidationResponse:
    """校验 DSL（不保存）"""
    result = engine.validate(request.dsl)
    return ValidationResponse(
        valid=result.is_valid,
        issues=[issue.to_dict() for issue in result.issues],
        layers=[list(layer) for layer in result.graph.layers] if result.graph else None,
    )


@router.get("/{definition_id}", response_model=DefinitionResponse)
async def get_workflow(
    definition_id: str,
    engine: WorkflowEngine = Depends(get_workflow_engine)
) -> DefinitionResponse:
    """获取工作流定义"""
    definition = await engine.get_definition(definition_id)
    return DefinitionResponse.from_definition(definition)


@router.post(
    "/{definition_id}/versions",
    response_model=VersionResponse,
    status_code=status.HTTP_201_CREATED
)
async def save_draft(
    definition_id: str,
    request: DraftSaveRequest,
    engine: WorkflowEngine = Depends(get_workflow_engine)
) -> VersionResponse:
    """保存草稿版本"""
    version = await engine.save_draft(definition_id, request.dsl, request.version_id)
    return VersionResponse.from_version(version)


@router.get("/{definition_id}/versions", response_model=List[VersionResponse])
async def list_versions(
    definition_id: str,
    engine: WorkflowEngine = Depends(get_workflow_engine)
) -> List[VersionResponse]:
    """列出工作流版本"""
    versions = await engine.list_versions(definition_id)
    return [VersionResponse.from_version(v) for v in versions]


@versions_router.get("/{version_id}", response_model=VersionResponse)
async def get_version(
    version_id: str,
    engine: WorkflowEngine = Depends(get_workflow_engine)
) -> VersionResponse:
    """获取工作流版本"""
    version = await engine.get_version(version_id)
    return VersionResponse.from_version(version)


@versions_router.post("/{version_id}/check")
async def check_version(
    version_id: str,
    engine: WorkflowEngine = Depends(get_workflow_engine)
) -> Dict[str, Any]:
    """结构校验与引用一致性校验"""
    return await engine.check_version(version_id)


@versions_router.post("/{version_id}/publish", response_model=VersionResponse)
async def publish_version(
    version_id: str,
    engine: WorkflowEngine = Depends(get_workflow_engine)
) -> VersionResponse:
    """发布版本"""
    version = await engine.publish(version_id)
    logger.info(f"Version {version_id} published via API")
    return VersionResponse.from_version(version)
