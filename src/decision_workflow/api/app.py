"""
FastAPI 应用主文件
"""
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .dependencies import app_state
from .middleware import RequestLoggingMiddleware
from .routers import workflows, executions, experiments, monitoring
from ..config import EngineSettings, load_settings
from ..core.engine import WorkflowEngine
from ..exceptions import (
    ApprovalNotFoundError, ConcurrencyLimitError, ConsistencyError, DslValidationError,
    ExperimentError, ExperimentNotFoundError, StateTransitionError, VersionImmutableError,
    WorkflowEngineError, WorkflowExecutionError, WorkflowNotFoundError, WorkflowParseError
)
from ..integrations.connectors import HttpDataConnector
from ..integrations.references import ReferenceRegistry
from ..storage.sqlalchemy_repository import (
    DatabaseManager, SQLAlchemyExecutionRepository, SQLAlchemyWorkflowRepository
)


logger = logging.getLogger(__name__)


# 领域异常 -> (HTTP 状态码, 错误码)，按异常类的 MRO 取最具体的映射
ERROR_STATUS = {
    WorkflowNotFoundError: (status.HTTP_404_NOT_FOUND, "not_found"),
    ExperimentNotFoundError: (status.HTTP_404_NOT_FOUND, "not_found"),
    ApprovalNotFoundError: (status.HTTP_404_NOT_FOUND, "not_found"),
    WorkflowParseError: (status.HTTP_400_BAD_REQUEST, "parse_error"),
    DslValidationError: (status.HTTP_422_UNPROCESSABLE_ENTITY, "validation_error"),
    ConsistencyError: (status.HTTP_422_UNPROCESSABLE_ENTITY, "consistency_error"),
    ExperimentError: (status.HTTP_400_BAD_REQUEST, "experiment_error"),
    VersionImmutableError: (status.HTTP_409_CONFLICT, "version_immutable"),
    StateTransitionError: (status.HTTP_409_CONFLICT, "invalid_state"),
    WorkflowExecutionError: (status.HTTP_409_CONFLICT, "execution_error"),
    ConcurrencyLimitError: (status.HTTP_429_TOO_MANY_REQUESTS, "concurrency_limit"),
    WorkflowEngineError: (status.HTTP_400_BAD_REQUEST, "engine_error"),
}


def _error_details(exc: Exception) -> Optional[Any]:
    issues = getattr(exc, "issues", None)
    if not issues:
        return None
    return [issue.to_dict() if hasattr(issue, "to_dict") else str(issue) for issue in issues]


async def engine_error_handler(request: Request, exc: WorkflowEngineError) -> JSONResponse:
    """领域异常处理器"""
    status_code, error = status.HTTP_400_BAD_REQUEST, "engine_error"
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS:
            status_code, error = ERROR_STATUS[cls]
            break

    logger.info(f"{request.method} {request.url.path} -> {status_code} {error}: {exc}")
    return JSONResponse(
        status_code=status_code,
        content={"error": error, "message": str(exc), "details": _error_details(exc)}
    )


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """全局异常处理器"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "internal_server_error",
            "message": "An unexpected error occurred",
            "request_id": getattr(request.state, "request_id", None)
        }
    )


async def build_engine(settings: EngineSettings) -> Dict[str, Any]:
    """按配置构建数据库与引擎组件"""
    db_manager = DatabaseManager(settings.database_url)
    await db_manager.initialize()

    if settings.reference_catalog:
        references = ReferenceRegistry.from_file(settings.reference_catalog)
    else:
        references = ReferenceRegistry()
    connector = HttpDataConnector(references.connector_endpoints())

    engine = WorkflowEngine(
        settings=settings,
        workflow_repository=SQLAlchemyWorkflowRepository(db_manager),
        execution_repository=SQLAlchemyExecutionRepository(db_manager),
        references=references,
        connector=connector,
    )
    return {"db_manager": db_manager, "connector": connector, "engine": engine}


def create_app(engine: WorkflowEngine = None, settings: EngineSettings = None) -> FastAPI:
    """
    创建 FastAPI 应用

    Args:
        engine: 预先构建的引擎（测试与嵌入使用）；为空时按配置构建持久化引擎
        settings: 引擎配置，缺省从环境变量加载
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """应用生命周期管理"""
        logger.info("Starting Decision Workflow API...")
        owned: Dict[str, Any] = {}
        if engine is not None:
            app_state["engine"] = engine
        else:
            owned = await build_engine(settings or load_settings())
            app_state.update(owned)
        logger.info("Decision Workflow API started successfully")

        yield

        logger.info("Shutting down Decision Workflow API...")
        await app_state["engine"].shutdown()
        if owned:
            await owned["connector"].close()
            await owned["db_manager"].close()
        app_state.clear()
        logger.info("Decision Workflow API shut down successfully")

    from .. import __version__

    app = FastAPI(
        title="Decision Workflow API",
        description="商品决策工作流引擎 RESTful API",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json"
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    app.include_router(workflows.router, prefix="/api/v1/workflows", tags=["workflows"])
    app.include_router(workflows.versions_router, prefix="/api/v1/versions", tags=["versions"])
    app.include_router(executions.router, prefix="/api/v1/executions", tags=["executions"])
    app.include_router(experiments.router, prefix="/api/v1/experiments", tags=["experiments"])
    app.include_router(monitoring.router, prefix="/api/v1/monitoring", tags=["monitoring"])

    for exc_class in ERROR_STATUS:
        app.add_exception_handler(exc_class, engine_error_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    @app.get("/", tags=["root"])
    async def root():
        """API根路径"""
        return {
            "name": "Decision Workflow API",
            "version": __version__,
            "status": "running",
            "docs": "/docs",
            "health": "/api/v1/monitoring/health"
        }

    return app
