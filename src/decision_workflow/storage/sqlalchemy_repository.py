"""
SQLAlchemy 仓库实现
"""
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, List, Optional

from sqlalchemy import select, update, delete, and_
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, AsyncEngine
from sqlalchemy.orm import sessionmaker, selectinload

from ..core.parser import WorkflowParser
from ..models.execution import (
    ExecutionStatus, FailureCategory, NodeExecutionRecord, NodeExecutionStatus,
    TERMINAL_STATUSES, WorkflowExecution
)
from ..models.frozen import thaw
from ..models.workflow import VersionStatus, WorkflowDefinition, WorkflowVersion
from .repository import ExecutionRepository, WorkflowRepository
from .sqlalchemy_models import (
    Base,
    NodeExecutionRow,
    WorkflowDefinitionRow,
    WorkflowExecutionRow,
    WorkflowVersionRow,
)


logger = logging.getLogger(__name__)


def _to_json(value: Any) -> Any:
    """转换为可写入 JSON 列的结构"""
    if value is None:
        return None
    return json.loads(json.dumps(thaw(value), ensure_ascii=False, default=str))


def _category(value: Optional[str]) -> Optional[FailureCategory]:
    return FailureCategory(value) if value else None


class DatabaseManager:
    """数据库管理器"""

    def __init__(self, database_url: str):
        self.database_url = database_url
        self.engine: Optional[AsyncEngine] = None
        self.async_session_maker = None

    async def initialize(self):
        """初始化数据库连接"""
        options = {"echo": False}
        # sqlite 使用默认连接池，不接受连接池大小参数
        if not self.database_url.startswith("sqlite"):
            options.update(pool_size=20, max_overflow=10, pool_pre_ping=True)
        self.engine = create_async_engine(self.database_url, **options)

        self.async_session_maker = sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False
        )

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info(f"Database initialized: {self.engine.url.render_as_string(hide_password=True)}")

    async def close(self):
        """关闭数据库连接"""
        if self.engine:
            await self.engine.dispose()

    @asynccontextmanager
    async def get_session(self):
        """获取数据库会话"""
        async with self.async_session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()


class SQLAlchemyWorkflowRepository(WorkflowRepository):
    """SQLAlchemy 工作流仓库实现"""

    def __init__(self, db_manager: DatabaseManager, parser: WorkflowParser = None):
        self.db = db_manager
        self.parser = parser or WorkflowParser()

    async def save_definition(self, definition: WorkflowDefinition) -> str:
        """保存工作流定义（存在则更新）"""
        definition.updated_at = datetime.utcnow()
        async with self.db.get_session() as session:
            row = await session.get(WorkflowDefinitionRow, definition.id)
            if row is None:
                row = WorkflowDefinitionRow(id=definition.id, created_at=definition.created_at)
                session.add(row)
            row.name = definition.name
            row.description = definition.description
            row.active = definition.active
            row.latest_version_id = definition.latest_version_id
            row.updated_at = definition.updated_at
        return definition.id

    async def get_definition(self, definition_id: str) -> Optional[WorkflowDefinition]:
        async with self.db.get_session() as session:
            row = await session.get(WorkflowDefinitionRow, definition_id)
            return self._row_to_definition(row) if row else None

    async def list_definitions(self, offset: int = 0, limit: int = 100) -> List[WorkflowDefinition]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(WorkflowDefinitionRow)
                .order_by(WorkflowDefinitionRow.created_at)
                .offset(offset)
                .limit(limit)
            )
            return [self._row_to_definition(row) for row in result.scalars().all()]

    async def save_version(self, version: WorkflowVersion) -> str:
        """保存工作流版本（存在则更新）"""
        async with self.db.get_session() as session:
            row = await session.get(WorkflowVersionRow, version.id)
            if row is None:
                row = WorkflowVersionRow(
                    id=version.id,
                    workflow_definition_id=version.workflow_definition_id,
                    version_number=version.version_number,
                    created_at=version.created_at,
                )
                session.add(row)
            row.dsl = _to_json(self.parser.to_dict(version.dsl))
            row.content_hash = version.content_hash
            row.status = version.status.value
            row.published_at = version.published_at
        return version.id

    async def get_version(self, version_id: str) -> Optional[WorkflowVersion]:
        async with self.db.get_session() as session:
            row = await session.get(WorkflowVersionRow, version_id)
            return self._row_to_version(row) if row else None

    async def list_versions(self, definition_id: str) -> List[WorkflowVersion]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(WorkflowVersionRow)
                .where(WorkflowVersionRow.workflow_definition_id == definition_id)
                .order_by(WorkflowVersionRow.version_number)
            )
            return [self._row_to_version(row) for row in result.scalars().all()]

    @staticmethod
    def _row_to_definition(row: WorkflowDefinitionRow) -> WorkflowDefinition:
        return WorkflowDefinition(
            id=row.id,
            name=row.name,
            description=row.description,
            active=bool(row.active),
            latest_version_id=row.latest_version_id,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def _row_to_version(self, row: WorkflowVersionRow) -> WorkflowVersion:
        return WorkflowVersion(
            id=row.id,
            workflow_definition_id=row.workflow_definition_id,
            version_number=row.version_number,
            dsl=self.parser.parse_dict(row.dsl),
            content_hash=row.content_hash,
            status=VersionStatus(row.status),
            created_at=row.created_at,
            published_at=row.published_at,
        )


class SQLAlchemyExecutionRepository(ExecutionRepository):
    """SQLAlchemy 执行仓库实现"""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    async def save(self, execution: WorkflowExecution) -> str:
        """保存执行实例"""
        async with self.db.get_session() as session:
            existing = await session.get(WorkflowExecutionRow, execution.id)
            if existing is not None:
                await self._write(session, execution)
                return execution.id

            session.add(WorkflowExecutionRow(
                id=execution.id,
                workflow_definition_id=execution.workflow_definition_id,
                version_id=execution.version_id,
                created_at=execution.created_at,
                **self._execution_values(execution)
            ))
            await session.flush()
            for record in execution.node_records:
                session.add(self._record_to_row(execution.id, record))
            return execution.id

    async def get(self, execution_id: str) -> Optional[WorkflowExecution]:
        """获取执行实例"""
        async with self.db.get_session() as session:
            result = await session.execute(
                select(WorkflowExecutionRow)
                .where(WorkflowExecutionRow.id == execution_id)
                .options(selectinload(WorkflowExecutionRow.node_records))
            )
            row = result.scalar_one_or_none()
            return self._row_to_execution(row) if row else None

    async def update(self, execution: WorkflowExecution) -> bool:
        """更新执行实例"""
        async with self.db.get_session() as session:
            return await self._write(session, execution)

    async def find_by_idempotency_key(
        self,
        workflow_definition_id: str,
        idempotency_key: str
    ) -> Optional[WorkflowExecution]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(WorkflowExecutionRow)
                .where(and_(
                    WorkflowExecutionRow.workflow_definition_id == workflow_definition_id,
                    WorkflowExecutionRow.idempotency_key == idempotency_key
                ))
                .options(selectinload(WorkflowExecutionRow.node_records))
                .order_by(WorkflowExecutionRow.created_at)
                .limit(1)
            )
            row = result.scalar_one_or_none()
            return self._row_to_execution(row) if row else None

    async def list_by_workflow(
        self,
        workflow_definition_id: str,
        status: ExecutionStatus = None,
        offset: int = 0,
        limit: int = 100
    ) -> List[WorkflowExecution]:
        """根据工作流ID列出执行实例"""
        async with self.db.get_session() as session:
            query = select(WorkflowExecutionRow).where(
                WorkflowExecutionRow.workflow_definition_id == workflow_definition_id
            )
            if status:
                query = query.where(WorkflowExecutionRow.status == status.value)

            query = query.options(selectinload(WorkflowExecutionRow.node_records))
            query = query.order_by(WorkflowExecutionRow.created_at.desc())
            query = query.offset(offset).limit(limit)

            result = await session.execute(query)
            return [self._row_to_execution(row) for row in result.scalars().all()]

    async def cleanup_old_executions(self, days: int = 30) -> int:
        """清理旧的终态执行实例"""
        cutoff_date = datetime.utcnow() - timedelta(days=days)
        async with self.db.get_session() as session:
            result = await session.execute(
                select(WorkflowExecutionRow.id).where(and_(
                    WorkflowExecutionRow.created_at < cutoff_date,
                    WorkflowExecutionRow.status.in_([status.value for status in TERMINAL_STATUSES])
                ))
            )
            execution_ids = list(result.scalars().all())
            if not execution_ids:
                return 0

            await session.execute(
                delete(NodeExecutionRow).where(NodeExecutionRow.execution_id.in_(execution_ids))
            )
            await session.execute(
                delete(WorkflowExecutionRow).where(WorkflowExecutionRow.id.in_(execution_ids))
            )
        logger.info(f"Cleaned up {len(execution_ids)} executions older than {days} days")
        return len(execution_ids)

    async def _write(self, session: AsyncSession, execution: WorkflowExecution) -> bool:
        result = await session.execute(
            update(WorkflowExecutionRow)
            .where(WorkflowExecutionRow.id == execution.id)
            .values(**self._execution_values(execution))
        )
        if result.rowcount == 0:
            return False

        # 节点记录只追加，已存在的记录仅更新结束信息
        existing = await session.execute(
            select(NodeExecutionRow.id).where(NodeExecutionRow.execution_id == execution.id)
        )
        known_ids = set(existing.scalars().all())
        for record in execution.node_records:
            if record.id not in known_ids:
                session.add(self._record_to_row(execution.id, record))
                continue
            await session.execute(
                update(NodeExecutionRow)
                .where(NodeExecutionRow.id == record.id)
                .values(
                    status=record.status.value,
                    output=_to_json(record.output),
                    message=record.message,
                    failure_category=record.failure_category.value if record.failure_category else None,
                    retryable=record.retryable,
                    completed_at=record.completed_at,
                    duration_ms=record.duration_ms,
                )
            )
        return True

    @staticmethod
    def _execution_values(execution: WorkflowExecution) -> dict:
        return {
            "status": execution.status.value,
            "failure_category": execution.failure_category.value if execution.failure_category else None,
            "failed_node_id": execution.failed_node_id,
            "error_message": execution.error_message,
            "params": _to_json(execution.params) or {},
            "idempotency_key": execution.idempotency_key,
            "experiment_id": execution.experiment_id,
            "variant": execution.variant,
            "node_states": {node_id: state.value for node_id, state in execution.node_states.items()},
            "outputs": _to_json(execution.outputs) or {},
            "started_at": execution.started_at,
            "completed_at": execution.completed_at,
            "duration_ms": execution.duration_ms,
        }

    @staticmethod
    def _record_to_row(execution_id: str, record: NodeExecutionRecord) -> NodeExecutionRow:
        return NodeExecutionRow(
            id=record.id,
            execution_id=execution_id,
            node_id=record.node_id,
            node_type=record.node_type,
            attempt=record.attempt,
            status=record.status.value,
            input_data=_to_json(record.input_data),
            output=_to_json(record.output),
            message=record.message,
            failure_category=record.failure_category.value if record.failure_category else None,
            retryable=record.retryable,
            started_at=record.started_at,
            completed_at=record.completed_at,
            duration_ms=record.duration_ms,
        )

    @staticmethod
    def _row_to_execution(row: WorkflowExecutionRow) -> WorkflowExecution:
        records = [
            NodeExecutionRecord(
                id=node_row.id,
                execution_id=row.id,
                node_id=node_row.node_id,
                node_type=node_row.node_type,
                attempt=node_row.attempt,
                status=NodeExecutionStatus(node_row.status),
                input_data=node_row.input_data,
                output=node_row.output,
                message=node_row.message or "",
                failure_category=_category(node_row.failure_category),
                retryable=bool(node_row.retryable),
                started_at=node_row.started_at,
                completed_at=node_row.completed_at,
                duration_ms=node_row.duration_ms,
            )
            for node_row in row.node_records
        ]
        return WorkflowExecution(
            id=row.id,
            workflow_definition_id=row.workflow_definition_id,
            version_id=row.version_id,
            status=ExecutionStatus(row.status),
            failure_category=_category(row.failure_category),
            failed_node_id=row.failed_node_id,
            error_message=row.error_message,
            params=row.params or {},
            idempotency_key=row.idempotency_key,
            experiment_id=row.experiment_id,
            variant=row.variant,
            node_states={
                node_id: NodeExecutionStatus(state) for node_id, state in (row.node_states or {}).items()
            },
            node_records=records,
            outputs=row.outputs or {},
            created_at=row.created_at,
            started_at=row.started_at,
            completed_at=row.completed_at,
            duration_ms=row.duration_ms,
        )
