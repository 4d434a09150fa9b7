"""
SQLAlchemy 数据库模型定义
"""
import uuid

from sqlalchemy import (
    Column, String, Text, Boolean, Integer, DateTime, ForeignKey,
    UniqueConstraint, Index, JSON
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func


Base = declarative_base()


def generate_uuid():
    return str(uuid.uuid4())


class WorkflowDefinitionRow(Base):
    """工作流定义表"""
    __tablename__ = 'workflow_definitions'

    id = Column(String(36), primary_key=True, default=generate_uuid)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    active = Column(Boolean, default=True)
    latest_version_id = Column(String(36))
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    versions = relationship("WorkflowVersionRow", back_populates="definition", cascade="all, delete-orphan")

    __table_args__ = (
        Index('idx_workflow_definitions_name', 'name'),
    )


class WorkflowVersionRow(Base):
    """工作流版本表，DSL 以 JSON 文档存储"""
    __tablename__ = 'workflow_versions'

    id = Column(String(36), primary_key=True, default=generate_uuid)
    workflow_definition_id = Column(
        String(36), ForeignKey('workflow_definitions.id', ondelete='CASCADE'), nullable=False
    )
    version_number = Column(Integer, nullable=False)
    dsl = Column(JSON, nullable=False)
    content_hash = Column(String(64), nullable=False)
    status = Column(String(20), nullable=False, default='DRAFT')
    created_at = Column(DateTime, server_default=func.now())
    published_at = Column(DateTime)

    definition = relationship("WorkflowDefinitionRow", back_populates="versions")

    __table_args__ = (
        UniqueConstraint('workflow_definition_id', 'version_number', name='unique_definition_version'),
        Index('idx_workflow_versions_definition', 'workflow_definition_id'),
    )


class WorkflowExecutionRow(Base):
    """工作流执行实例表"""
    __tablename__ = 'workflow_executions'

    id = Column(String(36), primary_key=True, default=generate_uuid)
    workflow_definition_id = Column(String(36), nullable=False)
    version_id = Column(String(36), nullable=False)
    status = Column(String(20), nullable=False)
    failure_category = Column(String(40))
    failed_node_id = Column(String(255))
    error_message = Column(Text)
    params = Column(JSON, default=dict)
    idempotency_key = Column(String(255))
    experiment_id = Column(String(36))
    variant = Column(String(4))
    node_states = Column(JSON, default=dict)
    outputs = Column(JSON, default=dict)
    created_at = Column(DateTime, nullable=False)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)
    duration_ms = Column(Integer)

    node_records = relationship(
        "NodeExecutionRow",
        back_populates="execution",
        cascade="all, delete-orphan",
        order_by="NodeExecutionRow.started_at"
    )

    __table_args__ = (
        Index('idx_workflow_executions_definition', 'workflow_definition_id'),
        Index('idx_workflow_executions_status', 'status'),
        Index('idx_workflow_executions_idempotency', 'workflow_definition_id', 'idempotency_key'),
    )


class NodeExecutionRow(Base):
    """节点尝试记录表"""
    __tablename__ = 'node_executions'

    id = Column(String(36), primary_key=True, default=generate_uuid)
    execution_id = Column(
        String(36), ForeignKey('workflow_executions.id', ondelete='CASCADE'), nullable=False
    )
    node_id = Column(String(255), nullable=False)
    node_type = Column(String(50), nullable=False)
    attempt = Column(Integer, nullable=False, default=1)
    status = Column(String(20), nullable=False)
    input_data = Column(JSON)
    output = Column(JSON)
    message = Column(Text)
    failure_category = Column(String(40))
    retryable = Column(Boolean, default=False)
    started_at = Column(DateTime, nullable=False)
    completed_at = Column(DateTime)
    duration_ms = Column(Integer)

    execution = relationship("WorkflowExecutionRow", back_populates="node_records")

    __table_args__ = (
        Index('idx_node_executions_execution', 'execution_id'),
    )
