"""
存储仓库接口定义
"""
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from ..models.execution import ExecutionStatus, WorkflowExecution
from ..models.experiment import Experiment
from ..models.workflow import WorkflowDefinition, WorkflowVersion


class WorkflowRepository(ABC):
    """工作流定义与版本存储仓库接口"""

    @abstractmethod
    async def save_definition(self, definition: WorkflowDefinition) -> str:
        """保存工作流定义"""
        pass

    @abstractmethod
    async def get_definition(self, definition_id: str) -> Optional[WorkflowDefinition]:
        """获取工作流定义"""
        pass

    @abstractmethod
    async def list_definitions(self, offset: int = 0, limit: int = 100) -> List[WorkflowDefinition]:
        """列出工作流定义"""
        pass

    @abstractmethod
    async def save_version(self, version: WorkflowVersion) -> str:
        """保存工作流版本"""
        pass

    @abstractmethod
    async def get_version(self, version_id: str) -> Optional[WorkflowVersion]:
        """获取工作流版本"""
        pass

    @abstractmethod
    async def list_versions(self, definition_id: str) -> List[WorkflowVersion]:
        """按版本号升序列出版本"""
        pass


class ExecutionRepository(ABC):
    """执行实例存储仓库接口"""

    @abstractmethod
    async def save(self, execution: WorkflowExecution) -> str:
        """保存执行实例"""
        pass

    @abstractmethod
    async def get(self, execution_id: str) -> Optional[WorkflowExecution]:
        """获取执行实例"""
        pass

    @abstractmethod
    async def update(self, execution: WorkflowExecution) -> bool:
        """更新执行实例"""
        pass

    @abstractmethod
    async def find_by_idempotency_key(
        self,
        workflow_definition_id: str,
        idempotency_key: str
    ) -> Optional[WorkflowExecution]:
        """按幂等键查找执行实例"""
        pass

    @abstractmethod
    async def list_by_workflow(
        self,
        workflow_definition_id: str,
        status: ExecutionStatus = None,
        offset: int = 0,
        limit: int = 100
    ) -> List[WorkflowExecution]:
        """根据工作流ID列出执行实例"""
        pass

    @abstractmethod
    async def cleanup_old_executions(self, days: int = 30) -> int:
        """清理旧的执行实例"""
        pass


class ExperimentRepository(ABC):
    """实验存储仓库接口"""

    @abstractmethod
    async def save(self, experiment: Experiment) -> str:
        """保存实验"""
        pass

    @abstractmethod
    async def get(self, experiment_id: str) -> Optional[Experiment]:
        """获取实验"""
        pass

    @abstractmethod
    async def list(self, workflow_definition_id: str = None) -> List[Experiment]:
        """列出实验"""
        pass


# 内存实现（用于测试与命令行）
class InMemoryWorkflowRepository(WorkflowRepository):
    """内存工作流仓库实现"""

    def __init__(self):
        self.definitions: Dict[str, WorkflowDefinition] = {}
        self.versions: Dict[str, WorkflowVersion] = {}

    async def save_definition(self, definition: WorkflowDefinition) -> str:
        definition.updated_at = datetime.utcnow()
        self.definitions[definition.id] = definition
        return definition.id

    async def get_definition(self, definition_id: str) -> Optional[WorkflowDefinition]:
        return self.definitions.get(definition_id)

    async def list_definitions(self, offset: int = 0, limit: int = 100) -> List[WorkflowDefinition]:
        definitions = sorted(self.definitions.values(), key=lambda d: d.created_at)
        return definitions[offset:offset + limit]

    async def save_version(self, version: WorkflowVersion) -> str:
        self.versions[version.id] = version
        return version.id

    async def get_version(self, version_id: str) -> Optional[WorkflowVersion]:
        return self.versions.get(version_id)

    async def list_versions(self, definition_id: str) -> List[WorkflowVersion]:
        versions = [v for v in self.versions.values() if v.workflow_definition_id == definition_id]
        return sorted(versions, key=lambda v: v.version_number)


class InMemoryExecutionRepository(ExecutionRepository):
    """内存执行仓库实现"""

    def __init__(self):
        self.executions: Dict[str, WorkflowExecution] = {}

    async def save(self, execution: WorkflowExecution) -> str:
        self.executions[execution.id] = execution
        return execution.id

    async def get(self, execution_id: str) -> Optional[WorkflowExecution]:
        return self.executions.get(execution_id)

    async def update(self, execution: WorkflowExecution) -> bool:
        if execution.id in self.executions:
            self.executions[execution.id] = execution
            return True
        return False

    async def find_by_idempotency_key(
        self,
        workflow_definition_id: str,
        idempotency_key: str
    ) -> Optional[WorkflowExecution]:
        for execution in self.executions.values():
            if (execution.workflow_definition_id == workflow_definition_id
                    and execution.idempotency_key == idempotency_key):
                return execution
        return None

    async def list_by_workflow(
        self,
        workflow_definition_id: str,
        status: ExecutionStatus = None,
        offset: int = 0,
        limit: int = 100
    ) -> List[WorkflowExecution]:
        results = []
        for execution in self.executions.values():
            if execution.workflow_definition_id != workflow_definition_id:
                continue
            if status and execution.status != status:
                continue
            results.append(execution)

        return results[offset:offset + limit]

    async def cleanup_old_executions(self, days: int = 30) -> int:
        cutoff_date = datetime.utcnow() - timedelta(days=days)
        to_delete = [
            execution_id for execution_id, execution in self.executions.items()
            if execution.created_at < cutoff_date and execution.is_terminal_state()
        ]

        for execution_id in to_delete:
            del self.executions[execution_id]

        return len(to_delete)


class InMemoryExperimentRepository(ExperimentRepository):
    """内存实验仓库实现"""

    def __init__(self):
        self.experiments: Dict[str, Experiment] = {}

    async def save(self, experiment: Experiment) -> str:
        self.experiments[experiment.id] = experiment
        return experiment.id

    async def get(self, experiment_id: str) -> Optional[Experiment]:
        return self.experiments.get(experiment_id)

    async def list(self, workflow_definition_id: str = None) -> List[Experiment]:
        return [
            experiment for experiment in self.experiments.values()
            if workflow_definition_id is None or experiment.workflow_definition_id == workflow_definition_id
        ]
