"""
工作流执行引擎
"""
import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from ..config import EngineSettings
from ..exceptions import (
    ConsistencyError, DslValidationError, ExperimentError, VersionImmutableError,
    WorkflowEngineError, WorkflowExecutionError, WorkflowNotFoundError
)
from ..executors.registry import ExecutorRegistry, create_default_registry
from ..executors.rule_pack_eval import rule_pack_codes
from ..experiments.router import ExperimentRouter
from ..integrations.agent import AgentInvoker
from ..integrations.approval import ApprovalGateway, ApprovalRequest, InMemoryApprovalGateway
from ..integrations.connectors import DataConnector
from ..integrations.event_bus import EventBus
from ..integrations.notifications import NotificationChannel
from ..integrations.references import ReferenceRegistry
from ..models.execution import ExecutionStatus, FailureCategory, WorkflowExecution
from ..models.experiment import Experiment, Variant
from ..models.workflow import (
    NodeType, RuntimePolicy, WorkflowDefinition, WorkflowDsl, WorkflowVersion
)
from ..storage.repository import (
    ExecutionRepository, InMemoryExecutionRepository, InMemoryWorkflowRepository, WorkflowRepository
)
from ..telemetry.consistency import ConsistencyReport, ConsistencyValidator
from ..telemetry.events import ExecutionEventPublisher, ExecutionEventType
from .cancellation import CancellationToken
from .graph import ValidGraph
from .parameters import ParameterResolver
from .parser import WorkflowParser, content_hash
from .scheduler import DagScheduler, ExecutionSnapshot, ResourceManager, ResourceQuota, RunOutcome
from .validator import DslValidator, ValidationResult


logger = logging.getLogger(__name__)

DEFINITION_EVENTS_TOPIC = "workflow.definition.events"

DslSource = Union[str, Path, Dict[str, Any], WorkflowDsl]


@dataclass(frozen=True)
class TriggerRequest:
    """执行触发请求"""
    workflow_definition_id: str
    version_id: Optional[str] = None
    experiment_id: Optional[str] = None
    params: Dict[str, Any] = field(default_factory=dict)
    idempotency_key: Optional[str] = None


class WorkflowEngine:
    """工作流执行引擎"""

    def __init__(
        self,
        settings: EngineSettings = None,
        workflow_repository: WorkflowRepository = None,
        execution_repository: ExecutionRepository = None,
        references: ReferenceRegistry = None,
        registry: ExecutorRegistry = None,
        event_bus: EventBus = None,
        agent_invoker: AgentInvoker = None,
        connector: DataConnector = None,
        notification_channel: NotificationChannel = None,
        approval_gateway: ApprovalGateway = None,
        experiment_router: ExperimentRouter = None,
        resource_manager: ResourceManager = None
    ):
        self.settings = settings or EngineSettings()
        self.workflow_repository = workflow_repository or InMemoryWorkflowRepository()
        self.execution_repository = execution_repository or InMemoryExecutionRepository()
        self.references = references or ReferenceRegistry()
        self.approval_gateway = approval_gateway or InMemoryApprovalGateway()
        self.registry = registry or create_default_registry(
            agent_invoker=agent_invoker,
            connector=connector,
            notification_channel=notification_channel,
            approval_gateway=self.approval_gateway,
            references=self.references
        )
        self.event_bus = event_bus or EventBus()
        self.publisher = ExecutionEventPublisher(self.event_bus)
        self.experiments = experiment_router or ExperimentRouter()
        self.resource_manager = resource_manager or ResourceManager(ResourceQuota(
            max_executions_per_workflow=self.settings.max_executions_per_workflow,
            max_concurrent_nodes=self.settings.max_concurrency
        ))

        # DSL 解析、校验与执行组件
        self.parser = WorkflowParser(RuntimePolicy(
            timeout_ms=self.settings.default_timeout_ms,
            max_retries=self.settings.default_max_retries,
            retry_backoff_ms=self.settings.default_retry_backoff_ms
        ))
        self.validator = DslValidator(self.registry)
        self.consistency = ConsistencyValidator(self.references)
        self.parameters = ParameterResolver(self.references)
        self.scheduler = DagScheduler(
            self.registry,
            max_concurrency=self.settings.max_concurrency,
            publisher=self.publisher,
            approval_gateway=self.approval_gateway
        )

        # 已发布版本的执行图缓存
        self._graph_cache: Dict[str, ValidGraph] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._tokens: Dict[str, CancellationToken] = {}
        self._trigger_lock = asyncio.Lock()

    # 定义与版本

    async def create_definition(self, name: str, description: str = None) -> WorkflowDefinition:
        """创建工作流定义"""
        definition = WorkflowDefinition(name=name, description=description)
        await self.workflow_repository.save_definition(definition)
        await self.event_bus.publish(
            DEFINITION_EVENTS_TOPIC,
            {"event": "DEFINITION_CREATED", "workflowDefinitionId": definition.id, "name": name}
        )
        return definition

    async def save_draft(
        self,
        definition_id: str,
        source: DslSource,
        version_id: str = None
    ) -> WorkflowVersion:
        """
        保存草稿版本

        Args:
            definition_id: 工作流定义ID
            source: DSL 来源
            version_id: 覆盖已有草稿；为空时新建版本

        Returns:
            WorkflowVersion: 草稿版本
        """
        definition = await self.get_definition(definition_id)
        dsl = source if isinstance(source, WorkflowDsl) else self.parser.parse(source)

        if version_id:
            version = await self.get_version(version_id)
            if version.is_published:
                raise VersionImmutableError(version.id)
            version.dsl = dsl
            version.content_hash = content_hash(dsl)
        else:
            versions = await self.workflow_repository.list_versions(definition.id)
            number = max((v.version_number for v in versions), default=0) + 1
            version = WorkflowVersion(
                workflow_definition_id=definition.id,
                version_number=number,
                dsl=dsl,
                content_hash=content_hash(dsl)
            )

        await self.workflow_repository.save_version(version)
        logger.info(f"Saved draft v{version.version_number} for workflow {definition.id}")
        return version

    def validate(self, source: DslSource) -> ValidationResult:
        """校验 DSL"""
        dsl = source if isinstance(source, WorkflowDsl) else self.parser.parse(source)
        return self.validator.validate(dsl)

    async def check_version(self, version_id: str) -> Dict[str, Any]:
        """版本结构校验与引用一致性校验"""
        version = await self.get_version(version_id)
        result = self.validator.validate(version.dsl)
        report = self.consistency.validate(version)
        return {
            "versionId": version.id,
            "valid": result.is_valid and report.ok,
            "issues": [issue.to_dict() for issue in result.issues],
            "consistency": report.to_dict(),
        }

    async def publish(self, version_id: str) -> WorkflowVersion:
        """
        发布版本

        校验 DSL 与外部引用，冻结内容哈希并移动定义的最新版本指针。
        """
        version = await self.get_version(version_id)
        if version.is_published:
            return version
        definition = await self.get_definition(version.workflow_definition_id)

        result = self.validator.validate(version.dsl)
        if not result.is_valid:
            raise DslValidationError(result.errors)
        self.consistency.ensure_consistent(version)

        version.content_hash = content_hash(version.dsl)
        version.publish()
        definition.latest_version_id = version.id
        await self.workflow_repository.save_version(version)
        await self.workflow_repository.save_definition(definition)
        self._graph_cache[version.id] = result.graph

        logger.info(f"Published workflow {definition.id} v{version.version_number} ({version.content_hash[:12]})")
        await self.event_bus.publish(DEFINITION_EVENTS_TOPIC, {
            "event": "VERSION_PUBLISHED",
            "workflowDefinitionId": definition.id,
            "versionId": version.id,
            "versionNumber": version.version_number,
            "contentHash": version.content_hash,
        })
        return version

    async def get_definition(self, definition_id: str) -> WorkflowDefinition:
        definition = await self.workflow_repository.get_definition(definition_id)
        if definition is None:
            raise WorkflowNotFoundError(f"Workflow definition not found: {definition_id}")
        return definition

    async def get_version(self, version_id: str) -> WorkflowVersion:
        version = await self.workflow_repository.get_version(version_id)
        if version is None:
            raise WorkflowNotFoundError(f"Workflow version not found: {version_id}")
        return version

    async def list_versions(self, definition_id: str) -> List[WorkflowVersion]:
        await self.get_definition(definition_id)
        return await self.workflow_repository.list_versions(definition_id)

    # 实验

    async def create_experiment(
        self,
        workflow_definition_id: str,
        variant_a_version_id: str,
        variant_b_version_id: str,
        **options: Any
    ) -> Experiment:
        """创建实验，两个分组必须是同一定义下已发布的版本"""
        definition = await self.get_definition(workflow_definition_id)
        for version_id in (variant_a_version_id, variant_b_version_id):
            version = await self.get_version(version_id)
            if version.workflow_definition_id != definition.id:
                raise ExperimentError(f"Version {version_id} does not belong to workflow {definition.id}")
            if not version.is_published:
                raise ExperimentError(f"Version {version_id} is not published")
        return await self.experiments.create_experiment(
            definition.id, variant_a_version_id, variant_b_version_id, **options
        )

    # 执行

    async def trigger(self, request: TriggerRequest) -> WorkflowExecution:
        """
        触发执行（异步完成）

        同一工作流重复的幂等键返回已有执行实例。

        Returns:
            WorkflowExecution: PENDING 状态的执行实例
        """
        definition = await self.get_definition(request.workflow_definition_id)

        async with self._trigger_lock:
            if request.idempotency_key:
                existing = await self.execution_repository.find_by_idempotency_key(
                    definition.id, request.idempotency_key
                )
                if existing is not None:
                    logger.info(f"Idempotent trigger {request.idempotency_key} -> execution {existing.id}")
                    return existing

            execution = WorkflowExecution(
                workflow_definition_id=definition.id,
                version_id="",
                params=dict(request.params or {}),
                idempotency_key=request.idempotency_key,
                experiment_id=request.experiment_id
            )
            await self.resource_manager.allocate(execution.id, definition.id)
            try:
                version = await self._select_version(definition, request, execution)
                execution.version_id = version.id
                await self.execution_repository.save(execution)
            except Exception:
                await self.resource_manager.release(execution.id, definition.id)
                raise

            token = CancellationToken()
            self._tokens[execution.id] = token
            task = asyncio.create_task(self._run_execution(execution, version, token))
            self._tasks[execution.id] = task
            task.add_done_callback(lambda _: self._tasks.pop(execution.id, None))

        logger.info(f"Triggered execution {execution.id} for workflow {definition.id} (version {version.id})")
        return execution

    async def run(self, request: TriggerRequest, timeout: float = None) -> WorkflowExecution:
        """触发并等待执行结束"""
        execution = await self.trigger(request)
        return await self.wait_for(execution.id, timeout)

    async def wait_for(self, execution_id: str, timeout: float = None) -> WorkflowExecution:
        """等待执行结束"""
        task = self._tasks.get(execution_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout)
        return await self.get_execution(execution_id)

    async def cancel(self, execution_id: str, reason: str = "canceled by user") -> WorkflowExecution:
        """取消执行：通知所有节点任务并等待其退出"""
        execution = await self.get_execution(execution_id)
        if execution.is_terminal_state():
            raise WorkflowExecutionError(f"Cannot cancel execution in state: {execution.status.value}")

        token = self._tokens.get(execution_id)
        if token is None:
            raise WorkflowExecutionError(f"Execution {execution_id} is not running in this engine")
        token.cancel(reason)
        logger.info(f"Cancel requested for execution {execution_id}: {reason}")
        return await self.wait_for(execution_id)

    async def get_execution(self, execution_id: str) -> WorkflowExecution:
        execution = await self.execution_repository.get(execution_id)
        if execution is None:
            raise WorkflowNotFoundError(f"Execution not found: {execution_id}")
        return execution

    async def get_status(self, execution_id: str) -> Dict[str, Any]:
        """获取执行状态"""
        execution = await self.get_execution(execution_id)
        return execution.to_status_dict()

    async def resolve_approval(
        self,
        request_id: str,
        approved: bool,
        comment: str = None,
        decided_by: str = None
    ) -> ApprovalRequest:
        """提交风控审批结论"""
        return await self.approval_gateway.resolve(request_id, approved, comment, decided_by)

    @property
    def running_count(self) -> int:
        """本引擎内在途执行数"""
        return len(self._tasks)

    async def shutdown(self):
        """取消全部在途执行"""
        for token in list(self._tokens.values()):
            token.cancel("engine shutdown")
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _select_version(
        self,
        definition: WorkflowDefinition,
        request: TriggerRequest,
        execution: WorkflowExecution
    ) -> WorkflowVersion:
        """选择执行版本：实验路由优先，其次指定版本，最后最新发布版本"""
        if request.experiment_id:
            experiment = await self.experiments.get(request.experiment_id)
            if experiment.workflow_definition_id != definition.id:
                raise ExperimentError(
                    f"Experiment {experiment.experiment_code} does not belong to workflow {definition.id}"
                )
            decision = await self.experiments.route(
                experiment.id, request.idempotency_key or execution.id
            )
            execution.variant = decision.variant.value
            version_id = decision.version_id
        else:
            version_id = request.version_id or definition.latest_version_id

        if not version_id:
            raise WorkflowNotFoundError(f"Workflow {definition.id} has no published version")
        version = await self.get_version(version_id)
        if version.workflow_definition_id != definition.id:
            raise WorkflowNotFoundError(f"Version {version_id} does not belong to workflow {definition.id}")
        if not version.is_published:
            raise WorkflowExecutionError(f"Version {version_id} is not published")
        return version

    def _load_graph(self, version: WorkflowVersion) -> ValidGraph:
        """加载已校验执行图"""
        graph = self._graph_cache.get(version.id)
        if graph is not None:
            return graph
        if content_hash(version.dsl) != version.content_hash:
            raise WorkflowEngineError(f"Content hash mismatch for version {version.id}")
        graph = self.validator.validate_or_raise(version.dsl)
        self._graph_cache[version.id] = graph
        return graph

    def _snapshot(self, graph: ValidGraph, execution: WorkflowExecution) -> ExecutionSnapshot:
        """冻结本次执行的参数与规则包"""
        codes: List[str] = []
        for node in graph.nodes.values():
            if node.node_type == NodeType.RULE_PACK_EVAL:
                codes.extend(code for code in rule_pack_codes(node) if code not in codes)
        return ExecutionSnapshot(
            params=self.parameters.resolve(graph.dsl.param_set_bindings, execution.params),
            rule_packs=self.references.get_rule_packs(codes)
        )

    async def _run_execution(
        self,
        execution: WorkflowExecution,
        version: WorkflowVersion,
        token: CancellationToken
    ):
        """运行工作流（执行实例只由本任务写入）"""
        try:
            execution.start()
            await self.execution_repository.update(execution)
            await self.publisher.publish(execution.id, ExecutionEventType.WORKFLOW_STARTED, data={
                "workflowDefinitionId": execution.workflow_definition_id,
                "versionId": version.id,
                "experimentId": execution.experiment_id,
                "variant": execution.variant,
            })

            try:
                graph = self._load_graph(version)
                report: ConsistencyReport = self.consistency.ensure_consistent(version)
                snapshot = self._snapshot(graph, execution)
            except (DslValidationError, ConsistencyError, WorkflowEngineError) as e:
                logger.error(f"Execution {execution.id} rejected at load time: {e}")
                await self._finish(execution, RunOutcome(
                    ExecutionStatus.FAILED, FailureCategory.VALIDATION, message=str(e)
                ))
                return

            logger.debug(f"Execution {execution.id} resolved {report.checked} reference(s)")
            outcome = await self.scheduler.run(graph, execution, snapshot, token)
            await self._finish(execution, outcome)

        except asyncio.CancelledError:
            if not execution.is_terminal_state():
                execution.cancel("execution task cancelled")
                await self.execution_repository.update(execution)
            raise
        except Exception as e:
            logger.error(f"Workflow execution failed: {execution.id}", exc_info=True)
            if not execution.is_terminal_state():
                await self._finish(execution, RunOutcome(
                    ExecutionStatus.FAILED, FailureCategory.EXECUTOR, message=str(e)
                ))
        finally:
            await self.resource_manager.release(execution.id, execution.workflow_definition_id)
            self._tokens.pop(execution.id, None)

    async def _finish(self, execution: WorkflowExecution, outcome: RunOutcome):
        """写回执行结果并发布事件"""
        if outcome.status == ExecutionStatus.SUCCESS:
            execution.succeed()
            event_type = ExecutionEventType.WORKFLOW_COMPLETED
        elif outcome.status == ExecutionStatus.CANCELED:
            execution.cancel(outcome.message)
            event_type = ExecutionEventType.WORKFLOW_CANCELED
        else:
            execution.fail(outcome.failure_category, outcome.message, outcome.failed_node_id)
            event_type = ExecutionEventType.WORKFLOW_FAILED

        await self.execution_repository.update(execution)
        await self.publisher.publish(execution.id, event_type, data={
            "status": execution.status.value,
            "failureCategory": execution.failure_category.value if execution.failure_category else None,
            "failedNodeId": execution.failed_node_id,
            "durationMs": execution.duration_ms,
        })
        logger.info(
            f"Execution {execution.id} finished with {execution.status.value}"
            + (f" ({execution.failure_category.value} at {execution.failed_node_id})"
               if execution.failure_category else "")
        )
        await self._record_experiment_outcome(execution)

    async def _record_experiment_outcome(self, execution: WorkflowExecution):
        """实验执行计入分组指标（取消的执行不计入）"""
        if not execution.experiment_id or not execution.variant:
            return
        if execution.status == ExecutionStatus.CANCELED:
            return
        try:
            await self.experiments.record_outcome(
                execution.experiment_id,
                Variant(execution.variant),
                success=execution.status == ExecutionStatus.SUCCESS,
                duration_ms=execution.duration_ms or 0
            )
        except ExperimentError as e:
            logger.warning(f"Failed to record experiment outcome for execution {execution.id}: {e}")
