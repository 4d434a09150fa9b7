"""
DAG 调度器实现
"""
import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple

from ..exceptions import ConcurrencyLimitError, WorkflowExecutionError
from ..executors.base import NodeExecutionContext, NodeResult
from ..executors.join import join_policy, quorum_size
from ..executors.registry import ExecutorRegistry
from ..integrations.approval import ApprovalGateway
from ..models.execution import (
    ExecutionStatus, FailureCategory, NodeExecutionRecord, NodeExecutionStatus, WorkflowExecution
)
from ..models.frozen import freeze, thaw
from ..models.rules import DecisionRulePack
from ..models.workflow import EdgeType, JoinPolicy, WorkflowEdge, WorkflowNode
from ..telemetry.events import ExecutionEventPublisher, ExecutionEventType
from .cancellation import CancellationToken
from .expressions import evaluate_condition
from .graph import ValidGraph
from .parameters import VariableResolver
from .retry import RetryPolicy, classify_failure


logger = logging.getLogger(__name__)

# 节点已结束的状态
RESOLVED_STATES = frozenset({
    NodeExecutionStatus.SUCCESS,
    NodeExecutionStatus.FAILED,
    NodeExecutionStatus.SKIPPED,
    NodeExecutionStatus.CANCELED,
})

# 容忍部分分支失败的汇聚策略
TOLERANT_JOIN_POLICIES = (JoinPolicy.ANY, JoinPolicy.QUORUM)


@dataclass
class ResourceQuota:
    """资源配额"""
    max_executions_per_workflow: int = 10
    max_concurrent_nodes: int = 5


class ResourceManager:
    """资源管理器：限制单个工作流的并发执行数"""

    def __init__(self, quota: ResourceQuota = None):
        self.quota = quota or ResourceQuota()
        self.active_by_workflow: Dict[str, Set[str]] = defaultdict(set)
        self._lock = asyncio.Lock()

    async def allocate(self, execution_id: str, workflow_definition_id: str):
        """分配执行名额，超限直接拒绝而非排队"""
        async with self._lock:
            active = self.active_by_workflow[workflow_definition_id]
            if len(active) >= self.quota.max_executions_per_workflow:
                raise ConcurrencyLimitError(workflow_definition_id, self.quota.max_executions_per_workflow)
            active.add(execution_id)

    async def release(self, execution_id: str, workflow_definition_id: str):
        """释放执行名额"""
        async with self._lock:
            active = self.active_by_workflow.get(workflow_definition_id)
            if active is None:
                return
            active.discard(execution_id)
            if not active:
                del self.active_by_workflow[workflow_definition_id]

    def active_count(self, workflow_definition_id: str) -> int:
        return len(self.active_by_workflow.get(workflow_definition_id, ()))

    def get_usage_stats(self) -> Dict[str, Any]:
        """获取资源使用统计"""
        return {
            "max_executions_per_workflow": self.quota.max_executions_per_workflow,
            "max_concurrent_nodes": self.quota.max_concurrent_nodes,
            "active_by_workflow": {k: len(v) for k, v in self.active_by_workflow.items()},
        }


@dataclass(frozen=True)
class ExecutionSnapshot:
    """执行开始时冻结的参数与规则包"""
    params: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    rule_packs: Tuple[DecisionRulePack, ...] = ()


@dataclass
class RunOutcome:
    """调度结果，由引擎写回执行实例"""
    status: ExecutionStatus
    failure_category: Optional[FailureCategory] = None
    failed_node_id: Optional[str] = None
    message: Optional[str] = None


@dataclass
class _NodeFailure:
    category: FailureCategory
    message: str
    node_id: str


class _Run:
    """单次执行的调度状态，仅由所属执行任务访问"""

    def __init__(
        self,
        graph: ValidGraph,
        execution: WorkflowExecution,
        snapshot: ExecutionSnapshot,
        token: CancellationToken
    ):
        self.graph = graph
        self.execution = execution
        self.snapshot = snapshot
        self.token = token
        self.states = execution.node_states
        self.outputs: Dict[str, Any] = {}
        self.inputs: Dict[str, Any] = {}
        self.results: Dict[str, NodeResult] = {}
        self.tasks: Dict[str, asyncio.Task] = {}
        self.passthrough: Set[str] = set()
        self.superseded: Set[str] = set()
        self.failure: Optional[_NodeFailure] = None

        for node_id in graph.order:
            self.states[node_id] = NodeExecutionStatus.PENDING

    def is_resolved(self, node_id: str) -> bool:
        return self.states[node_id] in RESOLVED_STATES


class DagScheduler:
    """
    DAG 调度器

    节点在前驱全部结束（或汇聚条件满足）时就绪，
    就绪节点并发运行，由信号量限制并发度。
    """

    def __init__(
        self,
        registry: ExecutorRegistry,
        max_concurrency: int = 5,
        publisher: ExecutionEventPublisher = None,
        approval_gateway: ApprovalGateway = None
    ):
        self.registry = registry
        self.max_concurrency = max(1, max_concurrency)
        self.publisher = publisher
        self.approval_gateway = approval_gateway

    async def run(
        self,
        graph: ValidGraph,
        execution: WorkflowExecution,
        snapshot: ExecutionSnapshot = None,
        token: CancellationToken = None
    ) -> RunOutcome:
        """
        调度执行图直至结束

        Args:
            graph: 已校验的执行图
            execution: 执行实例（节点状态与记录写入其中）
            snapshot: 参数与规则包快照
            token: 取消令牌

        Returns:
            RunOutcome: 执行结果
        """
        run = _Run(graph, execution, snapshot or ExecutionSnapshot(), token or CancellationToken())
        semaphore = asyncio.Semaphore(self.max_concurrency)

        await self._emit(run, ExecutionEventType.DAG_LAYERS_RESOLVED, data={
            "layers": [list(layer) for layer in graph.layers],
            "maxConcurrency": self.max_concurrency,
        })

        cancel_waiter = asyncio.ensure_future(run.token.wait())
        try:
            await self._advance(run, semaphore)
            while run.tasks and run.failure is None and not run.token.is_cancelled:
                done, _ = await asyncio.wait(
                    set(run.tasks.values()) | {cancel_waiter},
                    return_when=asyncio.FIRST_COMPLETED
                )
                for node_id, task in list(run.tasks.items()):
                    if task in done:
                        del run.tasks[node_id]
                        await self._on_task_done(run, node_id, task)
                if run.failure is None and not run.token.is_cancelled:
                    await self._advance(run, semaphore)

            if run.tasks:
                await self._cancel_tasks(run, list(run.tasks))
        finally:
            cancel_waiter.cancel()

        if run.token.is_cancelled:
            return RunOutcome(ExecutionStatus.CANCELED, message=run.token.reason)
        if run.failure is not None:
            return RunOutcome(
                ExecutionStatus.FAILED,
                failure_category=run.failure.category,
                failed_node_id=run.failure.node_id,
                message=run.failure.message
            )

        unresolved = [node_id for node_id in graph.order if not run.is_resolved(node_id)]
        if unresolved:
            raise WorkflowExecutionError(f"Nodes left unresolved: {', '.join(unresolved)}")
        return RunOutcome(ExecutionStatus.SUCCESS)

    # 就绪判定

    def _edge_state(self, run: _Run, edge: WorkflowEdge) -> Optional[bool]:
        """边是否生效；None 表示起点尚未结束"""
        state = run.states[edge.source]
        if edge.edge_type == EdgeType.ERROR_ROUTE:
            if state == NodeExecutionStatus.FAILED:
                return evaluate_condition(edge.condition, self._condition_scope(run, edge.source))
            return False if state in RESOLVED_STATES else None

        if state == NodeExecutionStatus.SUCCESS or edge.source in run.passthrough:
            return evaluate_condition(edge.condition, self._condition_scope(run, edge.source))
        return False if state in RESOLVED_STATES else None

    def _condition_scope(self, run: _Run, source_id: str) -> Dict[str, Any]:
        """条件可见数据：祖先与起点的输出字段，再叠加 {节点ID: 输出}"""
        visible = [
            node_id for node_id in run.graph.order
            if node_id in run.graph.ancestors(source_id) or node_id == source_id
        ]
        scope: Dict[str, Any] = {}
        for node_id in visible:
            output = run.outputs.get(node_id)
            if isinstance(output, Mapping):
                scope.update(output)
        for node_id in visible:
            if node_id in run.outputs:
                scope[node_id] = run.outputs[node_id]
        return scope

    def _readiness(self, run: _Run, node: WorkflowNode) -> Tuple[str, List[str]]:
        """
        判定节点是否就绪

        Returns:
            (wait|run|skip|fail, 生效前驱列表)
        """
        edges = run.graph.incoming_edges(node.id)
        if not edges:
            return "run", []

        active: List[str] = []
        unresolved: Set[str] = set()
        for edge in edges:
            state = self._edge_state(run, edge)
            if state is True and edge.source not in active:
                active.append(edge.source)
            elif state is None:
                unresolved.add(edge.source)
        unresolved -= set(active)

        policy = join_policy(node)
        if policy == JoinPolicy.ANY:
            if active:
                return "run", active
            required = 1
        elif policy == JoinPolicy.QUORUM:
            required = quorum_size(node)
            if len(active) >= required:
                return "run", active
        else:
            if unresolved:
                return "wait", active
            return ("run" if active else "skip"), active

        if len(active) + len(unresolved) >= required:
            return "wait", active
        predecessors = run.graph.predecessors(node.id)
        if any(run.states[p] == NodeExecutionStatus.FAILED for p in predecessors):
            return "fail", active
        return "skip", active

    async def _advance(self, run: _Run, semaphore: asyncio.Semaphore):
        """推进就绪节点，跳过传播直至不再变化"""
        progressed = True
        while progressed and run.failure is None:
            progressed = False
            for node_id in run.graph.order:
                if run.states[node_id] != NodeExecutionStatus.PENDING or node_id in run.tasks:
                    continue
                node = run.graph.node(node_id)
                decision, active = self._readiness(run, node)
                if decision == "wait":
                    continue

                progressed = True
                if decision == "skip":
                    await self._skip(run, node_id, "no active incoming edge")
                elif decision == "fail":
                    await self._fail_unsatisfied_join(run, node)
                elif not node.enabled:
                    run.inputs[node_id] = self._build_input(run, node, active)
                    run.passthrough.add(node_id)
                    run.outputs[node_id] = freeze(run.inputs[node_id])
                    await self._skip(run, node_id, "node disabled")
                else:
                    run.inputs[node_id] = self._build_input(run, node, active)
                    if join_policy(node) == JoinPolicy.ANY and len(run.graph.predecessors(node_id)) > 1:
                        await self._supersede_siblings(run, node_id, active)
                    run.tasks[node_id] = asyncio.ensure_future(
                        self._run_node(run, node, active, semaphore)
                    )
                if run.failure is not None:
                    break

    def _build_input(self, run: _Run, node: WorkflowNode, active: List[str]) -> Any:
        """构建节点输入：上游输出，再合并输入绑定"""
        upstream: Dict[str, Any] = {}
        for source in active:
            if run.states[source] == NodeExecutionStatus.FAILED:
                failure = run.results.get(source)
                upstream[source] = {
                    "failedNodeId": source,
                    "errorMessage": failure.message if failure else None,
                    "failureCategory": failure.failure_category.value
                    if failure and failure.failure_category else None,
                    "input": thaw(run.inputs.get(source)),
                }
            else:
                upstream[source] = thaw(run.outputs.get(source))

        if not active:
            data: Any = thaw(run.snapshot.params)
        elif len(active) == 1:
            data = upstream[active[0]]
        else:
            data = {"branches": upstream}

        if node.input_bindings:
            bound = VariableResolver(run.outputs, run.snapshot.params).resolve(node.input_bindings)
            if isinstance(data, dict):
                data = {**data, **bound}
            else:
                data = {"input": data, **bound}
        return data

    async def _supersede_siblings(self, run: _Run, node_id: str, active: List[str]):
        """ANY 汇聚：首个成功分支取消其余在途分支"""
        siblings = [
            source for source in run.graph.predecessors(node_id)
            if source not in active and source in run.tasks
        ]
        if siblings:
            logger.info(f"Join {node_id} satisfied, canceling in-flight branches: {', '.join(siblings)}")
            run.superseded.update(siblings)
            await self._cancel_tasks(run, siblings)

    # 节点结束处理

    async def _on_task_done(self, run: _Run, node_id: str, task: asyncio.Task):
        if task.cancelled():
            self._mark_canceled(run, node_id)
            return

        error = task.exception()
        if error is not None:
            # 节点任务自身的异常（执行器异常已在任务内分类）
            category, _ = classify_failure(error)
            result = NodeResult.failed(str(error), category)
        else:
            result = task.result()
        run.results[node_id] = result

        if result.status == NodeExecutionStatus.SUCCESS:
            run.states[node_id] = NodeExecutionStatus.SUCCESS
            run.outputs[node_id] = freeze(result.output)
            run.execution.outputs[node_id] = thaw(result.output)
            await self._emit(run, ExecutionEventType.NODE_SUCCEEDED, node_id)
        elif result.status == NodeExecutionStatus.SKIPPED:
            run.states[node_id] = NodeExecutionStatus.SKIPPED
            await self._emit(run, ExecutionEventType.NODE_SKIPPED, node_id, {"reason": result.message})
        else:
            await self._handle_failure(run, node_id, result)

    async def _handle_failure(self, run: _Run, node_id: str, result: NodeResult):
        category = result.failure_category or FailureCategory.EXECUTOR
        run.states[node_id] = NodeExecutionStatus.FAILED
        run.results[node_id] = result
        await self._emit(run, ExecutionEventType.NODE_FAILED, node_id, {
            "failureCategory": category.value,
            "message": result.message,
        })

        if self._is_absorbed(run, node_id):
            logger.info(f"Node {node_id} failure absorbed ({category.value}): {result.message}")
            return

        logger.error(f"Node {node_id} failed ({category.value}): {result.message}")
        run.failure = _NodeFailure(category, result.message, node_id)

    def _is_absorbed(self, run: _Run, node_id: str) -> bool:
        """失败是否被错误路由或容错汇聚吸收"""
        # 仅条件成立的错误路由才接管失败
        if any(self._edge_state(run, edge) for edge in run.graph.error_routes(node_id)):
            return True
        successors = tuple(dict.fromkeys(
            edge.target for edge in run.graph.outgoing_edges(node_id) if edge.edge_type == EdgeType.NORMAL
        ))
        if not successors:
            return False
        for successor in successors:
            node = run.graph.node(successor)
            if len(run.graph.predecessors(successor)) < 2 or join_policy(node) not in TOLERANT_JOIN_POLICIES:
                return False
        return True

    async def _fail_unsatisfied_join(self, run: _Run, node: WorkflowNode):
        """汇聚条件已不可能满足"""
        predecessors = run.graph.predecessors(node.id)
        succeeded = [p for p in predecessors if run.states[p] == NodeExecutionStatus.SUCCESS]
        categories = [
            run.results[p].failure_category for p in predecessors
            if run.states[p] == NodeExecutionStatus.FAILED and p in run.results
        ]
        category = next((c for c in categories if c is not None), FailureCategory.EXECUTOR)
        message = (
            f"Join {join_policy(node).value} not satisfied: "
            f"{len(succeeded)}/{len(predecessors)} branches succeeded"
        )

        record = NodeExecutionRecord(
            execution_id=run.execution.id,
            node_id=node.id,
            node_type=node.type,
        )
        record.finish(NodeExecutionStatus.FAILED, message=message, failure_category=category)
        run.execution.append_record(record)
        await self._handle_failure(run, node.id, NodeResult.failed(message, category))

    async def _skip(self, run: _Run, node_id: str, reason: str):
        run.states[node_id] = NodeExecutionStatus.SKIPPED
        await self._emit(run, ExecutionEventType.NODE_SKIPPED, node_id, {"reason": reason})

    def _mark_canceled(self, run: _Run, node_id: str):
        run.states[node_id] = NodeExecutionStatus.CANCELED

    async def _cancel_tasks(self, run: _Run, node_ids: List[str]):
        """取消在途节点任务并等待其退出"""
        tasks = [run.tasks.pop(node_id) for node_id in node_ids if node_id in run.tasks]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        for node_id in node_ids:
            self._mark_canceled(run, node_id)

    # 节点执行

    async def _run_node(
        self,
        run: _Run,
        node: WorkflowNode,
        active: List[str],
        semaphore: asyncio.Semaphore
    ) -> NodeResult:
        """执行节点（含重试与审批等待）"""
        retry_policy = RetryPolicy.from_runtime_policy(node.runtime_policy, run.graph.dsl.run_policy)
        async with semaphore:
            retries_done = 0
            while True:
                run.token.raise_if_cancelled()
                result, record = await self._attempt(run, node, retries_done + 1)
                if result.status == NodeExecutionStatus.WAITING:
                    break
                run.execution.append_record(record)
                if not result.is_failed or not retry_policy.should_retry(result, retries_done):
                    return result

                delay = retry_policy.delay_seconds(retries_done)
                logger.warning(
                    f"Node {node.id} attempt {retries_done + 1} failed "
                    f"({result.failure_category.value}), retrying in {delay:.3f}s"
                )
                await self._emit(run, ExecutionEventType.NODE_RETRY, node.id, {
                    "attempt": retries_done + 1,
                    "failureCategory": result.failure_category.value,
                    "delaySeconds": delay,
                })
                await retry_policy.wait(retries_done)
                retries_done += 1

        # 审批等待不占用并发名额，也不计超时
        return await self._await_approval(run, node, result, record)

    async def _attempt(
        self,
        run: _Run,
        node: WorkflowNode,
        attempt: int
    ) -> Tuple[NodeResult, NodeExecutionRecord]:
        """单次尝试"""
        record = NodeExecutionRecord(
            execution_id=run.execution.id,
            node_id=node.id,
            node_type=node.type,
            attempt=attempt,
            input_data=thaw(run.inputs.get(node.id)),
        )
        run.states[node.id] = NodeExecutionStatus.RUNNING
        await self._emit(run, ExecutionEventType.NODE_STARTED, node.id, {"attempt": attempt})

        context = self._build_context(run, node, attempt)
        timeout = node.runtime_policy.timeout_ms / 1000.0
        try:
            executor = self.registry.resolve(node)
            result = await asyncio.wait_for(executor.execute(context), timeout=timeout)
        except asyncio.CancelledError:
            record.finish(NodeExecutionStatus.CANCELED, message=run.token.reason or "canceled")
            run.execution.append_record(record)
            raise
        except asyncio.TimeoutError:
            result = NodeResult.failed(
                f"Node {node.id} timed out after {node.runtime_policy.timeout_ms}ms",
                FailureCategory.TIMEOUT,
                retryable=node.runtime_policy.retry_on_timeout
            )
        except Exception as e:
            category, retryable = classify_failure(e)
            logger.error(f"Executor raised for node {node.id}: {e}", exc_info=True)
            result = NodeResult.failed(str(e), category, retryable)

        if result.is_failed and result.failure_category is None:
            result = NodeResult.failed(result.message, FailureCategory.EXECUTOR, result.retryable, result.output)

        if result.status != NodeExecutionStatus.WAITING:
            record.finish(
                result.status,
                output=thaw(result.output),
                message=result.message,
                failure_category=result.failure_category,
                retryable=result.retryable
            )
        return result, record

    def _build_context(self, run: _Run, node: WorkflowNode, attempt: int) -> NodeExecutionContext:
        predecessors = run.graph.predecessors(node.id)
        return NodeExecutionContext(
            execution_id=run.execution.id,
            workflow_definition_id=run.execution.workflow_definition_id,
            version_id=run.execution.version_id,
            node=node,
            input=freeze(run.inputs.get(node.id)),
            params=run.snapshot.params,
            rule_packs=run.snapshot.rule_packs,
            upstream_outputs=MappingProxyType({p: run.outputs[p] for p in predecessors if p in run.outputs}),
            predecessor_status=MappingProxyType({p: run.states[p] for p in predecessors}),
            cancellation=run.token,
            attempt=attempt,
            idempotency_key=run.execution.idempotency_key,
        )

    async def _await_approval(
        self,
        run: _Run,
        node: WorkflowNode,
        result: NodeResult,
        record: NodeExecutionRecord
    ) -> NodeResult:
        """等待人工审批结论"""
        output = dict(thaw(result.output) or {})
        request_id = output.get("approvalRequestId")
        if self.approval_gateway is None or not request_id:
            final = NodeResult.failed(f"Node {node.id} is waiting but no approval gateway is configured")
            record.finish(final.status, output=output, message=final.message,
                          failure_category=final.failure_category)
            run.execution.append_record(record)
            return final

        run.states[node.id] = NodeExecutionStatus.WAITING
        await self._emit(run, ExecutionEventType.NODE_WAITING, node.id, {"approvalRequestId": request_id})

        try:
            approval = await self.approval_gateway.wait_for_decision(request_id)
        except asyncio.CancelledError:
            await self.approval_gateway.discard(request_id, run.token.reason)
            record.finish(NodeExecutionStatus.CANCELED, output=output, message=run.token.reason or "canceled")
            run.execution.append_record(record)
            raise

        output["approved"] = approval.approved
        if approval.approved:
            final = NodeResult.success(output, f"approved by {approval.decided_by or 'unknown'}")
        else:
            final = NodeResult.failed(
                f"Approval {request_id} rejected: {approval.comment or 'no comment'}",
                FailureCategory.RISK_BLOCKED,
                output=output
            )
        record.finish(final.status, output=output, message=final.message,
                      failure_category=final.failure_category)
        run.execution.append_record(record)
        return final

    async def _emit(
        self,
        run: _Run,
        event_type: ExecutionEventType,
        node_id: str = None,
        data: Dict[str, Any] = None
    ):
        if self.publisher is not None:
            await self.publisher.publish(run.execution.id, event_type, node_id, data)
