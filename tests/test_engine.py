"""
执行引擎与 DAG 编排测试
"""
import asyncio
import copy

import pytest

from decision_workflow.config import EngineSettings
from decision_workflow.core.engine import TriggerRequest, WorkflowEngine
from decision_workflow.exceptions import (
    AgentInvocationError, ApprovalNotFoundError, ConcurrencyLimitError, ConnectorUnavailableError,
    ConsistencyError, DslValidationError, VersionImmutableError, WorkflowExecutionError, WorkflowNotFoundError
)
from decision_workflow.integrations.agent import MockAgentInvoker
from decision_workflow.integrations.references import ConnectorDefinition
from decision_workflow.models.execution import ExecutionStatus, FailureCategory, NodeExecutionStatus
from decision_workflow.telemetry.events import ExecutionEventType


BARS = [
    {"date": "2024-03-01", "close": 3100.0},
    {"date": "2024-03-04", "close": 3150.0},
    {"date": "2024-03-05", "close": 3120.0},
]


class TimedAgentInvoker(MockAgentInvoker):
    """按智能体编码设置响应延迟"""

    def __init__(self, delays):
        super().__init__()
        self.delays = delays

    async def invoke(self, agent_code, payload):
        await asyncio.sleep(self.delays.get(agent_code, 0))
        return await super().invoke(agent_code, payload)


def fan_out_dsl(join_config):
    """fetch -> fast/slow/third -> join -> notify"""
    return {
        "name": "fan-out",
        "nodes": [
            {"id": "fetch", "type": "data-fetch", "config": {"symbol": "M0"}},
            {"id": "fast", "type": "single-agent", "config": {"agentCode": "bull_analyst"}},
            {"id": "slow", "type": "single-agent", "config": {"agentCode": "bear_analyst"}},
            {"id": "third", "type": "single-agent", "config": {"agentCode": "macro_analyst"}},
            {"id": "join", "type": "join", "config": join_config},
            {"id": "notify", "type": "notify", "config": {"fields": ["succeeded"]}},
        ],
        "edges": [
            {"from": "fetch", "to": "fast"},
            {"from": "fetch", "to": "slow"},
            {"from": "fetch", "to": "third"},
            {"from": "fast", "to": "join"},
            {"from": "slow", "to": "join"},
            {"from": "third", "to": "join"},
            {"from": "join", "to": "notify"},
        ],
    }


class TestLinearExecution:
    """顺序执行"""

    @pytest.mark.asyncio
    async def test_runs_pipeline_to_success(self, engine, deploy, linear_dsl, notifications, agent_invoker):
        version = await deploy(linear_dsl)

        execution = await engine.run(TriggerRequest(version.workflow_definition_id), timeout=5)

        assert execution.status == ExecutionStatus.SUCCESS
        assert execution.version_id == version.id
        assert all(state == NodeExecutionStatus.SUCCESS for state in execution.node_states.values())
        assert execution.outputs["fetch"]["symbol"] == "M0"
        assert execution.outputs["fetch"]["recordCount"] == 30
        assert execution.outputs["analyst"]["agentCode"] == "bull_analyst"
        assert agent_invoker.call_count("bull_analyst") == 1

        assert len(notifications.sent) == 1
        assert notifications.sent[0].body == {"stance": execution.outputs["analyst"]["stance"]}
        assert execution.duration_ms is not None

    @pytest.mark.asyncio
    async def test_publishes_ordered_events(self, engine, deploy, linear_dsl, recorder):
        version = await deploy(linear_dsl)

        execution = await engine.run(TriggerRequest(version.workflow_definition_id), timeout=5)

        types = recorder.types(execution.id)
        assert types[0] == ExecutionEventType.WORKFLOW_STARTED.value
        assert types[1] == ExecutionEventType.DAG_LAYERS_RESOLVED.value
        assert types[-1] == ExecutionEventType.WORKFLOW_COMPLETED.value
        assert types.count(ExecutionEventType.NODE_SUCCEEDED.value) == 3

        layers_event = recorder.of_type(ExecutionEventType.DAG_LAYERS_RESOLVED, execution.id)[0]
        assert layers_event.data["layers"] == [["fetch"], ["analyst"], ["notify"]]

        succeeded = [e.node_id for e in recorder.of_type(ExecutionEventType.NODE_SUCCEEDED, execution.id)]
        assert succeeded == ["fetch", "analyst", "notify"]

    @pytest.mark.asyncio
    async def test_each_node_runs_once_in_diamond(self, engine, deploy, agent_invoker):
        dsl = {
            "nodes": [
                {"id": "fetch", "type": "data-fetch"},
                {"id": "bull", "type": "single-agent", "config": {"agentCode": "bull_analyst"}},
                {"id": "bear", "type": "single-agent", "config": {"agentCode": "bear_analyst"}},
                {"id": "join", "type": "join"},
            ],
            "edges": [
                {"from": "fetch", "to": "bull"},
                {"from": "fetch", "to": "bear"},
                {"from": "bull", "to": "join"},
                {"from": "bear", "to": "join"},
            ],
        }
        version = await deploy(dsl)

        execution = await engine.run(TriggerRequest(version.workflow_definition_id), timeout=5)

        assert execution.status == ExecutionStatus.SUCCESS
        for node_id in ("fetch", "bull", "bear", "join"):
            assert len(execution.records_for(node_id)) == 1
        assert agent_invoker.call_count("bull_analyst") == 1
        assert agent_invoker.call_count("bear_analyst") == 1
        assert sorted(execution.outputs["join"]["succeeded"]) == ["bear", "bull"]
        assert set(execution.outputs["join"]["branches"]) == {"bull", "bear"}

    @pytest.mark.asyncio
    async def test_independent_branches_run_concurrently(self, engine, deploy, agent_invoker):
        dsl = {
            "nodes": [
                {"id": "bull", "type": "single-agent", "config": {"agentCode": "bull_analyst"}},
                {"id": "bear", "type": "single-agent", "config": {"agentCode": "bear_analyst"}},
            ],
            "edges": [],
        }
        version = await deploy(dsl)
        agent_invoker.delay = 0.3

        loop = asyncio.get_running_loop()
        started = loop.time()
        execution = await engine.run(TriggerRequest(version.workflow_definition_id), timeout=5)
        elapsed = loop.time() - started

        assert execution.status == ExecutionStatus.SUCCESS
        assert elapsed < 0.55


class TestConditionsAndRouting:
    """条件边、错误路由与禁用节点"""

    @pytest.mark.asyncio
    async def test_false_condition_skips_downstream(self, engine, deploy, linear_dsl, agent_invoker):
        dsl = copy.deepcopy(linear_dsl)
        dsl["edges"][0]["condition"] = {"field": "recordCount", "operator": "gt", "value": 1000}
        version = await deploy(dsl)

        execution = await engine.run(TriggerRequest(version.workflow_definition_id), timeout=5)

        assert execution.status == ExecutionStatus.SUCCESS
        assert execution.node_states["analyst"] == NodeExecutionStatus.SKIPPED
        assert execution.node_states["notify"] == NodeExecutionStatus.SKIPPED
        assert agent_invoker.call_count() == 0

    @pytest.mark.asyncio
    async def test_error_route_handles_failure(self, engine, deploy, notifications):
        dsl = {
            "nodes": [
                {"id": "fetch", "type": "external-data-fetch",
                 "config": {"connectorCode": "EXCHANGE_DAILY", "symbol": "M0"}},
                {"id": "analyst", "type": "single-agent", "config": {"agentCode": "bull_analyst"}},
                {"id": "ops", "type": "notify", "config": {"channel": "ops"}},
            ],
            "edges": [
                {"from": "fetch", "to": "analyst"},
                {"from": "fetch", "to": "ops", "edgeType": "ERROR_ROUTE"},
            ],
        }
        version = await deploy(dsl)

        execution = await engine.run(TriggerRequest(version.workflow_definition_id), timeout=5)

        assert execution.status == ExecutionStatus.SUCCESS
        assert execution.node_states["fetch"] == NodeExecutionStatus.FAILED
        assert execution.node_states["analyst"] == NodeExecutionStatus.SKIPPED
        assert execution.node_states["ops"] == NodeExecutionStatus.SUCCESS

        body = notifications.sent[0].body
        assert notifications.sent[0].channel == "ops"
        assert body["failedNodeId"] == "fetch"
        assert body["failureCategory"] == FailureCategory.CONNECTOR_UNAVAILABLE.value

    @pytest.mark.asyncio
    async def test_error_route_with_false_condition_fails_execution(self, engine, deploy, notifications):
        """错误路由条件不成立时失败不被接管"""
        dsl = {
            "nodes": [
                {"id": "fetch", "type": "external-data-fetch",
                 "config": {"connectorCode": "EXCHANGE_DAILY", "symbol": "M0"}},
                {"id": "ops", "type": "notify", "config": {"channel": "ops"}},
            ],
            "edges": [
                {"from": "fetch", "to": "ops", "edgeType": "ERROR_ROUTE",
                 "condition": {"field": "recordCount", "operator": "gt", "value": 1000}},
            ],
        }
        version = await deploy(dsl)

        execution = await engine.run(TriggerRequest(version.workflow_definition_id), timeout=5)

        assert execution.status == ExecutionStatus.FAILED
        assert execution.failure_category == FailureCategory.CONNECTOR_UNAVAILABLE
        assert execution.failed_node_id == "fetch"
        assert execution.node_states["fetch"] == NodeExecutionStatus.FAILED
        assert notifications.sent == []

    @pytest.mark.asyncio
    async def test_unhandled_failure_stops_execution(self, engine, deploy, linear_dsl, agent_invoker,
                                                     notifications):
        agent_invoker.register("bull_analyst", AgentInvocationError("bull_analyst", "model offline"))
        version = await deploy(linear_dsl)

        execution = await engine.run(TriggerRequest(version.workflow_definition_id), timeout=5)

        assert execution.status == ExecutionStatus.FAILED
        assert execution.failure_category == FailureCategory.EXECUTOR
        assert execution.failed_node_id == "analyst"
        assert "model offline" in execution.error_message
        assert execution.node_states["notify"] == NodeExecutionStatus.PENDING
        assert notifications.sent == []

    @pytest.mark.asyncio
    async def test_disabled_node_passes_input_through(self, engine, deploy, linear_dsl, agent_invoker,
                                                      notifications):
        dsl = copy.deepcopy(linear_dsl)
        dsl["nodes"][1]["enabled"] = False
        dsl["nodes"][2]["config"]["fields"] = ["symbol"]
        version = await deploy(dsl)

        execution = await engine.run(TriggerRequest(version.workflow_definition_id), timeout=5)

        assert execution.status == ExecutionStatus.SUCCESS
        assert execution.node_states["analyst"] == NodeExecutionStatus.SKIPPED
        assert execution.node_states["notify"] == NodeExecutionStatus.SUCCESS
        assert agent_invoker.call_count() == 0
        assert notifications.sent[0].body == {"symbol": "M0"}

    @pytest.mark.asyncio
    async def test_params_snapshot_and_input_bindings(self, engine, deploy, notifications):
        dsl = {
            "paramSetBindings": ["DESK_DEFAULTS"],
            "nodes": [
                {"id": "brief", "type": "notify", "config": {"title": "brief"}},
                {"id": "fetch", "type": "data-fetch", "config": {"symbol": "M0"}},
                {
                    "id": "alert",
                    "type": "notify",
                    "config": {"title": "alert", "fields": ["symbol", "price", "limit"]},
                    "inputBindings": {
                        "symbol": "${params.symbol}",
                        "price": "${fetch.latestPrice}",
                        "limit": "${params.maxRiskScore}",
                    },
                },
            ],
            "edges": [{"from": "fetch", "to": "alert"}],
        }
        version = await deploy(dsl)

        execution = await engine.run(
            TriggerRequest(version.workflow_definition_id, params={"maxRiskScore": 90}), timeout=5
        )

        assert execution.status == ExecutionStatus.SUCCESS
        sent = {notification.title: notification.body for notification in notifications.sent}
        assert sent["brief"] == {"maxRiskScore": 90, "minHitScore": 50, "symbol": "M0"}
        assert sent["alert"] == {
            "symbol": "M0",
            "price": execution.outputs["fetch"]["latestPrice"],
            "limit": 90,
        }


class TestRetries:
    """重试与超时"""

    @pytest.mark.asyncio
    async def test_timeout_retries_exactly_max_retries(self, engine, deploy, linear_dsl, agent_invoker,
                                                        recorder):
        dsl = copy.deepcopy(linear_dsl)
        dsl["nodes"][1]["runtimePolicy"] = {"timeoutMs": 50, "maxRetries": 2, "retryBackoffMs": 0}
        version = await deploy(dsl)
        agent_invoker.delay = 0.3

        execution = await engine.run(TriggerRequest(version.workflow_definition_id), timeout=5)

        assert execution.status == ExecutionStatus.FAILED
        assert execution.failure_category == FailureCategory.TIMEOUT
        assert execution.failed_node_id == "analyst"

        records = execution.records_for("analyst")
        assert [record.attempt for record in records] == [1, 2, 3]
        assert all(record.failure_category == FailureCategory.TIMEOUT for record in records)
        assert agent_invoker.call_count("bull_analyst") == 3
        assert len(recorder.of_type(ExecutionEventType.NODE_RETRY, execution.id)) == 2

    @pytest.mark.asyncio
    async def test_timeout_not_retried_when_disabled(self, engine, deploy, linear_dsl, agent_invoker):
        dsl = copy.deepcopy(linear_dsl)
        dsl["nodes"][1]["runtimePolicy"] = {"timeoutMs": 50, "maxRetries": 2, "retryOnTimeout": False}
        version = await deploy(dsl)
        agent_invoker.delay = 0.3

        execution = await engine.run(TriggerRequest(version.workflow_definition_id), timeout=5)

        assert execution.failure_category == FailureCategory.TIMEOUT
        assert len(execution.records_for("analyst")) == 1

    @pytest.mark.asyncio
    async def test_transient_connector_failure_is_retried(self, engine, deploy, connector):
        connector.register(
            "EXCHANGE_DAILY",
            ConnectorUnavailableError("EXCHANGE_DAILY", "HTTP 503"),
            {"bars": BARS},
        )
        dsl = {
            "nodes": [
                {
                    "id": "fetch",
                    "type": "external-data-fetch",
                    "config": {"connectorCode": "EXCHANGE_DAILY", "symbol": "M0"},
                    "runtimePolicy": {"maxRetries": 1, "retryBackoffMs": 0},
                },
            ],
            "edges": [],
        }
        version = await deploy(dsl)

        execution = await engine.run(TriggerRequest(version.workflow_definition_id), timeout=5)

        assert execution.status == ExecutionStatus.SUCCESS
        records = execution.records_for("fetch")
        assert [record.status for record in records] == [NodeExecutionStatus.FAILED, NodeExecutionStatus.SUCCESS]
        assert records[0].failure_category == FailureCategory.CONNECTOR_UNAVAILABLE
        assert records[0].retryable is True
        assert connector.request_count["EXCHANGE_DAILY"] == 2
        assert execution.outputs["fetch"]["recordCount"] == 3
        assert execution.outputs["fetch"]["latestPrice"] == 3120.0

    @pytest.mark.asyncio
    async def test_non_retryable_failure_runs_once(self, engine, deploy, linear_dsl, agent_invoker):
        agent_invoker.register("bull_analyst", AgentInvocationError("bull_analyst", "bad request"))
        dsl = copy.deepcopy(linear_dsl)
        dsl["nodes"][1]["runtimePolicy"] = {"maxRetries": 3, "retryBackoffMs": 0}
        version = await deploy(dsl)

        execution = await engine.run(TriggerRequest(version.workflow_definition_id), timeout=5)

        assert execution.status == ExecutionStatus.FAILED
        assert len(execution.records_for("analyst")) == 1
        assert agent_invoker.call_count("bull_analyst") == 1


class TestJoins:
    """汇聚策略"""

    @pytest.mark.asyncio
    async def test_quorum_tolerates_failed_branch(self, engine, deploy, agent_invoker):
        agent_invoker.register("macro_analyst", AgentInvocationError("macro_analyst", "model offline"))
        version = await deploy(fan_out_dsl({"joinPolicy": "QUORUM", "quorum": 2}))

        execution = await engine.run(TriggerRequest(version.workflow_definition_id), timeout=5)

        assert execution.status == ExecutionStatus.SUCCESS
        assert execution.node_states["third"] == NodeExecutionStatus.FAILED
        assert execution.node_states["join"] == NodeExecutionStatus.SUCCESS
        assert sorted(execution.outputs["join"]["succeeded"]) == ["fast", "slow"]

    @pytest.mark.asyncio
    async def test_unsatisfiable_quorum_fails_join(self, engine, deploy, agent_invoker):
        agent_invoker.register("bear_analyst", AgentInvocationError("bear_analyst", "model offline"))
        agent_invoker.register("macro_analyst", AgentInvocationError("macro_analyst", "model offline"))
        version = await deploy(fan_out_dsl({"joinPolicy": "QUORUM", "quorum": 2}))

        execution = await engine.run(TriggerRequest(version.workflow_definition_id), timeout=5)

        assert execution.status == ExecutionStatus.FAILED
        assert execution.failed_node_id == "join"
        assert execution.failure_category == FailureCategory.EXECUTOR
        assert execution.records_for("join")[-1].status == NodeExecutionStatus.FAILED

    @pytest.mark.asyncio
    async def test_all_join_fails_on_branch_failure(self, engine, deploy, agent_invoker):
        agent_invoker.register("bear_analyst", AgentInvocationError("bear_analyst", "model offline"))
        version = await deploy(fan_out_dsl({"joinPolicy": "ALL"}))

        execution = await engine.run(TriggerRequest(version.workflow_definition_id), timeout=5)

        assert execution.status == ExecutionStatus.FAILED
        assert execution.failed_node_id == "slow"
        assert execution.node_states["join"] != NodeExecutionStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_any_join_cancels_in_flight_branches(self, settings, references):
        invoker = TimedAgentInvoker({"bear_analyst": 5.0, "macro_analyst": 5.0})
        engine = WorkflowEngine(settings=settings, references=references, agent_invoker=invoker)
        try:
            definition = await engine.create_definition("any-join")
            version = await engine.save_draft(definition.id, fan_out_dsl({"joinPolicy": "ANY"}))
            await engine.publish(version.id)

            loop = asyncio.get_running_loop()
            started = loop.time()
            execution = await engine.run(TriggerRequest(definition.id), timeout=5)
            elapsed = loop.time() - started
        finally:
            await engine.shutdown()

        assert execution.status == ExecutionStatus.SUCCESS
        assert elapsed < 2.0
        assert execution.node_states["slow"] == NodeExecutionStatus.CANCELED
        assert execution.node_states["third"] == NodeExecutionStatus.CANCELED
        assert execution.records_for("slow")[-1].status == NodeExecutionStatus.CANCELED
        assert execution.outputs["join"]["succeeded"] == ["fast"]
        assert sorted(execution.outputs["join"]["canceled"]) == ["slow", "third"]
        assert execution.node_states["notify"] == NodeExecutionStatus.SUCCESS


class TestCancellationAndApproval:
    """取消与人工审批"""

    @pytest.mark.asyncio
    async def test_cancel_running_execution(self, engine, deploy, linear_dsl, agent_invoker, eventually):
        version = await deploy(linear_dsl)
        agent_invoker.delay = 5.0

        execution = await engine.trigger(TriggerRequest(version.workflow_definition_id))
        await eventually(lambda: execution.node_states.get("analyst") == NodeExecutionStatus.RUNNING)

        canceled = await engine.cancel(execution.id, "desk closed")

        assert canceled.status == ExecutionStatus.CANCELED
        assert canceled.error_message == "desk closed"
        assert canceled.node_states["analyst"] == NodeExecutionStatus.CANCELED
        assert canceled.records_for("analyst")[-1].status == NodeExecutionStatus.CANCELED
        assert canceled.node_states["notify"] == NodeExecutionStatus.PENDING

        with pytest.raises(WorkflowExecutionError):
            await engine.cancel(execution.id)

    @pytest.fixture
    def approval_dsl(self):
        return {
            "nodes": [
                {"id": "fetch", "type": "data-fetch", "config": {"symbol": "M0"}},
                {
                    "id": "gate",
                    "type": "risk-gate",
                    "config": {"action": "APPROVAL", "scoreThreshold": 50},
                    "inputBindings": {"riskScore": "${params.riskScore}"},
                },
                {"id": "notify", "type": "notify", "config": {"fields": ["approved"]}},
            ],
            "edges": [
                {"from": "fetch", "to": "gate"},
                {"from": "gate", "to": "notify"},
            ],
        }

    @pytest.mark.asyncio
    async def test_approval_granted_resumes_execution(self, engine, deploy, approval_dsl, approvals,
                                                      notifications, eventually):
        version = await deploy(approval_dsl)

        execution = await engine.trigger(
            TriggerRequest(version.workflow_definition_id, params={"riskScore": 80})
        )
        await eventually(lambda: execution.node_states.get("gate") == NodeExecutionStatus.WAITING)
        pending = approvals.pending(execution.id)
        assert len(pending) == 1
        assert execution.status == ExecutionStatus.RUNNING

        await engine.resolve_approval(pending[0].id, True, decided_by="desk-lead")
        execution = await engine.wait_for(execution.id, timeout=5)

        assert execution.status == ExecutionStatus.SUCCESS
        assert execution.outputs["gate"]["approved"] is True
        assert execution.outputs["gate"]["triggered"] is True
        assert notifications.sent[0].body == {"approved": True}

    @pytest.mark.asyncio
    async def test_approval_rejected_blocks_execution(self, engine, deploy, approval_dsl, approvals,
                                                      eventually):
        version = await deploy(approval_dsl)

        execution = await engine.trigger(
            TriggerRequest(version.workflow_definition_id, params={"riskScore": 80})
        )
        await eventually(lambda: execution.node_states.get("gate") == NodeExecutionStatus.WAITING)
        request = approvals.pending(execution.id)[0]

        await engine.resolve_approval(request.id, False, comment="limit breached")
        execution = await engine.wait_for(execution.id, timeout=5)

        assert execution.status == ExecutionStatus.FAILED
        assert execution.failure_category == FailureCategory.RISK_BLOCKED
        assert execution.failed_node_id == "gate"
        assert "limit breached" in execution.error_message

    @pytest.mark.asyncio
    async def test_cancel_while_waiting_discards_approval(self, engine, deploy, approval_dsl, approvals,
                                                          eventually):
        version = await deploy(approval_dsl)

        execution = await engine.trigger(
            TriggerRequest(version.workflow_definition_id, params={"riskScore": 80})
        )
        await eventually(lambda: execution.node_states.get("gate") == NodeExecutionStatus.WAITING)
        request = approvals.pending(execution.id)[0]

        canceled = await engine.cancel(execution.id, "desk closed")

        assert canceled.status == ExecutionStatus.CANCELED
        assert canceled.node_states["gate"] == NodeExecutionStatus.CANCELED
        assert approvals.pending(execution.id) == []
        with pytest.raises(ApprovalNotFoundError):
            await engine.resolve_approval(request.id, True)

    @pytest.mark.asyncio
    async def test_below_threshold_skips_approval(self, engine, deploy, approval_dsl, approvals):
        version = await deploy(approval_dsl)

        execution = await engine.run(
            TriggerRequest(version.workflow_definition_id, params={"riskScore": 10}), timeout=5
        )

        assert execution.status == ExecutionStatus.SUCCESS
        assert execution.outputs["gate"]["triggered"] is False
        assert approvals.requests == {}

    @pytest.mark.asyncio
    async def test_score_over_threshold_blocks_execution(self, engine, deploy, approval_dsl, notifications):
        """风险分超过阈值且动作为 BLOCK 时执行以 RISK_BLOCKED 失败"""
        approval_dsl["nodes"][1]["config"] = {"riskGrade": "HIGH", "scoreThreshold": 80, "action": "BLOCK"}
        version = await deploy(approval_dsl)

        execution = await engine.run(
            TriggerRequest(version.workflow_definition_id, params={"riskScore": 85}), timeout=5
        )

        assert execution.status == ExecutionStatus.FAILED
        assert execution.failure_category == FailureCategory.RISK_BLOCKED
        assert execution.failed_node_id == "gate"
        assert "risk score 85 >= 80" in execution.error_message
        assert execution.node_states["notify"] == NodeExecutionStatus.PENDING
        assert notifications.sent == []


class TestTriggerSemantics:
    """触发、幂等与并发限制"""

    @pytest.mark.asyncio
    async def test_idempotent_trigger_returns_existing_execution(self, engine, deploy, linear_dsl,
                                                                 agent_invoker):
        version = await deploy(linear_dsl)
        request = TriggerRequest(version.workflow_definition_id, idempotency_key="2024-03-05-M0")

        first = await engine.trigger(request)
        second = await engine.trigger(request)
        await engine.wait_for(first.id, timeout=5)

        assert second.id == first.id
        assert agent_invoker.call_count("bull_analyst") == 1

    @pytest.mark.asyncio
    async def test_concurrency_limit_rejects_trigger(self, references, agent_invoker, linear_dsl):
        engine = WorkflowEngine(
            settings=EngineSettings(max_executions_per_workflow=1),
            references=references,
            agent_invoker=agent_invoker,
        )
        try:
            definition = await engine.create_definition("limited")
            version = await engine.save_draft(definition.id, linear_dsl)
            await engine.publish(version.id)
            agent_invoker.delay = 5.0

            first = await engine.trigger(TriggerRequest(definition.id))
            with pytest.raises(ConcurrencyLimitError):
                await engine.trigger(TriggerRequest(definition.id))

            await engine.cancel(first.id)
            agent_invoker.delay = 0
            third = await engine.run(TriggerRequest(definition.id), timeout=5)
        finally:
            await engine.shutdown()

        assert third.status == ExecutionStatus.SUCCESS
        assert engine.resource_manager.active_count(definition.id) == 0

    @pytest.mark.asyncio
    async def test_trigger_without_published_version_fails(self, engine, linear_dsl):
        definition = await engine.create_definition("draft-only")
        await engine.save_draft(definition.id, linear_dsl)

        with pytest.raises(WorkflowNotFoundError):
            await engine.trigger(TriggerRequest(definition.id))

    @pytest.mark.asyncio
    async def test_version_pinning(self, engine, linear_dsl, agent_invoker):
        definition = await engine.create_definition("pinned")
        v1 = await engine.publish((await engine.save_draft(definition.id, linear_dsl)).id)

        dsl = copy.deepcopy(linear_dsl)
        dsl["nodes"][1]["config"]["agentCode"] = "bear_analyst"
        v2 = await engine.publish((await engine.save_draft(definition.id, dsl)).id)

        assert (v1.version_number, v2.version_number) == (1, 2)
        assert (await engine.get_definition(definition.id)).latest_version_id == v2.id

        latest = await engine.run(TriggerRequest(definition.id), timeout=5)
        pinned = await engine.run(TriggerRequest(definition.id, version_id=v1.id), timeout=5)

        assert latest.version_id == v2.id
        assert latest.outputs["analyst"]["agentCode"] == "bear_analyst"
        assert pinned.version_id == v1.id
        assert pinned.outputs["analyst"]["agentCode"] == "bull_analyst"


class TestPublishing:
    """版本发布"""

    @pytest.mark.asyncio
    async def test_published_version_is_immutable(self, engine, deploy, linear_dsl):
        version = await deploy(linear_dsl)

        with pytest.raises(VersionImmutableError):
            await engine.save_draft(version.workflow_definition_id, linear_dsl, version_id=version.id)

    @pytest.mark.asyncio
    async def test_publish_rejects_invalid_dsl(self, engine, linear_dsl):
        dsl = copy.deepcopy(linear_dsl)
        dsl["edges"].append({"from": "notify", "to": "fetch"})
        definition = await engine.create_definition("cyclic")
        version = await engine.save_draft(definition.id, dsl)

        with pytest.raises(DslValidationError) as exc_info:
            await engine.publish(version.id)

        assert "WF004" in {issue.code for issue in exc_info.value.issues}
        assert not (await engine.get_version(version.id)).is_published

    @pytest.mark.asyncio
    async def test_publish_rejects_inactive_reference(self, engine):
        dsl = {
            "nodes": [
                {"id": "fetch", "type": "external-data-fetch", "config": {"connectorCode": "RETIRED_FEED"}},
            ],
            "edges": [],
        }
        definition = await engine.create_definition("retired")
        version = await engine.save_draft(definition.id, dsl)

        with pytest.raises(ConsistencyError) as exc_info:
            await engine.publish(version.id)

        assert [issue.code for issue in exc_info.value.issues] == ["RETIRED_FEED"]

    @pytest.mark.asyncio
    async def test_reference_deactivated_after_publish_fails_execution(self, engine, deploy, references):
        dsl = {
            "nodes": [
                {"id": "fetch", "type": "external-data-fetch", "config": {"connectorCode": "EXCHANGE_DAILY"}},
            ],
            "edges": [],
        }
        version = await deploy(dsl)
        references.register_connector(ConnectorDefinition("EXCHANGE_DAILY", active=False))

        execution = await engine.run(TriggerRequest(version.workflow_definition_id), timeout=5)

        assert execution.status == ExecutionStatus.FAILED
        assert execution.failure_category == FailureCategory.VALIDATION
        assert execution.node_records == []

    @pytest.mark.asyncio
    async def test_check_version_reports_both_validations(self, engine, linear_dsl):
        definition = await engine.create_definition("checked")
        version = await engine.save_draft(definition.id, linear_dsl)

        report = await engine.check_version(version.id)

        assert report["valid"] is True
        assert report["issues"] == []
        assert report["consistency"]["ok"] is True
