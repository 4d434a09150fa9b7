"""
Pytest 配置和公共 fixtures
"""
import asyncio
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict

import pytest
import pytest_asyncio

from decision_workflow.config import EngineSettings
from decision_workflow.core.engine import WorkflowEngine
from decision_workflow.integrations.agent import MockAgentInvoker
from decision_workflow.integrations.approval import InMemoryApprovalGateway
from decision_workflow.integrations.connectors import InMemoryDataConnector
from decision_workflow.integrations.notifications import InMemoryNotificationChannel
from decision_workflow.integrations.references import ReferenceRegistry
from decision_workflow.models.workflow import WorkflowVersion
from decision_workflow.telemetry.events import ExecutionEventRecorder


CATALOG: Dict[str, Any] = {
    "connectors": [
        {"connectorCode": "EXCHANGE_DAILY", "endpoint": "http://exchange.test/daily"},
        {"connectorCode": "BACKUP_DAILY"},
        {"connectorCode": "RETIRED_FEED", "active": False},
    ],
    "promptTemplates": ["BULL_V1", "BEAR_V1", "MACRO_V1"],
    "modelConfigs": ["default-llm"],
    "agentProfiles": [
        {"agentCode": "bull_analyst", "roleType": "BULL", "promptTemplateCode": "BULL_V1",
         "modelConfigKey": "default-llm"},
        {"agentCode": "bear_analyst", "roleType": "BEAR", "promptTemplateCode": "BEAR_V1",
         "modelConfigKey": "default-llm"},
        {"agentCode": "macro_analyst", "roleType": "MACRO", "promptTemplateCode": "MACRO_V1",
         "modelConfigKey": "default-llm", "weight": 2},
        {"agentCode": "chief_judge", "roleType": "JUDGE", "modelConfigKey": "default-llm"},
        {"agentCode": "orphan_agent", "promptTemplateCode": "MISSING_TPL"},
    ],
    "parameterSets": [
        {"setCode": "DESK_DEFAULTS", "items": {"maxRiskScore": 70, "minHitScore": 50, "symbol": "M0"}},
    ],
    "rulePacks": [
        {
            "rulePackCode": "TREND",
            "ruleLayer": "DEFAULT",
            "rules": [
                {"ruleCode": "UP", "fieldPath": "changePct", "operator": "GT", "expectedValue": 0, "weight": 4},
                {"ruleCode": "CALM", "fieldPath": "volatility", "operator": "LT", "expectedValue": 5, "weight": 5},
                {"ruleCode": "DEEP", "fieldPath": "recordCount", "operator": "GTE", "expectedValue": 100,
                 "weight": 3},
            ],
        },
        {
            "rulePackCode": "LIMITS",
            "ruleLayer": "RUNTIME_OVERRIDE",
            "rules": [
                {"ruleCode": "PRICE_CAP", "fieldPath": "latestPrice", "operator": "LT", "expectedValue": 10000},
            ],
        },
    ],
}


@pytest.fixture
def references() -> ReferenceRegistry:
    """加载测试目录的引用注册表"""
    registry = ReferenceRegistry()
    registry.load_catalog(CATALOG)
    return registry


@pytest.fixture
def agent_invoker() -> MockAgentInvoker:
    return MockAgentInvoker()


@pytest.fixture
def connector() -> InMemoryDataConnector:
    return InMemoryDataConnector()


@pytest.fixture
def notifications() -> InMemoryNotificationChannel:
    return InMemoryNotificationChannel()


@pytest.fixture
def approvals() -> InMemoryApprovalGateway:
    return InMemoryApprovalGateway()


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings(default_retry_backoff_ms=0, max_executions_per_workflow=3)


@pytest_asyncio.fixture
async def engine(
    settings, references, agent_invoker, connector, notifications, approvals
) -> AsyncGenerator[WorkflowEngine, None]:
    """使用内存存储与模拟集成的引擎"""
    engine = WorkflowEngine(
        settings=settings,
        references=references,
        agent_invoker=agent_invoker,
        connector=connector,
        notification_channel=notifications,
        approval_gateway=approvals,
    )

    yield engine

    await engine.shutdown()


@pytest_asyncio.fixture
async def recorder(engine) -> ExecutionEventRecorder:
    """订阅引擎执行事件"""
    recorder = ExecutionEventRecorder()
    await recorder.attach(engine.event_bus)
    return recorder


@pytest.fixture
def deploy(engine) -> Callable[..., Awaitable[WorkflowVersion]]:
    """创建定义、保存草稿并发布"""

    async def _deploy(dsl: Dict[str, Any], name: str = "test-workflow") -> WorkflowVersion:
        definition = await engine.create_definition(name)
        version = await engine.save_draft(definition.id, dsl)
        return await engine.publish(version.id)

    return _deploy


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.01):
    """轮询直到条件成立"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


@pytest.fixture
def eventually() -> Callable[..., Awaitable[None]]:
    return wait_until


@pytest.fixture
def linear_dsl() -> Dict[str, Any]:
    """数据拉取 -> 单智能体 -> 通知"""
    return {
        "name": "linear",
        "nodes": [
            {"id": "fetch", "type": "data-fetch", "config": {"symbol": "M0", "seed": "fixed"}},
            {"id": "analyst", "type": "single-agent", "config": {"agentCode": "bull_analyst"}},
            {"id": "notify", "type": "notify", "config": {"channel": "desk", "fields": ["stance"]}},
        ],
        "edges": [
            {"from": "fetch", "to": "analyst"},
            {"from": "analyst", "to": "notify"},
        ],
    }
