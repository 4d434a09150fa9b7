"""
REST API 测试
"""
import time

import pytest
from fastapi.testclient import TestClient

from decision_workflow import __version__
from decision_workflow.api.app import create_app
from decision_workflow.config import EngineSettings
from decision_workflow.core.engine import WorkflowEngine


@pytest.fixture
def engine(settings, references, agent_invoker, notifications, approvals):
    """API 测试使用的引擎，由应用生命周期负责关闭"""
    return WorkflowEngine(
        settings=settings,
        references=references,
        agent_invoker=agent_invoker,
        notification_channel=notifications,
        approval_gateway=approvals,
    )


@pytest.fixture
def client(engine):
    with TestClient(create_app(engine)) as client:
        yield client


def deploy(client, dsl, name="api-workflow"):
    """创建定义、保存草稿并发布，返回 (定义ID, 发布版本)"""
    created = client.post("/api/v1/workflows", json={"name": name})
    definition_id = created.json()["id"]
    draft = client.post(f"/api/v1/workflows/{definition_id}/versions", json={"dsl": dsl})
    published = client.post(f"/api/v1/versions/{draft.json()['id']}/publish")
    assert published.status_code == 200
    return definition_id, published.json()


def wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met before timeout")
        time.sleep(0.02)


class TestWorkflowEndpoints:
    """工作流定义与版本接口测试"""

    def test_root(self, client):
        response = client.get("/")

        assert response.status_code == 200
        assert response.json()["version"] == __version__

    def test_create_and_get_definition(self, client):
        response = client.post("/api/v1/workflows", json={"name": "soy-daily", "description": "desk"})

        assert response.status_code == 201
        body = response.json()
        assert body["name"] == "soy-daily"
        assert body["latestVersionId"] is None
        assert "createdAt" in body

        fetched = client.get(f"/api/v1/workflows/{body['id']}")
        assert fetched.json()["description"] == "desk"
        assert [d["id"] for d in client.get("/api/v1/workflows").json()] == [body["id"]]

    def test_unknown_definition(self, client):
        response = client.get("/api/v1/workflows/missing")

        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    def test_create_rejects_blank_name(self, client):
        assert client.post("/api/v1/workflows", json={"name": ""}).status_code == 422

    def test_save_and_publish_version(self, client, linear_dsl):
        """测试保存草稿、发布与最新版本指针"""
        definition_id, published = deploy(client, linear_dsl)

        assert published["status"] == "PUBLISHED"
        assert published["versionNumber"] == 1
        assert published["workflowDefinitionId"] == definition_id
        assert published["publishedAt"] is not None
        assert len(published["contentHash"]) == 64
        assert [node["id"] for node in published["dsl"]["nodes"]] == ["fetch", "analyst", "notify"]

        definition = client.get(f"/api/v1/workflows/{definition_id}").json()
        assert definition["latestVersionId"] == published["id"]
        versions = client.get(f"/api/v1/workflows/{definition_id}/versions").json()
        assert [v["id"] for v in versions] == [published["id"]]

    def test_published_version_is_immutable(self, client, linear_dsl):
        definition_id, published = deploy(client, linear_dsl)

        response = client.post(
            f"/api/v1/workflows/{definition_id}/versions",
            json={"dsl": linear_dsl, "versionId": published["id"]},
        )

        assert response.status_code == 409
        assert response.json()["error"] == "version_immutable"

    def test_publish_invalid_dsl(self, client):
        """测试发布结构非法的 DSL 返回校验问题"""
        definition_id = client.post("/api/v1/workflows", json={"name": "broken"}).json()["id"]
        draft = client.post(f"/api/v1/workflows/{definition_id}/versions", json={"dsl": {
            "nodes": [{"id": "a", "type": "notify"}],
            "edges": [{"from": "a", "to": "ghost"}],
        }}).json()

        response = client.post(f"/api/v1/versions/{draft['id']}/publish")

        assert response.status_code == 422
        body = response.json()
        assert body["error"] == "validation_error"
        assert [issue["code"] for issue in body["details"]] == ["WF003"]
        assert client.get(f"/api/v1/versions/{draft['id']}").json()["status"] == "DRAFT"

    def test_publish_with_missing_reference(self, client):
        definition_id = client.post("/api/v1/workflows", json={"name": "stale"}).json()["id"]
        draft = client.post(f"/api/v1/workflows/{definition_id}/versions", json={"dsl": {
            "nodes": [{"id": "fetch", "type": "data-fetch", "config": {"connectorCode": "RETIRED_FEED"}}],
        }}).json()

        check = client.post(f"/api/v1/versions/{draft['id']}/check").json()
        response = client.post(f"/api/v1/versions/{draft['id']}/publish")

        assert check["valid"] is False
        assert check["consistency"]["issues"][0]["code"] == "RETIRED_FEED"
        assert response.status_code == 422
        assert response.json()["error"] == "consistency_error"

    def test_malformed_dsl(self, client):
        definition_id = client.post("/api/v1/workflows", json={"name": "bad"}).json()["id"]

        response = client.post(f"/api/v1/workflows/{definition_id}/versions", json={"dsl": {"nodes": "x"}})

        assert response.status_code == 400
        assert response.json()["error"] == "parse_error"

    def test_validate_endpoint(self, client, linear_dsl):
        valid = client.post("/api/v1/workflows/validate", json={"dsl": linear_dsl}).json()
        invalid = client.post("/api/v1/workflows/validate", json={"dsl": {
            "nodes": [{"id": "x", "type": "unknown-kind"}],
        }}).json()

        assert valid == {"valid": True, "issues": [], "layers": [["fetch"], ["analyst"], ["notify"]]}
        assert invalid["valid"] is False
        assert invalid["issues"][0]["code"] == "WF005"
        assert invalid["layers"] is None


class TestExecutionEndpoints:
    """执行接口测试"""

    def test_trigger_and_wait(self, client, linear_dsl, notifications):
        definition_id, published = deploy(client, linear_dsl)

        response = client.post("/api/v1/executions", json={
            "workflowDefinitionId": definition_id, "wait": True, "timeoutSeconds": 5,
        })

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "SUCCESS"
        assert body["versionId"] == published["id"]
        assert body["nodeStates"] == {"fetch": "SUCCESS", "analyst": "SUCCESS", "notify": "SUCCESS"}
        assert [record["nodeId"] for record in body["nodeRecords"]] == ["fetch", "analyst", "notify"]
        assert len(notifications.sent) == 1

        status = client.get(f"/api/v1/executions/{body['executionId']}").json()
        assert status["status"] == "SUCCESS"
        listed = client.get("/api/v1/executions", params={"workflowDefinitionId": definition_id,
                                                         "status": "SUCCESS"}).json()
        assert [item["executionId"] for item in listed] == [body["executionId"]]

    def test_trigger_async(self, client, linear_dsl):
        definition_id, _ = deploy(client, linear_dsl)

        response = client.post("/api/v1/executions", json={"workflowDefinitionId": definition_id})

        assert response.status_code == 202
        execution_id = response.json()["executionId"]
        wait_until(lambda: client.get(f"/api/v1/executions/{execution_id}").json()["status"] == "SUCCESS")

    def test_idempotent_trigger(self, client, linear_dsl):
        definition_id, _ = deploy(client, linear_dsl)
        payload = {"workflowDefinitionId": definition_id, "idempotencyKey": "2024-03-05", "wait": True}

        first = client.post("/api/v1/executions", json=payload).json()
        second = client.post("/api/v1/executions", json=payload).json()

        assert first["executionId"] == second["executionId"]

    def test_unknown_execution(self, client):
        response = client.get("/api/v1/executions/missing")

        assert response.status_code == 404
        assert response.json()["message"] == "Execution not found: missing"

    def test_trigger_without_published_version(self, client, linear_dsl):
        definition_id = client.post("/api/v1/workflows", json={"name": "draft-only", "dsl": linear_dsl}).json()["id"]

        response = client.post("/api/v1/executions", json={"workflowDefinitionId": definition_id})

        assert response.status_code == 404
        assert "no published version" in response.json()["message"]
        assert client.get("/api/v1/monitoring/resources").json()["running_executions"] == 0

    def test_concurrency_limit_and_cancel(self, references, agent_invoker, linear_dsl):
        """测试并发超限返回 429，取消在途执行"""
        engine = WorkflowEngine(
            settings=EngineSettings(max_executions_per_workflow=1),
            references=references,
            agent_invoker=agent_invoker,
        )
        with TestClient(create_app(engine)) as client:
            definition_id, _ = deploy(client, linear_dsl)
            agent_invoker.delay = 5.0

            first = client.post("/api/v1/executions", json={"workflowDefinitionId": definition_id})
            rejected = client.post("/api/v1/executions", json={"workflowDefinitionId": definition_id})

            assert first.status_code == 202
            assert rejected.status_code == 429
            assert rejected.json()["error"] == "concurrency_limit"

            execution_id = first.json()["executionId"]
            canceled = client.post(f"/api/v1/executions/{execution_id}/cancel", json={"reason": "desk closed"})
            assert canceled.status_code == 200
            assert canceled.json()["status"] == "CANCELED"

            again = client.post(f"/api/v1/executions/{execution_id}/cancel")
            assert again.status_code == 409

    def test_approval_decision(self, client, approvals):
        """测试通过接口提交风控审批"""
        definition_id, _ = deploy(client, {
            "nodes": [
                {"id": "fetch", "type": "data-fetch", "config": {"symbol": "M0"}},
                {"id": "gate", "type": "risk-gate", "config": {"action": "APPROVAL", "scoreThreshold": 50},
                 "inputBindings": {"riskScore": "${params.riskScore}"}},
            ],
            "edges": [{"from": "fetch", "to": "gate"}],
        })
        execution_id = client.post("/api/v1/executions", json={
            "workflowDefinitionId": definition_id, "params": {"riskScore": 90},
        }).json()["executionId"]
        wait_until(lambda: len(approvals.pending(execution_id)) == 1)
        request_id = approvals.pending(execution_id)[0].id

        response = client.post(f"/api/v1/executions/approvals/{request_id}/decision",
                               json={"approved": True, "decidedBy": "desk-lead"})

        assert response.status_code == 200
        body = response.json()
        assert body["decision"] == "APPROVED"
        assert body["decidedBy"] == "desk-lead"
        assert body["nodeId"] == "gate"
        wait_until(lambda: client.get(f"/api/v1/executions/{execution_id}").json()["status"] == "SUCCESS")

    def test_unknown_approval(self, client):
        response = client.post("/api/v1/executions/approvals/missing/decision", json={"approved": False})

        assert response.status_code == 404


class TestExperimentEndpoints:
    """实验接口测试"""

    @pytest.fixture
    def versions(self, client, linear_dsl):
        definition_id, first = deploy(client, linear_dsl)
        draft = client.post(f"/api/v1/workflows/{definition_id}/versions",
                            json={"dsl": dict(linear_dsl, name="linear-v2")}).json()
        second = client.post(f"/api/v1/versions/{draft['id']}/publish").json()
        return definition_id, first["id"], second["id"]

    def test_experiment_lifecycle(self, client, versions):
        definition_id, version_a, version_b = versions
        created = client.post("/api/v1/experiments", json={
            "workflowDefinitionId": definition_id,
            "variantAVersionId": version_a,
            "variantBVersionId": version_b,
            "trafficSplitPercent": 100,
            "experimentCode": "SOY-AB",
        })

        assert created.status_code == 201
        experiment_id = created.json()["id"]
        assert created.json()["status"] == "DRAFT"

        assert client.post(f"/api/v1/experiments/{experiment_id}/start").json()["status"] == "RUNNING"
        route = client.post(f"/api/v1/experiments/{experiment_id}/route", json={"routingKey": "order-1"}).json()
        assert route["variant"] == "B"
        assert route["versionId"] == version_b

        execution = client.post("/api/v1/executions", json={
            "workflowDefinitionId": definition_id, "experimentId": experiment_id, "wait": True,
        }).json()
        assert execution["variant"] == "B"
        assert execution["versionId"] == version_b

        evaluation = client.get(f"/api/v1/experiments/{experiment_id}/evaluation").json()
        assert evaluation["recommendation"] == "CONTINUE"

        concluded = client.post(f"/api/v1/experiments/{experiment_id}/conclude",
                                json={"winner": "B", "summary": "faster"}).json()
        assert concluded["status"] == "COMPLETED"
        assert concluded["winnerVariant"] == "B"
        assert [e["id"] for e in client.get("/api/v1/experiments").json()] == [experiment_id]

    def test_route_requires_running_experiment(self, client, versions):
        definition_id, version_a, version_b = versions
        experiment_id = client.post("/api/v1/experiments", json={
            "workflowDefinitionId": definition_id, "variantAVersionId": version_a, "variantBVersionId": version_b,
        }).json()["id"]

        response = client.post(f"/api/v1/experiments/{experiment_id}/route", json={"routingKey": "k"})

        assert response.status_code == 400
        assert response.json()["error"] == "experiment_error"

    def test_unknown_experiment(self, client):
        assert client.get("/api/v1/experiments/missing").status_code == 404

    def test_split_out_of_range(self, client, versions):
        definition_id, version_a, version_b = versions

        response = client.post("/api/v1/experiments", json={
            "workflowDefinitionId": definition_id, "variantAVersionId": version_a, "variantBVersionId": version_b,
            "trafficSplitPercent": 150,
        })

        assert response.status_code == 422


class TestMonitoringEndpoints:
    """监控接口测试"""

    def test_health(self, client):
        body = client.get("/api/v1/monitoring/health").json()

        assert body["status"] == "healthy"
        assert body["checks"] == {"database": True, "executors": True}
        assert body["version"] == __version__

    def test_resources(self, client):
        stats = client.get("/api/v1/monitoring/resources").json()

        assert stats["running_executions"] == 0

    def test_request_id_header(self, client):
        response = client.get("/api/v1/monitoring/health", headers={"X-Request-ID": "req-42"})

        assert response.headers["X-Request-ID"] == "req-42"
        assert "X-Process-Time" in response.headers
