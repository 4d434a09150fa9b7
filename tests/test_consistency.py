"""
外部引用一致性校验测试
"""
import pytest

from decision_workflow.core.parser import WorkflowParser
from decision_workflow.exceptions import ConsistencyError
from decision_workflow.integrations.references import ConnectorDefinition, ReferenceKind
from decision_workflow.models.workflow import WorkflowVersion
from decision_workflow.telemetry.consistency import ConsistencyValidator


def pipeline(**overrides):
    """引用齐全的流水线"""
    document = {
        "paramSetBindings": ["DESK_DEFAULTS"],
        "nodes": [
            {"id": "fetch", "type": "data-fetch",
             "config": {"connectorCode": "EXCHANGE_DAILY", "fallbackConnectorCode": "BACKUP_DAILY"}},
            {"id": "screen", "type": "rule-pack-eval", "config": {"rulePackCodes": ["TREND", "LIMITS"]}},
            {"id": "debate", "type": "debate-round",
             "config": {"participants": [{"agentCode": "bull_analyst"}, "bear_analyst"]}},
            {"id": "judge", "type": "judge-agent", "config": {"judgeAgentCode": "chief_judge"}},
            {"id": "gate", "type": "risk-gate", "config": {"thresholdParam": "maxRiskScore"}},
        ],
        "edges": [
            {"from": "fetch", "to": "screen"},
            {"from": "screen", "to": "debate"},
            {"from": "debate", "to": "judge"},
            {"from": "judge", "to": "gate"},
        ],
    }
    document.update(overrides)
    return WorkflowParser().parse_dict(document)


def single(node_type, config=None, input_bindings=None, **document):
    return WorkflowParser().parse_dict({
        "nodes": [{"id": "n", "type": node_type, "config": config or {}, "inputBindings": input_bindings or {}}],
        **document,
    })


class TestConsistencyValidator:
    """一致性校验器测试类"""

    @pytest.fixture
    def checker(self, references):
        return ConsistencyValidator(references)

    def test_resolved_pipeline(self, checker):
        report = checker.validate_dsl(pipeline(), "v-1")

        assert report.ok
        assert report.checked == 12
        assert report.to_dict() == {"versionId": "v-1", "ok": True, "checked": 12, "issues": []}

    def test_collects_all_reference_kinds(self, checker):
        kinds = {kind for kind, _, _ in checker.collect(pipeline())}

        assert kinds == {
            ReferenceKind.PARAMETER_SET, ReferenceKind.CONNECTOR, ReferenceKind.RULE_PACK,
            ReferenceKind.AGENT_PROFILE, ReferenceKind.PARAMETER,
        }

    def test_inactive_connector(self, checker):
        report = checker.validate_dsl(single("external-data-fetch", {"connectorCode": "RETIRED_FEED"}))

        assert [(issue.kind, issue.code, issue.node_id) for issue in report.issues] == [
            ("connector", "RETIRED_FEED", "n")
        ]

    def test_missing_rule_pack_and_agent(self, checker):
        dsl = WorkflowParser().parse_dict({"nodes": [
            {"id": "screen", "type": "rule-pack-eval", "config": {"rulePackCode": "GHOST_PACK"}},
            {"id": "analyst", "type": "single-agent", "config": {"agentCode": "ghost_agent"}},
        ]})

        report = checker.validate_dsl(dsl)

        assert {(issue.kind, issue.code) for issue in report.issues} == {
            ("rule_pack", "GHOST_PACK"), ("agent_profile", "ghost_agent")
        }

    def test_agent_prompt_template_is_checked(self, checker):
        """测试智能体背后的提示词模板"""
        report = checker.validate_dsl(single("single-agent", {"agentCode": "orphan_agent"}))

        assert [(issue.kind, issue.code) for issue in report.issues] == [("prompt_template", "MISSING_TPL")]
        assert "orphan_agent" in report.issues[0].message

    def test_agent_bindings(self, checker):
        report = checker.validate_dsl(single("notify", agentBindings={"analyst": "ghost_agent"}))

        assert [(issue.kind, issue.code, issue.node_id) for issue in report.issues] == [
            ("agent_profile", "ghost_agent", None)
        ]

    def test_parameters_checked_against_bound_sets(self, checker):
        dsl = single(
            "risk-gate", {"thresholdParam": "maxLoss"},
            input_bindings={"symbol": "${params.symbol}", "limit": "${params.positionCap}"},
            paramSetBindings=["DESK_DEFAULTS"],
        )

        report = checker.validate_dsl(dsl)

        assert {issue.code for issue in report.issues} == {"maxLoss", "positionCap"}
        assert {issue.kind for issue in report.issues} == {"parameter"}

    def test_parameters_unchecked_without_bound_sets(self, checker):
        dsl = single("risk-gate", {"thresholdParam": "maxLoss"}, input_bindings={"x": "${params.anything}"})

        assert checker.validate_dsl(dsl).ok

    def test_unknown_parameter_set(self, checker):
        report = checker.validate_dsl(single("notify", paramSetBindings=["NO_SUCH_SET"]))

        assert [(issue.kind, issue.code) for issue in report.issues] == [("parameter_set", "NO_SUCH_SET")]

    def test_duplicate_references_checked_once(self, checker):
        dsl = WorkflowParser().parse_dict({"nodes": [
            {"id": "a", "type": "data-fetch", "config": {"connectorCode": "EXCHANGE_DAILY"}},
            {"id": "b", "type": "data-fetch", "config": {"connectorCode": "EXCHANGE_DAILY"}},
        ]})

        assert checker.validate_dsl(dsl).checked == 1

    def test_reference_deactivated_later(self, checker, references):
        assert checker.validate_dsl(pipeline()).ok

        references.register_connector(ConnectorDefinition("BACKUP_DAILY", active=False))

        report = checker.validate_dsl(pipeline())
        assert [issue.code for issue in report.issues] == ["BACKUP_DAILY"]

    def test_ensure_consistent(self, checker):
        version = WorkflowVersion(
            workflow_definition_id="wf-1",
            version_number=1,
            dsl=single("data-fetch", {"connectorCode": "RETIRED_FEED"}),
            content_hash="x",
        )

        with pytest.raises(ConsistencyError) as exc_info:
            checker.ensure_consistent(version)

        assert exc_info.value.version_id == version.id
        assert [issue.code for issue in exc_info.value.issues] == ["RETIRED_FEED"]
        assert "connector:RETIRED_FEED" in str(exc_info.value)
