"""
外部引用一致性校验

发布前与执行加载时检查版本引用的连接器、规则包、智能体配置、
参数集及参数、提示词模板与模型配置均解析为活跃实体。
"""
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from ..exceptions import ConsistencyError
from ..executors.rule_pack_eval import rule_pack_codes
from ..integrations.references import ReferenceKind, ReferenceRegistry
from ..models.workflow import NodeType, WorkflowDsl, WorkflowNode, WorkflowVersion


logger = logging.getLogger(__name__)

_PARAM_REFERENCE = re.compile(r"^\$\{\s*params\.([^}.\s]+)[^}]*\}$")

_DATA_FETCH_TYPES = (NodeType.DATA_FETCH, NodeType.EXTERNAL_DATA_FETCH)


@dataclass(frozen=True)
class ConsistencyIssue:
    """未解析的引用"""
    kind: str
    code: str
    node_id: Optional[str] = None
    message: str = ""

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {"kind": self.kind, "code": self.code, "nodeId": self.node_id, "message": self.message}


@dataclass
class ConsistencyReport:
    """一致性校验结果"""
    version_id: Optional[str] = None
    issues: List[ConsistencyIssue] = field(default_factory=list)
    checked: int = 0

    @property
    def ok(self) -> bool:
        return not self.issues

    def to_dict(self) -> Dict[str, Any]:
        return {
            "versionId": self.version_id,
            "ok": self.ok,
            "checked": self.checked,
            "issues": [issue.to_dict() for issue in self.issues],
        }


def _agent_codes(node: WorkflowNode) -> List[str]:
    config = node.config
    node_type = node.node_type
    codes: List[str] = []
    if node_type == NodeType.SINGLE_AGENT:
        code = config.get("agentCode") or config.get("agentProfileCode")
        if code:
            codes.append(code)
    elif node_type == NodeType.DEBATE_ROUND:
        for participant in config.get("participants", ()):
            code = participant if isinstance(participant, str) else participant.get("agentCode")
            if code:
                codes.append(code)
    elif node_type == NodeType.JUDGE_AGENT and config.get("judgeAgentCode"):
        codes.append(config["judgeAgentCode"])
    return codes


def _parameter_codes(node: WorkflowNode) -> List[str]:
    codes: List[str] = []
    for expression in node.input_bindings.values():
        if isinstance(expression, str):
            match = _PARAM_REFERENCE.match(expression.strip())
            if match:
                codes.append(match.group(1))
    if node.node_type == NodeType.RISK_GATE and node.config.get("thresholdParam"):
        codes.append(node.config["thresholdParam"])
    return codes


class ConsistencyValidator:
    """引用一致性校验器"""

    def __init__(self, references: ReferenceRegistry):
        self.references = references

    def collect(self, dsl: WorkflowDsl) -> List[Tuple[ReferenceKind, str, Optional[str]]]:
        """收集 DSL 中的全部外部引用 (类别, 编码, 节点ID)"""
        refs: List[Tuple[ReferenceKind, str, Optional[str]]] = []
        for set_code in dsl.param_set_bindings:
            refs.append((ReferenceKind.PARAMETER_SET, set_code, None))
        for value in dsl.agent_bindings.values():
            if isinstance(value, str):
                refs.append((ReferenceKind.AGENT_PROFILE, value, None))

        for node in dsl.nodes:
            node_type = node.node_type
            if node_type in _DATA_FETCH_TYPES:
                for key in ("connectorCode", "fallbackConnectorCode"):
                    if node.config.get(key):
                        refs.append((ReferenceKind.CONNECTOR, node.config[key], node.id))
            elif node_type == NodeType.RULE_PACK_EVAL:
                refs.extend((ReferenceKind.RULE_PACK, code, node.id) for code in rule_pack_codes(node))
            refs.extend((ReferenceKind.AGENT_PROFILE, code, node.id) for code in _agent_codes(node))
            refs.extend((ReferenceKind.PARAMETER, code, node.id) for code in _parameter_codes(node))
        return refs

    def validate_dsl(self, dsl: WorkflowDsl, version_id: str = None) -> ConsistencyReport:
        report = ConsistencyReport(version_id=version_id)
        seen: Set[Tuple[ReferenceKind, str]] = set()
        bound_sets = list(dsl.param_set_bindings)

        for kind, code, node_id in self.collect(dsl):
            if (kind, code) in seen:
                continue
            seen.add((kind, code))
            report.checked += 1

            if kind == ReferenceKind.PARAMETER:
                # 未绑定参数集时参数只能来自触发参数，发布期无法校验
                if not bound_sets:
                    continue
                if not any(self.references.is_active(kind, code, scope) for scope in bound_sets):
                    report.issues.append(ConsistencyIssue(
                        kind.value, code, node_id,
                        f"Parameter '{code}' is not active in bound parameter sets {bound_sets}"
                    ))
                continue

            if not self.references.is_active(kind, code):
                report.issues.append(ConsistencyIssue(
                    kind.value, code, node_id, f"{kind.value} '{code}' is missing or inactive"
                ))
                continue

            if kind == ReferenceKind.AGENT_PROFILE:
                self._check_agent_profile(code, node_id, report, seen)

        if not report.ok:
            logger.warning(
                f"Consistency check found {len(report.issues)} unresolved reference(s) "
                f"for version {version_id}"
            )
        return report

    def _check_agent_profile(
        self,
        agent_code: str,
        node_id: Optional[str],
        report: ConsistencyReport,
        seen: Set[Tuple[ReferenceKind, str]]
    ):
        """智能体配置背后的提示词模板与模型配置"""
        profile = self.references.get_agent_profile(agent_code)
        nested: Iterable[Tuple[ReferenceKind, Optional[str]]] = (
            (ReferenceKind.PROMPT_TEMPLATE, profile.prompt_template_code),
            (ReferenceKind.MODEL_CONFIG, profile.model_config_key),
        )
        for kind, code in nested:
            if not code or (kind, code) in seen:
                continue
            seen.add((kind, code))
            report.checked += 1
            if not self.references.is_active(kind, code):
                report.issues.append(ConsistencyIssue(
                    kind.value, code, node_id,
                    f"{kind.value} '{code}' referenced by agent '{agent_code}' is missing or inactive"
                ))

    def validate(self, version: WorkflowVersion) -> ConsistencyReport:
        """校验工作流版本"""
        return self.validate_dsl(version.dsl, version.id)

    def ensure_consistent(self, version: WorkflowVersion) -> ConsistencyReport:
        """校验失败时抛出 ConsistencyError"""
        report = self.validate(version)
        if not report.ok:
            raise ConsistencyError(report.issues, version.id)
        return report
