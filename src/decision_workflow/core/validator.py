"""
工作流 DSL 校验器
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Set

from ..exceptions import DslValidationError
from ..executors.join import join_policy, quorum_size
from ..executors.registry import ExecutorRegistry
from ..models.workflow import JoinPolicy, NodeType, WorkflowDsl, WorkflowNode
from .expressions import is_condition_shape_valid, split_path
from .graph import ValidGraph, topological_layers


logger = logging.getLogger(__name__)

# 任何节点都会产出的元信息字段
META_FIELD = "_meta"


class Severity(Enum):
    """问题级别"""
    ERROR = "ERROR"
    WARNING = "WARNING"


@dataclass(frozen=True)
class ValidationIssue:
    """校验问题"""
    code: str
    message: str
    severity: Severity = Severity.ERROR
    node_id: Optional[str] = None
    edge_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "code": self.code,
            "severity": self.severity.value,
            "message": self.message,
            "nodeId": self.node_id,
            "edgeId": self.edge_id,
        }


@dataclass
class ValidationResult:
    """校验结果，仅在没有 ERROR 时携带执行图"""
    issues: List[ValidationIssue] = field(default_factory=list)
    graph: Optional[ValidGraph] = None

    @property
    def errors(self) -> List[ValidationIssue]:
        return [issue for issue in self.issues if issue.severity == Severity.ERROR]

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def codes(self) -> Set[str]:
        return {issue.code for issue in self.issues}


class DslValidator:
    """DSL 校验器"""

    def __init__(self, registry: Optional[ExecutorRegistry] = None):
        self.registry = registry

    def validate(self, dsl: WorkflowDsl) -> ValidationResult:
        """
        校验 DSL

        Args:
            dsl: 待校验的 DSL

        Returns:
            ValidationResult: 全部问题；无错误时附带 ValidGraph
        """
        issues: List[ValidationIssue] = []

        if not dsl.nodes:
            issues.append(ValidationIssue("WF001", "Workflow must declare at least one node"))
            return ValidationResult(issues)

        node_ids = self._check_nodes(dsl, issues)
        edges_ok = self._check_edges(dsl, node_ids, issues)
        self._check_registry(dsl, issues)

        # 存在悬空边时无法可靠分层
        acyclic = False
        layers: List[List[str]] = []
        if edges_ok:
            layers, remaining = topological_layers(
                [node.id for node in dsl.nodes if node.id], dsl.edges
            )
            if remaining:
                issues.append(ValidationIssue(
                    "WF004",
                    f"Workflow contains a cycle through nodes: {', '.join(sorted(remaining))}"
                ))
            else:
                acyclic = True

        self._check_joins(dsl, issues)
        if acyclic:
            self._check_condition_fields(dsl, layers, issues)

        result = ValidationResult(issues)
        if result.is_valid:
            result.graph = ValidGraph(dsl, layers)
        else:
            logger.debug(f"DSL validation found {len(result.errors)} error(s): {sorted(result.codes())}")
        return result

    def validate_or_raise(self, dsl: WorkflowDsl) -> ValidGraph:
        """校验失败时抛出 DslValidationError"""
        result = self.validate(dsl)
        if not result.is_valid:
            raise DslValidationError(result.errors)
        return result.graph

    def _check_nodes(self, dsl: WorkflowDsl, issues: List[ValidationIssue]) -> Set[str]:
        """必填字段、重复 ID、类型与运行策略"""
        seen: Set[str] = set()
        for index, node in enumerate(dsl.nodes):
            if not node.id:
                issues.append(ValidationIssue("WF001", f"Node #{index} is missing an id"))
                continue
            if node.id in seen:
                issues.append(ValidationIssue("WF002", f"Duplicate node id: {node.id}", node_id=node.id))
            seen.add(node.id)

            if not node.type:
                issues.append(ValidationIssue("WF001", f"Node {node.id} is missing a type", node_id=node.id))
            elif node.node_type is None:
                issues.append(ValidationIssue(
                    "WF005", f"Node {node.id} has unknown type '{node.type}'", node_id=node.id
                ))

            policy = node.runtime_policy
            if policy.timeout_ms <= 0 or policy.max_retries < 0 or policy.retry_backoff_ms < 0:
                issues.append(ValidationIssue(
                    "WF009",
                    f"Node {node.id} has malformed runtime policy: {policy.to_dict()}",
                    node_id=node.id
                ))
        return seen

    def _check_edges(self, dsl: WorkflowDsl, node_ids: Set[str], issues: List[ValidationIssue]) -> bool:
        """重复边、悬空引用与条件结构"""
        edges_ok = True
        seen: Set[str] = set()
        for edge in dsl.edges:
            if edge.id in seen:
                issues.append(ValidationIssue("WF002", f"Duplicate edge id: {edge.id}", edge_id=edge.id))
            seen.add(edge.id)

            for endpoint in (edge.source, edge.target):
                if endpoint not in node_ids:
                    edges_ok = False
                    issues.append(ValidationIssue(
                        "WF003",
                        f"Edge {edge.id} references unknown node '{endpoint}'",
                        edge_id=edge.id
                    ))

            if not is_condition_shape_valid(edge.condition):
                issues.append(ValidationIssue(
                    "WF010", f"Edge {edge.id} has malformed condition", edge_id=edge.id
                ))
        return edges_ok

    def _check_registry(self, dsl: WorkflowDsl, issues: List[ValidationIssue]):
        """执行器冲突与可解析性"""
        if self.registry is None:
            return

        used_types = {node.node_type for node in dsl.nodes if node.node_type is not None}
        for node_type, names in self.registry.conflicts.items():
            if node_type in used_types:
                issues.append(ValidationIssue(
                    "WF008",
                    f"Node type '{node_type.value}' is claimed by multiple executors: {', '.join(names)}"
                ))

        for node in dsl.nodes:
            if node.id and node.node_type is not None and not self.registry.supports(node):
                issues.append(ValidationIssue(
                    "WF005", f"No executor supports node {node.id} of type '{node.type}'", node_id=node.id
                ))

    def _check_joins(self, dsl: WorkflowDsl, issues: List[ValidationIssue]):
        """汇聚配置"""
        predecessors: Dict[str, Set[str]] = {}
        for edge in dsl.edges:
            predecessors.setdefault(edge.target, set()).add(edge.source)

        for node in dsl.nodes:
            if not node.id:
                continue
            count = len(predecessors.get(node.id, ()))
            declares_policy = "joinPolicy" in node.config
            if node.node_type != NodeType.JOIN and not declares_policy:
                continue

            try:
                policy = join_policy(node)
            except ValueError:
                issues.append(ValidationIssue(
                    "WF007",
                    f"Node {node.id} has unknown join policy '{node.config.get('joinPolicy')}'",
                    node_id=node.id
                ))
                continue

            if node.node_type == NodeType.JOIN and count < 2:
                issues.append(ValidationIssue(
                    "WF007", f"Join node {node.id} needs at least 2 predecessors, has {count}", node_id=node.id
                ))
                continue
            if node.node_type != NodeType.JOIN and count < 2:
                issues.append(ValidationIssue(
                    "WF007",
                    f"Join policy on node {node.id} has no effect with {count} predecessor(s)",
                    severity=Severity.WARNING,
                    node_id=node.id
                ))
                continue

            if policy == JoinPolicy.QUORUM:
                size = quorum_size(node)
                if isinstance(size, bool) or not isinstance(size, int) or not 1 <= size <= count:
                    issues.append(ValidationIssue(
                        "WF007",
                        f"Join node {node.id} quorum must be an integer in [1, {count}], got {size!r}",
                        node_id=node.id
                    ))

    def _declared_fields(self, node: WorkflowNode) -> Optional[FrozenSet[str]]:
        if self.registry is None:
            return None
        executor = self.registry.get(node)
        if executor is None:
            return None
        return executor.declared_output_fields(node)

    def _check_condition_fields(self, dsl: WorkflowDsl, layers: List[List[str]], issues: List[ValidationIssue]):
        """条件字段必须可由起点节点或其祖先产出"""
        nodes = {node.id: node for node in dsl.nodes}
        ancestors: Dict[str, Set[str]] = {}
        incoming: Dict[str, Set[str]] = {}
        for edge in dsl.edges:
            incoming.setdefault(edge.target, set()).add(edge.source)
        for layer in layers:
            for node_id in layer:
                found: Set[str] = set()
                for source in incoming.get(node_id, ()):
                    found.add(source)
                    found.update(ancestors[source])
                ancestors[node_id] = found

        for edge in dsl.edges:
            condition = edge.condition
            if condition is None or isinstance(condition, bool) or not is_condition_shape_valid(condition):
                continue
            segments = split_path(condition["field"])
            if not segments or segments[0] == META_FIELD:
                continue

            candidates = {edge.source} | ancestors.get(edge.source, set())
            head = segments[0]
            if head in candidates:
                # 限定形式 nodeId.field
                if len(segments) == 1 or segments[1] == META_FIELD:
                    continue
                fields = self._declared_fields(nodes[head])
                if fields is None or segments[1] in fields:
                    continue
            else:
                declared = [self._declared_fields(nodes[node_id]) for node_id in candidates]
                if any(fields is None for fields in declared):
                    continue
                if any(head in fields for fields in declared):
                    continue

            issues.append(ValidationIssue(
                "WF006",
                f"Edge {edge.id} condition field '{condition['field']}' is not produced by "
                f"node {edge.source} or its ancestors",
                edge_id=edge.id
            ))
