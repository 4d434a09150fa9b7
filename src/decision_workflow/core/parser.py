"""
工作流 DSL 解析器
"""
import hashlib
import json
from pathlib import Path
from typing import Any, Dict, Union

import yaml

from ..exceptions import WorkflowParseError
from ..models.frozen import freeze, thaw
from ..models.workflow import EdgeType, RuntimePolicy, WorkflowDsl, WorkflowEdge, WorkflowNode


def _pick(data: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    """按候选键（camelCase / snake_case）取值"""
    for key in keys:
        if key in data:
            return data[key]
    return default


class WorkflowParser:
    """工作流 DSL 解析器"""

    def __init__(self, default_policy: RuntimePolicy = None):
        self.default_policy = default_policy or RuntimePolicy()
        self.parsers = {
            'yaml': self._parse_yaml,
            'yml': self._parse_yaml,
            'json': self._parse_json
        }

    def parse(self, source: Union[str, Path, Dict[str, Any]]) -> WorkflowDsl:
        """
        解析工作流 DSL

        Args:
            source: 文件路径、YAML/JSON 字符串或字典

        Returns:
            WorkflowDsl: 不可变 DSL
        """
        if isinstance(source, dict):
            return self.parse_dict(source)

        if isinstance(source, Path):
            return self.parse_file(source)

        if isinstance(source, str):
            if "\n" not in source and len(source) < 4096:
                path = Path(source)
                if path.suffix.lower().lstrip('.') in self.parsers and path.is_file():
                    return self.parse_file(path)
            return self.parse_string(source)

        raise WorkflowParseError(f"Unsupported source type: {type(source)}")

    def parse_file(self, file_path: Path) -> WorkflowDsl:
        """解析 DSL 文件"""
        suffix = file_path.suffix.lower().lstrip('.')
        if suffix not in self.parsers:
            raise WorkflowParseError(f"Unsupported file format: {suffix}")

        with open(file_path, 'r', encoding='utf-8') as f:
            content = f.read()

        return self.parse_dict(self.parsers[suffix](content))

    def parse_string(self, content: str) -> WorkflowDsl:
        """解析 DSL 字符串（YAML 是 JSON 的超集）"""
        return self.parse_dict(self._parse_yaml(content))

    def _parse_yaml(self, content: str) -> Dict[str, Any]:
        """解析YAML格式"""
        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise WorkflowParseError(f"Invalid YAML: {e}") from e
        if not isinstance(data, dict):
            raise WorkflowParseError("DSL document must be a mapping")
        return data

    def _parse_json(self, content: str) -> Dict[str, Any]:
        """解析JSON格式"""
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise WorkflowParseError(f"Invalid JSON: {e}") from e
        if not isinstance(data, dict):
            raise WorkflowParseError("DSL document must be a mapping")
        return data

    def parse_dict(self, data: Dict[str, Any]) -> WorkflowDsl:
        """从字典构建 DSL，结构缺失留给校验器报告"""
        if "workflow" in data and isinstance(data["workflow"], dict):
            data = data["workflow"]

        raw_nodes = data.get("nodes", [])
        raw_edges = data.get("edges", [])
        if not isinstance(raw_nodes, list):
            raise WorkflowParseError("'nodes' must be a list")
        if not isinstance(raw_edges, list):
            raise WorkflowParseError("'edges' must be a list")

        run_policy = _pick(data, "runPolicy", "run_policy", default={}) or {}
        if not isinstance(run_policy, dict):
            raise WorkflowParseError("'runPolicy' must be a mapping")
        defaults = self._read_policy(run_policy, self.default_policy, "runPolicy")

        return WorkflowDsl(
            nodes=tuple(self._parse_node(node, defaults) for node in raw_nodes),
            edges=tuple(self._parse_edge(edge) for edge in raw_edges),
            param_set_bindings=tuple(_pick(data, "paramSetBindings", "param_set_bindings", default=[]) or []),
            agent_bindings=freeze(_pick(data, "agentBindings", "agent_bindings", default={}) or {}),
            run_policy=freeze(run_policy),
            name=data.get("name", ""),
        )

    @staticmethod
    def _read_policy(policy_data: Dict[str, Any], defaults: RuntimePolicy, label: str) -> RuntimePolicy:
        """读取运行策略，缺省字段沿用 defaults"""
        try:
            return RuntimePolicy(
                timeout_ms=int(_pick(policy_data, "timeoutMs", "timeout_ms", default=defaults.timeout_ms)),
                max_retries=int(_pick(policy_data, "maxRetries", "max_retries", default=defaults.max_retries)),
                retry_backoff_ms=int(_pick(policy_data, "retryBackoffMs", "retry_backoff_ms",
                                           default=defaults.retry_backoff_ms)),
                retry_on_timeout=bool(_pick(policy_data, "retryOnTimeout", "retry_on_timeout",
                                            default=defaults.retry_on_timeout)),
            )
        except (TypeError, ValueError) as e:
            raise WorkflowParseError(f"{label} is malformed: {e}") from e

    def _parse_node(self, data: Any, defaults: RuntimePolicy = None) -> WorkflowNode:
        """解析节点，运行策略依次取节点配置、工作流 runPolicy、引擎默认值"""
        if not isinstance(data, dict):
            raise WorkflowParseError(f"Node definition must be a mapping, got {type(data).__name__}")

        policy_data = _pick(data, "runtimePolicy", "runtime_policy", default={}) or {}
        if not isinstance(policy_data, dict):
            raise WorkflowParseError(f"Node '{data.get('id')}' runtimePolicy must be a mapping")
        policy = self._read_policy(
            policy_data, defaults or self.default_policy, f"Node '{data.get('id')}' runtimePolicy"
        )

        return WorkflowNode(
            id=str(data.get("id") or ""),
            type=str(data.get("type") or ""),
            name=data.get("name", ""),
            config=freeze(data.get("config") or {}),
            enabled=bool(data.get("enabled", True)),
            runtime_policy=policy,
            input_bindings=freeze(_pick(data, "inputBindings", "input_bindings", default={}) or {}),
        )

    def _parse_edge(self, data: Any) -> WorkflowEdge:
        """解析边"""
        if not isinstance(data, dict):
            raise WorkflowParseError(f"Edge definition must be a mapping, got {type(data).__name__}")

        source = str(_pick(data, "from", "source", default="") or "")
        target = str(_pick(data, "to", "target", default="") or "")
        edge_type_value = str(_pick(data, "edgeType", "edge_type", default=EdgeType.NORMAL.value)).upper()
        try:
            edge_type = EdgeType(edge_type_value)
        except ValueError as e:
            raise WorkflowParseError(f"Unknown edge type: {edge_type_value}") from e

        return WorkflowEdge(
            id=str(data.get("id") or f"{source}->{target}"),
            source=source,
            target=target,
            edge_type=edge_type,
            condition=freeze(data.get("condition")),
        )

    # 序列化

    @staticmethod
    def to_dict(dsl: WorkflowDsl) -> Dict[str, Any]:
        """序列化为 DSL 文档"""
        return {
            "name": dsl.name,
            "nodes": [
                {
                    "id": node.id,
                    "type": node.type,
                    "name": node.name,
                    "config": thaw(node.config),
                    "enabled": node.enabled,
                    "runtimePolicy": node.runtime_policy.to_dict(),
                    "inputBindings": thaw(node.input_bindings),
                }
                for node in dsl.nodes
            ],
            "edges": [
                {
                    "id": edge.id,
                    "from": edge.source,
                    "to": edge.target,
                    "edgeType": edge.edge_type.value,
                    "condition": thaw(edge.condition),
                }
                for edge in dsl.edges
            ],
            "paramSetBindings": list(dsl.param_set_bindings),
            "agentBindings": thaw(dsl.agent_bindings),
            "runPolicy": thaw(dsl.run_policy),
        }

    def to_json(self, dsl: WorkflowDsl) -> str:
        return json.dumps(self.to_dict(dsl), ensure_ascii=False, sort_keys=True)

    def to_yaml(self, dsl: WorkflowDsl) -> str:
        return yaml.safe_dump(self.to_dict(dsl), allow_unicode=True, sort_keys=False)


def content_hash(dsl: WorkflowDsl) -> str:
    """DSL 内容哈希（规范化 JSON 的 SHA-256）"""
    canonical = json.dumps(
        WorkflowParser.to_dict(dsl),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
