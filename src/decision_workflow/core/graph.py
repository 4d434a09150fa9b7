"""
已校验的执行图
"""
from collections import deque
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Set, Tuple

from ..models.workflow import EdgeType, WorkflowDsl, WorkflowEdge, WorkflowNode


def topological_layers(
    node_ids: Iterable[str],
    edges: Iterable[WorkflowEdge]
) -> Tuple[List[List[str]], Set[str]]:
    """
    Kahn 算法分层

    Returns:
        (分层结果, 未能排序的节点集合)；后者非空说明存在环
    """
    ordered_ids = list(dict.fromkeys(node_ids))
    in_degree: Dict[str, int] = {node_id: 0 for node_id in ordered_ids}
    successors: Dict[str, List[str]] = {node_id: [] for node_id in ordered_ids}
    for edge in edges:
        if edge.source in in_degree and edge.target in in_degree:
            successors[edge.source].append(edge.target)
            in_degree[edge.target] += 1

    # 层内按声明顺序排列
    position = {node_id: index for index, node_id in enumerate(ordered_ids)}
    layers: List[List[str]] = []
    current = deque(node_id for node_id in ordered_ids if in_degree[node_id] == 0)
    visited: Set[str] = set()
    while current:
        layer = sorted(current, key=position.__getitem__)
        layers.append(layer)
        visited.update(layer)
        current = deque()
        for node_id in layer:
            for target in successors[node_id]:
                in_degree[target] -= 1
                if in_degree[target] == 0:
                    current.append(target)

    return layers, set(ordered_ids) - visited


class ValidGraph:
    """
    已通过校验的不可变执行图

    只能由 DslValidator 构建；编排器只消费这一表示。
    """

    def __init__(self, dsl: WorkflowDsl, layers: List[List[str]]):
        self.dsl = dsl
        self.nodes: Mapping[str, WorkflowNode] = MappingProxyType({node.id: node for node in dsl.nodes})
        self.layers: Tuple[Tuple[str, ...], ...] = tuple(tuple(layer) for layer in layers)
        self.order: Tuple[str, ...] = tuple(node_id for layer in self.layers for node_id in layer)

        incoming: Dict[str, List[WorkflowEdge]] = {node_id: [] for node_id in self.nodes}
        outgoing: Dict[str, List[WorkflowEdge]] = {node_id: [] for node_id in self.nodes}
        for edge in dsl.edges:
            incoming[edge.target].append(edge)
            outgoing[edge.source].append(edge)
        self._incoming = MappingProxyType({k: tuple(v) for k, v in incoming.items()})
        self._outgoing = MappingProxyType({k: tuple(v) for k, v in outgoing.items()})

        ancestors: Dict[str, frozenset] = {}
        for node_id in self.order:
            found: Set[str] = set()
            for edge in incoming[node_id]:
                found.add(edge.source)
                found.update(ancestors[edge.source])
            ancestors[node_id] = frozenset(found)
        self._ancestors = MappingProxyType(ancestors)

    def node(self, node_id: str) -> WorkflowNode:
        return self.nodes[node_id]

    def incoming_edges(self, node_id: str) -> Tuple[WorkflowEdge, ...]:
        return self._incoming[node_id]

    def outgoing_edges(self, node_id: str) -> Tuple[WorkflowEdge, ...]:
        return self._outgoing[node_id]

    def predecessors(self, node_id: str) -> Tuple[str, ...]:
        return tuple(dict.fromkeys(edge.source for edge in self._incoming[node_id]))

    def successors(self, node_id: str) -> Tuple[str, ...]:
        return tuple(dict.fromkeys(edge.target for edge in self._outgoing[node_id]))

    def normal_predecessors(self, node_id: str) -> Tuple[str, ...]:
        return tuple(dict.fromkeys(
            edge.source for edge in self._incoming[node_id] if edge.edge_type == EdgeType.NORMAL
        ))

    def error_routes(self, node_id: str) -> Tuple[WorkflowEdge, ...]:
        return tuple(edge for edge in self._outgoing[node_id] if edge.edge_type == EdgeType.ERROR_ROUTE)

    def ancestors(self, node_id: str) -> frozenset:
        return self._ancestors[node_id]

    def __len__(self) -> int:
        return len(self.nodes)
