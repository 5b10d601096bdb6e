"""
Flow Graph — Indexed, read-only view over a published FlowDefinition.

Edge lookup is keyed by (source, handle). When several edges share a key the
first-defined edge wins; later duplicates are reported by validate() as
warnings and never merged.

Usage:
    graph = FlowGraph(flow)
    report = graph.validate()          # at publish time
    node = graph.start_node()          # raises NoStartNodeError
    nxt = graph.next_node("ask", "yes")
"""
from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Optional

from core.errors import InvalidConditionError, NoStartNodeError
from models.schemas import Edge, FlowDefinition, Node, NodeType
from utils.conditions import parse_condition


@dataclass
class ValidationReport:
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


class FlowGraph:
    """Nodes and edges of one flow version with an edge table indexed by (source, handle)."""

    def __init__(self, flow: FlowDefinition):
        self.flow = flow
        self._nodes: dict[str, Node] = {}
        for node in flow.nodes:
            self._nodes.setdefault(node.id, node)

        # (source, handle) → first-defined edge
        self._edge_index: dict[tuple[str, Optional[str]], Edge] = {}
        # source → outgoing edges in definition order
        self._outgoing: dict[str, list[Edge]] = {}
        for edge in flow.edges:
            self._edge_index.setdefault((edge.source, edge.source_handle), edge)
            self._outgoing.setdefault(edge.source, []).append(edge)

    @property
    def flow_id(self) -> str:
        return self.flow.id

    @property
    def version(self) -> int:
        return self.flow.version

    def get_node(self, node_id: str) -> Optional[Node]:
        return self._nodes.get(node_id)

    def start_node(self) -> Node:
        for node in self.flow.nodes:
            if node.type == NodeType.START.value:
                return node
        raise NoStartNodeError(f"Flow '{self.flow.id}' has no start node")

    def outgoing(self, node_id: str) -> list[Edge]:
        return list(self._outgoing.get(node_id, []))

    def next_edge(self, from_node_id: str, handle: Optional[str] = None) -> Optional[Edge]:
        """
        Resolve the edge leaving `from_node_id`.

        With a handle: the first edge tagged with that handle, or None.
        Without a handle: the first untagged edge, falling back to the
        first outgoing edge of any tag.
        """
        if handle is not None:
            return self._edge_index.get((from_node_id, handle))
        edge = self._edge_index.get((from_node_id, None))
        if edge is not None:
            return edge
        outgoing = self._outgoing.get(from_node_id)
        return outgoing[0] if outgoing else None

    def next_node(self, from_node_id: str, handle: Optional[str] = None) -> Optional[Node]:
        edge = self.next_edge(from_node_id, handle)
        if edge is None:
            return None
        return self._nodes.get(edge.target)

    # ── Validation ────────────────────────────────────────────

    def validate(self, known_types: set[str] = None) -> ValidationReport:
        """
        Publish-time checks. Fatal: no start node, duplicate node ids,
        dangling edges, unknown node types, malformed conditions.
        Warnings: unreachable nodes, ambiguous (source, handle) edges.
        """
        report = ValidationReport()

        seen: set[str] = set()
        for node in self.flow.nodes:
            if node.id in seen:
                report.errors.append(f"duplicate node id '{node.id}'")
            seen.add(node.id)
            if known_types is not None and node.type not in known_types:
                report.errors.append(f"node '{node.id}' has unknown type '{node.type}'")
            if node.type == NodeType.CONDITION.value:
                try:
                    parse_condition(node.data.get("condition", ""))
                except InvalidConditionError as e:
                    report.errors.append(f"node '{node.id}': {e}")

        starts = [n for n in self.flow.nodes if n.type == NodeType.START.value]
        if not starts:
            report.errors.append("flow has no start node")
        elif len(starts) > 1:
            report.warnings.append(
                f"flow has {len(starts)} start nodes; '{starts[0].id}' is used"
            )

        keys: set[tuple[str, Optional[str]]] = set()
        for i, edge in enumerate(self.flow.edges):
            if edge.source not in self._nodes:
                report.errors.append(f"edge[{i}] source '{edge.source}' does not exist")
            if edge.target not in self._nodes:
                report.errors.append(f"edge[{i}] target '{edge.target}' does not exist")
            key = (edge.source, edge.source_handle)
            if key in keys:
                report.warnings.append(
                    f"edge[{i}] duplicates branch '{edge.source_handle or '<default>'}' "
                    f"of node '{edge.source}'; first-defined edge wins"
                )
            keys.add(key)

        if starts:
            reachable = self._reachable_from(starts[0].id)
            for node in self.flow.nodes:
                if node.id not in reachable:
                    report.warnings.append(f"node '{node.id}' is unreachable from start")

        return report

    def _reachable_from(self, node_id: str) -> set[str]:
        seen = {node_id}
        queue = deque([node_id])
        while queue:
            current = queue.popleft()
            for edge in self._outgoing.get(current, []):
                if edge.target in self._nodes and edge.target not in seen:
                    seen.add(edge.target)
                    queue.append(edge.target)
        return seen
