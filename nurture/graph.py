"""Turn stored workflow definitions into executable structures."""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional

from .contracts import ConditionClause, GraphEdge, GraphNode, LegacyStep, NodeKind
from .persistence.models import Workflow

logger = logging.getLogger(__name__)

_ELSE_IF = re.compile(r"^else_if_(\d+)$")
_LEGACY_TYPES = ("send_email", "wait", "condition", "stop")
_BRANCH_ALIASES = {"yes": "if", "a": "if", "no": "else", "b": "else"}


def _as_dict(value: Any) -> Dict[str, Any]:
    return dict(value) if isinstance(value, dict) else {}


def _as_list(value: Any) -> List[Any]:
    return list(value) if isinstance(value, list) else []


def branch_rank(handle: Any) -> int:
    """Sort key for outgoing edges: if < else_if_N < else < unlabeled."""
    branch = str(handle or "")
    if branch in ("if", "yes", "a"):
        return 1
    match = _ELSE_IF.match(branch)
    if match:
        return 10 + int(match.group(1))
    if branch.startswith("else_if_"):
        return 10
    if branch in ("else", "no", "b"):
        return 90
    return 100


def _next_else_if(used: set[str]) -> str:
    index = 1
    while f"else_if_{index}" in used:
        index += 1
    return f"else_if_{index}"


def _clause(row: Dict[str, Any], handle: str) -> ConditionClause:
    return ConditionClause(
        handle=handle,
        rule=str(row.get("rule") or "email_opened").lower(),
        property_key=str(row.get("propertyKey") or row.get("property_key") or "").strip(),
        comparator=str(row.get("comparator") or "exists").lower(),
        value=str(row.get("value") if row.get("value") is not None else ""),
    )


def normalize_condition_config(raw_config: Any) -> List[ConditionClause]:
    """Return the ordered clause list of a condition node.

    The first clause is always ``if``. Later clauses keep a well-formed,
    unused ``else_if_N`` handle and otherwise receive the next free one.
    """
    config = _as_dict(raw_config)
    rows = [_as_dict(item) for item in _as_list(config.get("clauses"))]
    if not rows:
        return [_clause(config, "if")]

    used: set[str] = set()
    clauses: List[ConditionClause] = []
    for index, row in enumerate(rows):
        if index == 0:
            handle = "if"
        else:
            preferred = str(row.get("id") or row.get("handle") or "").strip()
            if _ELSE_IF.match(preferred) and preferred not in used:
                handle = preferred
            else:
                handle = _next_else_if(used)
        used.add(handle)
        clauses.append(_clause(row, handle))
    return clauses


class WorkflowGraph:
    """Executable view of ``settings.workflow_graph``."""

    def __init__(self, nodes: List[GraphNode], edges: List[GraphEdge], trigger: GraphNode):
        self.nodes = nodes
        self.edges = edges
        self.trigger = trigger
        self._by_id = {node.id: node for node in nodes}
        self._outgoing: Dict[str, List[GraphEdge]] = {}
        for edge in edges:
            self._outgoing.setdefault(edge.source, []).append(edge)
        for outgoing in self._outgoing.values():
            outgoing.sort(key=lambda e: branch_rank(e.source_handle))

    def node_by_id(self, node_id: Optional[str]) -> Optional[GraphNode]:
        if not node_id:
            return None
        return self._by_id.get(node_id)

    def outgoing(self, node_id: str) -> List[GraphEdge]:
        return list(self._outgoing.get(node_id, []))

    def first_target(self, node_id: str) -> Optional[str]:
        edges = self._outgoing.get(node_id)
        return edges[0].target if edges else None

    @property
    def entry(self) -> Optional[str]:
        """First node after the trigger, ``None`` when the trigger leads nowhere."""
        return self.first_target(self.trigger.id)

    def select_edge(self, node_id: str, handle: str) -> Optional[GraphEdge]:
        """Pick the edge leaving ``node_id`` for a condition branch."""
        outgoing = self._outgoing.get(node_id, [])
        for edge in outgoing:
            if edge.source_handle.lower() == handle:
                return edge
        if handle.startswith("else_if_"):
            for edge in outgoing:
                if edge.source_handle in ("else", "no"):
                    return edge
        return outgoing[0] if outgoing else None


def normalize_graph(workflow: Workflow) -> Optional[WorkflowGraph]:
    """Build a :class:`WorkflowGraph`, or ``None`` to use the legacy flow.

    Malformed input never raises: nodes without ids are numbered, edges to
    unknown nodes are dropped and unknown kinds become ``unsupported``.
    """
    graph = _as_dict(_as_dict(workflow.settings).get("workflow_graph"))
    raw_nodes = _as_list(graph.get("nodes"))
    raw_edges = _as_list(graph.get("edges"))
    if not raw_nodes:
        return None

    nodes: List[GraphNode] = []
    seen: set[str] = set()
    for index, item in enumerate(raw_nodes):
        row = _as_dict(item)
        node_id = str(row.get("id") or f"node_{index + 1}").strip()
        if not node_id or node_id in seen:
            continue
        seen.add(node_id)
        raw_kind = str(row.get("kind") or row.get("type") or "")
        kind = NodeKind.parse(raw_kind)
        config = _as_dict(row.get("config"))
        nodes.append(
            GraphNode(
                id=node_id,
                kind=kind,
                raw_kind=raw_kind,
                title=str(row.get("title") or raw_kind or kind.value),
                config=config,
                clauses=normalize_condition_config(config) if kind is NodeKind.CONDITION else [],
            )
        )

    trigger = next((n for n in nodes if n.kind is NodeKind.TRIGGER), None)
    if trigger is None:
        logger.debug(f"Workflow {workflow.id} graph has no trigger node; using legacy flow")
        return None

    kinds = {node.id: node.kind for node in nodes}
    edges: List[GraphEdge] = []
    for index, item in enumerate(raw_edges):
        row = _as_dict(item)
        source = str(row.get("source") or "")
        target = str(row.get("target") or "")
        if source not in kinds or target not in kinds:
            continue
        handle = str(row.get("sourceHandle") or row.get("source_handle") or "")
        if kinds[source] is NodeKind.CONDITION:
            handle = _BRANCH_ALIASES.get(handle, handle)
        edges.append(
            GraphEdge(
                id=str(row.get("id") or f"edge_{index + 1}"),
                source=source,
                target=target,
                source_handle=handle,
            )
        )
    return WorkflowGraph(nodes, edges, trigger)


def normalize_flow(raw_flow: Any) -> List[LegacyStep]:
    """Normalise the legacy linear step list, ending it with a stop step."""
    steps: List[LegacyStep] = []
    for index, item in enumerate(_as_list(raw_flow)):
        row = _as_dict(item)
        step_type = str(row.get("type") or "").lower()
        steps.append(
            LegacyStep(
                id=str(row.get("id") or f"step_{index + 1}"),
                name=str(row.get("name") or f"Step {index + 1}"),
                type=step_type if step_type in _LEGACY_TYPES else "wait",
                config=_as_dict(row.get("config")),
            )
        )
    if not steps or steps[-1].type != "stop":
        steps.append(LegacyStep(id="auto_stop", name="Stop", type="stop"))
    return steps
