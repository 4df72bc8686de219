"""
Hybrid graph: one arena of nodes addressed by stable integer ids, with
syntactic, control-flow and data-dependency edges stored as id pairs.
"""

import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Tuple

import networkx as nx

from ..utils.error_handling import GraphIntegrityError

logger = logging.getLogger(__name__)

NODE_KINDS = ('statement', 'variable', 'function', 'external_call_site')
EDGE_KINDS = ('syntactic', 'control_flow', 'data_dependency')
EDGE_ORDER = {kind: index for index, kind in enumerate(EDGE_KINDS)}


@dataclass(frozen=True)
class HybridNode:
    id: int
    kind: str
    name: str
    ast_id: str
    type_signature: str = ''
    origins: FrozenSet[str] = frozenset({'AST'})
    position: Tuple[int, int, int] = (0, 0, 0)
    line: int = 0
    function: Optional[int] = None
    text: str = ''
    attrs: Mapping[str, Any] = field(default_factory=dict)

    def flag(self, name: str) -> bool:
        return bool(self.attrs.get(name, False))


@dataclass(frozen=True)
class HybridEdge:
    kind: str
    source: int
    target: int
    label: str = ''
    weight: Optional[float] = None

    @property
    def sort_key(self) -> Tuple[int, int, int, str]:
        return (EDGE_ORDER[self.kind], self.source, self.target, self.label)


class EditOp(Enum):
    """Counterfactual edit operations, with their cost."""
    MOVE_BEFORE = 'move_before'
    SET_VALUE = 'set_value'
    REMOVE_EDGE = 'remove_edge'
    REMOVE_NODE = 'remove_node'

    @property
    def cost(self) -> int:
        return {'move_before': 1, 'set_value': 1, 'remove_edge': 2, 'remove_node': 3}[self.value]


@dataclass(frozen=True)
class GraphEdit:
    op: EditOp
    node: int
    target: Optional[int] = None
    attribute: Optional[str] = None
    value: Any = None
    edge_kind: Optional[str] = None
    description: str = ''

    @property
    def cost(self) -> int:
        return self.op.cost

    def to_dict(self) -> Dict[str, Any]:
        return {
            'op': self.op.value,
            'node': self.node,
            'target': self.target,
            'attribute': self.attribute,
            'value': self.value,
            'edge_kind': self.edge_kind,
            'description': self.description,
        }


class HybridGraph:
    """Read-only unified graph. Edits produce new graphs via :meth:`apply`."""

    def __init__(self, nodes: Iterable[HybridNode], edges: Iterable[HybridEdge],
                 meta: Optional[Mapping[str, Any]] = None):
        ordered = sorted(nodes, key=lambda n: n.id)
        self._nodes: Dict[int, HybridNode] = {}
        for node in ordered:
            if node.id in self._nodes:
                raise GraphIntegrityError(f"Duplicate node id {node.id}", {'node': node.id})
            self._nodes[node.id] = node
        unique = {}
        for edge in edges:
            if edge.source not in self._nodes or edge.target not in self._nodes:
                raise GraphIntegrityError(
                    f"Dangling {edge.kind} edge {edge.source} -> {edge.target}",
                    {'source': edge.source, 'target': edge.target, 'kind': edge.kind},
                )
            unique.setdefault(edge.sort_key, edge)
        self._edges: Tuple[HybridEdge, ...] = tuple(unique[k] for k in sorted(unique))
        self._out: Dict[int, List[HybridEdge]] = {n: [] for n in self._nodes}
        self._in: Dict[int, List[HybridEdge]] = {n: [] for n in self._nodes}
        for edge in self._edges:
            self._out[edge.source].append(edge)
            self._in[edge.target].append(edge)
        self.meta: Mapping[str, Any] = MappingProxyType(dict(meta or {}))

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, node_id: int) -> bool:
        return node_id in self._nodes

    def __repr__(self) -> str:
        return f"HybridGraph(nodes={len(self._nodes)}, edges={len(self._edges)})"

    @property
    def nodes(self) -> Tuple[HybridNode, ...]:
        return tuple(self._nodes.values())

    @property
    def edges(self) -> Tuple[HybridEdge, ...]:
        return self._edges

    @property
    def is_empty(self) -> bool:
        return not self._nodes

    def node(self, node_id: int) -> HybridNode:
        try:
            return self._nodes[node_id]
        except KeyError:
            raise KeyError(f"No node {node_id} in graph") from None

    def edges_of_kind(self, kind: str) -> Tuple[HybridEdge, ...]:
        return tuple(e for e in self._edges if e.kind == kind)

    def out_edges(self, node_id: int, kind: Optional[str] = None) -> List[HybridEdge]:
        return [e for e in self._out.get(node_id, ()) if kind is None or e.kind == kind]

    def in_edges(self, node_id: int, kind: Optional[str] = None) -> List[HybridEdge]:
        return [e for e in self._in.get(node_id, ()) if kind is None or e.kind == kind]

    def successors(self, node_id: int, kind: Optional[str] = None) -> List[int]:
        return sorted({e.target for e in self.out_edges(node_id, kind)})

    def predecessors(self, node_id: int, kind: Optional[str] = None) -> List[int]:
        return sorted({e.source for e in self.in_edges(node_id, kind)})

    def neighbors(self, node_id: int) -> List[int]:
        return sorted(set(self.successors(node_id)) | set(self.predecessors(node_id)))

    def ordered_nodes(self) -> List[HybridNode]:
        """Nodes in source-position order."""
        return sorted(self._nodes.values(), key=lambda n: (n.position, n.id))

    def functions(self) -> List[HybridNode]:
        return [n for n in self.ordered_nodes() if n.kind == 'function']

    def nodes_in_function(self, function_id: int) -> List[HybridNode]:
        return [n for n in self.ordered_nodes() if n.function == function_id and n.id != function_id]

    def find(self, predicate) -> List[HybridNode]:
        return [n for n in self._nodes.values() if predicate(n)]

    def fingerprint(self) -> Tuple:
        """Order-sensitive summary used to compare graphs for equality."""
        return (
            tuple((n.id, n.kind, n.name, n.ast_id, n.position, tuple(sorted(n.origins))) for n in self.nodes),
            tuple(e.sort_key for e in self._edges),
        )

    def to_networkx(self, kinds: Optional[Sequence[str]] = None) -> nx.MultiDiGraph:
        """networkx view of the graph, optionally restricted to some edge kinds."""
        graph = nx.MultiDiGraph(**dict(self.meta))
        for node in self.nodes:
            graph.add_node(node.id, kind=node.kind, name=node.name, line=node.line,
                           function=node.function, origins=sorted(node.origins), **dict(node.attrs))
        for edge in self._edges:
            if kinds is not None and edge.kind not in kinds:
                continue
            graph.add_edge(edge.source, edge.target, key=f"{edge.kind}:{edge.label}",
                           kind=edge.kind, label=edge.label, weight=edge.weight)
        return graph

    # Edits -------------------------------------------------------------

    def apply(self, edits: Sequence[GraphEdit]) -> 'HybridGraph':
        """Return a new graph with ``edits`` applied in order. Ids are stable."""
        nodes = dict(self._nodes)
        edges = list(self._edges)
        for edit in edits:
            if edit.node not in nodes:
                raise GraphIntegrityError(f"Edit refers to missing node {edit.node}", {'edit': edit.to_dict()})
            if edit.op is EditOp.REMOVE_NODE:
                del nodes[edit.node]
                edges = [e for e in edges if edit.node not in (e.source, e.target)]
            elif edit.op is EditOp.REMOVE_EDGE:
                pair = {edit.node, edit.target}
                edges = [
                    e for e in edges
                    if not ({e.source, e.target} == pair and (edit.edge_kind is None or e.kind == edit.edge_kind))
                ]
            elif edit.op is EditOp.SET_VALUE:
                node = nodes[edit.node]
                attrs = dict(node.attrs)
                attrs[edit.attribute] = edit.value
                nodes[edit.node] = replace(node, attrs=MappingProxyType(attrs))
            elif edit.op is EditOp.MOVE_BEFORE:
                if edit.target not in nodes:
                    raise GraphIntegrityError(f"Edit refers to missing node {edit.target}", {'edit': edit.to_dict()})
                edges = _move_before(edges, edit.node, edit.target)
                anchor = nodes[edit.target]
                moved = nodes[edit.node]
                nodes[edit.node] = replace(moved, position=(anchor.position[0], anchor.position[1], -1))
        return HybridGraph(nodes.values(), edges, self.meta)


def _move_before(edges: List[HybridEdge], moved: int, anchor: int) -> List[HybridEdge]:
    """Rewire control flow so that ``moved`` executes immediately before ``anchor``."""
    control = [e for e in edges if e.kind == 'control_flow']
    others = [e for e in edges if e.kind != 'control_flow']
    preds = [e for e in control if e.target == moved and e.source != moved]
    succs = [e for e in control if e.source == moved and e.target != moved]
    rest = [e for e in control if moved not in (e.source, e.target)]
    # Bypass the moved node at its old place
    for pred in preds:
        for succ in succs:
            rest.append(HybridEdge('control_flow', pred.source, succ.target, pred.label))
    rewired = []
    for edge in rest:
        if edge.target == anchor and edge.source != moved:
            rewired.append(HybridEdge('control_flow', edge.source, moved, edge.label))
        else:
            rewired.append(edge)
    rewired.append(HybridEdge('control_flow', moved, anchor, 'flow'))
    return others + rewired
