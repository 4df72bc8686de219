"""Named node features consumed by the structural channel."""

from typing import Dict, Iterable, List, Optional, Set

import networkx as nx
import numpy as np
import torch

from .hybrid_graph import HybridGraph, HybridNode

NODE_FEATURES = (
    # node kind
    'is_statement', 'is_variable', 'is_function', 'is_call_site',
    # calls
    'external_call', 'low_level_call', 'value_transfer', 'delegatecall', 'selfdestruct',
    # state and arithmetic
    'state_write', 'state_read', 'arithmetic', 'unchecked_arithmetic', 'unchecked_call',
    # authentication and guards
    'tx_origin', 'auth_check', 'block_timestamp', 'guard',
    # function level
    'access_guard', 'reentrancy_guard', 'public_entry',
    # context
    'trust_boundary', 'loop', 'sensitive_op', 'after_external_call', 'prior_history',
)

FEATURE_INDEX = {name: index for index, name in enumerate(NODE_FEATURES)}

# Read from the enclosing function (and its entry points) rather than from the node itself
FUNCTION_LEVEL = ('access_guard', 'reentrancy_guard', 'public_entry')

# Derived from graph topology when the features are built
TOPOLOGICAL = ('after_external_call',)

KIND_FEATURES = {
    'statement': 'is_statement',
    'variable': 'is_variable',
    'function': 'is_function',
    'external_call_site': 'is_call_site',
}


def history_functions(prior_findings: Optional[Iterable]) -> Set[str]:
    """Function signatures (without contract prefix) mentioned by prior findings."""
    signatures = set()
    for finding in prior_findings or ():
        for name in getattr(finding, 'functions', ()):
            signatures.add(name.split('.', 1)[-1])
    return signatures


def callers(graph: HybridGraph, function_id: int) -> List[int]:
    """Functions with a statement that calls or invokes ``function_id``."""
    owners = set()
    for edge in graph.in_edges(function_id, 'control_flow'):
        if edge.label != 'call' or edge.source not in graph:
            continue
        owner = graph.node(edge.source).function
        if owner is not None and owner != function_id and owner in graph:
            owners.add(owner)
    return sorted(owners)


def entry_points(graph: HybridGraph, function_id: int) -> List[int]:
    """
    Functions through which execution can enter ``function_id``.

    Walks call edges backwards; a function is an entry point when it is
    public/external or nothing in the unit calls it.
    """
    roots: Set[int] = set()
    seen = {function_id}
    stack = [function_id]
    while stack:
        current = stack.pop()
        parents = callers(graph, current)
        if graph.node(current).flag('public_entry') or not parents:
            roots.add(current)
        for parent in parents:
            if parent not in seen:
                seen.add(parent)
                stack.append(parent)
    return sorted(roots)


def function_flags(graph: HybridGraph, function_id: int) -> Dict[str, bool]:
    """
    Function-level flags seen from the entry points. A guard holds when the
    function carries it or every entry point does.
    """
    owner = graph.node(function_id)
    roots = [graph.node(r) for r in entry_points(graph, function_id)]
    flags = {'public_entry': any(r.flag('public_entry') for r in roots)}
    for name in ('access_guard', 'reentrancy_guard'):
        flags[name] = owner.flag(name) or (bool(roots) and all(r.flag(name) for r in roots))
    return flags


def after_external_call(graph: HybridGraph) -> Set[int]:
    """Nodes reachable along control flow from a statement making an external call."""
    control = graph.to_networkx(kinds=('control_flow',))
    reached: Set[int] = set()
    for call in graph.find(lambda n: n.kind == 'statement' and n.flag('external_call')):
        reached |= nx.descendants(control, call.id)
    return reached


def node_vector(graph: HybridGraph, node: HybridNode, history: Set[str],
                owner_flags: Dict[str, bool], topology: Dict[str, Set[int]]) -> List[float]:
    vector = [0.0] * len(NODE_FEATURES)
    vector[FEATURE_INDEX[KIND_FEATURES[node.kind]]] = 1.0
    owner = node
    if node.kind != 'function' and node.function is not None and node.function in graph:
        owner = graph.node(node.function)
    for name in NODE_FEATURES[4:]:
        if name in FUNCTION_LEVEL:
            present = owner_flags.get(name, owner.flag(name))
        elif name in TOPOLOGICAL:
            present = node.id in topology[name]
        else:
            present = node.flag(name)
        if present:
            vector[FEATURE_INDEX[name]] = 1.0
    if owner.kind == 'function' and owner.attrs.get('signature') in history:
        vector[FEATURE_INDEX['prior_history']] = 1.0
    return vector


def node_features(graph: HybridGraph, prior_findings: Optional[Iterable] = None) -> torch.Tensor:
    """
    Build the [num_nodes, num_features] feature matrix. Row ``i`` belongs to
    the node with the i-th smallest id.

    Topological and function-level features are recomputed from the graph on
    every call, so edited graphs get features that match their edges.

    Args:
        graph: Hybrid graph
        prior_findings: Findings of the same contract family, used only to
            set the auxiliary ``prior_history`` feature

    Returns:
        Float tensor of binary features
    """
    history = history_functions(prior_findings)
    topology = {'after_external_call': after_external_call(graph)}
    flags = {f.id: function_flags(graph, f.id) for f in graph.find(lambda n: n.kind == 'function')}
    rows = []
    for node in graph.nodes:
        owner = node.id if node.kind == 'function' else node.function
        rows.append(node_vector(graph, node, history, flags.get(owner, {}), topology))
    matrix = np.asarray(rows, dtype=np.float32).reshape(len(rows), len(NODE_FEATURES))
    return torch.from_numpy(matrix)
