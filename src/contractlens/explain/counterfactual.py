"""Greedy minimal-edit counterfactual search and its source-level rendering."""

import difflib
import logging
from typing import Dict, List, Mapping, Sequence, Tuple

from ..findings import Counterfactual, Finding
from ..graph.features import entry_points
from ..graph.hybrid_graph import EditOp, GraphEdit, HybridGraph, HybridNode
from ..scoring.scorer import Scorer, ScoringState
from ..utils.error_handling import ExplanationBudgetExceeded

logger = logging.getLogger(__name__)

NOT_FOUND = 'not found within budget'

# Kind -> (attribute, value, function level)
GUARD_EDITS: Dict[str, Tuple[str, bool, bool]] = {
    'Reentrancy': ('reentrancy_guard', True, True),
    'AccessControl': ('access_guard', True, True),
    'UncheckedLowLevelCall': ('unchecked_call', False, False),
    'IntegerOverflow': ('unchecked_arithmetic', False, False),
    'TxOriginAuthentication': ('tx_origin', False, False),
    'TimestampDependence': ('block_timestamp', False, False),
}

# Modifier added to the function header when rendering a guard edit
GUARD_MODIFIERS = {'reentrancy_guard': 'nonReentrant', 'access_guard': 'onlyOwner'}


def guard_target(graph: HybridGraph, function_id):
    """Public entry point that reaches ``function_id``, or the function itself."""
    if function_id is None or function_id not in graph:
        return function_id
    public = [r for r in entry_points(graph, function_id) if graph.node(r).flag('public_entry')]
    return min(public) if public else function_id


def candidate_edits(graph: HybridGraph, element: int, finding: Finding) -> List[GraphEdit]:
    """Edits for one element, cheapest first."""
    node = graph.node(element)
    edits = []
    if node.kind == 'statement' and node.flag('state_write'):
        calls = [graph.node(a) for a in finding.anchors
                 if a != element and a in graph and graph.node(a).kind == 'statement'
                 and graph.node(a).flag('external_call') and graph.node(a).position < node.position]
        if calls:
            call = min(calls, key=lambda n: n.position)
            edits.append(GraphEdit(EditOp.MOVE_BEFORE, element, target=call.id,
                                   description=f"Move '{node.text}' before the external call '{call.text}'"))

    guard = GUARD_EDITS.get(finding.kind)
    if guard is not None:
        attribute, value, function_level = guard
        if function_level:
            owner = guard_target(graph, node.id if node.kind == 'function' else node.function)
            if owner is not None and owner in graph and graph.node(owner).attrs.get(attribute) != value:
                edits.append(GraphEdit(EditOp.SET_VALUE, owner, attribute=attribute, value=value,
                                       description=f"Set {attribute}={value} on {graph.node(owner).name}"))
        elif node.attrs.get(attribute, value) != value:
            edits.append(GraphEdit(EditOp.SET_VALUE, element, attribute=attribute, value=value,
                                   description=f"Set {attribute}={value} on '{node.text}'"))

    for edge in graph.in_edges(element, 'data_dependency') + graph.out_edges(element, 'data_dependency'):
        edits.append(GraphEdit(EditOp.REMOVE_EDGE, edge.source, target=edge.target, edge_kind='data_dependency',
                               description=f"Remove {edge.label} dependency {edge.source} -> {edge.target}"))
    if node.kind != 'function':
        edits.append(GraphEdit(EditOp.REMOVE_NODE, element, description=f"Remove '{node.text}'"))
    return edits


class CounterfactualSearch:
    """
    Greedy search for the smallest edit set that drops a Finding's fused
    confidence below its threshold.

    Each step tries the candidate edits of the highest-attribution elements
    not yet edited, re-scores the edited graph and keeps the edit with the
    lowest resulting confidence (then the lowest cost).
    """

    def __init__(self, scorer: Scorer, max_edits: int = 3, epsilon: float = 1e-6):
        self.scorer = scorer
        self.max_edits = max_edits
        self.epsilon = epsilon

    def _confidence(self, state: ScoringState, graph: HybridGraph, finding: Finding, deadline) -> float:
        edited = self.scorer.evaluate(graph, state.prior_findings, deadline)
        return edited.kind_confidence(finding.kind, finding.anchors)

    def _elements(self, graph: HybridGraph, attributions: Mapping[int, float], used: set) -> List[int]:
        remaining = [(score, node) for node, score in attributions.items() if node in graph and node not in used]
        if not remaining:
            return []
        top = max(score for score, _ in remaining)
        return sorted(node for score, node in remaining if top - score <= self.epsilon)

    def _greedy(self, state: ScoringState, finding: Finding, attributions: Mapping[int, float],
                threshold: float, deadline) -> Tuple[List[GraphEdit], float]:
        graph = state.graph
        current = state.kind_confidence(finding.kind, finding.anchors)
        edits: List[GraphEdit] = []
        used: set = set()
        while current >= threshold:
            if len(edits) >= self.max_edits:
                raise ExplanationBudgetExceeded(finding.kind, self.max_edits)
            elements = self._elements(graph, attributions, used)
            if not elements:
                raise ExplanationBudgetExceeded(finding.kind, self.max_edits)
            best = None
            for element in elements:
                candidates = candidate_edits(graph, element, finding)
                if not candidates:
                    used.add(element)
                for order, edit in enumerate(candidates):
                    candidate = graph.apply([edit])
                    confidence = self._confidence(state, candidate, finding, deadline)
                    key = (round(confidence, 6), edit.cost, element, order)
                    if best is None or key < best[0]:
                        best = (key, edit, candidate, confidence, element)
            if best is None:
                continue
            _, edit, graph, current, element = best
            used.add(element)
            edits.append(edit)
            logger.debug(f"Counterfactual step {len(edits)} for {finding.kind}: {edit.description} "
                         f"-> confidence {current:.4f}")
        return edits, current

    def search(self, finding: Finding, state: ScoringState, attributions: Mapping[int, float],
               deadline=None) -> Counterfactual:
        threshold = self.scorer.threshold(finding.kind)
        before = state.kind_confidence(finding.kind, finding.anchors)
        try:
            edits, after = self._greedy(state, finding, attributions, threshold, deadline)
        except ExplanationBudgetExceeded as e:
            logger.info(f"{e.message}; counterfactual marked unavailable")
            return Counterfactual.not_found(before, threshold, NOT_FOUND)
        return Counterfactual(
            found=True,
            edits=tuple(edits),
            confidence_before=before,
            confidence_after=after,
            threshold=threshold,
            diff=render_diff(state.graph, edits),
        )


def _line_span(node: HybridNode) -> Tuple[int, int]:
    return node.line, node.attrs.get('end_line', node.line + node.text.count('\n'))


def _indent(line: str) -> str:
    return line[:len(line) - len(line.lstrip())]


class _SourceLines:
    """Source lines tagged with their original line number."""

    def __init__(self, text: str):
        self.original = text.splitlines(keepends=True)
        self.lines: List[Tuple[int, str]] = [(n + 1, line) for n, line in enumerate(self.original)]

    def locate(self, number: int) -> int:
        for index, (n, _) in enumerate(self.lines):
            if n == number:
                return index
        raise LookupError(number)

    def take(self, node: HybridNode) -> List[Tuple[int, str]]:
        first, last = _line_span(node)
        start, end = self.locate(first), self.locate(last) + 1
        block = self.lines[start:end]
        del self.lines[start:end]
        return block

    def apply(self, graph: HybridGraph, edit: GraphEdit) -> None:
        node = graph.node(edit.node)
        if edit.op is EditOp.MOVE_BEFORE:
            anchor_line = graph.node(edit.target).line
            if anchor_line == node.line:
                return
            block = self.take(node)
            anchor = self.locate(anchor_line)
            indent = _indent(self.lines[anchor][1])
            self.lines[anchor:anchor] = [(n, indent + text.lstrip(' \t')) for n, text in block]
        elif edit.op is EditOp.REMOVE_NODE:
            self.take(node)
        elif edit.op is EditOp.SET_VALUE and edit.attribute in GUARD_MODIFIERS and edit.value:
            index = self.locate(_line_span(node)[1])
            number, text = self.lines[index]
            modifier = GUARD_MODIFIERS[edit.attribute]
            body = text.rstrip('\n')
            if '{' in body:
                head, tail = body.split('{', 1)
                body = f"{head.rstrip()} {modifier} {{{tail}"
            else:
                body = f"{body} {modifier}"
            self.lines[index] = (number, body + text[len(text.rstrip('\n')):])

    def diff(self, path: str) -> str:
        return ''.join(difflib.unified_diff(self.original, [text for _, text in self.lines],
                                            fromfile=f"a/{path}", tofile=f"b/{path}"))


def render_diff(graph: HybridGraph, edits: Sequence[GraphEdit]) -> str:
    """
    Unified diff of the source with the counterfactual edits applied.

    Only edits with a textual form are rendered: moves, node removals and
    guard modifiers. Other edits change the graph only.
    """
    sources = graph.meta.get('sources') or ()
    paths = graph.meta.get('paths') or ()
    if not sources or not edits:
        return ''
    file_index = graph.node(edits[0].node).position[0]
    source = _SourceLines(sources[file_index])
    for edit in edits:
        if graph.node(edit.node).position[0] != file_index:
            continue
        try:
            source.apply(graph, edit)
        except LookupError:
            logger.debug(f"No textual form for edit: {edit.description}")
    path = paths[file_index] if file_index < len(paths) else 'contract.sol'
    return source.diff(path)
