import logging
from typing import Dict, List, Optional, Tuple

import jinja2
import numpy as np

from ..config import Settings, settings as default_settings
from ..findings import ExplanationBundle, Finding, get_kind
from ..graph.hybrid_graph import EditOp, GraphEdit, HybridGraph
from ..scoring.scorer import Scorer, ScoringState
from .counterfactual import CounterfactualSearch

logger = logging.getLogger(__name__)

_templates = jinja2.Environment(autoescape=False, trim_blocks=True, lstrip_blocks=True)


def describe_node(graph: HybridGraph, node_id: int) -> str:
    node = graph.node(node_id)
    text = ' '.join(node.text.split())
    if node.kind == 'function':
        return f"function {node.name}"
    return f"line {node.line}: {text}" if text else f"{node.kind} {node.name}"


class ExplainabilityEngine:
    """
    Explains Findings through the Scorer capability interface only.

    Attributions come from deterministic node ablation, the attention ranking
    from the fusion readout weights, the counterfactual from a greedy edit
    search, and the rationale from the kind's Jinja2 template.
    """

    def __init__(self, scorer: Scorer, config: Optional[Settings] = None):
        self.scorer = scorer
        self.config = config or default_settings
        self.counterfactuals = CounterfactualSearch(scorer, self.config.counterfactual_max_edits)

    def ablation_set(self, graph: HybridGraph, finding: Finding) -> List[int]:
        """Anchors plus every node adjacent to an anchor, ascending id order."""
        nodes = set(finding.anchors)
        for anchor in finding.anchors:
            nodes.update(graph.neighbors(anchor))
        return sorted(nodes)

    @staticmethod
    def ablation(graph: HybridGraph, node_id: int) -> List[GraphEdit]:
        """Edits that ablate one node. Function nodes lose their edges instead of being removed."""
        if graph.node(node_id).kind != 'function':
            return [GraphEdit(EditOp.REMOVE_NODE, node_id)]
        return [GraphEdit(EditOp.REMOVE_EDGE, e.source, target=e.target, edge_kind=e.kind)
                for e in graph.out_edges(node_id) + graph.in_edges(node_id)]

    def attribute(self, finding: Finding, state: ScoringState, deadline=None) -> Dict[int, float]:
        """
        Signed contribution of each node: confidence drop when the node is ablated.

        Args:
            finding: Finding to explain
            state: Retained scoring state the finding came from
            deadline: Optional run deadline checked on every re-score

        Returns:
            Mapping of node id to confidence delta (positive: supports the finding)
        """
        graph = state.graph
        base = state.kind_confidence(finding.kind, finding.anchors)
        nodes = self.ablation_set(graph, finding)
        deltas = np.zeros(len(nodes), dtype=np.float64)
        for index, node_id in enumerate(nodes):
            ablated = graph.apply(self.ablation(graph, node_id))
            after = self.scorer.evaluate(ablated, state.prior_findings, deadline).kind_confidence(
                finding.kind, finding.anchors)
            deltas[index] = base - after
        deltas = np.round(deltas, 6)
        return {node_id: float(delta) for node_id, delta in zip(nodes, deltas)}

    def attention_ranking(self, finding: Finding, state: ScoringState) -> Tuple[int, ...]:
        graph = state.graph
        ranked = sorted(finding.anchors,
                        key=lambda a: (-round(state.attention(a), 9), graph.node(a).position, a))
        return tuple(ranked)

    def top_attributions(self, graph: HybridGraph, attributions: Dict[int, float],
                         k: Optional[int] = None) -> List[int]:
        ranked = sorted(attributions, key=lambda n: (-attributions[n], graph.node(n).position, n))
        positive = [n for n in ranked if attributions[n] > 0]
        return positive[:k or self.config.attribution_top_k]

    def rationale(self, finding: Finding, graph: HybridGraph, attributions: Dict[int, float]) -> str:
        kind_spec = get_kind(finding.kind)
        top = self.top_attributions(graph, attributions) or list(finding.anchors)
        evidence = [describe_node(graph, n) for n in top]
        functions = finding.functions
        template = _templates.from_string(kind_spec.rationale_template)
        return template.render(function=functions[0] if functions else 'The contract', evidence=evidence,
                               kind=finding.kind, severity=finding.severity.label)

    def explain(self, finding: Finding, run_id: str, deadline=None) -> ExplanationBundle:
        state = self.scorer.embeddings(run_id)
        attributions = self.attribute(finding, state, deadline)
        ranking = self.attention_ranking(finding, state)
        rationale = self.rationale(finding, state.graph, attributions)
        counterfactual = self.counterfactuals.search(finding, state, attributions, deadline)
        logger.debug(f"Explained {finding.kind} finding over {len(attributions)} ablations")
        return ExplanationBundle(
            attributions=attributions,
            attention_ranking=ranking,
            rationale=rationale,
            counterfactual=counterfactual,
        )

    def explain_all(self, findings: List[Finding], run_id: str, deadline=None) -> List[Finding]:
        return [f.with_explanation(self.explain(f, run_id, deadline)) for f in findings]
