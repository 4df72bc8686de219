"""
Dual-channel scorer.

The structural and semantic channels run concurrently against the read-only
hybrid graph; their evidence is joined, fused by cross-modal attention and
turned into Findings by the calibrated per-kind decision policy.
"""

import logging
import threading
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import torch

from ..config import Settings, settings as default_settings
from ..findings import AnchorLocation, Finding, get_kind
from ..graph.features import node_features
from ..graph.hybrid_graph import NODE_KINDS, HybridGraph
from ..models.hybrid_model import FusionOutput
from ..models.semantic import SemanticOutput
from ..models.store import ModelStore, get_default_store
from ..models.structural import StructuralOutput, relation_edges
from ..utils.error_handling import AnalysisTimeoutError, ContractLensError, ScoringError

logger = logging.getLogger(__name__)


@dataclass
class ScoringState:
    """Per-node internals of one scoring pass, retained for explanation."""
    graph: HybridGraph
    kinds: Tuple[str, ...]
    node_ids: Tuple[int, ...]
    structural: StructuralOutput
    semantic: SemanticOutput
    fusion: FusionOutput
    prior_findings: Tuple[Finding, ...] = ()

    def __post_init__(self):
        self.rows = {node_id: row for row, node_id in enumerate(self.node_ids)}

    def node_score(self, node_id: int, kind: str) -> float:
        return float(self.fusion.scores[self.rows[node_id], self.kinds.index(kind)])

    def channel_weights(self, node_id: int) -> Tuple[float, float]:
        weights = self.fusion.channel_weights[self.rows[node_id]]
        return float(weights[0]), float(weights[1])

    def attention(self, node_id: int) -> float:
        return float(self.fusion.readout[self.rows[node_id]])

    def kind_confidence(self, kind: str, anchors: Iterable[int]) -> float:
        """Max calibrated score of ``kind`` over the anchors still present."""
        scores = [self.node_score(a, kind) for a in anchors if a in self.rows]
        return max(scores) if scores else 0.0

    def graph_score(self, kind: str) -> float:
        return float(self.fusion.graph_scores[self.kinds.index(kind)])


class Scorer(ABC):
    """Capability interface the explainability engine depends on."""

    @abstractmethod
    def score(self, graph: HybridGraph, prior_findings: Optional[Sequence[Finding]] = None,
              run_id: Optional[str] = None, deadline=None) -> List[Finding]:
        """Score a graph and return its Findings."""

    @abstractmethod
    def evaluate(self, graph: HybridGraph, prior_findings: Optional[Sequence[Finding]] = None,
                 deadline=None) -> ScoringState:
        """Score a graph without deciding or retaining anything."""

    @abstractmethod
    def embeddings(self, run_id: str) -> ScoringState:
        """Retained per-node state of a scored run."""

    @abstractmethod
    def release(self, run_id: str) -> None:
        """Drop the retained state of a run."""

    @abstractmethod
    def threshold(self, kind: str) -> float:
        """Calibrated decision threshold of a vulnerability kind."""


class _DisjointSet:
    def __init__(self):
        self.parent: Dict[int, int] = {}

    def find(self, item: int) -> int:
        self.parent.setdefault(item, item)
        while self.parent[item] != item:
            self.parent[item] = self.parent[self.parent[item]]
            item = self.parent[item]
        return item

    def union(self, a: int, b: int) -> None:
        ra, rb = self.find(a), self.find(b)
        if ra != rb:
            self.parent[max(ra, rb)] = min(ra, rb)


class DualChannelScorer(Scorer):
    """Scorer backed by the structural/semantic channels of a ModelStore."""

    def __init__(self, store: Optional[ModelStore] = None, config: Optional[Settings] = None):
        if store is None:
            store = ModelStore(config) if config is not None else get_default_store()
        self.store = store
        self.config = config or default_settings
        self.structural = self.store.get_model('structural')
        self.semantic = self.store.get_model('semantic')
        self.fusion = self.store.get_model('fusion')
        self.kinds = tuple(self.fusion.kinds)
        self._retained: Dict[str, ScoringState] = {}
        self._lock = threading.Lock()

    def threshold(self, kind: str) -> float:
        return self.store.get_threshold(kind)

    # Inference ---------------------------------------------------------

    def _validate(self, graph: HybridGraph) -> None:
        if graph is None or graph.is_empty:
            raise ScoringError("Cannot score an empty hybrid graph")
        unknown = sorted({n.kind for n in graph.nodes} - set(NODE_KINDS))
        if unknown:
            raise ScoringError(f"Malformed hybrid graph: unknown node kinds {unknown}",
                               details={'kinds': unknown})

    def _run_structural(self, x: torch.Tensor, edges) -> StructuralOutput:
        with torch.no_grad():
            return self.structural(x, edges)

    def _run_semantic(self, graph: HybridGraph) -> SemanticOutput:
        with torch.no_grad():
            return self.semantic.score_graph(graph)

    def evaluate(self, graph: HybridGraph, prior_findings: Optional[Sequence[Finding]] = None,
                 deadline=None) -> ScoringState:
        self._validate(graph)
        if deadline is not None:
            deadline.check('scoring')
        try:
            x = node_features(graph, prior_findings)
            edges = relation_edges(graph)
        except KeyError as e:
            raise ScoringError(f"Malformed hybrid graph: {str(e)}") from e

        timeout = deadline.remaining() if deadline is not None else None
        pool = ThreadPoolExecutor(max_workers=2, thread_name_prefix='channel')
        structural_job = pool.submit(self._run_structural, x, edges)
        semantic_job = pool.submit(self._run_semantic, graph)
        try:
            structural = structural_job.result(timeout=timeout)
            if deadline is not None:
                timeout = deadline.remaining()
            semantic = semantic_job.result(timeout=timeout)
        except FutureTimeout:
            raise AnalysisTimeoutError(deadline.run_id, deadline.timeout, 'channel inference') from None
        except ContractLensError:
            raise
        except Exception as e:
            logger.error(f"Channel inference failed: {str(e)}")
            raise ScoringError(f"Channel inference failed: {str(e)}") from e
        finally:
            # Do not wait for a timed-out channel
            pool.shutdown(wait=False, cancel_futures=True)

        if deadline is not None:
            deadline.check('fusion')
        with torch.no_grad():
            fusion = self.fusion(structural.evidence, semantic.evidence)
        if not torch.isfinite(fusion.scores).all():
            raise ScoringError("Fusion produced non-finite scores")
        return ScoringState(graph, self.kinds, tuple(n.id for n in graph.nodes),
                            structural, semantic, fusion, tuple(prior_findings or ()))

    # Decision policy ---------------------------------------------------

    def flagged_subset(self, state: ScoringState, row: int, kind: str) -> List[int]:
        """The node plus the provenance nodes backing its positive relational evidence."""
        members = {row}
        for relation, feature in self.structural.positive_terms(kind):
            source = int(state.structural.provenance[relation, row, feature])
            if source >= 0:
                members.add(source)
        return sorted(members)

    def decide(self, state: ScoringState) -> List[Finding]:
        graph = state.graph
        scores = state.fusion.scores.numpy()
        findings = []
        for k, kind in enumerate(state.kinds):
            threshold = self.threshold(kind)
            flagged = [int(r) for r in np.nonzero(scores[:, k] > threshold)[0]]
            if not flagged:
                continue
            groups = _DisjointSet()
            subsets = {}
            for row in flagged:
                subsets[row] = self.flagged_subset(state, row, kind)
                for member in subsets[row]:
                    groups.union(row, member)
            merged: Dict[int, List[int]] = {}
            for row in flagged:
                merged.setdefault(groups.find(row), []).append(row)
            for rows in merged.values():
                findings.append(self._finding(state, kind, rows, subsets, threshold))
        findings.sort(key=lambda f: (state.kinds.index(f.kind), f.anchors))
        logger.debug(f"Decision policy produced {len(findings)} findings")
        return findings

    def _finding(self, state: ScoringState, kind: str, rows: List[int],
                 subsets: Dict[int, List[int]], threshold: float) -> Finding:
        graph = state.graph
        k = state.kinds.index(kind)
        anchor_rows = sorted({member for row in rows for member in subsets[row]})
        anchors = tuple(state.node_ids[r] for r in anchor_rows)
        strongest = max(rows, key=lambda r: (float(state.fusion.scores[r, k]), -r))
        fused = float(state.fusion.scores[strongest, k])
        divergence = abs(float(state.structural.evidence[strongest, k]) - float(state.semantic.evidence[strongest, k]))
        low_agreement = divergence > self.config.divergence_bound
        kind_spec = get_kind(kind)
        confidence = fused
        severity = kind_spec.severity
        if low_agreement:
            confidence = fused * (1.0 - self.config.divergence_penalty * divergence)
            severity = severity.lowered()
            logger.info(f"{kind} finding at node {state.node_ids[strongest]} has low channel agreement "
                        f"(divergence {divergence:.2f})")
        return Finding(
            kind=kind,
            severity=severity,
            confidence=min(max(confidence, 0.0), 1.0),
            anchors=anchors,
            fused_score=fused,
            threshold=threshold,
            locations=tuple(self._location(graph, a) for a in anchors),
            low_agreement=low_agreement,
            divergence=divergence,
            coverage=graph.meta.get('coverage', 'full'),
            diagnostics=tuple(graph.meta.get('diagnostics', ())),
            channel_weights={a: state.channel_weights(a) for a in anchors},
        )

    @staticmethod
    def _location(graph: HybridGraph, node_id: int) -> AnchorLocation:
        node = graph.node(node_id)
        function = None
        if node.function is not None and node.function in graph:
            function = graph.node(node.function).name
        return AnchorLocation(node_id=node.id, line=node.line, function=function,
                              text=node.text, position=node.position)

    # Public interface --------------------------------------------------

    def score(self, graph: HybridGraph, prior_findings: Optional[Sequence[Finding]] = None,
              run_id: Optional[str] = None, deadline=None) -> List[Finding]:
        state = self.evaluate(graph, prior_findings, deadline)
        findings = self.decide(state)
        if run_id is not None:
            with self._lock:
                self._retained[run_id] = state
        return findings

    def embeddings(self, run_id: str) -> ScoringState:
        with self._lock:
            try:
                return self._retained[run_id]
            except KeyError:
                raise ScoringError(f"No retained scoring state for run {run_id}",
                                   details={'run_id': run_id}) from None

    def release(self, run_id: str) -> None:
        with self._lock:
            self._retained.pop(run_id, None)
