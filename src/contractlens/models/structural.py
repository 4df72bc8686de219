import logging
from dataclasses import dataclass
from typing import Dict, List, Mapping, Sequence, Tuple

import torch
import torch.nn as nn
import pytorch_lightning as pl

from ..graph.features import FEATURE_INDEX, NODE_FEATURES
from ..graph.hybrid_graph import HybridGraph

logger = logging.getLogger(__name__)

# Relations aggregated independently; "in" follows edges backwards (from predecessors)
RELATIONS = ('ctrl_in', 'ctrl_out', 'data_in', 'data_out', 'syn_in', 'syn_out')
BLOCKS = ('self',) + RELATIONS
_EDGE_KIND = {'ctrl': 'control_flow', 'data': 'data_dependency', 'syn': 'syntactic'}

# Reference evidence patterns: {(block, feature): weight}, bias
REFERENCE_PATTERNS: Dict[str, Tuple[Dict[Tuple[str, str], float], float]] = {
    'Reentrancy': ({
        ('self', 'state_write'): 1.0,
        ('self', 'after_external_call'): 1.0,
        ('ctrl_in', 'external_call'): 0.5,
        ('self', 'reentrancy_guard'): -2.0,
    }, -1.0),
    'AccessControl': ({
        ('self', 'sensitive_op'): 1.0,
        ('self', 'public_entry'): 1.0,
        ('self', 'access_guard'): -2.0,
    }, -1.0),
    'TxOriginAuthentication': ({
        ('self', 'tx_origin'): 1.0,
        ('self', 'auth_check'): 1.0,
    }, -1.0),
    'IntegerOverflow': ({
        ('self', 'unchecked_arithmetic'): 1.0,
    }, 0.0),
    'UncheckedLowLevelCall': ({
        ('self', 'unchecked_call'): 1.0,
    }, 0.0),
    'TimestampDependence': ({
        ('self', 'block_timestamp'): 1.0,
        ('data_in', 'block_timestamp'): 1.0,
        ('self', 'guard'): 2.0,
    }, -2.0),
}
PRIOR_HISTORY_WEIGHT = 0.2


@dataclass
class StructuralOutput:
    embedding: torch.Tensor    # [N, len(BLOCKS) * F]
    evidence: torch.Tensor     # [N, P]
    provenance: torch.Tensor   # [len(RELATIONS), N, F], -1 where nothing was aggregated


def relation_edges(graph: HybridGraph) -> Dict[str, torch.Tensor]:
    """Edge index [2, E] (source row, receiving row) per relation."""
    rows = {node.id: row for row, node in enumerate(graph.nodes)}
    pairs: Dict[str, List[Tuple[int, int]]] = {r: [] for r in RELATIONS}
    for edge in graph.edges:
        prefix = next(p for p, kind in _EDGE_KIND.items() if kind == edge.kind)
        src, dst = rows[edge.source], rows[edge.target]
        pairs[f"{prefix}_in"].append((src, dst))
        pairs[f"{prefix}_out"].append((dst, src))
    return {
        r: torch.tensor(p, dtype=torch.long).t().reshape(2, -1) if p else torch.zeros(2, 0, dtype=torch.long)
        for r, p in pairs.items()
    }


def aggregate_relation(x: torch.Tensor, edge_index: torch.Tensor, rounds: int) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    Max-aggregation message passing along one relation.

    R[i] = max(R[i], max over senders j of max(X[j], R[j])), repeated ``rounds``
    times. Alongside each value the row of the node that supplied it is kept;
    ties go to the smallest row.

    Returns:
        (aggregated values [N, F], provenance rows [N, F])
    """
    num_nodes, num_features = x.shape
    values = torch.zeros_like(x)
    provenance = torch.full((num_nodes, num_features), -1, dtype=torch.long)
    if edge_index.numel() == 0 or rounds <= 0:
        return values, provenance
    src, dst = edge_index[0], edge_index[1]
    sentinel = num_nodes
    rows = torch.arange(num_nodes).unsqueeze(1).expand(num_nodes, num_features)
    for _ in range(rounds):
        own_x, own_r = x[src], values[src]
        own_rows = rows[src]
        carried = provenance[src].where(provenance[src] >= 0, torch.full_like(own_rows, sentinel))
        message = torch.maximum(own_x, own_r)
        supplier = torch.where(own_x > own_r, own_rows,
                               torch.where(own_x < own_r, carried, torch.minimum(own_rows, carried)))

        index = dst.unsqueeze(1).expand(-1, num_features)
        updated = values.scatter_reduce(0, index, message, reduce='amax', include_self=True)
        candidate = torch.where(message == updated[dst], supplier, torch.full_like(supplier, sentinel))
        best = torch.full((num_nodes, num_features), sentinel, dtype=torch.long)
        best = best.scatter_reduce(0, index, candidate, reduce='amin', include_self=True)
        kept = torch.where((values == updated) & (provenance >= 0), provenance, torch.full_like(provenance, sentinel))
        merged = torch.minimum(best, kept)
        new_provenance = torch.where((updated > 0) & (merged < sentinel), merged, torch.full_like(merged, -1))

        if torch.equal(updated, values) and torch.equal(new_provenance, provenance):
            break
        values, provenance = updated, new_provenance
    return values, provenance


class StructuralChannel(pl.LightningModule):
    """
    Graph-topology channel: relational max-aggregation over control, data and
    syntactic edges (each direction aggregated separately), followed by a
    learned projection into the per-kind evidence space.
    """

    def __init__(self, kinds: Sequence[str], num_features: int = len(NODE_FEATURES), rounds: int = 8):
        super().__init__()
        self.save_hyperparameters()
        self.kinds = tuple(kinds)
        self.num_features = num_features
        self.rounds = rounds
        self.projection = nn.Linear(num_features * len(BLOCKS), len(self.kinds))

    def forward(self, x: torch.Tensor, edges: Mapping[str, torch.Tensor]) -> StructuralOutput:
        blocks = [x]
        provenance = []
        for relation in RELATIONS:
            values, supplied = aggregate_relation(x, edges[relation], self.rounds)
            blocks.append(values)
            provenance.append(supplied)
        embedding = torch.cat(blocks, dim=1)
        evidence = self.projection(embedding).clamp(0.0, 1.0)
        return StructuralOutput(embedding, evidence, torch.stack(provenance))

    def positive_terms(self, kind: str) -> List[Tuple[int, int]]:
        """(relation index, feature index) pairs with positive weight for ``kind``."""
        row = self.projection.weight[self.kinds.index(kind)]
        terms = []
        for r, relation in enumerate(RELATIONS):
            offset = (r + 1) * self.num_features
            for f in range(self.num_features):
                if row[offset + f].item() > 0:
                    terms.append((r, f))
        return terms

    @torch.no_grad()
    def load_reference_weights(self) -> 'StructuralChannel':
        """Install the interpretable reference calibration."""
        weight = torch.zeros_like(self.projection.weight)
        bias = torch.zeros_like(self.projection.bias)
        for k, kind in enumerate(self.kinds):
            terms, offset = REFERENCE_PATTERNS.get(kind, ({}, 0.0))
            for (block, feature), value in terms.items():
                weight[k, BLOCKS.index(block) * self.num_features + FEATURE_INDEX[feature]] = value
            weight[k, FEATURE_INDEX['prior_history']] = PRIOR_HISTORY_WEIGHT
            bias[k] = offset if terms else -1.0
        self.projection.weight.copy_(weight)
        self.projection.bias.copy_(bias)
        logger.debug(f"Loaded reference structural weights for {len(self.kinds)} kinds")
        return self
