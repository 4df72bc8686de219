import logging
from dataclasses import dataclass
from typing import Sequence

import torch
import torch.nn as nn
import pytorch_lightning as pl

logger = logging.getLogger(__name__)

CHANNELS = ('structural', 'semantic')


@dataclass
class FusionOutput:
    channel_weights: torch.Tensor   # [N, 2] attention over (structural, semantic)
    fused: torch.Tensor             # [N, P]
    scores: torch.Tensor            # [N, P] calibrated per-kind node scores
    readout: torch.Tensor           # [N] node attention used for graph pooling
    graph_scores: torch.Tensor      # [P]


class CrossModalFusion(pl.LightningModule):
    """
    Cross-modal attention between the structural and semantic channel.

    For every node a query is built from both channel embeddings and matched
    against a key per channel; the softmax over the two logits (plus a learned
    per-channel bias) gives the channel weights that mix the two embeddings.
    The fused embedding is calibrated into per-kind scores, and a readout
    attention over nodes pools them into per-graph scores.
    """

    def __init__(
        self,
        kinds: Sequence[str],
        score_scale: float = 12.0,
        score_offset: float = -8.0,
        readout_temperature: float = 4.0,
    ):
        """
        Initialize the CrossModalFusion layer.

        Args:
            kinds: Vulnerability kinds, one evidence dimension each
            score_scale: Initial calibration slope per kind
            score_offset: Initial calibration intercept per kind
            readout_temperature: Sharpness of the node readout attention
        """
        super().__init__()
        self.save_hyperparameters()
        self.kinds = tuple(kinds)
        dim = len(self.kinds)
        self.query = nn.Linear(dim, dim, bias=False)
        self.key = nn.Linear(dim, dim, bias=False)
        self.channel_bias = nn.Parameter(torch.zeros(len(CHANNELS)))
        self.scale = nn.Parameter(torch.full((dim,), score_scale))
        self.offset = nn.Parameter(torch.full((dim,), score_offset))
        self.readout_temperature = readout_temperature

    def forward(self, structural: torch.Tensor, semantic: torch.Tensor) -> FusionOutput:
        """
        Fuse the two channel embeddings.

        Args:
            structural: Tensor of shape [num_nodes, num_kinds]
            semantic: Tensor of shape [num_nodes, num_kinds]

        Returns:
            FusionOutput with exposed channel weights and readout attention
        """
        query = self.query(structural + semantic)
        logits = torch.stack([
            (query * self.key(structural)).sum(dim=-1),
            (query * self.key(semantic)).sum(dim=-1),
        ], dim=1) + self.channel_bias
        weights = torch.softmax(logits, dim=1)
        fused = weights[:, 0:1] * structural + weights[:, 1:2] * semantic
        scores = torch.sigmoid(self.scale * fused + self.offset)
        readout = torch.softmax(self.readout_temperature * fused.sum(dim=1), dim=0)
        graph_scores = (readout.unsqueeze(1) * scores).sum(dim=0)
        return FusionOutput(weights, fused, scores, readout, graph_scores)

    @torch.no_grad()
    def load_reference_weights(self) -> 'CrossModalFusion':
        """Identity projections with a prior towards the structural channel."""
        self.query.weight.copy_(torch.eye(len(self.kinds)))
        self.key.weight.copy_(torch.eye(len(self.kinds)))
        self.channel_bias.copy_(torch.tensor([1.0, 0.0]))
        return self

