from .scorer import DualChannelScorer, Scorer, ScoringState

__all__ = ['DualChannelScorer', 'Scorer', 'ScoringState']
