from .counterfactual import CounterfactualSearch, render_diff
from .engine import ExplainabilityEngine

__all__ = ['CounterfactualSearch', 'ExplainabilityEngine', 'render_diff']
