"""
ContractLens - explainable vulnerability detection for smart contracts.

This package turns contract source into scored, explained findings:
- Source normalization, control-flow and data-flow analysis
- A hybrid AST/CFG/DFG graph of the contract
- Dual-channel (structural + semantic) scoring with cross-modal fusion
- Attributions, attention rankings and counterfactual fixes
- Developer, auditor and manager report views
"""

from .findings import ExplanationBundle, Finding, Severity
from .pipeline import AnalysisFailure, AnalysisPipeline, AnalysisResult, HistoryProvider

__version__ = "1.0.0"
__all__ = [
    'AnalysisFailure',
    'AnalysisPipeline',
    'AnalysisResult',
    'ExplanationBundle',
    'Finding',
    'HistoryProvider',
    'Severity',
]
