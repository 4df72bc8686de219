"""
ContractLens Analyzers Package

Control-flow and data-flow analysis over a CanonicalUnit.
"""

from .flow_analyzer import FlowAnalyzer, FlowGraphs, analyze_flows

__all__ = ['FlowAnalyzer', 'FlowGraphs', 'analyze_flows']
