"""Report Synthesizer for ContractLens.

Projects one ordered Finding set into developer, auditor and manager views
and renders them as JSON, Markdown or a tabular frame.
"""

import json
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence

import jinja2
import pandas as pd

from ..findings import Finding, Severity, get_kind

VIEWS = ('developer', 'auditor', 'manager')


def _round(value: Optional[float]) -> Optional[float]:
    return None if value is None else round(float(value), 6)


def report_order(findings: Sequence[Finding]) -> List[Finding]:
    """Severity desc, confidence desc, anchor position asc (kind and anchors break exact ties)."""
    return sorted(findings, key=lambda f: (-f.severity.value, -f.confidence, f.anchor_position, f.kind, f.anchors))


def _lines(finding: Finding) -> List[int]:
    lines = [loc.line for loc in finding.locations]
    return [min(lines), max(lines)] if lines else []


def developer_entry(finding: Finding) -> Dict[str, Any]:
    kind_spec = get_kind(finding.kind)
    explanation = finding.explanation
    counterfactual = explanation.counterfactual if explanation else None
    return {
        'kind': finding.kind,
        'title': kind_spec.title,
        'severity': finding.severity.label,
        'confidence': _round(finding.confidence),
        'location': {
            'functions': list(finding.functions),
            'lines': _lines(finding),
        },
        'anchors': [
            {'node': loc.node_id, 'line': loc.line, 'function': loc.function, 'code': loc.text}
            for loc in sorted(finding.locations, key=lambda l: l.position)
        ],
        'rationale': explanation.rationale if explanation else '',
        'remediation': kind_spec.remediation,
        'counterfactual': {
            'available': finding.counterfactual_available,
            'edits': [e.to_dict() for e in counterfactual.edits] if counterfactual else [],
            'diff': counterfactual.diff if counterfactual else '',
            'reason': counterfactual.reason if counterfactual else 'not explained',
        },
    }


def auditor_entry(finding: Finding, top_k: int = 5,
                  graph_scores: Optional[Mapping[str, float]] = None) -> Dict[str, Any]:
    kind_spec = get_kind(finding.kind)
    explanation = finding.explanation
    attributions = []
    ranking: List[int] = []
    if explanation:
        ordered = sorted(explanation.attributions.items(), key=lambda item: (-item[1], item[0]))
        attributions = [{'node': node, 'score': _round(score)} for node, score in ordered[:top_k]]
        ranking = list(explanation.attention_ranking)
    return {
        'kind': finding.kind,
        'severity': finding.severity.label,
        'confidence': _round(finding.confidence),
        'fused_score': _round(finding.fused_score),
        'contract_score': _round((graph_scores or {}).get(finding.kind)),
        'threshold': _round(finding.threshold),
        'attack_vector': kind_spec.attack_vector,
        'low_agreement': finding.low_agreement,
        'divergence': _round(finding.divergence),
        'coverage': finding.coverage,
        'diagnostics': list(finding.diagnostics),
        'counterfactual_available': finding.counterfactual_available,
        'top_attributions': attributions,
        'attention_ranking': ranking,
        'channel_weights': {
            str(node): {'structural': _round(weights[0]), 'semantic': _round(weights[1])}
            for node, weights in sorted(finding.channel_weights.items())
        },
    }


def manager_summary(findings: Sequence[Finding],
                    graph_scores: Optional[Mapping[str, float]] = None) -> Dict[str, Any]:
    """Severity counts and action items; ``graph_scores`` are the contract-level scores per kind."""
    counts = {level.label: 0 for level in sorted(Severity, reverse=True)}
    per_kind: Dict[str, int] = {}
    actions: List[str] = []
    for finding in findings:
        counts[finding.severity.label] += 1
        per_kind[finding.kind] = per_kind.get(finding.kind, 0) + 1
        action = f"{get_kind(finding.kind).title}: {get_kind(finding.kind).remediation}"
        if action not in actions:
            actions.append(action)
    highest = max((f.severity for f in findings), default=None)
    return {
        'severity_counts': counts,
        'total': len(findings),
        'risk_level': highest.label if highest is not None else 'None',
        'per_kind': dict(sorted(per_kind.items())),
        'action_items': actions,
        'contract_scores': {kind: _round(score) for kind, score in sorted((graph_scores or {}).items())},
    }


@dataclass(frozen=True)
class ReportViews:
    developer: List[Dict[str, Any]]
    auditor: List[Dict[str, Any]]
    manager: Dict[str, Any]

    def as_dict(self) -> Dict[str, Any]:
        return {'developer': self.developer, 'auditor': self.auditor, 'manager': self.manager}


class ReportGenerator:
    def __init__(self, top_k: int = 5):
        """Initialize the report generator with the packaged Jinja2 templates."""
        self.top_k = top_k
        self.loader = jinja2.PackageLoader('contractlens', 'templates')
        self.environment = jinja2.Environment(loader=self.loader, autoescape=False,
                                              trim_blocks=True, lstrip_blocks=True)

    def synthesize(self, findings: Sequence[Finding],
                   graph_scores: Optional[Mapping[str, float]] = None) -> ReportViews:
        """Build the three audience views over the same ordered Findings."""
        ordered = report_order(findings)
        return ReportViews(
            developer=[developer_entry(f) for f in ordered],
            auditor=[auditor_entry(f, self.top_k, graph_scores) for f in ordered],
            manager=manager_summary(ordered, graph_scores),
        )

    def generate_json_report(self, views: ReportViews, view: Optional[str] = None,
                             output_path: Optional[str] = None) -> str:
        """Generate a JSON report of one view, or of all views."""
        report = views.as_dict() if view is None else views.as_dict()[view]
        json_content = json.dumps(report, indent=2, sort_keys=True)

        if output_path:
            os.makedirs(os.path.dirname(output_path) or '.', exist_ok=True)
            with open(output_path, 'w') as f:
                f.write(json_content)

        return json_content

    def generate_markdown_report(self, views: ReportViews, view: str,
                                 output_path: Optional[str] = None) -> str:
        """Render one view through its Markdown template."""
        if view not in VIEWS:
            raise ValueError(f"Unknown report view: {view}")
        template = self.environment.get_template(f"{view}_report.md.j2")
        markdown = template.render(view=views.as_dict()[view], manager=views.manager)

        if output_path:
            os.makedirs(os.path.dirname(output_path) or '.', exist_ok=True)
            with open(output_path, 'w') as f:
                f.write(markdown)

        return markdown

    def auditor_dataframe(self, views: ReportViews) -> pd.DataFrame:
        """The auditor view as one row per Finding."""
        columns = ['kind', 'severity', 'confidence', 'fused_score', 'threshold', 'low_agreement',
                   'divergence', 'coverage', 'counterfactual_available']
        rows = [{c: entry[c] for c in columns} for entry in views.auditor]
        return pd.DataFrame(rows, columns=columns)
