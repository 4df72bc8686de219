"""
Test suite for the Report Synthesizer
"""

import json
import os
import tempfile

import pandas as pd
import pytest

from contractlens.findings import AnchorLocation, Counterfactual, ExplanationBundle, Finding, Severity
from contractlens.graph.hybrid_graph import EditOp, GraphEdit
from contractlens.reporting.report_generator import (
    ReportGenerator, developer_entry, manager_summary, report_order,
)


def make_finding(kind, severity, confidence, line, node=None, explained=True, found=True):
    node = node if node is not None else line
    location = AnchorLocation(node_id=node, line=line, function='Bank.withdraw(uint256)',
                              text=f'statement on line {line}', position=(0, line * 10, 0))
    explanation = None
    if explained:
        counterfactual = (
            Counterfactual(found=True, edits=(GraphEdit(EditOp.REMOVE_NODE, node, description='Remove it'),),
                           confidence_before=confidence, confidence_after=0.1, threshold=0.8,
                           diff='--- a/x\n+++ b/x\n')
            if found else Counterfactual.not_found(confidence, 0.8, 'not found within budget')
        )
        explanation = ExplanationBundle(
            attributions={node: 0.5, node + 1: -0.1, node + 2: 0.25},
            attention_ranking=(node,),
            rationale=f'{kind} rationale',
            counterfactual=counterfactual,
        )
    return Finding(kind=kind, severity=severity, confidence=confidence, anchors=(node,),
                   fused_score=confidence, threshold=0.8, locations=(location,),
                   explanation=explanation, channel_weights={node: (0.7, 0.3)})


class TestReportOrdering:
    def test_severity_then_confidence_then_position(self):
        low = make_finding('TimestampDependence', Severity.LOW, 0.99, 3)
        high_late = make_finding('IntegerOverflow', Severity.HIGH, 0.9, 20)
        high_early = make_finding('TxOriginAuthentication', Severity.HIGH, 0.9, 5)
        high_confident = make_finding('AccessControl', Severity.HIGH, 0.95, 30)
        critical = make_finding('Reentrancy', Severity.CRITICAL, 0.86, 40)

        ordered = report_order([low, high_late, high_early, high_confident, critical])

        assert [f.kind for f in ordered] == [
            'Reentrancy', 'AccessControl', 'TxOriginAuthentication', 'IntegerOverflow', 'TimestampDependence',
        ]


class TestReportGenerator:
    @pytest.fixture
    def findings(self):
        return [
            make_finding('UncheckedLowLevelCall', Severity.MEDIUM, 0.98, 9),
            make_finding('Reentrancy', Severity.CRITICAL, 0.98, 10, found=True),
            make_finding('IntegerOverflow', Severity.HIGH, 0.85, 12, found=False),
        ]

    @pytest.fixture
    def generator(self):
        return ReportGenerator(top_k=2)

    def test_views_share_one_order(self, generator, findings):
        views = generator.synthesize(findings)

        kinds = ['Reentrancy', 'IntegerOverflow', 'UncheckedLowLevelCall']
        assert [entry['kind'] for entry in views.developer] == kinds
        assert [entry['kind'] for entry in views.auditor] == kinds

    def test_developer_entry(self, findings):
        entry = developer_entry(findings[1])

        assert entry['title'] == 'Reentrancy Vulnerability'
        assert entry['severity'] == 'Critical'
        assert entry['location'] == {'functions': ['Bank.withdraw(uint256)'], 'lines': [10, 10]}
        assert entry['counterfactual']['available'] is True
        assert entry['counterfactual']['edits'][0]['op'] == 'remove_node'
        assert 'checks-effects-interactions' in entry['remediation']

    def test_unavailable_counterfactual_is_reported(self, findings):
        entry = developer_entry(findings[2])

        assert entry['counterfactual']['available'] is False
        assert entry['counterfactual']['reason'] == 'not found within budget'

    def test_auditor_entry_keeps_top_positive_attributions(self, generator, findings):
        views = generator.synthesize(findings)
        entry = views.auditor[0]

        assert entry['top_attributions'] == [{'node': 10, 'score': 0.5}, {'node': 12, 'score': 0.25}]
        assert entry['attention_ranking'] == [10]
        assert entry['channel_weights'] == {'10': {'structural': 0.7, 'semantic': 0.3}}
        assert entry['threshold'] == 0.8
        assert 'attack_vector' in entry

    def test_manager_summary(self, findings):
        summary = manager_summary(report_order(findings))

        assert summary['severity_counts'] == {'Critical': 1, 'High': 1, 'Medium': 1, 'Low': 0, 'Info': 0}
        assert summary['total'] == 3
        assert summary['risk_level'] == 'Critical'
        assert summary['per_kind'] == {'IntegerOverflow': 1, 'Reentrancy': 1, 'UncheckedLowLevelCall': 1}
        assert summary['action_items'][0].startswith('Reentrancy Vulnerability:')

    def test_empty_summary(self):
        summary = manager_summary([])

        assert summary['total'] == 0
        assert summary['risk_level'] == 'None'
        assert summary['contract_scores'] == {}

    def test_contract_scores(self, generator, findings):
        graph_scores = {'Reentrancy': 0.9123456789, 'IntegerOverflow': 0.2}

        views = generator.synthesize(findings, graph_scores)
        manager = generator.generate_markdown_report(views, 'manager')
        auditor = generator.generate_markdown_report(views, 'auditor')

        assert views.manager['contract_scores'] == {'IntegerOverflow': 0.2, 'Reentrancy': 0.912346}
        assert [e['contract_score'] for e in views.auditor] == [0.912346, 0.2, None]
        assert '| Reentrancy | 0.9123 |' in manager
        assert 'Contract-level score: 0.9123' in auditor

    def test_json_report_is_deterministic(self, generator, findings):
        first = generator.generate_json_report(generator.synthesize(findings))
        second = generator.generate_json_report(generator.synthesize(list(reversed(findings))))

        assert first == second
        assert set(json.loads(first)) == {'developer', 'auditor', 'manager'}

    def test_json_report_written_to_file(self, generator, findings):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, 'reports', 'manager.json')

            content = generator.generate_json_report(generator.synthesize(findings), 'manager', path)

            with open(path) as f:
                assert json.load(f) == json.loads(content)

    def test_markdown_views(self, generator, findings):
        views = generator.synthesize(findings)

        developer = generator.generate_markdown_report(views, 'developer')
        auditor = generator.generate_markdown_report(views, 'auditor')
        manager = generator.generate_markdown_report(views, 'manager')

        assert developer.startswith('# Developer Report')
        assert '## 1. Reentrancy Vulnerability (Critical)' in developer
        assert '_Counterfactual not found within budget._' in developer
        assert '| 1 | Reentrancy | Critical |' in auditor
        assert manager.startswith('# Security Summary')
        assert '**Overall risk:** Critical (3 findings)' in manager
        assert '| Low | 0 |' in manager

    def test_unknown_view(self, generator, findings):
        with pytest.raises(ValueError):
            generator.generate_markdown_report(generator.synthesize(findings), 'board')

    def test_auditor_dataframe(self, generator, findings):
        frame = generator.auditor_dataframe(generator.synthesize(findings))

        assert isinstance(frame, pd.DataFrame)
        assert list(frame['kind']) == ['Reentrancy', 'IntegerOverflow', 'UncheckedLowLevelCall']
        assert frame['counterfactual_available'].tolist() == [True, False, True]

    def test_unexplained_findings(self, generator):
        finding = make_finding('Reentrancy', Severity.CRITICAL, 0.9, 4, explained=False)

        views = generator.synthesize([finding])

        assert views.developer[0]['rationale'] == ''
        assert views.developer[0]['counterfactual']['reason'] == 'not explained'
        assert views.auditor[0]['top_attributions'] == []
