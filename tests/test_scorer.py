"""Tests for the dual-channel scorer and its decision policy."""

from unittest.mock import patch

import pytest
import torch

from contractlens.findings import Severity
from contractlens.graph.features import FEATURE_INDEX, node_features
from contractlens.graph.hybrid_graph import HybridGraph, HybridNode
from contractlens.models.semantic import SemanticOutput
from contractlens.pipeline import Deadline
from contractlens.scoring.scorer import DualChannelScorer
from contractlens.utils.error_handling import AnalysisTimeoutError, ScoringError

from conftest import (
    LEGACY_TOKEN, SAFE_BANK, TX_ORIGIN_WALLET, VULNERABLE_BANK, build_graph, node_on_line,
)


def _by_kind(findings):
    return {f.kind: f for f in findings}


def _silent_semantic(self, graph):
    zeros = torch.zeros(len(graph), len(self.kinds))
    return SemanticOutput(zeros, zeros)


class TestDualChannelScorer:
    def test_reentrancy_in_sample(self, scorer, bank_graph):
        findings = _by_kind(scorer.score(bank_graph))
        call = node_on_line(bank_graph, 9)
        write = node_on_line(bank_graph, 10)

        reentrancy = findings['Reentrancy']
        assert reentrancy.severity is Severity.CRITICAL
        assert reentrancy.anchors == (call.id, write.id)
        assert [loc.line for loc in reentrancy.locations] == [9, 10]
        assert reentrancy.confidence > 0.85
        assert reentrancy.confidence == pytest.approx(reentrancy.fused_score)
        assert not reentrancy.low_agreement
        assert reentrancy.threshold == 0.85
        assert reentrancy.functions[0].startswith('VulnerableBank.withdraw(')

    def test_unchecked_call_in_sample(self, scorer, bank_graph):
        findings = _by_kind(scorer.score(bank_graph))
        call = node_on_line(bank_graph, 9)

        unchecked = findings['UncheckedLowLevelCall']
        assert unchecked.severity is Severity.MEDIUM
        assert unchecked.anchors == (call.id,)
        assert 'IntegerOverflow' not in findings

    def test_checks_effects_interactions_not_flagged(self, scorer):
        findings = _by_kind(scorer.score(build_graph(SAFE_BANK)))

        assert 'Reentrancy' not in findings
        assert 'UncheckedLowLevelCall' not in findings

    def test_tx_origin(self, scorer):
        graph = build_graph(TX_ORIGIN_WALLET)

        finding = _by_kind(scorer.score(graph))['TxOriginAuthentication']

        assert finding.severity is Severity.HIGH
        assert node_on_line(graph, 11).id in finding.anchors

    def test_legacy_overflow(self, scorer):
        graph = build_graph(LEGACY_TOKEN)

        finding = _by_kind(scorer.score(graph))['IntegerOverflow']

        assert finding.anchors == (node_on_line(graph, 7).id,)

    def test_scores_are_calibrated_probabilities(self, scorer, bank_graph):
        state = scorer.evaluate(bank_graph)

        scores = state.fusion.scores
        assert scores.shape == (len(bank_graph), len(scorer.kinds))
        assert bool(((scores >= 0) & (scores <= 1)).all())
        weights = state.fusion.channel_weights.sum(dim=1)
        assert torch.allclose(weights, torch.ones_like(weights))
        assert state.fusion.readout.sum().item() == pytest.approx(1.0, abs=1e-5)
        assert 0.0 <= state.graph_score('Reentrancy') <= 1.0

    def test_scoring_is_deterministic(self, scorer, bank_graph):
        first = scorer.score(bank_graph)
        second = scorer.score(build_graph(VULNERABLE_BANK))

        assert [(f.kind, f.anchors, f.confidence) for f in first] == \
               [(f.kind, f.anchors, f.confidence) for f in second]

    def test_low_agreement_lowers_severity(self, scorer, bank_graph, config):
        with patch.object(DualChannelScorer, '_run_semantic', _silent_semantic):
            findings = _by_kind(scorer.score(bank_graph))

        reentrancy = findings['Reentrancy']
        assert reentrancy.low_agreement
        assert reentrancy.divergence == pytest.approx(1.0)
        assert reentrancy.severity is Severity.HIGH
        assert reentrancy.confidence == pytest.approx(
            reentrancy.fused_score * (1 - config.divergence_penalty))
        assert reentrancy.confidence < reentrancy.fused_score

    def test_prior_findings_set_history_feature(self, scorer, bank_graph):
        prior = scorer.score(bank_graph)
        write = node_on_line(bank_graph, 10)

        features = node_features(bank_graph, prior)

        assert features[write.id, FEATURE_INDEX['prior_history']] == 1.0



LEDGER = '''pragma solidity ^0.8.0;

contract Ledger {
    mapping(address => uint) balances;
    mapping(address => uint) rewards;

    function withdraw() public {
        uint amount = balances[msg.sender] + rewards[msg.sender];
        (bool ok, ) = msg.sender.call{value: amount}("");
        require(ok);
        balances[msg.sender] = 0;
        rewards[msg.sender] = 0;
    }
}
'''

STEPPER = '''pragma solidity ^0.8.0;

contract Stepper {
    mapping(address => uint) balances;
    event Step(uint index);

    function withdraw() public {
        uint amount = balances[msg.sender];
        (bool ok, ) = msg.sender.call{value: amount}("");
        require(ok);
        emit Step(1);
        emit Step(2);
        emit Step(3);
        emit Step(4);
        emit Step(5);
        emit Step(6);
        emit Step(7);
        emit Step(8);
        balances[msg.sender] = 0;
    }
}
'''

COUNTER = '''pragma solidity ^0.8.0;

contract Counter {
    uint count;

    function bump() public {
        count += 1;
    }
}
'''

REGISTRY = '''pragma solidity ^0.8.0;

contract Registry {
    address owner;

    function setOwner(address next) public {
        owner = next;
    }
}
'''

LOTTERY = '''pragma solidity ^0.8.0;

contract Lottery {
    uint deadline;
    address winner;

    function claim() public {
        if (block.timestamp > deadline) {
            winner = msg.sender;
        }
    }
}
'''


class TestDetectionCoverage:
    def test_overlapping_writes_merge_into_one_finding(self, scorer):
        graph = build_graph(LEDGER)
        call = node_on_line(graph, 9)
        first = node_on_line(graph, 11)
        second = node_on_line(graph, 12)

        reentrancy = [f for f in scorer.score(graph) if f.kind == 'Reentrancy']

        assert len(reentrancy) == 1
        assert reentrancy[0].anchors == (call.id, first.id, second.id)

    def test_write_far_after_the_call(self, scorer):
        graph = build_graph(STEPPER)
        write = node_on_line(graph, 19)

        # Ten control-flow hops separate the call from the write
        findings = _by_kind(scorer.score(graph))

        assert write.id in findings['Reentrancy'].anchors
        assert node_features(graph)[write.id, FEATURE_INDEX['after_external_call']] == 1.0

    def test_no_external_call_no_reentrancy(self, scorer):
        graph = build_graph(COUNTER)

        findings = _by_kind(scorer.score(graph))

        assert 'Reentrancy' not in findings
        assert not node_features(graph)[:, FEATURE_INDEX['after_external_call']].any()

    def test_unguarded_owner_write(self, scorer):
        graph = build_graph(REGISTRY)

        finding = _by_kind(scorer.score(graph))['AccessControl']

        assert node_on_line(graph, 7).id in finding.anchors

    def test_timestamp_decides_a_branch(self, scorer):
        graph = build_graph(LOTTERY)
        branch = node_on_line(graph, 8)

        finding = _by_kind(scorer.score(graph))['TimestampDependence']

        assert branch.flag('block_timestamp')
        assert branch.id in finding.anchors


class TestScorerErrors:
    def test_empty_graph(self, scorer):
        with pytest.raises(ScoringError):
            scorer.score(HybridGraph([], []))

    def test_unknown_node_kind(self, scorer):
        graph = HybridGraph([HybridNode(0, 'mystery', 'x', 'X@0:0-1')], [])

        with pytest.raises(ScoringError) as excinfo:
            scorer.score(graph)

        assert excinfo.value.details['kinds'] == ['mystery']

    def test_graph_without_functions_is_scored(self, scorer):
        graph = HybridGraph([HybridNode(0, 'variable', 'x', 'V@0:0-1')], [])

        state = scorer.evaluate(graph)

        assert scorer.decide(state) == []
        assert 0.0 <= state.graph_score('Reentrancy') <= 1.0

    def test_channel_failure_becomes_scoring_error(self, scorer, bank_graph):
        with patch.object(DualChannelScorer, '_run_structural', side_effect=RuntimeError('boom')):
            with pytest.raises(ScoringError):
                scorer.score(bank_graph)

    def test_expired_deadline(self, scorer, bank_graph):
        with pytest.raises(AnalysisTimeoutError) as excinfo:
            scorer.score(bank_graph, deadline=Deadline('run-1', 0.0))

        assert excinfo.value.stage == 'scoring'


class TestRetainedState:
    def test_embeddings_retained_until_released(self, scorer, bank_graph):
        scorer.score(bank_graph, run_id='run-1')

        state = scorer.embeddings('run-1')
        assert state.graph is bank_graph
        assert state.structural.embedding.shape[0] == len(bank_graph)

        scorer.release('run-1')
        with pytest.raises(ScoringError):
            scorer.embeddings('run-1')

    def test_unknown_run(self, scorer):
        with pytest.raises(ScoringError):
            scorer.embeddings('never-scored')
