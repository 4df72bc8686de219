"""Tests for control-flow and data-flow extraction."""

import networkx as nx
import pytest

from contractlens.analyzers.flow_analyzer import analyze_flows
from contractlens.frontend.normalizer import SourceNormalizer

from conftest import ASSEMBLY_CONTRACT, VULNERABLE_BANK

BRANCHY = '''pragma solidity ^0.8.0;

contract Branchy {
    uint total;

    function run(uint n) public {
        uint acc = 0;
        for (uint i = 0; i < n; i++) {
            if (i == 3) {
                break;
            }
            acc += i;
        }
        if (acc > 10) {
            revert();
        }
        total = acc;
    }
}
'''

POSITIONS = '''pragma solidity ^0.8.0;

contract Positions {
    struct Position { uint x; }

    Position left;
    Position right;
    uint total;

    function pick(bool first) internal view returns (Position storage) {
        return first ? left : right;
    }

    function update(bool first) public {
        Position storage p = pick(first);
        p.x = 1;
        Position storage b = p;
        total = b.x;
    }
}
'''


def _line_nodes(flows, line):
    return [n for n, data in flows.cfg.nodes(data=True) if data.get('lineno') == line]


class TestFlowAnalyzer:
    @pytest.fixture
    def bank_flows(self):
        return analyze_flows(SourceNormalizer().normalize(VULNERABLE_BANK))

    @pytest.fixture
    def branchy_flows(self):
        return analyze_flows(SourceNormalizer().normalize(BRANCHY))

    def test_straight_line_control_flow(self, bank_flows):
        cfg = bank_flows.cfg
        (require,) = _line_nodes(bank_flows, 7)
        (call,) = _line_nodes(bank_flows, 9)
        (write,) = _line_nodes(bank_flows, 10)

        assert cfg.has_edge(require, call)
        assert cfg.has_edge(call, write)
        assert not cfg.has_edge(write, call)
        assert bank_flows.coverage == 'full'

    def test_function_exits(self, bank_flows):
        function = next(n for n, data in bank_flows.cfg.nodes(data=True) if data['kind'] == 'function')
        (require,) = _line_nodes(bank_flows, 7)
        (write,) = _line_nodes(bank_flows, 10)

        assert set(bank_flows.exits(function)) == {require, write}
        assert bank_flows.cfg.graph['exit_kinds'][require] == 'require'

    def test_state_write_and_parameter_use(self, bank_flows):
        dfg = bank_flows.dfg
        (write,) = _line_nodes(bank_flows, 10)
        state_vars = [n for n, data in dfg.nodes(data=True) if data['kind'] == 'state_variable']
        parameters = [n for n, data in dfg.nodes(data=True) if data['kind'] == 'parameter']

        assert len(state_vars) == 1
        assert dfg[write][state_vars[0]]['kind'] == 'state_write'
        assert dfg[parameters[0]][write]['variable'] == 'amount'

    def test_loop_back_edge(self, branchy_flows):
        cfg = branchy_flows.cfg
        (loop,) = [n for n in _line_nodes(branchy_flows, 8) if cfg.nodes[n]['node_type'] == 'IFLOOP']
        (accumulate,) = _line_nodes(branchy_flows, 12)

        loop_targets = {t for _, t, data in cfg.edges(data=True) if data['kind'] == 'loop_back'}
        assert loop in loop_targets
        assert nx.has_path(cfg, accumulate, loop)

    def test_break_leaves_the_loop(self, branchy_flows):
        cfg = branchy_flows.cfg
        (brk,) = _line_nodes(branchy_flows, 10)
        (after,) = _line_nodes(branchy_flows, 14)

        assert cfg.has_edge(brk, after)

    def test_revert_is_an_exit_not_a_fallthrough(self, branchy_flows):
        (revert,) = _line_nodes(branchy_flows, 15)
        (final,) = _line_nodes(branchy_flows, 17)

        assert not branchy_flows.cfg.has_edge(revert, final)
        assert branchy_flows.cfg.graph['exit_kinds'][revert] == 'revert'

    def test_reaching_definitions(self, branchy_flows):
        dfg = branchy_flows.dfg
        (declaration,) = _line_nodes(branchy_flows, 7)
        (accumulate,) = _line_nodes(branchy_flows, 12)
        (final,) = _line_nodes(branchy_flows, 17)

        assert dfg[declaration][accumulate]['variable'] == 'acc'
        # Both the initial value and the loop update reach the final write
        assert dfg.has_edge(declaration, final)
        assert dfg.has_edge(accumulate, final)

    def test_inline_assembly_degrades_coverage(self):
        flows = analyze_flows(SourceNormalizer().normalize(ASSEMBLY_CONTRACT))

        assert flows.coverage == 'partial'
        assert flows.diagnostics[0].construct == 'inline assembly'
        assert flows.diagnostics[0].fatal is False

    def test_storage_alias_over_approximates(self):
        flows = analyze_flows(SourceNormalizer().normalize(POSITIONS))
        dfg = flows.dfg
        state = {data['name']: n for n, data in dfg.nodes(data=True) if data['kind'] == 'state_variable'}
        (write,) = _line_nodes(flows, 16)
        (read,) = _line_nodes(flows, 18)

        # p may point at either struct, so the write reaches both
        assert dfg[write][state['left']]['kind'] == 'state_write'
        assert dfg[write][state['right']]['kind'] == 'state_write'
        assert not dfg.has_edge(write, state['total'])
        # Weak updates keep the persisted values alive next to the aliased write
        assert dfg.has_edge(state['left'], read)
        assert dfg.has_edge(state['right'], read)
        assert dfg.has_edge(write, read)

    def test_internal_calls_link_functions(self):
        flows = analyze_flows(SourceNormalizer().normalize(POSITIONS))
        cfg = flows.cfg
        (call,) = _line_nodes(flows, 15)
        pick = next(n for n, data in cfg.nodes(data=True)
                    if data['kind'] == 'function' and data['lineno'] == 10)
        (after,) = _line_nodes(flows, 16)
        returns = [t for e in flows.exits(pick) for t in cfg.successors(e) if cfg[e][t]['kind'] == 'return']

        assert cfg[call][pick]['kind'] == 'call'
        assert after in returns
