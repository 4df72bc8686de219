"""Shared contracts and fixtures for the ContractLens test suite."""

import pytest

from contractlens.analyzers.flow_analyzer import analyze_flows
from contractlens.config import Settings
from contractlens.frontend.normalizer import SourceNormalizer
from contractlens.graph.builder import build_hybrid_graph
from contractlens.models.store import ModelStore
from contractlens.scoring.scorer import DualChannelScorer

VULNERABLE_BANK = '''pragma solidity ^0.8.0;

contract VulnerableBank {
    mapping(address => uint) balances;

    function withdraw(uint amount) public {
        require(balances[msg.sender] >= amount);
        // VULNERABILITY: Reentrancy attack possible
        msg.sender.call{value: amount}("");
        balances[msg.sender] -= amount;
    }
}
'''

SAFE_BANK = '''pragma solidity ^0.8.0;

contract SafeBank {
    mapping(address => uint) balances;

    function withdraw(uint amount) public {
        require(balances[msg.sender] >= amount);
        balances[msg.sender] -= amount;
        (bool ok, ) = msg.sender.call{value: amount}("");
        require(ok);
    }
}
'''

TX_ORIGIN_WALLET = '''pragma solidity ^0.8.0;

contract Wallet {
    address owner;

    constructor() {
        owner = msg.sender;
    }

    function transferTo(address payable dest, uint amount) public {
        require(tx.origin == owner);
        dest.transfer(amount);
    }
}
'''

LEGACY_TOKEN = '''pragma solidity ^0.4.24;

contract LegacyToken {
    mapping(address => uint) balances;

    function deposit(uint amount) public {
        balances[msg.sender] += amount;
    }
}
'''

ASSEMBLY_CONTRACT = '''pragma solidity ^0.8.0;

contract Raw {
    uint total;

    function size(address target) public view returns (uint result) {
        assembly { result := extcodesize(target) }
    }

    function add(uint amount) public {
        total = total + amount;
    }
}
'''


INTERNAL_SEND = '''pragma solidity ^0.8.0;

contract Pool {
    mapping(address => uint) shares;

    function withdraw() public {
        _send(msg.sender);
    }

    function _send(address to) internal {
        (bool ok, ) = to.call{value: shares[to]}("");
        require(ok);
        shares[to] = 0;
    }
}
'''

def build_graph(source, version_hint=None, resolver=None):
    """Normalize, analyse and build the hybrid graph of ``source``."""
    unit = SourceNormalizer(resolver).normalize(source, version_hint)
    return build_hybrid_graph(unit, analyze_flows(unit))


def node_on_line(graph, line, kind='statement'):
    matches = [n for n in graph.nodes if n.kind == kind and n.line == line]
    assert matches, f"no {kind} node on line {line}"
    return matches[0]


@pytest.fixture(scope='session')
def config():
    return Settings()


@pytest.fixture(scope='session')
def store(config):
    return ModelStore(config)


@pytest.fixture
def scorer(store, config):
    return DualChannelScorer(store, config)


@pytest.fixture
def bank_graph():
    return build_graph(VULNERABLE_BANK)
