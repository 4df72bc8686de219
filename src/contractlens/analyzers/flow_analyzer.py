# Control-flow and data-flow analysis over the slither CFG of a CanonicalUnit

import logging
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, FrozenSet, List, Mapping, Optional, Set, Tuple

import networkx as nx
from slither.core.cfg.node import NodeType
from slither.core.declarations import Modifier
from slither.core.expressions import Identifier, IndexAccess, MemberAccess
from slither.core.solidity_types import ElementaryType
from slither.core.variables.local_variable import LocalVariable
from slither.core.variables.state_variable import StateVariable
from slither.slithir.operations import InternalCall, SolidityCall

from ..frontend.normalizer import CanonicalUnit
from ..utils.error_handling import ContractLensError, UnsupportedConstructError

logger = logging.getLogger(__name__)

# CFG edge kinds that stay inside one function
INTRAPROCEDURAL = ('flow', 'branch', 'loop_back')

# Slither nodes without a statement of their own; contracted away
STRUCTURAL = (NodeType.ENDIF, NodeType.STARTLOOP, NodeType.ENDLOOP, NodeType.ENDASSEMBLY)
BRANCHING = (NodeType.IF, NodeType.IFLOOP, NodeType.TRY)

GUARD_FUNCTIONS = ('require(', 'assert(')


@dataclass(frozen=True)
class FlowGraphs:
    """Control-flow and data-flow graphs of one canonical unit."""
    cfg: nx.DiGraph
    dfg: nx.DiGraph
    coverage: str = 'full'
    diagnostics: Tuple[ContractLensError, ...] = ()
    nodes: Mapping[str, object] = field(default_factory=dict)
    function_of: Mapping[str, str] = field(default_factory=dict)

    def exits(self, function_id: str) -> Tuple[str, ...]:
        return tuple(self.cfg.graph['exits'].get(function_id, ()))


@dataclass
class _Access:
    """Definitions and uses of one CFG node."""
    strong: Set[tuple] = field(default_factory=set)
    weak: Set[tuple] = field(default_factory=set)
    uses: Set[tuple] = field(default_factory=set)
    state_writes: Set[str] = field(default_factory=set)


def solidity_calls(node) -> List[str]:
    return [ir.function.name for ir in node.irs if isinstance(ir, SolidityCall)]


def is_guard(node) -> bool:
    """require/assert statement."""
    return any(name.startswith(GUARD_FUNCTIONS) for name in solidity_calls(node))


def is_revert(node) -> bool:
    return node.type == NodeType.THROW or any(name.startswith('revert') for name in solidity_calls(node))


def root_variable(expression):
    """Variable at the base of an index/member access chain, or None."""
    while isinstance(expression, (IndexAccess, MemberAccess)):
        expression = expression.expression_left if isinstance(expression, IndexAccess) else expression.expression
    return expression.value if isinstance(expression, Identifier) else None


def _is_elementary(variable) -> bool:
    return isinstance(variable.type, ElementaryType)


class FlowAnalyzer:
    """
    Derives a control-flow graph and a data-flow graph from a CanonicalUnit.
    Each function has one entry node (the function definition id) and one or
    more exit nodes; revert paths count as exits.
    """

    def __init__(self, unit: CanonicalUnit):
        self.unit = unit
        self.cfg = nx.DiGraph(exits={}, exit_kinds={})
        self.dfg = nx.DiGraph()
        self.diagnostics: List[ContractLensError] = []
        self.nodes: Dict[str, object] = {}
        self.function_of: Dict[str, str] = {}
        self.members: Dict[str, List[str]] = {}
        self.placeholders: Dict[str, List[str]] = {}
        self.invocations: Dict[str, List[Tuple[str, str]]] = {}
        self.calls: List[Tuple[str, str]] = []
        self.opaque: Set[str] = set()
        self._state_ids: Dict[str, object] = {}
        self._functions = {unit.function_id(f): f for f in unit.functions}

    # CFG ---------------------------------------------------------------

    def _exit(self, fid: str, node_id: str, kind: str) -> None:
        exits = self.cfg.graph['exits'].setdefault(fid, [])
        if node_id not in exits:
            exits.append(node_id)
            self.cfg.graph['exit_kinds'][node_id] = kind

    @staticmethod
    def _edge_kind(source, target, start: Dict[object, int]) -> str:
        # Jumps back to an earlier loop condition, or from a do-while condition to the body
        backwards = start[target] < start[source]
        if backwards and (target.type == NodeType.IFLOOP or source.type == NodeType.IFLOOP) \
                and target.type != NodeType.ENDLOOP:
            return 'loop_back'
        return 'branch' if source.type in BRANCHING else 'flow'

    def _assembly_members(self, nodes) -> Tuple[Set[object], List[object]]:
        """Yul nodes inside an inline assembly block, and the outermost ASSEMBLY nodes."""
        spans = []
        for node in nodes:
            if node.type == NodeType.ASSEMBLY:
                loc = self.unit.locate(node)
                spans.append((loc.start, -loc.end, node))
        outer, covered, inner = [], [], set()
        for start, neg_end, node in sorted(spans, key=lambda s: s[:2]):
            if any(s <= start and -neg_end <= e for s, e in covered):
                inner.add(node)
                continue
            covered.append((start, -neg_end))
            outer.append(node)
        for node in nodes:
            if node in inner or node.type == NodeType.ASSEMBLY:
                continue
            loc = self.unit.locate(node)
            if any(s <= loc.start and loc.end <= e for s, e in covered):
                inner.add(node)
        return inner, outer

    def _build_function(self, function) -> None:
        unit = self.unit
        fid = unit.function_id(function)
        self.cfg.add_node(fid, kind='function', function=fid, lineno=unit.locate(function).line)
        self.nodes[fid] = function
        self.function_of[fid] = fid
        self.cfg.graph['exits'].setdefault(fid, [])

        nodes = list(function.nodes)
        if not nodes:
            self._exit(fid, fid, 'end')
            self.members[fid] = [fid]
            return
        entry = function.entry_point
        inner, assembly = self._assembly_members(nodes)
        skipped = {n for n in nodes if n.type in STRUCTURAL or n in inner}
        ident = {n: fid if n is entry else unit.ast_id(n) for n in nodes}
        start = {n: unit.locate(n).start for n in nodes}

        local = nx.DiGraph()
        for node in nodes:
            local.add_node(node)
            if is_revert(node) or node.type == NodeType.RETURN:
                continue
            for son in node.sons:
                local.add_edge(node, son, kind=self._edge_kind(node, son, start))
        for node in sorted(skipped, key=lambda n: n.node_id):
            preds = [(p, local[p][node]['kind']) for p in local.predecessors(node) if p is not node]
            succs = [(s, local[node][s]['kind']) for s in local.successors(node) if s is not node]
            for pred, first in preds:
                for succ, second in succs:
                    kind = 'loop_back' if 'loop_back' in (first, second) else first
                    if pred is not succ and not local.has_edge(pred, succ):
                        local.add_edge(pred, succ, kind=kind)
            local.remove_node(node)

        members = [fid]
        for node in nodes:
            if node is entry or node not in local:
                continue
            node_id = ident[node]
            loc = unit.locate(node)
            self.cfg.add_node(node_id, kind='statement', function=fid, lineno=loc.line,
                              node_type=node.type.name)
            self.nodes[node_id] = node
            self.function_of[node_id] = fid
            members.append(node_id)
        for source, target, data in local.edges(data=True):
            self.cfg.add_edge(ident[source], ident[target], kind=data['kind'])
        self.members[fid] = members

        for node in assembly:
            if node in local:
                error = UnsupportedConstructError('inline assembly', unit.locate(node).line)
                logger.warning(f"{error.message}; treating statement as opaque")
                self.diagnostics.append(error)
                self.opaque.add(ident[node])

        for node in nodes:
            if node not in local:
                continue
            node_id = ident[node]
            if node.type == NodeType.PLACEHOLDER:
                self.placeholders.setdefault(fid, []).append(node_id)
            for ir in node.irs:
                if not isinstance(ir, InternalCall):
                    continue
                callee = self.unit.function_id(ir.function)
                if callee not in self._functions:
                    continue
                if isinstance(ir.function, Modifier):
                    self.invocations.setdefault(fid, []).append((node_id, callee))
                else:
                    self.calls.append((node_id, callee))

        for node in nodes:
            if node not in local:
                continue
            node_id = ident[node]
            if is_revert(node):
                self._exit(fid, node_id, 'revert')
            elif node.type == NodeType.RETURN:
                self._exit(fid, node_id, 'return')
            elif not any(self.cfg[node_id][t]['kind'] in INTRAPROCEDURAL for t in self.cfg.successors(node_id)):
                self._exit(fid, node_id, 'end')
            elif is_guard(node):
                # The failing branch leaves the function
                self._exit(fid, node_id, 'require')

        # Statements on a control-flow cycle
        for component in nx.strongly_connected_components(local):
            if len(component) > 1:
                for node in component:
                    self.cfg.nodes[ident[node]]['loop'] = True
            else:
                node = next(iter(component))
                if local.has_edge(node, node):
                    self.cfg.nodes[ident[node]]['loop'] = True

    def _link_calls(self) -> None:
        intra = {
            node: [t for t in self.cfg.successors(node) if self.cfg[node][t]['kind'] in INTRAPROCEDURAL]
            for node in self.cfg.nodes
        }

        def returns(exit_from: str, successors: List[str]) -> None:
            for exit_id in self.cfg.graph['exits'].get(exit_from, ()):
                if self.cfg.graph['exit_kinds'].get(exit_id) in ('revert', 'require'):
                    continue
                for successor in successors:
                    if not self.cfg.has_edge(exit_id, successor):
                        self.cfg.add_edge(exit_id, successor, kind='return')

        for caller, callee in self.calls:
            self.cfg.add_edge(caller, callee, kind='call')
            returns(callee, intra[caller])

        for fid, chain in self.invocations.items():
            for invocation, modifier in chain:
                self.cfg.add_edge(invocation, modifier, kind='call')
                for placeholder in self.placeholders.get(modifier, ()):
                    for successor in intra[invocation]:
                        if not self.cfg.has_edge(placeholder, successor):
                            self.cfg.add_edge(placeholder, successor, kind='call')
            # Function bodies return into the statements after the placeholder
            frames = [fid] + [modifier for _, modifier in reversed(chain)]
            for inner, outer in zip(frames, frames[1:]):
                for placeholder in self.placeholders.get(outer, ()):
                    returns(inner, intra[placeholder])

    def extract_cfg(self) -> nx.DiGraph:
        """Build the control-flow graph of every analysed function."""
        for function in self.unit.functions:
            self._build_function(function)
        self._link_calls()
        logger.debug(f"CFG: {self.cfg.number_of_nodes()} nodes, {self.cfg.number_of_edges()} edges")
        return self.cfg

    # DFG ---------------------------------------------------------------

    def _state_key(self, variable) -> Optional[tuple]:
        if isinstance(variable, StateVariable):
            key = self.unit.ast_id(variable, 'Variable')
            if key in self._state_ids:
                return ('state', key)
        return None

    def _storage_aliases(self, function) -> Dict[str, Set[tuple]]:
        """Map storage-reference locals to the state variables they may alias."""
        state_keys = {('state', key): var for key, var in self._state_ids.items()}
        aliases: Dict[str, Set[tuple]] = {}
        variables = list(function.parameters) + list(function.local_variables)
        for variable in variables:
            if not isinstance(variable, LocalVariable) or not variable.name or not variable.is_storage:
                continue
            targets: Set[tuple] = set()
            key = self._state_key(root_variable(variable.expression)) if variable.expression is not None else None
            if key:
                targets.add(key)
            else:
                type_name = str(variable.type).split('[')[0].split('.')[-1]
                pattern = re.compile(rf'\b{re.escape(type_name)}\b')
                targets = {k for k, var in state_keys.items() if pattern.search(str(var.type))}
            # Ambiguous alias: every state variable is a candidate
            aliases[variable.name] = targets or set(state_keys)
        return aliases

    def _accesses(self, node, fid: str, aliases: Dict[str, Set[tuple]]) -> _Access:
        access = _Access()
        declared = node.variable_declaration
        if declared is not None and declared.name:
            access.strong.add(('local', fid, declared.name))
        for variable in node.state_variables_written:
            key = self._state_key(variable)
            if key is None:
                continue
            (access.strong if _is_elementary(variable) else access.weak).add(key)
            access.state_writes.add(key[1])
        for variable in node.local_variables_written:
            if not variable.name:
                continue
            key = ('local', fid, variable.name)
            (access.strong if _is_elementary(variable) else access.weak).add(key)
            for alias in aliases.get(variable.name, ()):
                access.weak.add(alias)
                access.state_writes.add(alias[1])
        for variable in node.state_variables_read:
            key = self._state_key(variable)
            if key is not None:
                access.uses.add(key)
        for variable in node.local_variables_read:
            if not variable.name:
                continue
            access.uses.add(('local', fid, variable.name))
            access.uses |= aliases.get(variable.name, set())
        return access

    def _analyze_function(self, function) -> None:
        fid = self.unit.function_id(function)
        aliases = self._storage_aliases(function)
        members = self.members.get(fid, [fid])

        accesses: Dict[str, _Access] = {}
        for node_id in members:
            if node_id == fid:
                continue
            # Inline assembly is opaque: no definitions or uses
            accesses[node_id] = _Access() if node_id in self.opaque else \
                self._accesses(self.nodes[node_id], fid, aliases)

        # Entry definitions: parameters and the persisted value of every state variable
        entry: Set[Tuple[tuple, str]] = set()
        for parameter in function.parameters:
            if parameter.name:
                param_id = self.unit.ast_id(parameter, 'Parameter')
                entry.add((('local', fid, parameter.name), param_id))
                self.dfg.add_node(param_id, kind='parameter', function=fid,
                                  lineno=self.unit.locate(parameter).line, name=parameter.name)
                self.nodes.setdefault(param_id, parameter)
        for var_id in self._state_ids:
            entry.add((('state', var_id), var_id))

        # Reaching definitions, iterated to a fixed point
        reach_in: Dict[str, FrozenSet] = {n: frozenset() for n in members}
        reach_out: Dict[str, FrozenSet] = {n: frozenset() for n in members}
        reach_out[fid] = frozenset(entry)
        member_set = set(members)
        changed = True
        while changed:
            changed = False
            for node_id in members:
                if node_id == fid:
                    continue
                incoming = set()
                for pred in self.cfg.predecessors(node_id):
                    kind = self.cfg[pred][node_id]['kind']
                    if pred in member_set and kind in INTRAPROCEDURAL:
                        incoming |= reach_out[pred]
                    elif kind == 'call' and pred not in member_set:
                        # Body entered from a modifier placeholder
                        incoming |= reach_out[fid]
                access = accesses[node_id]
                killed = {d for d in incoming if d[0] in access.strong}
                out = frozenset((incoming - killed)
                                | {(k, node_id) for k in access.strong | access.weak})
                reach_in[node_id] = frozenset(incoming)
                if out != reach_out[node_id]:
                    reach_out[node_id] = out
                    changed = True

        for node_id in members:
            if node_id == fid:
                continue
            self.dfg.add_node(node_id, kind='statement', function=fid, lineno=self.cfg.nodes[node_id]['lineno'])
            access = accesses[node_id]
            for key, definition in sorted(reach_in[node_id]):
                if key in access.uses and definition != node_id:
                    self.dfg.add_edge(definition, node_id, kind='def_use', variable=key[-1])
            for var_id in sorted(access.state_writes):
                self.dfg.add_edge(node_id, var_id, kind='state_write', variable=var_id)

    def extract_dfg(self) -> nx.DiGraph:
        """
        Def-use chains by reaching definitions. Storage aliases are weak
        updates, so a read links to every candidate definition.
        """
        self._state_ids = {}
        for var in self.unit.state_variables:
            var_id = self.unit.ast_id(var, 'Variable')
            self._state_ids[var_id] = var
            self.dfg.add_node(var_id, kind='state_variable', function=None,
                              lineno=self.unit.locate(var).line, name=var.name)
            self.nodes[var_id] = var
        for function in self.unit.functions:
            self._analyze_function(function)
        logger.debug(f"DFG: {self.dfg.number_of_nodes()} nodes, {self.dfg.number_of_edges()} edges")
        return self.dfg

    def analyze(self) -> FlowGraphs:
        cfg = self.extract_cfg()
        dfg = self.extract_dfg()
        coverage = 'partial' if self.diagnostics else 'full'
        logger.info(f"Flow analysis of unit {self.unit.unit_id}: coverage={coverage}")
        return FlowGraphs(cfg, dfg, coverage, tuple(self.diagnostics),
                          MappingProxyType(dict(self.nodes)), MappingProxyType(dict(self.function_of)))


def analyze_flows(unit: CanonicalUnit) -> FlowGraphs:
    return FlowAnalyzer(unit).analyze()
