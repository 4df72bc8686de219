"""
Hybrid graph builder: fuses the slither AST/IR, CFG and DFG of a canonical
unit into one HybridGraph and enriches its nodes with security-relevant
attributes.
"""

import logging
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, List, Optional, Set, Tuple

import networkx as nx
from slither.core.cfg.node import NodeType
from slither.core.cfg.scope import Scope
from slither.core.declarations import Modifier
from slither.core.declarations.solidity_variables import SolidityVariableComposed
from slither.core.expressions import (
    BinaryOperation, CallExpression, Identifier, IndexAccess, TypeConversion, UnaryOperation,
)
from slither.slithir.operations import (
    Binary, BinaryType, HighLevelCall, LibraryCall, LowLevelCall, Send, SolidityCall, Transfer,
)

from ..analyzers.flow_analyzer import FlowGraphs, is_guard
from ..frontend.normalizer import CanonicalUnit, Location, qualified_name
from ..utils.error_handling import GraphIntegrityError
from .hybrid_graph import HybridEdge, HybridGraph, HybridNode

logger = logging.getLogger(__name__)

ARITHMETIC = (BinaryType.ADDITION, BinaryType.SUBTRACTION, BinaryType.MULTIPLICATION,
              BinaryType.DIVISION, BinaryType.MODULO, BinaryType.POWER)
PRINCIPALS = ('msg.sender', 'tx.origin')
OWNER_STATE = re.compile(r'(owner|admin|governance|controller|authority|operator)', re.I)
ACCESS_MODIFIER = re.compile(r'^(only|auth|requiresAuth|restricted|whenOwner|isOwner|isAdmin)', re.I)
REENTRANCY_MODIFIER = re.compile(r'(nonreentrant|noreentran|reentrancyguard|^lock$|^mutex$|^locked$)', re.I)
LOOP_KEYWORD = re.compile(r'\b(for|while)\s*\(')


def _is_principal(expression) -> bool:
    while isinstance(expression, TypeConversion):
        expression = expression.expression
    return (isinstance(expression, Identifier) and isinstance(expression.value, SolidityVariableComposed)
            and expression.value.name in PRINCIPALS)


def is_auth_condition(condition) -> bool:
    """True when ``condition`` authenticates the caller (msg.sender / tx.origin)."""
    if isinstance(condition, BinaryOperation):
        operator = str(condition.type)
        if operator in ('==', '!='):
            return _is_principal(condition.expression_left) or _is_principal(condition.expression_right)
        if operator in ('&&', '||'):
            return is_auth_condition(condition.expression_left) or is_auth_condition(condition.expression_right)
        return False
    if isinstance(condition, UnaryOperation) and str(condition.type) == '!':
        return is_auth_condition(condition.expression)
    if isinstance(condition, CallExpression):
        return any(_is_principal(arg) for arg in condition.arguments)
    if isinstance(condition, IndexAccess):
        return _is_principal(condition.expression_right)
    return False


def guard_condition(node):
    """The condition decided by a guard node, or None."""
    if node.type in (NodeType.IF, NodeType.IFLOOP):
        return node.expression
    if is_guard(node) and isinstance(node.expression, CallExpression) and node.expression.arguments:
        return node.expression.arguments[0]
    return None


def _mapped(expression) -> bool:
    return expression is not None and getattr(expression, 'source_mapping', None) is not None


def _type_string(value) -> str:
    if isinstance(value, list):
        return '(' + ','.join(_type_string(v) for v in value) + ')'
    return str(value) if value is not None else ''


@dataclass
class CallSite:
    ir: object
    member: str
    signature: str
    external_call: bool = False
    low_level_call: bool = False
    value_transfer: bool = False
    delegatecall: bool = False


def classify_call(ir) -> Optional[CallSite]:
    """Describe an IR call if it leaves the contract, else None."""
    if isinstance(ir, LowLevelCall):
        member = str(ir.function_name)
        options = [name for name, value in (('value', ir.call_value), ('gas', ir.call_gas)) if value is not None]
        site = CallSite(ir, member, _signature(ir.destination, member, options, ir.arguments))
        site.low_level_call = True
        site.external_call = True
        site.value_transfer = ir.call_value is not None
        site.delegatecall = member == 'delegatecall'
        return site
    if isinstance(ir, (Send, Transfer)):
        member = 'send' if isinstance(ir, Send) else 'transfer'
        # transfer/send forward a fixed gas stipend and cannot re-enter
        site = CallSite(ir, member, _signature(ir.destination, member, [], [ir.call_value]))
        site.low_level_call = isinstance(ir, Send)
        site.value_transfer = True
        return site
    if isinstance(ir, HighLevelCall) and not isinstance(ir, LibraryCall):
        member = str(ir.function_name)
        options = [name for name, value in (('value', ir.call_value), ('gas', ir.call_gas)) if value is not None]
        return CallSite(ir, member, _signature(ir.destination, member, options, ir.arguments),
                        external_call=True, value_transfer=ir.call_value is not None)
    return None


def _signature(destination, member: str, options: List[str], arguments) -> str:
    receiver = _type_string(getattr(destination, 'type', None)) or str(destination)
    option_text = '{' + ','.join(options) + '}' if options else ''
    arg_types = ','.join(_type_string(getattr(arg, 'type', None)) or '?' for arg in arguments)
    return f"{receiver}.{member}{option_text}({arg_types})"


@dataclass
class _Entry:
    ast_id: str
    kind: str
    name: str
    position: Tuple[int, int, int]
    line: int
    text: str
    function: Optional[str] = None
    type_signature: str = ''
    origins: Set[str] = field(default_factory=lambda: {'AST'})
    attrs: Dict[str, object] = field(default_factory=dict)


class HybridGraphBuilder:
    """
    Builds a deterministic HybridGraph: node ids follow source position and
    edges are ordered by (kind, source id, target id).
    """

    def __init__(self, unit: CanonicalUnit, flows: FlowGraphs):
        self.unit = unit
        self.flows = flows
        self.entries: Dict[str, _Entry] = {}
        self.syntactic: List[Tuple[str, str, str]] = []

    # Helpers -----------------------------------------------------------

    def _text(self, loc: Location, end: Optional[int] = None) -> str:
        return ' '.join(self.unit.text(loc.file, loc.start, loc.end if end is None else end).split())

    def _register(self, entry: _Entry) -> _Entry:
        if entry.ast_id in self.entries:
            raise GraphIntegrityError(f"AST node {entry.ast_id} registered twice", {'ast_id': entry.ast_id})
        self.entries[entry.ast_id] = entry
        return entry

    def _statement_text(self, node, loc: Location) -> str:
        """Source of a CFG node; branch nodes render as their header only."""
        if node.type in (NodeType.IF, NodeType.IFLOOP) and _mapped(node.expression):
            cond = self.unit.locate(node.expression)
            condition = self._text(cond)
            if node.type == NodeType.IF:
                return f"if ({condition})"
            before = self.unit.text(cond.file, max(cond.start - 256, 0), cond.start)
            keywords = LOOP_KEYWORD.findall(before)
            return f"{keywords[-1]} ({condition})" if keywords else condition
        text = self._text(loc)
        following = self.unit.text(loc.file, loc.end, loc.end + 64).lstrip()
        if following.startswith(';') and not text.endswith(';'):
            text += ';'
        return text

    def _header(self, function) -> str:
        text = self._text(self.unit.locate(function))
        brace = text.find('{')
        return text[:brace].strip() if brace >= 0 else text

    @staticmethod
    def _function_kind(function) -> str:
        if isinstance(function, Modifier):
            return 'modifier'
        if function.is_constructor:
            return 'constructor'
        if function.is_fallback:
            return 'fallback'
        if function.is_receive:
            return 'receive'
        return 'function'

    @staticmethod
    def _mutability(function) -> str:
        if function.pure:
            return 'pure'
        if function.view:
            return 'view'
        return 'payable' if function.payable else 'nonpayable'

    # Build -------------------------------------------------------------

    def _function_entry(self, function) -> str:
        unit = self.unit
        fid = unit.function_id(function)
        loc = unit.locate(function)
        kind = self._function_kind(function)
        modifiers = tuple(m.name for m in getattr(function, 'modifiers', ()))
        access_guard = any(ACCESS_MODIFIER.search(m) for m in modifiers)
        reentrancy_guard = any(REENTRANCY_MODIFIER.search(m) for m in modifiers)
        for modifier in getattr(function, 'modifiers', ()):
            if any(is_auth_condition(guard_condition(n)) for n in modifier.nodes):
                access_guard = True
        if kind == 'modifier':
            access_guard = access_guard or bool(ACCESS_MODIFIER.search(function.name))
            reentrancy_guard = reentrancy_guard or bool(REENTRANCY_MODIFIER.search(function.name))
        source = unit.text(loc.file, loc.start, loc.end)
        unchecked_blocks = tuple(loc.start + len(source[:m.start()].encode('utf-8'))
                                 for m in re.finditer(r'\bunchecked\s*\{', source))
        visibility = function.visibility
        mutability = self._mutability(function)
        declarer = getattr(function, 'contract_declarer', None)
        contract = declarer.name if declarer is not None else None
        self._register(_Entry(
            ast_id=fid, kind='function', name=qualified_name(function),
            position=(loc.file, loc.start, 0), line=loc.line,
            text=self._header(function), function=fid,
            type_signature=f"{function.full_name} {visibility} {mutability}",
            origins={'AST', 'CFG'},
            attrs={
                'signature': function.full_name,
                'contract': contract,
                'function_kind': kind,
                'visibility': visibility,
                'mutability': mutability,
                'modifiers': modifiers,
                'access_guard': access_guard,
                'reentrancy_guard': reentrancy_guard,
                'public_entry': visibility in ('public', 'external') and kind not in ('constructor', 'modifier'),
                'unchecked_blocks': unchecked_blocks,
            },
        ))
        for parameter in function.parameters:
            if not parameter.name:
                continue
            param_id = unit.ast_id(parameter, 'Parameter')
            if param_id in self.flows.dfg:
                ploc = unit.locate(parameter)
                self._register(_Entry(
                    ast_id=param_id, kind='variable', name=parameter.name,
                    position=(ploc.file, ploc.start, 0), line=ploc.line,
                    text=self._text(ploc), function=fid, type_signature=str(parameter.type),
                    origins={'AST', 'DFG'}, attrs={'parameter': True},
                ))
                self.syntactic.append((fid, param_id, 'parameter'))
        return fid

    def _statement_entry(self, node_id: str, node, fid: str) -> None:
        unit = self.unit
        loc = unit.locate(node)
        cfg_attrs = self.flows.cfg.nodes[node_id]
        calls = [site for site in map(classify_call, node.irs) if site is not None]
        in_unchecked = isinstance(node.scope, Scope) and not node.scope.is_checked
        globals_read = {v.name for v in node.solidity_variables_read}
        arithmetic = any(isinstance(ir, Binary) and ir.type in ARITHMETIC for ir in node.irs)
        called = [ir.function.name for ir in node.irs if isinstance(ir, SolidityCall)]
        condition = guard_condition(node)

        attrs: Dict[str, object] = {
            'ast_type': node.type.name,
            'loop': bool(cfg_attrs.get('loop')),
            'in_unchecked': in_unchecked,
            'end_line': loc.end_line,
            'external_call': any(c.external_call for c in calls),
            'low_level_call': any(c.low_level_call for c in calls),
            'value_transfer': any(c.value_transfer for c in calls),
            'delegatecall': any(c.delegatecall for c in calls),
            'has_call_site': bool(calls),
            'tx_origin': 'tx.origin' in globals_read,
            'block_timestamp': bool({'block.timestamp', 'now'} & globals_read),
            'selfdestruct': any(name.startswith(('selfdestruct(', 'suicide(')) for name in called),
            'guard': condition is not None or node.type in (NodeType.IF, NodeType.IFLOOP),
            'auth_check': condition is not None and is_auth_condition(condition),
            'arithmetic': arithmetic,
            'unchecked_arithmetic': arithmetic and (in_unchecked or not unit.checked_arithmetic),
        }

        if node.variable_declaration is not None:
            type_signature = str(node.variable_declaration.type)
        else:
            typed = [ir.lvalue for ir in node.irs if getattr(ir, 'lvalue', None) is not None]
            type_signature = _type_string(typed[-1].type) if typed else ''

        entry = self._register(_Entry(
            ast_id=node_id, kind='statement', name=node.type.name,
            position=(loc.file, loc.start, 0), line=loc.line,
            text=self._statement_text(node, loc), function=fid, type_signature=type_signature,
            origins={'AST', 'CFG'}, attrs=attrs,
        ))
        entry.attrs['_calls'] = calls
        self.syntactic.append((fid, node_id, 'child'))

        for index, site in enumerate(calls, start=1):
            expression = getattr(site.ir, 'expression', None)
            anchor = expression if _mapped(expression) else node
            call_loc = unit.locate(anchor)
            call_id = f"Call{index}@{call_loc.file}:{call_loc.start}-{call_loc.end}"
            self._register(_Entry(
                ast_id=call_id, kind='external_call_site', name=site.member,
                position=(call_loc.file, call_loc.start, index), line=call_loc.line,
                text=self._text(call_loc), function=fid, type_signature=site.signature,
                attrs={
                    'signature': site.signature,
                    'external_call': site.external_call,
                    'low_level_call': site.low_level_call,
                    'value_transfer': site.value_transfer,
                    'delegatecall': site.delegatecall,
                    'trust_boundary': True,
                    'loop': attrs['loop'],
                    'statement': node_id,
                },
            ))
            self.syntactic.append((node_id, call_id, 'call_site'))

    def _data_attributes(self) -> None:
        dfg = self.flows.dfg
        state_names = {self.unit.ast_id(v, 'Variable'): v.name for v in self.unit.state_variables}
        for ast_id, entry in self.entries.items():
            if entry.kind != 'statement' or ast_id not in dfg:
                continue
            entry.origins.add('DFG')
            writes = [t for t in dfg.successors(ast_id) if dfg[ast_id][t].get('kind') == 'state_write']
            reads = [s for s in dfg.predecessors(ast_id) if s in state_names]
            entry.attrs['state_write'] = bool(writes)
            entry.attrs['state_read'] = bool(reads)
            entry.attrs['owner_write'] = any(OWNER_STATE.search(state_names.get(w, '')) for w in writes)
            entry.attrs['sensitive_op'] = bool(entry.attrs['owner_write'] or entry.attrs.get('selfdestruct')
                                               or entry.attrs.get('delegatecall'))
            low_level = [c for c in entry.attrs.get('_calls', ()) if c.low_level_call]
            node = self.flows.nodes.get(ast_id)
            unchecked = False
            if low_level and guard_condition(node) is None:
                if isinstance(node.expression, CallExpression):
                    # Bare call statement: the success flag is discarded
                    unchecked = True
                elif node.type in (NodeType.EXPRESSION, NodeType.VARIABLE):
                    used = [t for t in dfg.successors(ast_id) if dfg[ast_id][t].get('kind') == 'def_use']
                    unchecked = not used
            entry.attrs['unchecked_call'] = unchecked
        for var in self.unit.state_variables:
            var_id = self.unit.ast_id(var, 'Variable')
            if var_id in self.entries:
                continue
            loc = self.unit.locate(var)
            self._register(_Entry(
                ast_id=var_id, kind='variable', name=var.name,
                position=(loc.file, loc.start, 0), line=loc.line, text=self._text(loc),
                type_signature=str(var.type), origins={'AST', 'DFG'},
                attrs={
                    'state': True,
                    'contract': var.contract.name if var.contract is not None else None,
                    'owner_state': bool(OWNER_STATE.search(var.name)),
                    'constant': var.is_constant or var.is_immutable,
                },
            ))

    def build(self) -> HybridGraph:
        """
        Merge AST, CFG and DFG into a HybridGraph.

        Raises:
            GraphIntegrityError: if a CFG/DFG endpoint has no matching node
        """
        cfg = self.flows.cfg
        for function in self.unit.functions:
            fid = self._function_entry(function)
            for node_id in sorted(n for n, f in self.flows.function_of.items() if f == fid and n != fid):
                if cfg.nodes.get(node_id, {}).get('kind') == 'statement':
                    self._statement_entry(node_id, self.flows.nodes[node_id], fid)
        self._data_attributes()

        for graph, origin in ((self.flows.cfg, 'CFG'), (self.flows.dfg, 'DFG')):
            missing = [n for n in graph.nodes if n not in self.entries]
            if missing:
                raise GraphIntegrityError(
                    f"{len(missing)} {origin} nodes do not resolve to a hybrid graph node",
                    {'missing': sorted(missing)[:10]},
                )

        ordered = sorted(self.entries.values(), key=lambda e: (e.position, e.ast_id))
        ids = {entry.ast_id: index for index, entry in enumerate(ordered)}

        edges = [HybridEdge('syntactic', ids[s], ids[t], label) for s, t, label in self.syntactic]
        for source, target, data in self.flows.cfg.edges(data=True):
            edges.append(HybridEdge('control_flow', ids[source], ids[target], data.get('kind', 'flow')))
        for source, target, data in self.flows.dfg.edges(data=True):
            edges.append(HybridEdge('data_dependency', ids[source], ids[target], data.get('kind', 'def_use')))

        boundary = self._trust_boundary(ordered, ids, edges)
        nodes = []
        for entry in ordered:
            attrs = {k: v for k, v in entry.attrs.items() if not k.startswith('_')}
            attrs['trust_boundary'] = ids[entry.ast_id] in boundary or bool(attrs.get('trust_boundary'))
            nodes.append(HybridNode(
                id=ids[entry.ast_id],
                kind=entry.kind,
                name=entry.name,
                ast_id=entry.ast_id,
                type_signature=entry.type_signature,
                origins=frozenset(entry.origins),
                position=entry.position,
                line=entry.line,
                function=ids.get(entry.function) if entry.function else None,
                text=entry.text,
                attrs=MappingProxyType(attrs),
            ))
        meta = {
            'unit_id': self.unit.unit_id,
            'compiler_version': self.unit.compiler_version,
            'checked_arithmetic': self.unit.checked_arithmetic,
            'preamble': self.unit.preamble,
            'coverage': self.flows.coverage,
            'diagnostics': tuple(d.message for d in tuple(self.unit.diagnostics) + tuple(self.flows.diagnostics)),
            'unresolved_symbols': self.unit.unresolved_symbols,
            'paths': self.unit.paths,
            'sources': self.unit.sources,
        }
        graph = HybridGraph(nodes, edges, meta)
        logger.info(f"Built hybrid graph for unit {self.unit.unit_id}: {len(graph.nodes)} nodes, "
                    f"{len(graph.edges)} edges")
        return graph

    @staticmethod
    def _trust_boundary(ordered: List[_Entry], ids: Dict[str, int], edges: List[HybridEdge]) -> Set[int]:
        """Nodes that can reach, or be reached from, an external call via control flow."""
        control = nx.DiGraph()
        control.add_nodes_from(ids.values())
        control.add_edges_from((e.source, e.target) for e in edges if e.kind == 'control_flow')
        calls = [ids[e.ast_id] for e in ordered if e.kind == 'statement' and e.attrs.get('has_call_site')]
        boundary: Set[int] = set()
        for call in calls:
            boundary.add(call)
            boundary |= nx.descendants(control, call)
            boundary |= nx.ancestors(control, call)
        return boundary


def build_hybrid_graph(unit: CanonicalUnit, flows: FlowGraphs) -> HybridGraph:
    return HybridGraphBuilder(unit, flows).build()
