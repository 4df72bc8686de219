"""Findings, explanations and the vulnerability catalogue."""

from dataclasses import dataclass, field, replace
from enum import IntEnum
from types import MappingProxyType
from typing import Dict, Mapping, Optional, Tuple

from .graph.hybrid_graph import GraphEdit


class Severity(IntEnum):
    """Ordered severity levels: Info < Low < Medium < High < Critical."""
    INFO = 0
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4

    @property
    def label(self) -> str:
        return self.name.title()

    def lowered(self) -> 'Severity':
        return Severity(max(self.value - 1, Severity.INFO.value))

    @classmethod
    def parse(cls, value) -> 'Severity':
        if isinstance(value, Severity):
            return value
        return cls[str(value).strip().upper()]


@dataclass(frozen=True)
class KindSpec:
    """Catalogue entry for one vulnerability kind."""
    name: str
    title: str
    severity: Severity
    threshold: float
    attack_vector: str
    remediation: str
    rationale_template: str


_CATALOGUE: Dict[str, KindSpec] = {}


def register_kind(kind_spec: KindSpec) -> KindSpec:
    """Add (or replace) a vulnerability kind. The catalogue is an open set."""
    _CATALOGUE[kind_spec.name] = kind_spec
    return kind_spec


def get_kind(name: str) -> KindSpec:
    try:
        return _CATALOGUE[name]
    except KeyError:
        raise KeyError(f"Unknown vulnerability kind: {name}") from None


def catalogue() -> Mapping[str, KindSpec]:
    return MappingProxyType(_CATALOGUE)


REENTRANCY = register_kind(KindSpec(
    name='Reentrancy',
    title='Reentrancy Vulnerability',
    severity=Severity.CRITICAL,
    threshold=0.85,
    attack_vector='A malicious callee re-enters the function from its fallback before the '
                  'caller has updated its own state, repeating the withdrawal against stale balances.',
    remediation='Update state BEFORE the external call (checks-effects-interactions), '
                'or guard the function with a ReentrancyGuard (nonReentrant) modifier.',
    rationale_template=(
        "{{ function }} performs an external call ({{ evidence[0] }}) and then modifies contract "
        "state{% if evidence|length > 1 %} ({{ evidence[1:]|join('; ') }}){% endif %}. "
        "A callee can re-enter before the state update and act on stale values."
    ),
))

ACCESS_CONTROL = register_kind(KindSpec(
    name='AccessControl',
    title='Missing Access Control',
    severity=Severity.HIGH,
    threshold=0.8,
    attack_vector='Any account can call a publicly reachable function that performs a privileged '
                  'operation (selfdestruct, delegatecall or ownership change).',
    remediation='Restrict the function with an access modifier such as onlyOwner or an explicit '
                'require(msg.sender == owner) check.',
    rationale_template=(
        "{{ function }} is publicly callable and performs a privileged operation "
        "({{ evidence|join('; ') }}) without checking the caller."
    ),
))

TX_ORIGIN = register_kind(KindSpec(
    name='TxOriginAuthentication',
    title='Authorization Through tx.origin',
    severity=Severity.HIGH,
    threshold=0.8,
    attack_vector='A phishing contract called by the legitimate owner passes a tx.origin check '
                  'and acts with the owner\'s authority.',
    remediation='Authenticate with msg.sender instead of tx.origin.',
    rationale_template=(
        "{{ function }} authorizes callers with tx.origin ({{ evidence|join('; ') }}), which "
        "any intermediate contract invoked by the owner satisfies."
    ),
))

INTEGER_OVERFLOW = register_kind(KindSpec(
    name='IntegerOverflow',
    title='Integer Overflow / Underflow',
    severity=Severity.HIGH,
    threshold=0.8,
    attack_vector='Unchecked arithmetic wraps around, letting an attacker inflate balances or '
                  'bypass limits.',
    remediation='Compile with Solidity 0.8+ (checked arithmetic), use SafeMath, or remove the '
                'unchecked block around the operation.',
    rationale_template=(
        "{{ function }} performs unchecked arithmetic ({{ evidence|join('; ') }}); the result "
        "can silently wrap around."
    ),
))

UNCHECKED_CALL = register_kind(KindSpec(
    name='UncheckedLowLevelCall',
    title='Unchecked Low-Level Call',
    severity=Severity.MEDIUM,
    threshold=0.8,
    attack_vector='A failing low-level call returns false instead of reverting; execution '
                  'continues as if the transfer succeeded.',
    remediation='Check the boolean result of call/send/delegatecall, e.g. '
                '(bool ok, ) = target.call{...}(...); require(ok);',
    rationale_template=(
        "{{ function }} ignores the success flag of a low-level call ({{ evidence|join('; ') }})."
    ),
))

TIMESTAMP = register_kind(KindSpec(
    name='TimestampDependence',
    title='Block Timestamp Dependence',
    severity=Severity.LOW,
    threshold=0.75,
    attack_vector='Block producers can shift block.timestamp within a tolerance window and '
                  'influence the guarded branch.',
    remediation='Avoid using block.timestamp for critical decisions or randomness; allow for '
                'a tolerance window or use an oracle.',
    rationale_template=(
        "{{ function }} branches on the block timestamp ({{ evidence|join('; ') }}), which "
        "miners can influence."
    ),
))


@dataclass(frozen=True)
class AnchorLocation:
    """Source location of one anchor node."""
    node_id: int
    line: int
    function: Optional[str]
    text: str
    position: Tuple[int, int, int]


@dataclass(frozen=True)
class Counterfactual:
    """Minimal edit set that drops the fused confidence below threshold."""
    found: bool
    edits: Tuple[GraphEdit, ...] = ()
    confidence_before: float = 0.0
    confidence_after: Optional[float] = None
    threshold: float = 0.0
    reason: Optional[str] = None
    diff: str = ''

    @classmethod
    def not_found(cls, confidence_before: float, threshold: float, reason: str) -> 'Counterfactual':
        return cls(found=False, confidence_before=confidence_before, threshold=threshold, reason=reason)


@dataclass(frozen=True)
class ExplanationBundle:
    attributions: Mapping[int, float]
    attention_ranking: Tuple[int, ...]
    rationale: str
    counterfactual: Counterfactual


@dataclass(frozen=True)
class Finding:
    """One reported vulnerability instance."""
    kind: str
    severity: Severity
    confidence: float
    anchors: Tuple[int, ...]
    fused_score: float
    threshold: float
    locations: Tuple[AnchorLocation, ...] = ()
    low_agreement: bool = False
    divergence: float = 0.0
    coverage: str = 'full'
    diagnostics: Tuple[str, ...] = ()
    explanation: Optional[ExplanationBundle] = None
    channel_weights: Mapping[int, Tuple[float, float]] = field(default_factory=dict)

    def __post_init__(self):
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence out of range: {self.confidence}")

    @property
    def counterfactual_available(self) -> bool:
        return bool(self.explanation and self.explanation.counterfactual.found)

    @property
    def anchor_position(self) -> Tuple[int, int, int]:
        if not self.locations:
            return (0, 0, 0)
        return min(loc.position for loc in self.locations)

    @property
    def functions(self) -> Tuple[str, ...]:
        return tuple(sorted({loc.function for loc in self.locations if loc.function}))

    def with_explanation(self, bundle: ExplanationBundle) -> 'Finding':
        return replace(self, explanation=bundle)
