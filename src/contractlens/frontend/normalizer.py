"""
Source normalizer: resolves imports, compiles the unit with solc, parses it
with slither and produces an immutable :class:`CanonicalUnit`.
"""

import hashlib
import logging
import os
import posixpath
import re
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from slither.core.declarations import Contract, FunctionContract, Modifier

from ..config import Settings, settings as default_settings
from ..utils.error_handling import ContractLensError, ParseError, UnresolvedImportError
from .compiler import MAIN_FILE, CompiledSources, SolcFrontend, find_imports, find_pragma

logger = logging.getLogger(__name__)

MAIN_PATH = '<source>'
_VERSION = re.compile(r'(\d+)\.(\d+)(?:\.(\d+))?')


class ImportResolver(ABC):
    """Locates the source text of an import target."""

    @abstractmethod
    def resolve(self, path: str, importer: str) -> Optional[str]:
        """Return the source text for ``path`` or None when it cannot be found."""


class InMemoryImportResolver(ImportResolver):
    """Resolves imports from a mapping of path to source text."""

    def __init__(self, sources: Optional[Mapping[str, str]] = None):
        self.sources = dict(sources or {})

    def resolve(self, path: str, importer: str) -> Optional[str]:
        if path in self.sources:
            return self.sources[path]
        # Allow callers to register files by bare name
        return self.sources.get(posixpath.basename(path))


class FileSystemImportResolver(ImportResolver):
    """Resolves imports against a list of root directories."""

    def __init__(self, roots: Sequence[str]):
        self.roots = [os.path.abspath(root) for root in roots]

    def resolve(self, path: str, importer: str) -> Optional[str]:
        for root in self.roots:
            candidate = os.path.join(root, *path.split('/'))
            if os.path.isfile(candidate):
                with open(candidate, 'r', encoding='utf-8') as f:
                    return f.read()
        return None


@dataclass(frozen=True)
class Location:
    """Source span of a declaration or CFG node. Offsets are solc byte offsets."""
    file: int
    start: int
    end: int
    line: int
    end_line: int
    column: int


@dataclass(frozen=True)
class Symbol:
    """Resolved declaration visible in a contract scope."""
    name: str
    qualified_name: str
    kind: str                  # state_variable, function, modifier, event, error, struct, enum, contract
    type: str
    contract: Optional[str]    # declaring contract
    node_id: str
    visibility: str = 'internal'


@dataclass(frozen=True)
class CanonicalUnit:
    """One normalized compilation unit. Immutable once produced.

    ``contracts``, ``functions`` and ``state_variables`` hold slither
    declarations; nothing downstream mutates them.
    """
    unit_id: str
    source: str
    paths: Tuple[str, ...]
    sources: Tuple[str, ...]
    contracts: Mapping[str, Contract]
    linearization: Mapping[str, Tuple[str, ...]]
    symbols: Mapping[str, Symbol]
    analysed_contracts: Tuple[str, ...]
    functions: Tuple[FunctionContract, ...]
    state_variables: Tuple[object, ...]
    compiler_version: str
    preamble: str
    diagnostics: Tuple[ContractLensError, ...] = ()
    unresolved_symbols: Tuple[str, ...] = ()
    files: Mapping[str, int] = field(default_factory=dict, compare=False, repr=False)
    encoded: Tuple[bytes, ...] = field(default=(), compare=False, repr=False)

    @property
    def degraded(self) -> bool:
        return bool(self.diagnostics)

    @property
    def checked_arithmetic(self) -> bool:
        return version_tuple(self.compiler_version) >= (0, 8, 0)

    def text(self, file: int, start: int, end: int) -> str:
        return self.encoded[file][start:end].decode('utf-8', errors='replace')

    def locate(self, obj) -> Location:
        """Location of a slither object (declaration, CFG node or expression)."""
        mapping = obj.source_mapping
        filename = mapping.filename
        file = self.files.get(os.path.realpath(filename.absolute))
        if file is None:
            file = self.files.get(filename.used, self.files.get(filename.short, 0))
        lines = list(mapping.lines) or [0]
        return Location(file, mapping.start, mapping.start + mapping.length,
                        lines[0], lines[-1], mapping.starting_column)

    def ast_id(self, obj, kind: Optional[str] = None) -> str:
        """Stable id of a slither object: ``Kind@file:start-end``."""
        loc = self.locate(obj)
        if kind is None:
            # CFG node: nodes split from one statement share a span
            kind = f"{obj.type.name}#{obj.node_id}"
        return f"{kind}@{loc.file}:{loc.start}-{loc.end}"

    def function_id(self, function) -> str:
        return self.ast_id(function, 'Modifier' if isinstance(function, Modifier) else 'Function')


def version_tuple(version: str) -> Tuple[int, int, int]:
    match = _VERSION.search(version or '')
    if not match:
        return (0, 0, 0)
    return tuple(int(part or 0) for part in match.groups())


def qualified_name(function) -> str:
    declarer = getattr(function, 'contract_declarer', None)
    return f"{declarer.name}.{function.full_name}" if declarer is not None else function.full_name


def _canonical_path(path: str, importer: str) -> str:
    if path.startswith('./') or path.startswith('../'):
        base = posixpath.dirname(importer) if importer != MAIN_PATH else ''
        return posixpath.normpath(posixpath.join(base, path))
    return path


def _contract_kind(contract: Contract) -> str:
    if contract.is_interface:
        return 'interface'
    if contract.is_library:
        return 'library'
    return 'contract'


class SourceNormalizer:
    """Compiles contract source into a :class:`CanonicalUnit`.

    Apart from running the solc compiler, the normalizer is a pure function
    of its input text and the import resolver.
    """

    def __init__(self, resolver: Optional[ImportResolver] = None, config: Optional[Settings] = None,
                 frontend: Optional[SolcFrontend] = None):
        self.resolver = resolver or InMemoryImportResolver()
        self.config = config or default_settings
        self.frontend = frontend or SolcFrontend()

    def normalize(self, source: str, version_hint: Optional[str] = None, path: str = MAIN_PATH) -> CanonicalUnit:
        """
        Normalize one submission.

        Args:
            source: Contract source text
            version_hint: Compiler version used when the source has no pragma
            path: Path of the submission, used to resolve relative imports

        Returns:
            CanonicalUnit

        Raises:
            ParseError: for invalid or oversized input
        """
        limit = self.config.max_contract_size_kb * 1024
        if len(source.encode('utf-8')) > limit:
            raise ParseError(f"Contract source exceeds {self.config.max_contract_size_kb} KB", 1, 1, path)

        diagnostics: List[ContractLensError] = []
        paths, sources, unresolved_by_file = self._load(source, path, diagnostics)

        pragma = find_pragma(source)
        hint = version_hint or self.config.default_version_hint
        version = self.frontend.select_version(pragma[1] if pragma else None, hint)
        preamble = pragma[0] if pragma else f"pragma solidity {hint};"

        names = [_name(p) for p in paths]
        compiled = CompiledSources(
            version=version,
            names=names,
            texts=dict(zip(names, sources)),
            placeholders={_name(t): [] for targets in unresolved_by_file.values() for t in targets},
            labels=dict(zip(names, paths)),
        )
        stubbed = self.frontend.check(compiled, names[0], {
            _name(importer): [_name(p) for p in targets]
            for importer, targets in unresolved_by_file.items()
        })
        sources = [compiled.texts[name] for name in names]

        with tempfile.TemporaryDirectory(prefix='contractlens-') as workdir:
            instance, files = self.frontend.run_slither(compiled, names[0], workdir)
            files.update({name: index for index, name in enumerate(names)})
            canonical = self._canonical(instance, files, source, paths, sources, version,
                                        preamble, diagnostics, stubbed)
        if stubbed:
            logger.warning(f"Unresolved symbols: {', '.join(stubbed)}")
        logger.info(f"Normalized unit {canonical.unit_id}: {len(canonical.contracts)} contracts, "
                    f"{len(canonical.functions)} functions, solc {version}")
        return canonical

    def _load(self, source: str, path: str, diagnostics: List[ContractLensError]):
        """Breadth-first over imports; already-loaded paths break cycles.

        Unresolved targets get an empty placeholder source so that solc can
        still compile the rest of the unit.
        """
        paths, sources = [path], [source]
        unresolved: Dict[str, List[str]] = {}
        seen = {path}
        index = 0
        while index < len(paths):
            importer, text = paths[index], sources[index]
            for target in find_imports(text):
                target = _canonical_path(target, importer)
                if target in seen:
                    continue
                seen.add(target)
                resolved = self.resolver.resolve(target, importer)
                if resolved is None:
                    error = UnresolvedImportError(target, importer)
                    logger.warning(error.message)
                    diagnostics.append(error)
                    unresolved.setdefault(importer, []).append(target)
                    resolved = ''
                paths.append(target)
                sources.append(resolved)
            index += 1
        return paths, sources, unresolved

    def _canonical(self, instance, files, source, paths, sources, version, preamble,
                   diagnostics, stubbed) -> CanonicalUnit:
        encoded = tuple(text.encode('utf-8') for text in sources)
        scratch = CanonicalUnit(
            unit_id='', source=source, paths=tuple(paths), sources=tuple(sources),
            contracts={}, linearization={}, symbols={}, analysed_contracts=(), functions=(),
            state_variables=(), compiler_version=version, preamble=preamble,
            files=MappingProxyType(dict(files)), encoded=encoded,
        )

        compilation_unit = instance.compilation_units[0]
        declared = sorted(compilation_unit.contracts, key=lambda c: (scratch.locate(c).file, scratch.locate(c).start))
        contracts: Dict[str, Contract] = {}
        for contract in declared:
            # Main file first, so its contracts win name clashes
            contracts.setdefault(contract.name, contract)
        linearization = {
            name: (name,) + tuple(base.name for base in contract.inheritance)
            for name, contract in contracts.items()
        }
        analysed = tuple(c.name for c in declared if scratch.locate(c).file == 0)
        functions, state_variables = self._collect_members(scratch, [contracts[n] for n in analysed],
                                                           compilation_unit.functions_top_level)
        symbols = self._build_symbols(scratch, contracts, linearization)

        digest = hashlib.sha256()
        for text in sources:
            digest.update(text.encode('utf-8'))
            digest.update(b'\0')
        digest.update(version.encode('utf-8'))

        return CanonicalUnit(
            unit_id=digest.hexdigest()[:16],
            source=source,
            paths=tuple(paths),
            sources=tuple(sources),
            contracts=MappingProxyType(contracts),
            linearization=MappingProxyType(linearization),
            symbols=MappingProxyType(symbols),
            analysed_contracts=analysed,
            functions=functions,
            state_variables=state_variables,
            compiler_version=version,
            preamble=preamble,
            diagnostics=tuple(diagnostics),
            unresolved_symbols=tuple(stubbed),
            files=scratch.files,
            encoded=encoded,
        )

    @staticmethod
    def _collect_members(unit: CanonicalUnit, analysed: Iterable[Contract], top_level):
        functions = {}
        state_variables = {}
        for contract in analysed:
            for fn in list(contract.functions) + list(contract.modifiers):
                if fn.is_implemented and not fn.is_constructor_variables:
                    functions.setdefault(unit.function_id(fn), fn)
            for var in contract.state_variables:
                state_variables.setdefault(unit.ast_id(var, 'Variable'), var)
        for fn in top_level:
            if fn.is_implemented and unit.locate(fn).file == 0:
                functions.setdefault(unit.function_id(fn), fn)

        def position(obj):
            loc = unit.locate(obj)
            return loc.file, loc.start

        ordered = tuple(sorted(functions.values(), key=position))
        ordered_vars = tuple(sorted(state_variables.values(), key=position))
        return ordered, ordered_vars

    @staticmethod
    def _members(unit: CanonicalUnit, contract: Contract) -> Iterable[Tuple[str, Symbol]]:
        name = contract.name
        for var in contract.state_variables_declared:
            yield var.name, Symbol(var.name, f"{name}.{var.name}", 'state_variable', str(var.type),
                                   name, unit.ast_id(var, 'Variable'), var.visibility)
        for fn in contract.functions_declared:
            if fn.is_constructor_variables:
                continue
            yield fn.full_name, Symbol(fn.name, f"{name}.{fn.full_name}", 'function', fn.full_name,
                                       name, unit.function_id(fn), fn.visibility)
        for mod in contract.modifiers_declared:
            yield mod.name, Symbol(mod.name, f"{name}.{mod.name}", 'modifier', mod.full_name,
                                   name, unit.function_id(mod), 'internal')
        for event in contract.events_declared:
            yield event.name, Symbol(event.name, f"{name}.{event.name}", 'event', event.full_name,
                                     name, unit.ast_id(event, 'Event'), 'public')
        for error in contract.custom_errors_declared:
            yield error.name, Symbol(error.name, f"{name}.{error.name}", 'error', error.full_name,
                                     name, unit.ast_id(error, 'Error'), 'public')
        for struct in contract.structures_declared:
            yield struct.name, Symbol(struct.name, f"{name}.{struct.name}", 'struct', struct.name,
                                      name, unit.ast_id(struct, 'Struct'), 'internal')
        for enum in contract.enums_declared:
            yield enum.name, Symbol(enum.name, f"{name}.{enum.name}", 'enum', enum.name,
                                    name, unit.ast_id(enum, 'Enum'), 'internal')

    def _build_symbols(self, unit: CanonicalUnit, contracts, linearization) -> Dict[str, Symbol]:
        symbols: Dict[str, Symbol] = {}
        for name, contract in contracts.items():
            symbols[name] = Symbol(name, name, 'contract', _contract_kind(contract), None,
                                   unit.ast_id(contract, 'Contract'), 'public')
        for name, chain in linearization.items():
            # Least derived first so overrides replace base entries
            for base in reversed(chain):
                if base not in contracts:
                    continue
                for key, member in self._members(unit, contracts[base]):
                    symbols[f"{name}.{key}"] = member
        return symbols


def _name(path: str) -> str:
    return MAIN_FILE if path == MAIN_PATH else path


def normalize(source: str, version_hint: Optional[str] = None,
              resolver: Optional[ImportResolver] = None) -> CanonicalUnit:
    """Convenience wrapper around :class:`SourceNormalizer`."""
    return SourceNormalizer(resolver).normalize(source, version_hint)
