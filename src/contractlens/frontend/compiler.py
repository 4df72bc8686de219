"""
Solidity compiler front: picks a solc release through py-solc-x, checks the
sources with solc's standard-JSON interface and hands the compiled unit to
slither.
"""

import logging
import os
import re
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Tuple

import solcx
from crytic_compile.platform.exceptions import InvalidCompilation
from slither import Slither
from slither.exceptions import SlitherError
from solcx.exceptions import SolcError, SolcNotInstalled, UnsupportedVersionError

from ..utils.error_handling import ParseError

logger = logging.getLogger(__name__)

PRAGMA = re.compile(r'pragma\s+solidity\s+([^;]+);')
IMPORT = re.compile(r'''import\s*(?:\{[^}]*\}\s*from\s*|\*\s*as\s+\w+\s+from\s*)?["']([^"']+)["']''')
_COMMENTS = re.compile(r'//[^\n]*|/\*.*?\*/', re.S)
_MISSING_DECLARATION = re.compile(r'Declaration "(\w+)" not found in "([^"]+)"')
_IDENTIFIER = re.compile(r'^[A-Za-z_$][\w$]*$')

# File name used on disk for a submission without a path
MAIN_FILE = 'contract.sol'
# Rounds of placeholder repair before giving up on unresolved symbols
MAX_REPAIRS = 8

_solc_lock = threading.Lock()


def strip_comments(text: str) -> str:
    """Blank out comments, keeping offsets and line numbers intact."""
    return _COMMENTS.sub(lambda m: re.sub(r'[^\n]', ' ', m.group(0)), text)


def find_pragma(text: str) -> Optional[Tuple[str, str]]:
    """Return (directive text, version constraint) of the solidity pragma, if any."""
    match = PRAGMA.search(strip_comments(text))
    if not match:
        return None
    return text[match.start():match.end()], match.group(1).strip()


def find_imports(text: str) -> List[str]:
    return IMPORT.findall(strip_comments(text))


def line_column(text: str, offset: int) -> Tuple[int, int]:
    """1-based line and column of a solc byte offset into ``text``."""
    data = text.encode('utf-8')[:max(offset, 0)]
    line = data.count(b'\n') + 1
    column = len(data) - (data.rfind(b'\n') + 1) + 1
    return line, column


def byte_slice(text: str, start: int, end: int) -> str:
    return text.encode('utf-8')[start:end].decode('utf-8', errors='replace')


@dataclass
class CompiledSources:
    """Sources of one compilation unit, keyed by solc source-unit name."""
    version: str
    names: List[str]
    texts: Dict[str, str]
    placeholders: Dict[str, List[str]] = field(default_factory=dict)
    # Source-unit name -> path reported to the caller
    labels: Dict[str, str] = field(default_factory=dict)

    def stub(self, placeholder: str, name: str) -> bool:
        """Declare ``name`` in an unresolved import. False if it is already there."""
        if name in self.placeholders[placeholder]:
            return False
        self.placeholders[placeholder].append(name)
        keyword = 'abstract contract' if _version(self.version) >= (0, 6, 0) else 'contract'
        self.texts[placeholder] += f"{keyword} {name} {{}}\n"
        return True


def _version(version: str) -> Tuple[int, ...]:
    return tuple(int(part) for part in version.split('.')[:3])


class SolcFrontend:
    """
    Compiles contract sources with a pragma-compatible solc and parses
    them with slither.

    solc releases are installed on demand through py-solc-x; selection is
    serialised because py-solc-x keeps the active version as process state.
    """

    def __init__(self, install: bool = True):
        self.install = install

    def select_version(self, pragma: Optional[str], version_hint: str) -> str:
        """
        Pick the solc release for a unit.

        Args:
            pragma: Version constraint from the main file, e.g. ``^0.8.0``
            version_hint: Exact version used when there is no pragma

        Raises:
            ParseError: if no release satisfies the constraint
        """
        with _solc_lock:
            try:
                if pragma:
                    try:
                        version = solcx.set_solc_version_pragma(f"pragma solidity {pragma};", silent=True)
                    except SolcNotInstalled:
                        if not self.install:
                            raise
                        logger.info(f"Installing solc for constraint {pragma}")
                        version = solcx.install_solc_pragma(f"pragma solidity {pragma};")
                else:
                    installed = [str(v) for v in solcx.get_installed_solc_versions()]
                    if version_hint not in installed:
                        if not self.install:
                            raise SolcNotInstalled(f"solc {version_hint} is not installed")
                        logger.info(f"Installing solc {version_hint}")
                        solcx.install_solc(version_hint)
                    version = version_hint
            except (SolcNotInstalled, UnsupportedVersionError) as e:
                raise ParseError(f"No solc release available for '{pragma or version_hint}': {e}", 1, 1)
        return str(version)

    def check(self, sources: CompiledSources, main: str, unresolved_by_file: Mapping[str, List[str]],
              repairs: int = MAX_REPAIRS) -> List[str]:
        """
        Run solc over ``sources`` and map its first error to a ParseError.

        Identifiers that only an unresolved import could have declared are
        stubbed in that import's placeholder and the check is repeated.

        Returns:
            Names stubbed into placeholders, in discovery order

        Raises:
            ParseError: for syntax and semantic errors solc reports
        """
        stubbed: List[str] = []
        for _ in range(repairs + 1):
            errors = self._compile_errors(sources)
            if not errors:
                return stubbed
            repaired = False
            for error in errors:
                target = self._repair_target(error, sources, unresolved_by_file)
                if target is not None and sources.stub(*target):
                    if target[1] not in stubbed:
                        stubbed.append(target[1])
                    repaired = True
            if not repaired:
                raise self._parse_error(errors[0], sources, main)
        raise self._parse_error(errors[0], sources, main)

    def _compile_errors(self, sources: CompiledSources) -> List[dict]:
        standard_input = {
            'language': 'Solidity',
            'sources': {name: {'content': sources.texts[name]} for name in sources.names},
            'settings': {'outputSelection': {'*': {'': ['ast']}}},
        }
        try:
            solcx.compile_standard(standard_input, solc_version=sources.version, allow_empty=True)
        except SolcError as e:
            output = e.error_dict or []
            if isinstance(output, dict):
                output = output.get('errors', [])
            errors = [err for err in output if err.get('severity') == 'error']
            if not errors:
                raise ParseError(e.message or str(e), 1, 1)
            return errors
        return []

    @staticmethod
    def _repair_target(error: dict, sources: CompiledSources,
                       unresolved_by_file: Mapping[str, List[str]]) -> Optional[Tuple[str, str]]:
        if error.get('type') != 'DeclarationError':
            return None
        message = error.get('message', '')
        missing = _MISSING_DECLARATION.search(message)
        if missing and missing.group(2) in sources.placeholders:
            return missing.group(2), missing.group(1)
        location = error.get('sourceLocation') or {}
        file = location.get('file')
        if not message.startswith('Identifier not found') or not unresolved_by_file.get(file):
            return None
        name = byte_slice(sources.texts[file], location.get('start', 0), location.get('end', 0))
        if not _IDENTIFIER.match(name):
            return None
        return unresolved_by_file[file][0], name

    @staticmethod
    def _parse_error(error: dict, sources: CompiledSources, main: str) -> ParseError:
        location = error.get('sourceLocation') or {}
        file = location.get('file', main)
        line, column = line_column(sources.texts.get(file, ''), location.get('start', 0))
        message = f"{error.get('type', 'Error')}: {error.get('message', 'compilation failed')}"
        return ParseError(message, line, column, sources.labels.get(file, file))

    def run_slither(self, sources: CompiledSources, main: str, workdir: str) -> Tuple[Slither, Dict[str, int]]:
        """
        Write ``sources`` below ``workdir`` and parse them with slither.

        Returns:
            (slither instance, absolute path of each file -> index in ``sources.names``)
        """
        files: Dict[str, int] = {}
        for index, name in enumerate(sources.names):
            path = os.path.realpath(os.path.join(workdir, *name.split('/')))
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, 'w', encoding='utf-8') as f:
                f.write(sources.texts[name])
            files[path] = index
        target = os.path.realpath(os.path.join(workdir, *main.split('/')))
        try:
            instance = Slither(target, solc=str(solcx.get_executable(sources.version)), solc_working_dir=workdir)
        except (SlitherError, InvalidCompilation) as e:
            raise ParseError(f"slither could not analyse the unit: {e}", 1, 1, sources.labels.get(main, main))
        logger.info(f'Slither initialized successfully for {main}')
        return instance, files
