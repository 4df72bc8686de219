"""
ContractLens Frontend Package

Compilation of contract source with solc, parsing with slither and
normalization into a CanonicalUnit.
"""

from .compiler import SolcFrontend
from .normalizer import (
    CanonicalUnit,
    FileSystemImportResolver,
    ImportResolver,
    InMemoryImportResolver,
    SourceNormalizer,
    normalize,
)

__all__ = [
    'CanonicalUnit',
    'FileSystemImportResolver',
    'ImportResolver',
    'InMemoryImportResolver',
    'SolcFrontend',
    'SourceNormalizer',
    'normalize',
]
