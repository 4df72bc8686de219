"""Tests for the solc front and the source normalizer."""

import pytest

from contractlens.config import Settings
from contractlens.frontend.compiler import find_imports, find_pragma, line_column
from contractlens.frontend.normalizer import (
    InMemoryImportResolver, SourceNormalizer, qualified_name, version_tuple,
)
from contractlens.utils.error_handling import ParseError, UnresolvedImportError

from conftest import LEGACY_TOKEN, VULNERABLE_BANK

PRICED_SHOP = '''pragma solidity ^0.8.19;

type Price is uint128;

function unwrapPrice(Price p) pure returns (uint128) {
    return Price.unwrap(p);
}

using {unwrapPrice} for Price global;

contract Shop {
    Price listed;

    function quote() public view returns (uint128) {
        return listed.unwrapPrice();
    }
}
'''


class TestCompilerFront:
    def test_pragma_and_imports_ignore_comments(self):
        source = ('// pragma solidity ^0.4.0;\npragma solidity >=0.6.0 <0.9.0;\n'
                  '/* import "./Hidden.sol"; */\nimport {A} from "./A.sol";\nimport * as B from "lib/B.sol";\n')

        assert find_pragma(source) == ('pragma solidity >=0.6.0 <0.9.0;', '>=0.6.0 <0.9.0')
        assert find_imports(source) == ['./A.sol', 'lib/B.sol']

    def test_line_column_counts_bytes(self):
        text = 'contract A {\n    string s = "é";\n    uint x = ;\n}\n'
        offset = text.encode('utf-8').index(b'uint x')

        assert line_column(text, offset) == (3, 5)

    def test_syntax_error_reports_location(self):
        source = 'pragma solidity ^0.8.0;\ncontract A {\n    function f() public {\n        uint x = ;\n    }\n}\n'

        with pytest.raises(ParseError) as excinfo:
            SourceNormalizer().normalize(source)

        assert excinfo.value.line == 4
        assert excinfo.value.column > 0
        assert excinfo.value.details['line'] == 4

    def test_type_errors_are_parse_errors(self):
        source = 'pragma solidity ^0.8.0;\ncontract A {\n    function f() public {\n        y = 1;\n    }\n}\n'

        with pytest.raises(ParseError) as excinfo:
            SourceNormalizer().normalize(source)

        assert excinfo.value.line == 4

    def test_user_defined_value_types_and_global_using(self):
        unit = SourceNormalizer().normalize(PRICED_SHOP)

        assert unit.analysed_contracts == ('Shop',)
        assert {qualified_name(f) for f in unit.functions} == {'unwrapPrice(Price)', 'Shop.quote()'}
        assert [v.name for v in unit.state_variables] == ['listed']
        assert version_tuple(unit.compiler_version) >= (0, 8, 19)


class TestNormalizer:
    def test_canonical_unit_is_deterministic(self):
        first = SourceNormalizer().normalize(VULNERABLE_BANK)
        second = SourceNormalizer().normalize(VULNERABLE_BANK)

        assert first.unit_id == second.unit_id
        assert first.compiler_version.startswith('0.8.')
        assert first.checked_arithmetic
        assert [qualified_name(f) for f in first.functions] == ['VulnerableBank.withdraw(uint256)']
        assert [qualified_name(f) for f in first.functions] == [qualified_name(f) for f in second.functions]

    def test_legacy_version_disables_checked_arithmetic(self):
        unit = SourceNormalizer().normalize(LEGACY_TOKEN)

        assert version_tuple(unit.compiler_version)[:2] == (0, 4)
        assert not unit.checked_arithmetic
        assert unit.preamble == 'pragma solidity ^0.4.24;'

    def test_version_hint_used_without_pragma(self):
        source = 'contract A { uint x; function f() public { x = 1; } }'

        unit = SourceNormalizer().normalize(source, version_hint='0.6.12')

        assert unit.compiler_version == '0.6.12'
        assert not unit.checked_arithmetic
        assert unit.preamble == 'pragma solidity 0.6.12;'

    def test_oversized_source_rejected(self):
        normalizer = SourceNormalizer(config=Settings(max_contract_size_kb=1))

        with pytest.raises(ParseError):
            normalizer.normalize('// ' + 'x' * 2048 + '\ncontract A {}')

    def test_imports_resolved_and_inherited(self):
        base = '''pragma solidity ^0.8.0;

contract Ownable {
    address owner;

    modifier onlyOwner() {
        require(msg.sender == owner);
        _;
    }
}
'''
        main = '''pragma solidity ^0.8.0;

import "./Ownable.sol";

contract Vault is Ownable {
    function sweep() public onlyOwner {
        selfdestruct(payable(owner));
    }
}
'''
        resolver = InMemoryImportResolver({'Ownable.sol': base})

        unit = SourceNormalizer(resolver).normalize(main)

        assert unit.paths == ('<source>', 'Ownable.sol')
        assert unit.linearization['Vault'] == ('Vault', 'Ownable')
        assert unit.analysed_contracts == ('Vault',)
        assert [v.name for v in unit.state_variables] == ['owner']
        assert {f.name for f in unit.functions} == {'sweep', 'onlyOwner'}
        assert unit.symbols['Vault.owner'].contract == 'Ownable'
        assert unit.symbols['Vault.onlyOwner'].kind == 'modifier'
        assert not unit.degraded

    def test_unresolved_import_is_degraded(self):
        source = 'pragma solidity ^0.8.0;\nimport "./Missing.sol";\ncontract A is Base {}\n'

        unit = SourceNormalizer().normalize(source)

        assert unit.degraded
        assert isinstance(unit.diagnostics[0], UnresolvedImportError)
        assert unit.unresolved_symbols == ('Base',)
        assert unit.linearization['A'] == ('A', 'Base')


@pytest.mark.parametrize('text,expected', [
    ('0.8.0', (0, 8, 0)),
    ('^0.4.24', (0, 4, 24)),
    ('>=0.6.0 <0.9.0', (0, 6, 0)),
    ('', (0, 0, 0)),
])
def test_version_tuple(text, expected):
    assert version_tuple(text) == expected
