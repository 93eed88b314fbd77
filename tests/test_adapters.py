import pytest

from tripledger.adapters import ADAPTERS, MediRouteCsvAdapter, ModivcareTextAdapter, MtmCsvAdapter, get_adapter
from tripledger.errors import StructuralParseError


def test_modivcare_parse_skips_page_furniture_and_repeated_headers(modivcare_text: str) -> None:
    parsed = ModivcareTextAdapter().parse(modivcare_text)

    assert parsed.format == "modivcare_text"
    assert [row.values["Trip ID"] for row in parsed.rows] == ["MC-1", "MC-2", "MC-3"]
    assert [row.row_number for row in parsed.rows] == [1, 2, 3]
    assert parsed.unmapped_columns == ("Member Name",)


def test_modivcare_requires_marker_near_top(modivcare_text: str) -> None:
    adapter = ModivcareTextAdapter()
    assert adapter.matches(modivcare_text) is True
    assert adapter.matches(modivcare_text.replace("ModivCare", "Acme")) is False


def test_short_row_becomes_row_error_not_file_error() -> None:
    content = "Trip ID,Date,Driver\nMR-1,03/02/2026,Pat\nMR-2,03/02/2026\n"

    parsed = MediRouteCsvAdapter().parse(content)

    assert parsed.rows[0].error is None
    assert parsed.rows[1].error == "expected 3 fields, found 2"


def test_blank_rows_between_data_are_kept_as_blank() -> None:
    content = "Confirmation Number,DOS\nC-1,03/02/2026\n,\nC-2,03/02/2026\n\n"

    parsed = MtmCsvAdapter().parse(content)

    assert len(parsed.rows) == 3
    assert [row.blank for row in parsed.rows] == [False, True, False]


def test_missing_required_column_is_structural() -> None:
    with pytest.raises(StructuralParseError, match="driver_name"):
        MediRouteCsvAdapter().parse("Trip ID,Date,Vehicle\nMR-1,03/02/2026,VAN-1\n")


def test_header_only_file_is_structural() -> None:
    with pytest.raises(StructuralParseError, match="no data rows"):
        MtmCsvAdapter().parse("Confirmation Number,DOS\n")


def test_unterminated_quote_is_structural() -> None:
    with pytest.raises(StructuralParseError, match="malformed CSV"):
        MtmCsvAdapter().parse('Confirmation Number,DOS\n"C-1,03/02/2026\n')


def test_adapter_registry_is_closed() -> None:
    assert sorted(adapter.format for adapter in ADAPTERS) == ["a2c_csv", "mediroute_csv", "modivcare_text", "mtm_csv"]
    assert get_adapter("a2c_csv").vendor == "access2care"
    with pytest.raises(KeyError):
        get_adapter("xlsx")
