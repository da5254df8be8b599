from datetime import date
from decimal import Decimal

import pytest

from app.domain.legacy.catalog import SourceTable, get_catalog
from app.domain.legacy.errors import BlankValueError, RowParseError
from app.domain.legacy.records import (
    PartnerRecord,
    ProductRecord,
    UnmappedRecord,
    decode_row,
    to_date,
    to_decimal,
    to_flag,
    to_text,
)


def _layout(name):
    return get_catalog().source_table(name)


def test_decimal_formats():
    assert to_decimal("1.234,56") == Decimal("1234.56")
    assert to_decimal("12,5") == Decimal("12.5")
    assert to_decimal("1,234.5") == Decimal("1234.5")
    assert to_decimal(" ") is None


def test_three_decimal_exports_are_not_thousands():
    # numeric(x,3) columns export as d.ddd
    assert to_decimal("120.000") == Decimal("120")
    assert to_decimal("0.200") == Decimal("0.2")
    assert to_decimal("-300.000") == Decimal("-300")
    assert to_decimal("1.234.567") == Decimal("1234567")
    assert to_decimal("12.345,5") == Decimal("12345.5")


def test_decimal_rejects_text():
    with pytest.raises(ValueError):
        to_decimal("abc")


def test_dates_and_flags():
    assert to_date("2023-04-01 00:00:00") == date(2023, 4, 1)
    assert to_date("01.04.2023.") == date(2023, 4, 1)
    assert to_date("yesterday") is None
    assert to_flag("DA") is True
    assert to_flag("0") is False
    assert to_flag("maybe") is None
    assert to_text("NULL") is None


def test_partner_row_decodes_by_column_index():
    tokens = ["42", "Uniprom d.o.o.", "", "", "7", "P042", "", "", "", "", "101234567"]

    record = decode_row(_layout("Partner"), tokens)

    assert isinstance(record, PartnerRecord)
    assert record.legacy_id == "42"
    assert record.name == "Uniprom d.o.o."
    assert record.city_id == "7"
    assert record.partner_code == "P042"
    assert record.pib == "101234567"
    assert record.is_active is None


def test_short_row_missing_required_column_is_a_parse_error():
    with pytest.raises(RowParseError) as excinfo:
        decode_row(_layout("Partner"), ["42"], row_index=4)
    assert not isinstance(excinfo.value, BlankValueError)
    assert excinfo.value.row_index == 4


def test_blank_required_value_is_skippable():
    with pytest.raises(BlankValueError):
        decode_row(_layout("Partner"), ["42", "  "])


def test_bad_number_is_a_parse_error():
    tokens = ["SKU-1", "Kafa", "kom", "lots"]
    with pytest.raises(RowParseError, match="quantity"):
        decode_row(_layout("A_UnosPodataka"), tokens)


def test_flat_product_collects_categories():
    tokens = ["SKU-1", "Kafa 200g", "kom", "12", "150,00", "199,99", "1", "Hrana", "Pice", "", "", "", "Doncafe"]

    record = decode_row(_layout("A_UnosPodataka"), tokens)

    assert isinstance(record, ProductRecord)
    assert record.quantity == Decimal("12")
    assert record.sale_price == Decimal("199.99")
    assert record.categories == ("Hrana", "Pice")
    assert record.brand == "Doncafe"


def test_layout_without_required_field_mapping():
    layout = SourceTable(kind="partner", columns={"legacy_id": 0})
    with pytest.raises(RowParseError, match="does not map required"):
        decode_row(layout, ["1"])


def test_unknown_layout_is_never_partially_decoded():
    record = decode_row(None, ["1", "x"])
    assert record == UnmappedRecord(tokens=("1", "x"))
