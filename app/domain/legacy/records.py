"""
Typed records for known legacy exports.

Each source-table layout in the catalog names a record ``kind`` and a
field -> column index map. ``decode_row`` turns one tokenised row into the
matching record, converting numbers, dates and flags on the way. Rows from
tables without a layout decode to ``UnmappedRecord`` and are never partially
filled.
"""
from __future__ import annotations

import logging
import re
from dataclasses import MISSING, dataclass, field, fields
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Callable, Dict, List, Optional, Tuple, Type, Union

from app.domain.legacy.catalog import SourceTable
from app.domain.legacy.errors import BlankValueError, RowParseError

logger = logging.getLogger(__name__)

_TRUE_VALUES = {"1", "true", "t", "yes", "y", "da", "d"}
_FALSE_VALUES = {"0", "false", "f", "no", "n", "ne"}
_DATE_FORMATS = (
    "%Y-%m-%d",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M:%S.%f",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%dT%H:%M:%S.%f",
    "%d.%m.%Y",
    "%d.%m.%Y.",
    "%d.%m.%Y %H:%M:%S",
    "%d/%m/%Y",
)
# 1.234,56 or 1.234.567; a single group such as 120.000 is a plain decimal
_THOUSANDS_DOT = re.compile(r"^-?\d{1,3}((\.\d{3})+,\d+|(\.\d{3}){2,})$")


# --------------------------------------------------------------------------- #
# Value converters
# --------------------------------------------------------------------------- #


def to_text(raw: Optional[str]) -> Optional[str]:
    if raw is None:
        return None
    value = raw.strip()
    if not value or value.upper() == "NULL":
        return None
    return value


def to_decimal(raw: Optional[str]) -> Optional[Decimal]:
    value = to_text(raw)
    if value is None:
        return None
    normalized = value.replace(" ", "")
    if _THOUSANDS_DOT.match(normalized):
        normalized = normalized.replace(".", "").replace(",", ".")
    elif "," in normalized and "." not in normalized:
        normalized = normalized.replace(",", ".")
    else:
        normalized = normalized.replace(",", "")
    try:
        return Decimal(normalized)
    except InvalidOperation:
        raise ValueError(f"'{value}' is not a number")


def to_date(raw: Optional[str]) -> Optional[date]:
    """Parse the date formats legacy exports use; unparseable values become ``None``."""
    value = to_text(raw)
    if value is None:
        return None
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(value, fmt).date()
        except ValueError:
            continue
    return None


def to_flag(raw: Optional[str]) -> Optional[bool]:
    value = to_text(raw)
    if value is None:
        return None
    lowered = value.lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    return None


# --------------------------------------------------------------------------- #
# Records
# --------------------------------------------------------------------------- #


@dataclass(frozen=True)
class PartnerRecord:
    name: str
    legacy_id: Optional[str] = None
    pib: Optional[str] = None
    partner_code: Optional[str] = None
    city_id: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None
    contact_person: Optional[str] = None
    is_active: Optional[bool] = None


@dataclass(frozen=True)
class PartnerLocationRecord:
    partner_legacy_id: str
    legacy_id: Optional[str] = None
    full_name: Optional[str] = None
    partner_code: Optional[str] = None
    city: Optional[str] = None
    address: Optional[str] = None


@dataclass(frozen=True)
class ContactRecord:
    last_name: Optional[str] = None
    first_name: Optional[str] = None
    legacy_id: Optional[str] = None
    role: Optional[str] = None
    city: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    partner_legacy_id: Optional[str] = None


@dataclass(frozen=True)
class ProductRecord:
    name: str
    legacy_id: Optional[str] = None
    sku: Optional[str] = None
    product_type: Optional[str] = None
    is_active: Optional[bool] = None
    unit_of_measure: Optional[str] = None
    quantity: Optional[Decimal] = None
    purchase_price: Optional[Decimal] = None
    sale_price: Optional[Decimal] = None
    brand: Optional[str] = None
    categories: Tuple[str, ...] = ()


@dataclass(frozen=True)
class EmployeeRecord:
    last_name: Optional[str] = None
    first_name: Optional[str] = None
    legacy_id: Optional[str] = None
    jmbg: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    department_legacy_id: Optional[str] = None


@dataclass(frozen=True)
class EmployeeContractRecord:
    employee_legacy_id: str
    legacy_id: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    gross_salary: Optional[Decimal] = None
    contract_type: Optional[str] = None


@dataclass(frozen=True)
class DepartmentRecord:
    name: str
    legacy_id: Optional[str] = None
    code: Optional[str] = None


@dataclass(frozen=True)
class WarehouseRecord:
    name: str
    legacy_id: Optional[str] = None
    code: Optional[str] = None


@dataclass(frozen=True)
class CurrencyRecord:
    code: str
    legacy_id: Optional[str] = None
    name: Optional[str] = None
    symbol: Optional[str] = None


@dataclass(frozen=True)
class TaxRecord:
    name: str
    rate: Optional[Decimal] = None
    legacy_id: Optional[str] = None
    pdv_code: Optional[str] = None


@dataclass(frozen=True)
class CityRecord:
    name: str
    legacy_id: Optional[str] = None
    display_name: Optional[str] = None
    country_id: Optional[str] = None


@dataclass(frozen=True)
class LegalEntityRecord:
    name: str
    legacy_id: Optional[str] = None
    address: Optional[str] = None
    pib: Optional[str] = None
    maticni_broj: Optional[str] = None


@dataclass(frozen=True)
class AccountRecord:
    code: str
    name: Optional[str] = None
    account_type: Optional[str] = None


@dataclass(frozen=True)
class StockRecord:
    sku: str
    quantity: Optional[Decimal] = None
    warehouse: Optional[str] = None
    unit_cost: Optional[Decimal] = None


@dataclass(frozen=True)
class DocumentHeaderRecord:
    doc_number: str
    legacy_id: Optional[str] = None
    doc_date: Optional[date] = None
    doc_list_id: Optional[str] = None
    status_id: Optional[str] = None
    partner_legacy_id: Optional[str] = None
    warehouse_legacy_id: Optional[str] = None
    total: Optional[Decimal] = None


@dataclass(frozen=True)
class DocumentLineRecord:
    header_legacy_id: str
    legacy_id: Optional[str] = None
    item_legacy_id: Optional[str] = None
    quantity: Optional[Decimal] = None
    unit_price: Optional[Decimal] = None
    discount: Optional[Decimal] = None
    tax_legacy_id: Optional[str] = None


@dataclass(frozen=True)
class OpportunityRecord:
    name: str
    legacy_id: Optional[str] = None
    partner_legacy_id: Optional[str] = None
    value: Optional[Decimal] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    status_id: Optional[str] = None


@dataclass(frozen=True)
class UnmappedRecord:
    """A row from a table the catalog has no layout for."""
    tokens: Tuple[str, ...] = field(default_factory=tuple)


LegacyRecord = Union[
    PartnerRecord,
    PartnerLocationRecord,
    ContactRecord,
    ProductRecord,
    EmployeeRecord,
    EmployeeContractRecord,
    DepartmentRecord,
    WarehouseRecord,
    CurrencyRecord,
    TaxRecord,
    CityRecord,
    LegalEntityRecord,
    AccountRecord,
    StockRecord,
    DocumentHeaderRecord,
    DocumentLineRecord,
    OpportunityRecord,
    UnmappedRecord,
]

RECORD_KINDS: Dict[str, Type] = {
    "partner": PartnerRecord,
    "partner_location": PartnerLocationRecord,
    "contact": ContactRecord,
    "product": ProductRecord,
    "employee": EmployeeRecord,
    "employee_contract": EmployeeContractRecord,
    "department": DepartmentRecord,
    "warehouse": WarehouseRecord,
    "currency": CurrencyRecord,
    "tax": TaxRecord,
    "city": CityRecord,
    "legal_entity": LegalEntityRecord,
    "account": AccountRecord,
    "stock": StockRecord,
    "document_header": DocumentHeaderRecord,
    "document_line": DocumentLineRecord,
    "opportunity": OpportunityRecord,
}

# Field converters by name; anything not listed is text.
_CONVERTERS: Dict[str, Callable[[Optional[str]], object]] = {
    "is_active": to_flag,
    "quantity": to_decimal,
    "purchase_price": to_decimal,
    "sale_price": to_decimal,
    "gross_salary": to_decimal,
    "rate": to_decimal,
    "unit_cost": to_decimal,
    "total": to_decimal,
    "unit_price": to_decimal,
    "discount": to_decimal,
    "value": to_decimal,
    "start_date": to_date,
    "end_date": to_date,
    "doc_date": to_date,
}

_CATEGORY_PREFIX = "category_"


def _required_fields(record_type: Type) -> List[str]:
    return [f.name for f in fields(record_type) if f.default is MISSING and f.default_factory is MISSING]


def decode_row(layout: Optional[SourceTable], tokens: List[str], row_index: Optional[int] = None) -> LegacyRecord:
    """
    Decode one tokenised row with ``layout``.

    Raises:
        RowParseError: the row is too short for a required column or a
            numeric value cannot be converted.
        BlankValueError: a required value is empty.
    """
    if layout is None or layout.kind not in RECORD_KINDS:
        return UnmappedRecord(tokens=tuple(tokens))

    record_type = RECORD_KINDS[layout.kind]
    known = {f.name for f in fields(record_type)}
    required = set(_required_fields(record_type))
    values: Dict[str, object] = {}
    categories: List[str] = []

    for name, index in layout.columns.items():
        raw = tokens[index] if index < len(tokens) else None
        if name.startswith(_CATEGORY_PREFIX) and "categories" in known:
            text = to_text(raw)
            if text:
                categories.append(text)
            continue
        if name not in known:
            continue
        if name in required:
            if raw is None:
                raise RowParseError(
                    f"row has {len(tokens)} columns, '{name}' expected at index {index}",
                    row_index=row_index,
                )
            if to_text(raw) is None:
                raise BlankValueError(f"required value '{name}' is blank", row_index=row_index)
        converter = _CONVERTERS.get(name, to_text)
        try:
            values[name] = converter(raw)
        except ValueError as exc:
            raise RowParseError(f"column '{name}': {exc}", row_index=row_index) from exc

    missing = required - values.keys()
    if missing:
        raise RowParseError(
            f"layout for '{layout.kind}' does not map required field(s) {sorted(missing)}",
            row_index=row_index,
        )

    if categories:
        values["categories"] = tuple(categories)
    return record_type(**values)
