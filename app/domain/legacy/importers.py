"""
Per-table importers for legacy exports.

Every importer takes the shared ``ImportContext`` and one ``SourceFile`` and
returns an ``ImportResult``. Rows are decoded with the catalog column layout,
deduplicated against the tenant's existing data, and written through a
``BatchWriter``. Legacy ids are registered only for rows that were actually
written, so later files (and later runs) can resolve references to them.
"""
import logging
import re
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Callable, Dict, FrozenSet, Iterator, List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from app.api.schemas.legacy_import import ImportResult
from app.core.config import settings
from app.db.models import (
    TARGET_TABLES,
    chart_of_accounts,
    contacts,
    currencies,
    departments,
    employee_contracts,
    employees,
    inventory_stock,
    legal_entities,
    new_id,
    opportunities,
    partners,
    products,
    tax_rates,
    warehouses,
)
from app.domain.legacy.batch_writer import BatchWriter, PendingRow, describe_db_error
from app.domain.legacy.catalog import LegacyCatalog, SourceTable
from app.domain.legacy.csv_reader import parse_csv
from app.domain.legacy.dedup import DedupIndex
from app.domain.legacy.errors import (
    BlankValueError,
    DependencyResolutionMiss,
    RowParseError,
    UnknownTableError,
)
from app.domain.legacy.legacy_ids import LegacyIdResolver
from app.domain.legacy.post_import import run_post_import_steps
from app.domain.legacy.records import LegacyRecord, decode_row

logger = logging.getLogger(__name__)

LEG_PREFIX = "LEG:"
DEFAULT_COUNTRY = "Serbia"
BASE_CURRENCY = "RSD"
DEFAULT_UNIT = "kom"
NO_IMPORTER_REASON = "no importer for this table"


@dataclass
class SourceFile:
    """One archive entry queued for import."""
    filename: str
    full_path: str
    text: str
    table_name: Optional[str] = None
    layout: Optional[SourceTable] = None


@dataclass
class ImportContext:
    """State shared by every file of one archive import."""
    engine: Engine
    tenant_id: str
    catalog: LegacyCatalog
    resolver: LegacyIdResolver
    city_lookup: Dict[str, str] = field(default_factory=dict)
    batch_size: int = field(default_factory=lambda: settings.legacy_import_batch_size)
    max_row_retries: int = field(default_factory=lambda: settings.legacy_import_max_row_retries)
    max_errors: int = field(default_factory=lambda: settings.legacy_import_max_errors)

    def writer(self, table, result: ImportResult, on_written=None) -> BatchWriter:
        return BatchWriter(
            self.engine,
            table,
            result,
            batch_size=self.batch_size,
            max_row_retries=self.max_row_retries,
            max_errors=self.max_errors,
            on_written=on_written,
        )

    def registrar(self, entity_type: str) -> Callable[[List[PendingRow]], None]:
        """Callback that records legacy ids of written rows under ``entity_type``."""
        def _register(rows: List[PendingRow]) -> None:
            for row in rows:
                self.resolver.register(entity_type, row.legacy_id, row.values["id"])
                for alias_type, alias_id in row.aliases.items():
                    self.resolver.register(alias_type, alias_id, row.values["id"])
        return _register


# --------------------------------------------------------------------------- #
# Row iteration
# --------------------------------------------------------------------------- #


def parse_source(ctx: ImportContext, source: SourceFile):
    layout = source.layout
    return parse_csv(
        source.text,
        has_header=layout.has_header if layout is not None else None,
        multiline=ctx.catalog.multiline_records(source.full_path),
        record_start=ctx.catalog.record_start(),
    )


def decoded_rows(ctx: ImportContext, source: SourceFile, result: ImportResult) -> Iterator[Tuple[int, LegacyRecord]]:
    """
    Yield ``(row_index, record)`` for every decodable data row.

    Rows with a blank required value are counted as skipped; rows that cannot
    be decoded are recorded as errors. Either way the file continues.
    """
    parsed = parse_source(ctx, source)
    for index, tokens in enumerate(parsed.rows):
        try:
            record = decode_row(source.layout, tokens, row_index=index)
        except BlankValueError:
            result.skipped += 1
            continue
        except RowParseError as exc:
            logger.warning("%s row %d: %s", source.filename, index, exc)
            result.add_error(index, str(exc), limit=ctx.max_errors)
            continue
        yield index, record


def _lower(value: Optional[str]) -> Optional[str]:
    return value.lower() if value else None


def _code_from_name(name: str) -> str:
    return name[:10].upper()


def _partner_names(ctx: ImportContext) -> Dict[str, str]:
    with ctx.engine.connect() as conn:
        rows = conn.execute(
            select(partners.c.id, partners.c.name).where(partners.c.tenant_id == ctx.tenant_id)
        )
        return {partner_id: name for partner_id, name in rows}


def _resolve_partner(ctx: ImportContext, legacy_id: Optional[str]) -> Optional[str]:
    found = ctx.resolver.resolve_any(("partner", "partner_code"), legacy_id)
    return found[1] if found else None


# --------------------------------------------------------------------------- #
# Partners
# --------------------------------------------------------------------------- #


def _partner_dedup(ctx: ImportContext) -> DedupIndex:
    return DedupIndex.from_table(
        ctx.engine,
        partners,
        ctx.tenant_id,
        primary=lambda row: row["pib"],
        secondary=lambda row: row["name"],
        extra=lambda row: row["maticni_broj"] if (row["maticni_broj"] or "").startswith(LEG_PREFIX) else None,
    )


def import_partners(ctx: ImportContext, source: SourceFile) -> ImportResult:
    if source.layout is not None and source.layout.kind == "partner_location":
        return import_partner_locations(ctx, source)

    result = ImportResult()
    # Flat exports carry the partner code in their id column.
    entity_type = source.layout.legacy_key or "partner"
    index = _partner_dedup(ctx)

    with ctx.writer(partners, result, on_written=ctx.registrar(entity_type)) as writer:
        for row_index, record in decoded_rows(ctx, source, result):
            if record.is_active is False:
                result.skipped += 1
                continue
            if ctx.resolver.knows(entity_type, record.legacy_id):
                result.skipped += 1
                continue

            if entity_type == "partner":
                legacy_ref = record.partner_code or record.legacy_id
                city = ctx.city_lookup.get(record.city_id) if record.city_id else record.city
            else:
                legacy_ref = record.legacy_id or record.partner_code
                city = record.city
            leg_tag = f"{LEG_PREFIX}{legacy_ref}" if legacy_ref else None

            if not index.claim(record.pib, record.name, leg_tag):
                result.skipped += 1
                continue

            aliases = {}
            if entity_type == "partner" and record.partner_code:
                aliases["partner_code"] = record.partner_code
            writer.add(
                PendingRow(
                    values={
                        "id": new_id(),
                        "tenant_id": ctx.tenant_id,
                        "name": record.name,
                        "pib": record.pib,
                        "maticni_broj": leg_tag,
                        "city": city,
                        "address": None,
                        "country": record.country or DEFAULT_COUNTRY,
                        "contact_person": record.contact_person,
                        "partner_type": "customer",
                        "is_active": True,
                    },
                    source_index=row_index,
                    legacy_id=record.legacy_id,
                    aliases=aliases,
                )
            )
    return result


def import_partner_locations(ctx: ImportContext, source: SourceFile) -> ImportResult:
    """Enrich already imported partners with the city and address of their locations."""
    result = ImportResult()
    for row_index, record in decoded_rows(ctx, source, result):
        try:
            partner_id = ctx.resolver.require("partner", record.partner_legacy_id, "partner_code")
        except DependencyResolutionMiss as miss:
            logger.debug("%s row %d skipped: %s", source.filename, row_index, miss)
            result.skipped += 1
            continue

        city = ctx.city_lookup.get(record.city, record.city) if record.city else None
        changes = {key: value for key, value in (("city", city), ("address", record.address)) if value}
        if not changes:
            result.skipped += 1
            continue

        try:
            with ctx.engine.begin() as conn:
                conn.execute(
                    update(partners)
                    .where(partners.c.id == partner_id)
                    .where(partners.c.tenant_id == ctx.tenant_id)
                    .values(**changes)
                )
        except SQLAlchemyError as exc:
            result.add_error(row_index, describe_db_error(exc), limit=ctx.max_errors)
            continue
        result.updated += 1
    return result


# --------------------------------------------------------------------------- #
# Contacts & employees
# --------------------------------------------------------------------------- #


def _person_key(first: Optional[str], last: Optional[str]) -> str:
    return f"{first or ''}|{last or ''}"


def import_contacts(ctx: ImportContext, source: SourceFile) -> ImportResult:
    result = ImportResult()
    index = DedupIndex.from_table(
        ctx.engine,
        contacts,
        ctx.tenant_id,
        primary=lambda row: row["email"],
        secondary=lambda row: _person_key(row["first_name"], row["last_name"]),
        casefold_primary=True,
    )
    partner_names = _partner_names(ctx)
    function_areas = set(ctx.catalog.function_areas)

    with ctx.writer(contacts, result, on_written=ctx.registrar("contact")) as writer:
        for row_index, record in decoded_rows(ctx, source, result):
            first_name = record.first_name or record.last_name
            last_name = record.last_name if record.first_name else None
            if not first_name:
                result.skipped += 1
                continue
            if ctx.resolver.knows("contact", record.legacy_id):
                result.skipped += 1
                continue
            if not index.claim(record.email, _person_key(first_name, last_name)):
                result.skipped += 1
                continue

            in_serbia = not record.city or record.city.upper() == "SRBIJA"
            partner_id = _resolve_partner(ctx, record.partner_legacy_id)
            role = record.role.lower() if record.role else None
            function_area = role if role in function_areas else None
            notes = [
                f"Legacy partner ref: {record.partner_legacy_id}" if record.partner_legacy_id else None,
                f"Role: {record.role}" if record.role and function_area is None else None,
            ]
            writer.add(
                PendingRow(
                    values={
                        "id": new_id(),
                        "tenant_id": ctx.tenant_id,
                        "first_name": first_name,
                        "last_name": last_name,
                        "email": record.email,
                        "phone": record.phone,
                        "city": None if in_serbia else record.city,
                        "country": DEFAULT_COUNTRY if in_serbia else None,
                        "company_name": partner_names.get(partner_id) if partner_id else None,
                        "partner_id": partner_id,
                        "function_area": function_area,
                        "notes": " | ".join(n for n in notes if n) or None,
                    },
                    source_index=row_index,
                    legacy_id=record.legacy_id,
                )
            )
    return result


def import_employees(ctx: ImportContext, source: SourceFile) -> ImportResult:
    result = ImportResult()
    index = DedupIndex.from_table(
        ctx.engine,
        employees,
        ctx.tenant_id,
        primary=lambda row: row["email"],
        secondary=lambda row: row["full_name"],
        casefold_primary=True,
    )

    with ctx.writer(employees, result, on_written=ctx.registrar("employee")) as writer:
        for row_index, record in decoded_rows(ctx, source, result):
            if not record.first_name and not record.last_name:
                result.skipped += 1
                continue
            if ctx.resolver.knows("employee", record.legacy_id):
                result.skipped += 1
                continue
            full_name = " ".join(part for part in (record.first_name, record.last_name) if part)
            if not index.claim(record.email, full_name):
                result.skipped += 1
                continue

            notes = [
                f"Legacy ID: {record.legacy_id}" if record.legacy_id else None,
                f"JMBG: {record.jmbg}" if record.jmbg else None,
                f"Dept ID: {record.department_legacy_id}" if record.department_legacy_id else None,
            ]
            writer.add(
                PendingRow(
                    values={
                        "id": new_id(),
                        "tenant_id": ctx.tenant_id,
                        "full_name": full_name,
                        "first_name": record.first_name or "",
                        "last_name": record.last_name or "",
                        "email": record.email,
                        "phone": record.phone,
                        "department_id": ctx.resolver.resolve("department", record.department_legacy_id),
                        "status": "active",
                        "notes": " | ".join(n for n in notes if n) or None,
                    },
                    source_index=row_index,
                    legacy_id=record.legacy_id,
                )
            )
    return result


def import_employee_contracts(ctx: ImportContext, source: SourceFile) -> ImportResult:
    result = ImportResult()
    with ctx.writer(employee_contracts, result, on_written=ctx.registrar("employee_contract")) as writer:
        for row_index, record in decoded_rows(ctx, source, result):
            if ctx.resolver.knows("employee_contract", record.legacy_id):
                result.skipped += 1
                continue
            try:
                employee_id = ctx.resolver.require("employee", record.employee_legacy_id)
            except DependencyResolutionMiss as miss:
                logger.debug("%s row %d skipped: %s", source.filename, row_index, miss)
                result.skipped += 1
                continue
            if record.start_date is None:
                result.skipped += 1
                continue

            writer.add(
                PendingRow(
                    values={
                        "id": new_id(),
                        "tenant_id": ctx.tenant_id,
                        "employee_id": employee_id,
                        "contract_type": record.contract_type or "permanent",
                        "start_date": record.start_date,
                        "end_date": record.end_date,
                        "gross_salary": record.gross_salary or Decimal("0"),
                        "working_hours_per_week": 40,
                        "currency": BASE_CURRENCY,
                        "is_active": True,
                    },
                    source_index=row_index,
                    legacy_id=record.legacy_id,
                )
            )
    return result


# --------------------------------------------------------------------------- #
# Products & stock
# --------------------------------------------------------------------------- #


def _product_type(raw: Optional[str]) -> Optional[str]:
    if not raw:
        return None
    upper = raw.upper()
    if upper == "0" or "ROB" in upper or "GOOD" in upper:
        return "goods"
    if upper == "1" or "USL" in upper or "SERV" in upper:
        return "service"
    return None


def import_products(ctx: ImportContext, source: SourceFile) -> ImportResult:
    result = ImportResult()
    index = DedupIndex.from_table(
        ctx.engine,
        products,
        ctx.tenant_id,
        primary=lambda row: row["sku"],
        secondary=lambda row: row["name"],
    )
    tracks_legacy_ids = "legacy_id" in source.layout.columns
    quantities: List[Tuple[str, Decimal]] = []

    with ctx.writer(products, result, on_written=ctx.registrar("product")) as writer:
        for row_index, record in decoded_rows(ctx, source, result):
            if record.sku and record.quantity is not None:
                quantities.append((record.sku, record.quantity))
            if ctx.resolver.knows("product", record.legacy_id):
                result.skipped += 1
                continue
            if not index.claim(record.sku, record.name):
                result.skipped += 1
                continue

            if tracks_legacy_ids:
                product_type = _product_type(record.product_type)
                parts = [
                    f"Legacy ID: {record.legacy_id}" if record.legacy_id else None,
                    f"Type: {product_type}" if product_type else None,
                ]
            else:
                product_type = None
                parts = [
                    f"Brand: {record.brand}" if record.brand else None,
                    " > ".join(record.categories) if record.categories else None,
                ]

            writer.add(
                PendingRow(
                    values={
                        "id": new_id(),
                        "tenant_id": ctx.tenant_id,
                        "name": record.name,
                        "sku": record.sku,
                        "description": " | ".join(p for p in parts if p) or None,
                        "unit_of_measure": record.unit_of_measure or DEFAULT_UNIT,
                        "purchase_price": record.purchase_price or Decimal("0"),
                        "default_sale_price": record.sale_price or Decimal("0"),
                        "product_type": product_type or "goods",
                        "is_active": record.is_active is not False,
                    },
                    source_index=row_index,
                    legacy_id=record.legacy_id,
                )
            )

    if source.layout.post_import:
        result.post_import.extend(
            run_post_import_steps(ctx.engine, ctx.tenant_id, source.layout.post_import, quantities)
        )
    return result


def import_inventory_stock(ctx: ImportContext, source: SourceFile) -> ImportResult:
    result = ImportResult()
    with ctx.engine.connect() as conn:
        sku_to_id = {
            sku: product_id
            for product_id, sku in conn.execute(
                select(products.c.id, products.c.sku).where(
                    products.c.tenant_id == ctx.tenant_id, products.c.sku.isnot(None)
                )
            )
        }
        warehouse_rows = conn.execute(
            select(warehouses.c.id, warehouses.c.name)
            .where(warehouses.c.tenant_id == ctx.tenant_id)
            .order_by(warehouses.c.created_at, warehouses.c.id)
        ).all()
    warehouse_by_name = {name.lower(): warehouse_id for warehouse_id, name in warehouse_rows if name}
    default_warehouse = warehouse_rows[0][0] if warehouse_rows else None

    index = DedupIndex.from_table(
        ctx.engine,
        inventory_stock,
        ctx.tenant_id,
        primary=lambda row: f"{row['product_id']}|{row['warehouse_id']}",
    )

    with ctx.writer(inventory_stock, result) as writer:
        for row_index, record in decoded_rows(ctx, source, result):
            product_id = sku_to_id.get(record.sku)
            warehouse_id = warehouse_by_name.get(_lower(record.warehouse), default_warehouse)
            if product_id is None or warehouse_id is None:
                result.skipped += 1
                continue
            if not index.claim(f"{product_id}|{warehouse_id}"):
                result.skipped += 1
                continue
            writer.add(
                PendingRow(
                    values={
                        "id": new_id(),
                        "tenant_id": ctx.tenant_id,
                        "product_id": product_id,
                        "warehouse_id": warehouse_id,
                        "quantity_on_hand": record.quantity or Decimal("0"),
                        "unit_cost": record.unit_cost or Decimal("0"),
                    },
                    source_index=row_index,
                )
            )
    return result


# --------------------------------------------------------------------------- #
# Reference tables
# --------------------------------------------------------------------------- #


def _import_named_reference(ctx: ImportContext, source: SourceFile, table, entity_type: str) -> ImportResult:
    """Warehouses and departments: deduplicated by name, code defaults from the name."""
    result = ImportResult()
    index = DedupIndex.from_table(
        ctx.engine, table, ctx.tenant_id, primary=lambda row: row["name"], casefold_primary=True
    )
    with ctx.writer(table, result, on_written=ctx.registrar(entity_type)) as writer:
        for row_index, record in decoded_rows(ctx, source, result):
            if ctx.resolver.knows(entity_type, record.legacy_id):
                result.skipped += 1
                continue
            if not index.claim(record.name):
                result.skipped += 1
                continue
            writer.add(
                PendingRow(
                    values={
                        "id": new_id(),
                        "tenant_id": ctx.tenant_id,
                        "name": record.name,
                        "code": record.code or _code_from_name(record.name),
                    },
                    source_index=row_index,
                    legacy_id=record.legacy_id,
                )
            )
    return result


def import_warehouses(ctx: ImportContext, source: SourceFile) -> ImportResult:
    return _import_named_reference(ctx, source, warehouses, "warehouse")


def import_departments(ctx: ImportContext, source: SourceFile) -> ImportResult:
    return _import_named_reference(ctx, source, departments, "department")


def import_currencies(ctx: ImportContext, source: SourceFile) -> ImportResult:
    result = ImportResult()
    allowed = {code.upper() for code in source.layout.allowed_codes or []}
    index = DedupIndex.from_table(ctx.engine, currencies, ctx.tenant_id, primary=lambda row: row["code"])

    with ctx.writer(currencies, result) as writer:
        for row_index, record in decoded_rows(ctx, source, result):
            code = record.code.upper()
            if allowed and code not in allowed:
                result.skipped += 1
                continue
            if not index.claim(code):
                result.skipped += 1
                continue
            writer.add(
                PendingRow(
                    values={
                        "id": new_id(),
                        "tenant_id": ctx.tenant_id,
                        "code": code,
                        "name": record.name or code,
                        "symbol": record.symbol,
                        "is_base": code == BASE_CURRENCY,
                        "is_active": True,
                    },
                    source_index=row_index,
                    legacy_id=record.legacy_id,
                )
            )
    return result


def normalize_tax_rate(raw: Optional[Decimal]) -> Decimal:
    """Fractions (0.2) become percentages (20); percentages pass through."""
    rate = raw if raw is not None else Decimal("0")
    if rate <= 1:
        rate = (rate * 100).quantize(Decimal("1"))
    return rate


def import_tax_rates(ctx: ImportContext, source: SourceFile) -> ImportResult:
    result = ImportResult()
    index = DedupIndex.from_table(
        ctx.engine, tax_rates, ctx.tenant_id, primary=lambda row: row["name"], casefold_primary=True
    )
    with ctx.writer(tax_rates, result, on_written=ctx.registrar("tax_rate")) as writer:
        for row_index, record in decoded_rows(ctx, source, result):
            if not index.claim(record.name):
                result.skipped += 1
                continue
            rate = normalize_tax_rate(record.rate)
            writer.add(
                PendingRow(
                    values={
                        "id": new_id(),
                        "tenant_id": ctx.tenant_id,
                        "name": record.name,
                        "rate": rate,
                        "is_default": rate == 20,
                        "is_active": True,
                    },
                    source_index=row_index,
                    legacy_id=record.legacy_id,
                )
            )
    return result


def import_legal_entities(ctx: ImportContext, source: SourceFile) -> ImportResult:
    result = ImportResult()
    index = DedupIndex.from_table(
        ctx.engine, legal_entities, ctx.tenant_id, primary=lambda row: row["name"], casefold_primary=True
    )
    with ctx.writer(legal_entities, result) as writer:
        for row_index, record in decoded_rows(ctx, source, result):
            if not index.claim(record.name):
                result.skipped += 1
                continue
            writer.add(
                PendingRow(
                    values={
                        "id": new_id(),
                        "tenant_id": ctx.tenant_id,
                        "name": record.name,
                        "address": record.address,
                        "pib": record.pib,
                        "maticni_broj": record.maticni_broj,
                        "country": "RS",
                    },
                    source_index=row_index,
                    legacy_id=record.legacy_id,
                )
            )
    return result


_ACCOUNT_CLASS_TYPES = {
    "0": "fixed_asset",
    "1": "asset",
    "2": "asset",
    "3": "asset",
    "4": "liability",
    "5": "expense",
    "6": "revenue",
    "7": "revenue",
    "8": "equity",
}
_ACCOUNT_TYPE_HINTS = (
    (re.compile(r"prih|revenue|income", re.IGNORECASE), "revenue"),
    (re.compile(r"rash|expense|cost", re.IGNORECASE), "expense"),
    (re.compile(r"aktiv|asset", re.IGNORECASE), "asset"),
    (re.compile(r"obav|liab", re.IGNORECASE), "liability"),
    (re.compile(r"kapital|equity", re.IGNORECASE), "equity"),
)


def account_type_for(code: str, hint: Optional[str] = None) -> str:
    """Account class from the first digit of the code; an explicit type column wins."""
    if hint:
        for pattern, account_type in _ACCOUNT_TYPE_HINTS:
            if pattern.search(hint):
                return account_type
    return _ACCOUNT_CLASS_TYPES.get(code[:1], "other")


def import_chart_of_accounts(ctx: ImportContext, source: SourceFile) -> ImportResult:
    result = ImportResult()
    index = DedupIndex.from_table(ctx.engine, chart_of_accounts, ctx.tenant_id, primary=lambda row: row["code"])
    with ctx.writer(chart_of_accounts, result) as writer:
        for row_index, record in decoded_rows(ctx, source, result):
            if not record.name:
                result.skipped += 1
                continue
            if not index.claim(record.code):
                result.skipped += 1
                continue
            writer.add(
                PendingRow(
                    values={
                        "id": new_id(),
                        "tenant_id": ctx.tenant_id,
                        "code": record.code,
                        "name": record.name,
                        "account_type": account_type_for(record.code, record.account_type),
                        "level": len(record.code),
                        "is_active": True,
                    },
                    source_index=row_index,
                )
            )
    return result


# --------------------------------------------------------------------------- #
# Opportunities
# --------------------------------------------------------------------------- #


def import_opportunities(ctx: ImportContext, source: SourceFile) -> ImportResult:
    result = ImportResult()
    index = DedupIndex.from_table(
        ctx.engine, opportunities, ctx.tenant_id, primary=lambda row: row["title"], casefold_primary=True
    )
    with ctx.writer(opportunities, result, on_written=ctx.registrar("opportunity")) as writer:
        for row_index, record in decoded_rows(ctx, source, result):
            if ctx.resolver.knows("opportunity", record.legacy_id):
                result.skipped += 1
                continue
            if not index.claim(record.name):
                result.skipped += 1
                continue
            writer.add(
                PendingRow(
                    values={
                        "id": new_id(),
                        "tenant_id": ctx.tenant_id,
                        "title": record.name,
                        "partner_id": _resolve_partner(ctx, record.partner_legacy_id),
                        "value": record.value or Decimal("0"),
                        "currency": BASE_CURRENCY,
                        "stage": "prospecting",
                        "probability": 10,
                        "expected_close_date": record.end_date,
                        "notes": f"Imported from legacy {source.table_name or source.filename}",
                    },
                    source_index=row_index,
                    legacy_id=record.legacy_id,
                )
            )
    return result


# --------------------------------------------------------------------------- #
# Documents
# --------------------------------------------------------------------------- #


@dataclass(frozen=True)
class DocumentTarget:
    entity_type: str
    number_column: str
    date_column: str
    party: str
    lines_table: str
    parent_column: str


DOCUMENT_TARGETS: Dict[str, DocumentTarget] = {
    "invoices": DocumentTarget("invoice", "invoice_number", "invoice_date", "partner", "invoice_lines", "invoice_id"),
    "purchase_orders": DocumentTarget(
        "purchase_order", "order_number", "order_date", "supplier", "purchase_order_lines", "purchase_order_id"
    ),
    "quotes": DocumentTarget("quote", "quote_number", "quote_date", "partner", "quote_lines", "quote_id"),
}
HEADER_ENTITY_TABLES = {target.entity_type: name for name, target in DOCUMENT_TARGETS.items()}


def import_document_headers(ctx: ImportContext, source: SourceFile) -> ImportResult:
    """Route each header to invoices, purchase orders or quotes by its number suffix."""
    result = ImportResult()
    partner_names = _partner_names(ctx)
    indexes: Dict[str, DedupIndex] = {}
    writers: Dict[str, BatchWriter] = {}
    header_entities = tuple(HEADER_ENTITY_TABLES)

    def writer_for(table_name: str) -> BatchWriter:
        if table_name not in writers:
            target = DOCUMENT_TARGETS[table_name]
            writers[table_name] = ctx.writer(
                TARGET_TABLES[table_name], result, on_written=ctx.registrar(target.entity_type)
            )
            indexes[table_name] = DedupIndex.from_table(
                ctx.engine,
                TARGET_TABLES[table_name],
                ctx.tenant_id,
                primary=lambda row, column=target.number_column: row[column],
            )
        return writers[table_name]

    for row_index, record in decoded_rows(ctx, source, result):
        if record.doc_number == "0":
            result.skipped += 1
            continue
        if ctx.resolver.resolve_any(header_entities, record.legacy_id) is not None:
            result.skipped += 1
            continue

        table_name = ctx.catalog.route_document(record.doc_number)
        target = DOCUMENT_TARGETS[table_name]
        writer = writer_for(table_name)
        if not indexes[table_name].claim(record.doc_number):
            result.skipped += 1
            continue

        partner_id = _resolve_partner(ctx, record.partner_legacy_id)
        writer.add(
            PendingRow(
                values={
                    "id": new_id(),
                    "tenant_id": ctx.tenant_id,
                    target.number_column: record.doc_number,
                    target.date_column: record.doc_date or date.today(),
                    f"{target.party}_id": partner_id,
                    f"{target.party}_name": partner_names.get(partner_id, "Imported") if partner_id else "Imported",
                    "total": record.total or Decimal("0"),
                    "currency": BASE_CURRENCY,
                    "status": "draft",
                    "notes": f"Imported from legacy DocumentHeader (doc_list: {record.doc_list_id or ''})",
                },
                source_index=row_index,
                legacy_id=record.legacy_id,
            )
        )

    for table_name, writer in writers.items():
        writer.close()
        logger.info("%s: %d batches written to %s", source.filename, writer.batches_written, table_name)
    return result


def import_document_lines(ctx: ImportContext, source: SourceFile) -> ImportResult:
    """Attach lines to the header table their parent document was routed to."""
    result = ImportResult()
    writers: Dict[str, BatchWriter] = {}
    sort_orders: Dict[str, int] = {}
    header_entities = tuple(HEADER_ENTITY_TABLES)

    for row_index, record in decoded_rows(ctx, source, result):
        if ctx.resolver.knows("document_line", record.legacy_id):
            result.skipped += 1
            continue
        header = ctx.resolver.resolve_any(header_entities, record.header_legacy_id)
        if header is None:
            miss = DependencyResolutionMiss("document header", record.header_legacy_id)
            logger.debug("%s row %d skipped: %s", source.filename, row_index, miss)
            result.skipped += 1
            continue

        entity_type, header_id = header
        target = DOCUMENT_TARGETS[HEADER_ENTITY_TABLES[entity_type]]
        if target.lines_table not in writers:
            writers[target.lines_table] = ctx.writer(
                TARGET_TABLES[target.lines_table], result, on_written=ctx.registrar("document_line")
            )
        sort_orders[header_id] = sort_orders.get(header_id, 0) + 1

        writers[target.lines_table].add(
            PendingRow(
                values={
                    "id": new_id(),
                    "tenant_id": ctx.tenant_id,
                    target.parent_column: header_id,
                    "product_id": ctx.resolver.resolve("product", record.item_legacy_id),
                    "description": f"Legacy item {record.item_legacy_id}" if record.item_legacy_id else None,
                    "quantity": record.quantity or Decimal("0"),
                    "unit_price": record.unit_price or Decimal("0"),
                    "discount_percent": record.discount or Decimal("0"),
                    "sort_order": sort_orders[header_id],
                },
                source_index=row_index,
                legacy_id=record.legacy_id,
            )
        )

    for writer in writers.values():
        writer.close()
    return result


# --------------------------------------------------------------------------- #
# Registry
# --------------------------------------------------------------------------- #

Importer = Callable[[ImportContext, SourceFile], ImportResult]

_LINE_TARGETS = ("document_lines", "invoice_lines", "purchase_order_lines", "quote_lines")

IMPORTERS: Dict[str, Tuple[FrozenSet[str], Importer]] = {
    "partners": (frozenset({"partner", "partner_location"}), import_partners),
    "partner_locations": (frozenset({"partner_location"}), import_partner_locations),
    "contacts": (frozenset({"contact"}), import_contacts),
    "employees": (frozenset({"employee"}), import_employees),
    "employee_contracts": (frozenset({"employee_contract"}), import_employee_contracts),
    "products": (frozenset({"product"}), import_products),
    "inventory_stock": (frozenset({"stock"}), import_inventory_stock),
    "warehouses": (frozenset({"warehouse"}), import_warehouses),
    "departments": (frozenset({"department"}), import_departments),
    "currencies": (frozenset({"currency"}), import_currencies),
    "tax_rates": (frozenset({"tax"}), import_tax_rates),
    "legal_entities": (frozenset({"legal_entity"}), import_legal_entities),
    "chart_of_accounts": (frozenset({"account"}), import_chart_of_accounts),
    "opportunities": (frozenset({"opportunity"}), import_opportunities),
}
IMPORTERS.update({name: (frozenset({"document_header"}), import_document_headers) for name in DOCUMENT_TARGETS})
IMPORTERS.update({name: (frozenset({"document_line"}), import_document_lines) for name in _LINE_TARGETS})


def resolve_importer(target_table: str, layout: Optional[SourceTable]) -> Importer:
    """
    Pick the importer for ``target_table``.

    Raises:
        UnknownTableError: no importer exists for the target, the file has
            no known column layout, or its record kind does not fit the target.
    """
    entry = IMPORTERS.get(target_table)
    if entry is None:
        raise UnknownTableError(f"Table '{target_table}' does not have a dedicated importer")
    kinds, importer = entry
    if layout is None:
        raise UnknownTableError(f"No column layout is known for this file (target '{target_table}')")
    if layout.kind not in kinds:
        raise UnknownTableError(f"'{layout.kind}' rows cannot be imported into '{target_table}'")
    return importer


def skip_unsupported(ctx: ImportContext, source: SourceFile, detail: str) -> ImportResult:
    """Count every data row as skipped and explain why once."""
    rows = parse_source(ctx, source).row_count
    logger.info("%s: %s, %d rows skipped", source.filename, detail, rows)
    result = ImportResult(skipped=rows)
    result.add_error(-1, f"{NO_IMPORTER_REASON}: {detail} ({rows} rows skipped)")
    return result


def import_source(ctx: ImportContext, source: SourceFile, target_table: str) -> ImportResult:
    try:
        importer = resolve_importer(target_table, source.layout)
    except UnknownTableError as exc:
        return skip_unsupported(ctx, source, str(exc))
    return importer(ctx, source)
