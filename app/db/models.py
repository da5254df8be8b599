"""
Table definitions for the migration target schema and the import bookkeeping
tables (sessions, per-file progress, legacy id map).

Every business table is tenant scoped. Identifiers are UUID strings generated
in Python so importers know a row's id before the batch is written.
"""
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
)

metadata = MetaData()


def _utcnow() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def _id_column() -> Column:
    return Column("id", String(36), primary_key=True, default=new_id)


def _tenant_column() -> Column:
    return Column("tenant_id", String(36), nullable=False, index=True)


def _created_column() -> Column:
    return Column("created_at", DateTime(timezone=True), default=_utcnow)


# --------------------------------------------------------------------------- #
# Reference tables
# --------------------------------------------------------------------------- #

legal_entities = Table(
    "legal_entities",
    metadata,
    _id_column(),
    _tenant_column(),
    Column("name", String(255), nullable=False),
    Column("address", String(255)),
    Column("pib", String(32)),
    Column("maticni_broj", String(64)),
    Column("country", String(64), default="RS"),
    _created_column(),
)

currencies = Table(
    "currencies",
    metadata,
    _id_column(),
    _tenant_column(),
    Column("code", String(8), nullable=False),
    Column("name", String(128), nullable=False),
    Column("symbol", String(16)),
    Column("is_base", Boolean, default=False),
    Column("is_active", Boolean, default=True),
    _created_column(),
    UniqueConstraint("tenant_id", "code", name="uq_currencies_tenant_code"),
)

departments = Table(
    "departments",
    metadata,
    _id_column(),
    _tenant_column(),
    Column("name", String(255), nullable=False),
    Column("code", String(32)),
    _created_column(),
)

warehouses = Table(
    "warehouses",
    metadata,
    _id_column(),
    _tenant_column(),
    Column("name", String(255), nullable=False),
    Column("code", String(32)),
    _created_column(),
)

tax_rates = Table(
    "tax_rates",
    metadata,
    _id_column(),
    _tenant_column(),
    Column("name", String(128), nullable=False),
    Column("rate", Numeric(7, 2), nullable=False),
    Column("is_default", Boolean, default=False),
    Column("is_active", Boolean, default=True),
    _created_column(),
)

chart_of_accounts = Table(
    "chart_of_accounts",
    metadata,
    _id_column(),
    _tenant_column(),
    Column("code", String(32), nullable=False),
    Column("name", String(255), nullable=False),
    Column("account_type", String(32), nullable=False),
    Column("level", Integer, nullable=False),
    Column("is_active", Boolean, default=True),
    _created_column(),
    UniqueConstraint("tenant_id", "code", name="uq_chart_of_accounts_tenant_code"),
)

# --------------------------------------------------------------------------- #
# Independent entities
# --------------------------------------------------------------------------- #

products = Table(
    "products",
    metadata,
    _id_column(),
    _tenant_column(),
    Column("name", String(255), nullable=False),
    Column("sku", String(128)),
    Column("description", Text),
    Column("unit_of_measure", String(32), default="kom"),
    Column("purchase_price", Numeric(18, 4), default=0),
    Column("default_sale_price", Numeric(18, 4), default=0),
    Column("product_type", String(16), default="goods"),
    Column("is_active", Boolean, default=True),
    _created_column(),
    UniqueConstraint("tenant_id", "sku", name="uq_products_tenant_sku"),
)

partners = Table(
    "partners",
    metadata,
    _id_column(),
    _tenant_column(),
    Column("name", String(255), nullable=False),
    Column("pib", String(32)),
    Column("maticni_broj", String(64)),
    Column("city", String(128)),
    Column("address", String(255)),
    Column("country", String(64), default="Serbia"),
    Column("contact_person", String(255)),
    Column("partner_type", String(32), default="customer"),
    Column("is_active", Boolean, default=True),
    _created_column(),
    UniqueConstraint("tenant_id", "pib", name="uq_partners_tenant_pib"),
)

contacts = Table(
    "contacts",
    metadata,
    _id_column(),
    _tenant_column(),
    Column("first_name", String(128)),
    Column("last_name", String(128)),
    Column("email", String(255)),
    Column("phone", String(64)),
    Column("city", String(128)),
    Column("country", String(64)),
    Column("company_name", String(255)),
    Column("partner_id", String(36)),
    Column("function_area", String(32)),
    Column("notes", Text),
    _created_column(),
)

employees = Table(
    "employees",
    metadata,
    _id_column(),
    _tenant_column(),
    Column("full_name", String(255), nullable=False),
    Column("first_name", String(128)),
    Column("last_name", String(128)),
    Column("email", String(255)),
    Column("phone", String(64)),
    Column("department_id", String(36)),
    Column("status", String(32), default="active"),
    Column("notes", Text),
    _created_column(),
)

# --------------------------------------------------------------------------- #
# Entity extensions
# --------------------------------------------------------------------------- #

employee_contracts = Table(
    "employee_contracts",
    metadata,
    _id_column(),
    _tenant_column(),
    Column("employee_id", String(36), nullable=False),
    Column("contract_type", String(32), default="permanent"),
    Column("start_date", Date, nullable=False),
    Column("end_date", Date),
    Column("gross_salary", Numeric(18, 2), default=0),
    Column("working_hours_per_week", Integer, default=40),
    Column("currency", String(8), default="RSD"),
    Column("is_active", Boolean, default=True),
    _created_column(),
)

inventory_stock = Table(
    "inventory_stock",
    metadata,
    _id_column(),
    _tenant_column(),
    Column("product_id", String(36), nullable=False),
    Column("warehouse_id", String(36), nullable=False),
    Column("quantity_on_hand", Numeric(18, 4), default=0),
    Column("unit_cost", Numeric(18, 4), default=0),
    _created_column(),
    UniqueConstraint("product_id", "warehouse_id", name="uq_inventory_stock_product_warehouse"),
)

opportunities = Table(
    "opportunities",
    metadata,
    _id_column(),
    _tenant_column(),
    Column("title", String(255), nullable=False),
    Column("partner_id", String(36)),
    Column("value", Numeric(18, 2), default=0),
    Column("currency", String(8), default="RSD"),
    Column("stage", String(32), default="prospecting"),
    Column("probability", Integer, default=10),
    Column("expected_close_date", Date),
    Column("notes", Text),
    _created_column(),
)

# --------------------------------------------------------------------------- #
# Transactional headers and lines
# --------------------------------------------------------------------------- #


def _document_header(name: str, number_column: str, date_column: str, party_prefix: str) -> Table:
    return Table(
        name,
        metadata,
        _id_column(),
        _tenant_column(),
        Column(number_column, String(64), nullable=False),
        Column(date_column, Date),
        Column(f"{party_prefix}_id", String(36)),
        Column(f"{party_prefix}_name", String(255)),
        Column("total", Numeric(18, 2), default=0),
        Column("currency", String(8), default="RSD"),
        Column("status", String(32), default="draft"),
        Column("notes", Text),
        _created_column(),
        UniqueConstraint("tenant_id", number_column, name=f"uq_{name}_tenant_number"),
    )


def _document_lines(name: str, parent_column: str) -> Table:
    return Table(
        name,
        metadata,
        _id_column(),
        _tenant_column(),
        Column(parent_column, String(36), nullable=False, index=True),
        Column("product_id", String(36)),
        Column("description", String(255)),
        Column("quantity", Numeric(18, 4), default=1),
        Column("unit_price", Numeric(18, 4), default=0),
        Column("discount_percent", Numeric(7, 2), default=0),
        Column("sort_order", Integer, default=0),
        _created_column(),
    )


invoices = _document_header("invoices", "invoice_number", "invoice_date", "partner")
purchase_orders = _document_header("purchase_orders", "order_number", "order_date", "supplier")
quotes = _document_header("quotes", "quote_number", "quote_date", "partner")

invoice_lines = _document_lines("invoice_lines", "invoice_id")
purchase_order_lines = _document_lines("purchase_order_lines", "purchase_order_id")
quote_lines = _document_lines("quote_lines", "quote_id")

# --------------------------------------------------------------------------- #
# Import bookkeeping
# --------------------------------------------------------------------------- #

legacy_id_map = Table(
    "legacy_id_map",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    _tenant_column(),
    Column("entity_type", String(64), nullable=False),
    Column("legacy_id", String(128), nullable=False),
    Column("internal_id", String(36), nullable=False),
    _created_column(),
    UniqueConstraint("tenant_id", "entity_type", "legacy_id", name="uq_legacy_id_map_key"),
)

legacy_import_sessions = Table(
    "legacy_import_sessions",
    metadata,
    _id_column(),
    _tenant_column(),
    Column("archive_name", String(255), nullable=False),
    Column("storage_path", String(512)),
    Column("status", String(32), nullable=False, default="uploading"),
    Column("analysis", JSON),
    Column("confirmed_mapping", JSON),
    Column("import_results", JSON),
    Column("error_message", Text),
    _created_column(),
    Column("updated_at", DateTime(timezone=True), default=_utcnow, onupdate=_utcnow),
)

legacy_import_progress = Table(
    "legacy_import_progress",
    metadata,
    _id_column(),
    Column("session_id", String(36), nullable=False, index=True),
    _tenant_column(),
    Column("filename", String(255), nullable=False),
    Column("target_table", String(64), nullable=False),
    Column("status", String(16), nullable=False, default="pending"),
    Column("result", JSON),
    Column("error_message", Text),
    Column("started_at", DateTime(timezone=True)),
    Column("finished_at", DateTime(timezone=True)),
    _created_column(),
    UniqueConstraint("session_id", "filename", name="uq_legacy_import_progress_file"),
)

TARGET_TABLES = {
    table.name: table
    for table in (
        legal_entities,
        currencies,
        departments,
        warehouses,
        tax_rates,
        chart_of_accounts,
        products,
        partners,
        contacts,
        employees,
        employee_contracts,
        inventory_stock,
        opportunities,
        invoices,
        purchase_orders,
        quotes,
        invoice_lines,
        purchase_order_lines,
        quote_lines,
    )
}
