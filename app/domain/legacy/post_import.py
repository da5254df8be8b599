"""
Follow-up steps that run after a file's own rows are written.

Each step reports its outcome as a ``PostImportReport`` on the file's result
instead of failing the file.
"""
import logging
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from app.api.schemas.legacy_import import PostImportReport
from app.db.models import inventory_stock, new_id, products, warehouses

logger = logging.getLogger(__name__)

SEED_INVENTORY_STOCK = "seed_inventory_stock"


def seed_inventory_stock(
    engine: Engine, tenant_id: str, quantities: Iterable[Tuple[str, Decimal]]
) -> PostImportReport:
    """
    Seed opening stock into the tenant's first warehouse.

    Only SKUs with a positive quantity are seeded; product/warehouse pairs
    that already hold stock are left alone.
    """
    wanted: Dict[str, Decimal] = {}
    for sku, quantity in quantities:
        if quantity is not None and quantity > 0 and sku not in wanted:
            wanted[sku] = quantity
    if not wanted:
        return PostImportReport(step=SEED_INVENTORY_STOCK, status="skipped", detail="No items with quantity > 0")

    try:
        with engine.begin() as conn:
            warehouse_id = conn.execute(
                select(warehouses.c.id)
                .where(warehouses.c.tenant_id == tenant_id)
                .order_by(warehouses.c.created_at, warehouses.c.id)
                .limit(1)
            ).scalar()
            if warehouse_id is None:
                return PostImportReport(
                    step=SEED_INVENTORY_STOCK,
                    status="skipped",
                    detail="Tenant has no warehouse to seed stock into",
                )

            sku_to_id = {
                sku: product_id
                for product_id, sku in conn.execute(
                    select(products.c.id, products.c.sku).where(
                        products.c.tenant_id == tenant_id, products.c.sku.in_(list(wanted))
                    )
                )
            }
            stocked = set(
                conn.execute(
                    select(inventory_stock.c.product_id).where(inventory_stock.c.warehouse_id == warehouse_id)
                ).scalars()
            )

            rows = [
                {
                    "id": new_id(),
                    "tenant_id": tenant_id,
                    "product_id": sku_to_id[sku],
                    "warehouse_id": warehouse_id,
                    "quantity_on_hand": quantity,
                }
                for sku, quantity in wanted.items()
                if sku in sku_to_id and sku_to_id[sku] not in stocked
            ]
            if rows:
                conn.execute(inventory_stock.insert(), rows)
    except SQLAlchemyError as exc:
        logger.error("Stock seeding failed for tenant %s: %s", tenant_id, exc)
        return PostImportReport(step=SEED_INVENTORY_STOCK, status="failed", detail=str(exc)[:300])

    logger.info("Seeded %d inventory rows into warehouse %s", len(rows), warehouse_id)
    return PostImportReport(step=SEED_INVENTORY_STOCK, status="done", rows=len(rows))


POST_IMPORT_STEPS: Dict[str, Callable[..., PostImportReport]] = {
    SEED_INVENTORY_STOCK: seed_inventory_stock,
}


def run_post_import_steps(
    engine: Engine, tenant_id: str, steps: Sequence[str], quantities: List[Tuple[str, Decimal]]
) -> List[PostImportReport]:
    reports = []
    for step in steps:
        handler = POST_IMPORT_STEPS.get(step)
        if handler is None:
            logger.warning("Unknown post-import step '%s' ignored", step)
            reports.append(PostImportReport(step=step, status="skipped", detail="Unknown step"))
            continue
        reports.append(handler(engine, tenant_id, quantities))
    return reports
