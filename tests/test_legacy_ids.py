import pytest
from sqlalchemy import select

from app.db.models import legacy_id_map, new_id, partners, products
from app.domain.legacy.errors import DependencyResolutionMiss
from app.domain.legacy.legacy_ids import LegacyIdResolver


def test_registered_ids_resolve_and_persist(engine, tenant_id):
    resolver = LegacyIdResolver(engine, tenant_id)
    resolver.register("partner", "17", "internal-17")
    resolver.register("partner", " 18 ", "internal-18")

    assert resolver.resolve("partner", "17") == "internal-17"
    assert resolver.resolve("partner", "18") == "internal-18"
    assert resolver.pending_count == 2

    assert resolver.persist() == 2
    assert resolver.pending_count == 0

    fresh = LegacyIdResolver(engine, tenant_id)
    assert fresh.resolve("partner", "17") == "internal-17"


def test_persist_leaves_existing_keys_alone(engine, tenant_id):
    first = LegacyIdResolver(engine, tenant_id)
    first.register("product", "5", "a")
    first.persist()

    second = LegacyIdResolver(engine, tenant_id)
    second._maps["product"] = {}
    second.register("product", "5", "b")
    assert second.persist() == 0

    with engine.connect() as conn:
        stored = conn.execute(select(legacy_id_map.c.internal_id)).scalars().all()
    assert stored == ["a"]


def test_ids_are_tenant_scoped(engine):
    resolver = LegacyIdResolver(engine, "t1")
    resolver.register("partner", "1", "x")
    resolver.persist()

    assert LegacyIdResolver(engine, "t2").resolve("partner", "1") is None


def test_backfill_from_free_text_tags(engine, tenant_id):
    product_id = new_id()
    partner_id = new_id()
    with engine.begin() as conn:
        conn.execute(
            products.insert().values(
                id=product_id, tenant_id=tenant_id, name="Kafa", sku="K1", description="Legacy ID: 77 | Type: goods"
            )
        )
        conn.execute(
            partners.insert().values(id=partner_id, tenant_id=tenant_id, name="Alfa", maticni_broj="LEG:P009")
        )

    resolver = LegacyIdResolver(engine, tenant_id)

    assert resolver.resolve("product", "77") == product_id
    assert resolver.resolve("partner_code", "P009") == partner_id
    assert resolver.pending_count == 0


def test_require_falls_back_and_raises(engine, tenant_id):
    resolver = LegacyIdResolver(engine, tenant_id)
    resolver.register("partner_code", "P1", "by-code")

    assert resolver.require("partner", "P1", "partner_code") == "by-code"
    assert resolver.resolve_any(("partner", "partner_code"), "P1") == ("partner_code", "by-code")

    with pytest.raises(DependencyResolutionMiss) as excinfo:
        resolver.require("partner", "missing")
    assert excinfo.value.entity_type == "partner"
    assert excinfo.value.legacy_id == "missing"


def test_blank_ids_are_ignored(engine, tenant_id):
    resolver = LegacyIdResolver(engine, tenant_id)
    resolver.register("partner", "", "x")
    resolver.register("partner", None, "x")

    assert resolver.pending_count == 0
    assert resolver.resolve("partner", "  ") is None
    assert resolver.knows("partner", None) is False
