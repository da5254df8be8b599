from app.db.models import new_id, partners
from app.domain.legacy.dedup import DedupIndex, normalize_key


def test_normalize_key():
    assert normalize_key("  Abc ") == "Abc"
    assert normalize_key("  Abc ", casefold=True) == "abc"
    assert normalize_key("   ") is None
    assert normalize_key(None) is None


def test_primary_key_decides_when_present():
    index = DedupIndex(primary=["101"], secondary=["uniprom"])

    # Same name, different tax id: not a duplicate.
    assert index.claim("102", "Uniprom") is True
    assert index.claim("101", "Other") is False


def test_secondary_key_is_case_insensitive_fallback():
    index = DedupIndex(secondary=["Uniprom d.o.o."])

    assert index.seen(None, "UNIPROM D.O.O.") is True
    assert index.seen(None, "Uniprom doo") is False


def test_claim_catches_duplicates_within_one_file():
    index = DedupIndex()

    assert index.claim("101", "A") is True
    assert index.claim("101", "B") is False
    assert index.claim(None, "a") is False


def test_extra_key_rejects_on_its_own():
    index = DedupIndex(extra=["LEG:P001"])
    assert index.claim("999", "New partner", "LEG:P001") is False


def test_from_table_is_tenant_scoped(engine):
    with engine.begin() as conn:
        conn.execute(
            partners.insert(),
            [
                {"id": new_id(), "tenant_id": "t1", "name": "Alfa", "pib": "100"},
                {"id": new_id(), "tenant_id": "t2", "name": "Beta", "pib": "200"},
            ],
        )

    index = DedupIndex.from_table(
        engine,
        partners,
        "t1",
        primary=lambda row: row["pib"],
        secondary=lambda row: row["name"],
    )

    assert index.seen("100") is True
    assert index.seen("200") is False
    assert index.seen(None, "alfa") is True
