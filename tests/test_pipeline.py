from decimal import Decimal

import pytest
from sqlalchemy import func, select

from app.api.schemas.legacy_import import Confidence, MappingEntry
from app.db.models import (
    inventory_stock,
    invoice_lines,
    invoices,
    legacy_id_map,
    new_id,
    partners,
    products,
    purchase_order_lines,
    purchase_orders,
    quotes,
    tax_rates,
    warehouses,
)
from app.domain.legacy import sessions
from app.domain.legacy.errors import ArchiveReadError, DuplicateFileError
from app.domain.legacy.pipeline import (
    EMPTY_FILE_REASON,
    analyze_archive,
    import_archive,
    import_file,
    sort_mappings,
    summarize_results,
)
from tests.utils.archives import build_archive, item_rows, partner_rows


def _count(engine, table):
    with engine.connect() as conn:
        return conn.execute(select(func.count()).select_from(table)).scalar()


def _seed_partner_tax_ids(engine, tenant_id, numbers):
    with engine.begin() as conn:
        conn.execute(
            partners.insert(),
            [
                {"id": new_id(), "tenant_id": tenant_id, "name": f"Existing {n}", "pib": f"10{n:07d}"}
                for n in numbers
            ],
        )


def _mapping(filename, target):
    return MappingEntry(filename=filename, target_table=target)


# --------------------------------------------------------------------------- #
# Ordering
# --------------------------------------------------------------------------- #


def test_headers_are_imported_before_their_lines():
    mappings = [
        _mapping("lines.csv", "invoice_lines"),
        _mapping("headers.csv", "invoices"),
        _mapping("partners.csv", "partners"),
    ]

    ordered = [m.target_table for m in sort_mappings(mappings)]

    assert ordered == ["partners", "invoices", "invoice_lines"]


def test_unknown_targets_go_last_in_input_order():
    mappings = [
        _mapping("b.csv", "mystery_b"),
        _mapping("a.csv", "mystery_a"),
        _mapping("c.csv", "currencies"),
    ]

    ordered = [m.filename for m in sort_mappings(mappings)]

    assert ordered == ["c.csv", "b.csv", "a.csv"]


# --------------------------------------------------------------------------- #
# Analysis
# --------------------------------------------------------------------------- #


def test_analysis_orders_reviewable_files_first():
    archive = build_archive(
        {
            "export/dbo.Item.csv": item_rows(5),
            "export/dbo.Partner.csv": partner_rows(10),
            "export/dbo.City.csv": "1,Beograd,Beograd,,1\n2,Novi Sad,Novi Sad,,1\n",
            "export/prazno.csv": "",
            "export/readme.txt": "not a csv",
            "__MACOSX/export/._dbo.Partner.csv": "junk",
        }
    )

    files = analyze_archive(archive)

    assert [f.filename for f in files] == ["dbo.Partner.csv", "dbo.Item.csv", "dbo.City.csv", "prazno.csv"]

    partner, item, city, empty = files
    assert partner.full_path == "export/dbo.Partner.csv"
    assert partner.confidence == Confidence.EXACT
    assert partner.row_count == 10
    assert len(partner.sample_rows) == 3
    assert partner.headers[0] == "col_1"
    assert partner.accepted is True
    assert item.suggested_target == "products"

    assert city.auto_skip is True
    assert city.accepted is False

    assert empty.is_empty is True
    assert empty.auto_skip is True
    assert empty.skip_reason == EMPTY_FILE_REASON


def test_medium_confidence_files_need_review():
    archive = build_archive({"kontakti_export.csv": "Ime,Prezime,Email\nAna,Ilic,ana@example.com\n"})

    (contacts_file,) = analyze_archive(archive)

    assert contacts_file.suggested_target == "contacts"
    assert contacts_file.confidence == Confidence.MEDIUM
    assert contacts_file.accepted is False
    assert contacts_file.headers == ["Ime", "Prezime", "Email"]


def test_corrupt_archive_is_fatal():
    with pytest.raises(ArchiveReadError):
        analyze_archive(b"this is not a zip")


# --------------------------------------------------------------------------- #
# Import
# --------------------------------------------------------------------------- #


def test_partner_and_item_end_to_end(engine, tenant_id):
    _seed_partner_tax_ids(engine, tenant_id, [2, 5, 9])
    archive = build_archive({"dbo.Partner.csv": partner_rows(10), "dbo.Item.csv": item_rows(5)})

    files = analyze_archive(archive)
    assert {f.filename: f.confidence for f in files} == {
        "dbo.Partner.csv": Confidence.EXACT,
        "dbo.Item.csv": Confidence.EXACT,
    }

    mappings = [_mapping("dbo.Partner.csv", "partners"), _mapping("dbo.Item.csv", "products")]
    results = import_archive(archive, tenant_id, mappings, engine=engine)

    partner_result = results["dbo.Partner.csv"]
    assert (partner_result.inserted, partner_result.skipped, partner_result.errors) == (7, 3, [])
    item_result = results["dbo.Item.csv"]
    assert (item_result.inserted, item_result.skipped, item_result.errors) == (5, 0, [])

    assert _count(engine, partners) == 10
    assert _count(engine, products) == 5
    with engine.connect() as conn:
        tags = conn.execute(select(partners.c.maticni_broj).where(partners.c.maticni_broj.isnot(None))).scalars().all()
    assert sorted(tags)[0] == "LEG:P001"


def test_second_run_inserts_nothing(engine, tenant_id):
    _seed_partner_tax_ids(engine, tenant_id, [2, 5, 9])
    archive = build_archive({"dbo.Partner.csv": partner_rows(10), "dbo.Item.csv": item_rows(5)})
    mappings = [_mapping("dbo.Partner.csv", "partners"), _mapping("dbo.Item.csv", "products")]

    import_archive(archive, tenant_id, mappings, engine=engine)
    rerun = import_archive(archive, tenant_id, mappings, engine=engine)

    assert summarize_results(rerun)["inserted"] == 0
    assert rerun["dbo.Partner.csv"].skipped == 10
    assert rerun["dbo.Item.csv"].skipped == 5
    assert _count(engine, partners) == 10
    assert _count(engine, products) == 5


def test_partner_city_resolved_from_city_export(engine, tenant_id):
    cells = ["1", "Uniprom", "", "", "7", "P001", "", "", "", "", "101234567"]
    archive = build_archive(
        {
            "dbo.City.csv": "7,Novi Sad,Novi Sad,,1\n",
            "dbo.Partner.csv": ",".join(cells) + "\n",
        }
    )

    import_archive(archive, tenant_id, [_mapping("dbo.Partner.csv", "partners")], engine=engine)

    with engine.connect() as conn:
        city = conn.execute(select(partners.c.city)).scalar()
    assert city == "Novi Sad"


def test_documents_are_routed_and_lines_follow_headers(engine, tenant_id):
    headers = "\n".join(
        [
            "1,2023-001-RAC,2023-04-01,5,1,,1,,,,,1200.00",
            "2,2023-002-PO,2023-04-02,5,1,,1,,,,,300.00",
            "3,2023-003-PON,2023-04-03,5,1,,,,,,,50.00",
            "4,0,2023-04-03,5,1,,,,,,,0",
        ]
    )
    lines = "\n".join(
        [
            "10,1,1,2,100.00,0,",
            "11,1,2,1,50.00,0,",
            "12,2,1,5,10.00,0,",
            "13,99,1,1,1.00,0,",
        ]
    )
    archive = build_archive(
        {
            "dbo.Partner.csv": partner_rows(1),
            "dbo.Item.csv": item_rows(2),
            "dbo.DocumentHeader.csv": headers + "\n",
            "dbo.DocumentLine.csv": lines + "\n",
        }
    )
    mappings = [
        _mapping("dbo.DocumentLine.csv", "document_lines"),
        _mapping("dbo.DocumentHeader.csv", "invoices"),
        _mapping("dbo.Item.csv", "products"),
        _mapping("dbo.Partner.csv", "partners"),
    ]

    results = import_archive(archive, tenant_id, mappings, engine=engine)

    header_result = results["dbo.DocumentHeader.csv"]
    assert (header_result.inserted, header_result.skipped) == (3, 1)
    line_result = results["dbo.DocumentLine.csv"]
    assert (line_result.inserted, line_result.skipped, line_result.errors) == (3, 1, [])

    assert _count(engine, invoices) == 1
    assert _count(engine, purchase_orders) == 1
    assert _count(engine, quotes) == 1
    assert _count(engine, invoice_lines) == 2
    assert _count(engine, purchase_order_lines) == 1

    with engine.connect() as conn:
        invoice = conn.execute(select(invoices)).mappings().one()
        orders = conn.execute(
            select(invoice_lines.c.sort_order, invoice_lines.c.product_id).order_by(invoice_lines.c.sort_order)
        ).all()
    assert invoice["partner_name"] == "Partner 1 d.o.o."
    assert invoice["total"] == Decimal("1200.00")
    assert [order for order, _ in orders] == [1, 2]
    assert all(product_id is not None for _, product_id in orders)


def test_three_decimal_amounts_keep_their_value(engine, tenant_id):
    archive = build_archive(
        {
            "dbo.Tax.csv": "1,PDV 20,\u0110,0.200\n",
            "dbo.DocumentHeader.csv": "1,2023-010-RAC,2023-04-01,5,1,,,,,,,300.000\n",
        }
    )
    mappings = [
        _mapping("dbo.Tax.csv", "tax_rates"),
        _mapping("dbo.DocumentHeader.csv", "invoices"),
    ]

    results = import_archive(archive, tenant_id, mappings, engine=engine)

    assert results["dbo.Tax.csv"].inserted == 1
    assert results["dbo.DocumentHeader.csv"].inserted == 1
    with engine.connect() as conn:
        rate = conn.execute(select(tax_rates.c.rate, tax_rates.c.is_default)).one()
        total = conn.execute(select(invoices.c.total)).scalar()
    assert rate.rate == Decimal("20")
    assert rate.is_default is True
    assert total == Decimal("300")


def test_flat_products_seed_opening_stock(engine, tenant_id):
    with engine.begin() as conn:
        conn.execute(warehouses.insert().values(id=new_id(), tenant_id=tenant_id, name="Glavni", code="GL"))
    content = (
        "Sifra,Naziv,JM,Kolicina,NabCena,ProdCena,Aktivan,K1,K2,K3,K4,K5,Brend\n"
        "SKU-1,Kafa,kom,5,100,150,1,Hrana,Pice,,,,Doncafe\n"
        "SKU-2,Caj,kom,0,50,80,1,Hrana,,,,,\n"
    )
    archive = build_archive({"A_UnosPodataka.csv": content})

    results = import_archive(archive, tenant_id, [_mapping("A_UnosPodataka.csv", "products")], engine=engine)

    result = results["A_UnosPodataka.csv"]
    assert result.inserted == 2
    assert [(r.step, r.status, r.rows) for r in result.post_import] == [("seed_inventory_stock", "done", 1)]
    with engine.connect() as conn:
        quantity = conn.execute(select(inventory_stock.c.quantity_on_hand)).scalar()
        description = conn.execute(select(products.c.description).where(products.c.sku == "SKU-1")).scalar()
    assert quantity == Decimal("5")
    assert description == "Brand: Doncafe | Hrana > Pice"


def test_stock_seeding_is_skipped_without_a_warehouse(engine, tenant_id):
    content = "Sifra,Naziv,JM,Kolicina\nSKU-1,Kafa,kom,5\n"
    archive = build_archive({"A_UnosPodataka.csv": content})

    results = import_archive(archive, tenant_id, [_mapping("A_UnosPodataka.csv", "products")], engine=engine)

    (report,) = results["A_UnosPodataka.csv"].post_import
    assert report.status == "skipped"
    assert _count(engine, inventory_stock) == 0


def test_file_without_importer_is_skipped_with_reason(engine, tenant_id):
    archive = build_archive({"izvod_banke.csv": "Broj,Datum\n1,2023-01-01\n2,2023-01-02\n"})

    results = import_archive(archive, tenant_id, [_mapping("izvod_banke.csv", "bank_statements")], engine=engine)

    result = results["izvod_banke.csv"]
    assert result.inserted == 0
    assert result.skipped == 2
    assert len(result.errors) == 1
    assert result.errors[0].row_index == -1
    assert "no importer" in result.errors[0].reason


def test_missing_entry_and_skip_target(engine, tenant_id):
    archive = build_archive({"dbo.Item.csv": item_rows(2)})
    mappings = [
        _mapping("dbo.Partner.csv", "partners"),
        _mapping("dbo.Item.csv", "skip"),
        _mapping("dbo.Item.csv", ""),
    ]

    results = import_archive(archive, tenant_id, mappings, engine=engine)

    assert list(results) == ["dbo.Partner.csv"]
    assert results["dbo.Partner.csv"].errors[0].reason == "File not found in archive"
    assert _count(engine, products) == 0


def test_failing_file_does_not_stop_the_archive(engine, tenant_id, monkeypatch):
    from app.domain.legacy import importers

    def explode(ctx, source):
        raise RuntimeError("disk on fire")

    monkeypatch.setitem(importers.IMPORTERS, "partners", (frozenset({"partner"}), explode))
    archive = build_archive({"dbo.Partner.csv": partner_rows(2), "dbo.Item.csv": item_rows(2)})
    mappings = [_mapping("dbo.Partner.csv", "partners"), _mapping("dbo.Item.csv", "products")]

    results = import_archive(archive, tenant_id, mappings, engine=engine)

    assert results["dbo.Partner.csv"].errors[0].reason == "Import failed: disk on fire"
    assert results["dbo.Item.csv"].inserted == 2


def test_single_file_import_uses_persisted_ids(engine, tenant_id):
    archive = build_archive(
        {
            "dbo.Partner.csv": partner_rows(1),
            "dbo.Opportunity.csv": "1,Nova prodaja,1,,,2500.00\n",
        }
    )

    import_file(archive, tenant_id, _mapping("dbo.Partner.csv", "partners"), engine=engine)
    result = import_file(archive, tenant_id, _mapping("dbo.Opportunity.csv", "opportunities"), engine=engine)

    assert result.inserted == 1
    with engine.connect() as conn:
        assert conn.execute(select(func.count()).select_from(legacy_id_map)).scalar() == 3


# --------------------------------------------------------------------------- #
# Same file name in several folders
# --------------------------------------------------------------------------- #


def _two_item_folders():
    return build_archive(
        {
            "2022/dbo.Item.csv": item_rows(2),
            "2023/dbo.Item.csv": item_rows(2, start=3),
            "dbo.Partner.csv": partner_rows(1),
        }
    )


def test_clashing_names_are_analysed_by_full_path():
    files = analyze_archive(_two_item_folders())

    assert sorted(f.filename for f in files) == ["2022/dbo.Item.csv", "2023/dbo.Item.csv", "dbo.Partner.csv"]
    item = next(f for f in files if f.filename == "2023/dbo.Item.csv")
    assert item.full_path == "2023/dbo.Item.csv"
    assert item.suggested_target == "products"


def test_clashing_names_import_separately_with_progress(engine, tenant_id):
    archive = _two_item_folders()
    session = sessions.create_session(tenant_id=tenant_id, archive_name="export.zip", engine=engine)
    mappings = [
        MappingEntry(filename=f.filename, full_path=f.full_path, target_table=f.suggested_target)
        for f in analyze_archive(archive)
    ]

    results = import_archive(archive, tenant_id, mappings, session_id=session.id, engine=engine)

    assert results["2022/dbo.Item.csv"].inserted == 2
    assert results["2023/dbo.Item.csv"].inserted == 2
    assert _count(engine, products) == 4
    progress = sessions.list_progress(session.id, tenant_id, engine=engine)
    assert sorted(entry.filename for entry in progress) == [
        "2022/dbo.Item.csv",
        "2023/dbo.Item.csv",
        "dbo.Partner.csv",
    ]
    assert {entry.status.value for entry in progress} == {"done"}


def test_file_mapped_twice_is_rejected(engine, tenant_id):
    mappings = [_mapping("dbo.Item.csv", "products"), _mapping("dbo.Item.csv", "products")]

    with pytest.raises(DuplicateFileError):
        import_archive(_two_item_folders(), tenant_id, mappings, engine=engine)
    assert _count(engine, products) == 0
