from sqlalchemy import func, select

from app.api.schemas.legacy_import import ImportResult
from app.db.models import new_id, products
from app.domain.legacy.batch_writer import BatchWriter, PendingRow

TENANT = "tenant-batch"


def _product_row(index, sku):
    return PendingRow(
        values={"id": new_id(), "tenant_id": TENANT, "name": f"Product {index}", "sku": sku},
        source_index=index,
        legacy_id=str(index),
    )


def _seed_existing_sku(engine, sku):
    with engine.begin() as conn:
        conn.execute(products.insert().values(id=new_id(), tenant_id=TENANT, name="Existing", sku=sku))


def _count(engine):
    with engine.connect() as conn:
        return conn.execute(select(func.count()).select_from(products)).scalar()


def test_one_bad_row_does_not_sink_its_batch(engine):
    _seed_existing_sku(engine, "SKU-DUP")
    result = ImportResult()

    with BatchWriter(engine, products, result, batch_size=100) as writer:
        for index in range(10):
            writer.add(_product_row(index, "SKU-DUP" if index == 3 else f"SKU-{index}"))

    assert result.inserted == 9
    assert [error.row_index for error in result.errors] == [3]
    assert result.skipped == 0
    assert _count(engine) == 10


def test_rows_are_flushed_in_batches(engine):
    result = ImportResult()
    writer = BatchWriter(engine, products, result, batch_size=4)

    for index in range(10):
        writer.add(_product_row(index, f"SKU-{index}"))
    assert writer.pending == 2

    writer.close()

    assert writer.batches_written == 3
    assert result.inserted == 10
    assert result.errors == []


def test_untried_remainder_is_reported_once(engine):
    _seed_existing_sku(engine, "SKU-DUP")
    result = ImportResult()

    with BatchWriter(engine, products, result, batch_size=100, max_row_retries=2) as writer:
        for index in range(10):
            writer.add(_product_row(index, "SKU-DUP" if index == 3 else f"SKU-{index}"))

    assert result.inserted == 2
    assert result.skipped == 8
    assert len(result.errors) == 1
    assert result.errors[0].row_index == 2
    assert "8 rows (2-9)" in result.errors[0].reason


def test_on_written_receives_only_stored_rows(engine):
    _seed_existing_sku(engine, "SKU-DUP")
    result = ImportResult()
    written = []

    with BatchWriter(engine, products, result, on_written=written.extend) as writer:
        writer.add(_product_row(0, "SKU-0"))
        writer.add(_product_row(1, "SKU-DUP"))
        writer.add(_product_row(2, "SKU-2"))

    assert [row.source_index for row in written] == [0, 2]


def test_error_list_is_capped(engine):
    _seed_existing_sku(engine, "SKU-DUP")
    result = ImportResult()

    with BatchWriter(engine, products, result, max_errors=2) as writer:
        for index in range(5):
            writer.add(_product_row(index, "SKU-DUP"))

    assert result.inserted == 0
    assert len(result.errors) == 2
    assert result.errors_truncated == 3


def test_nothing_is_written_when_the_block_raises(engine):
    result = ImportResult()
    try:
        with BatchWriter(engine, products, result) as writer:
            writer.add(_product_row(0, "SKU-0"))
            raise RuntimeError("boom")
    except RuntimeError:
        pass

    assert _count(engine) == 0
