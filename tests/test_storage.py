import asyncio
import os
import sys
from pathlib import Path

import pytest

os.environ.setdefault("DATABASE_URL", "")
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.schema import CreateTable
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from database import Base, ProductPair
from schemas import ProductPairAssociation
from services.ranker import retain_canonical
from services.storage import StorageService, _code_order, pair_to_row
from services.transaction_cleaner import clean_rows
from settings import AnalysisSettings


async def _make_store():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return engine, StorageService(async_sessionmaker(engine, expire_on_commit=False))


def _pair(a, b, lift, support_ab=0.01, conf_ab=0.2, conf_ba=0.4):
    return ProductPairAssociation(
        product_a=a,
        product_a_desc=f"ITEM {a}",
        product_b=b,
        product_b_desc=f"ITEM {b}",
        orders_with_both=15,
        support_a=0.05,
        support_b=0.025,
        support_ab=support_ab,
        confidence_a_to_b=conf_ab,
        confidence_b_to_a=conf_ba,
        lift=lift,
        total_orders=1500,
    )


def _raw(invoice, code, quantity="1", customer="12583"):
    return {
        "invoice_no": invoice,
        "stock_code": code,
        "description": f"item {code}",
        "quantity": quantity,
        "invoice_date": "2011-06-14 13:05",
        "unit_price": "0.85",
        "customer_id": customer,
        "country": "France",
    }


def test_pair_to_row_rounds_to_column_precision():
    row = pair_to_row(_pair("A", "B", lift=2.123456789, support_ab=0.0123456789), "run")
    assert row["lift"] == 2.1235
    assert row["support_ab"] == 0.012346
    assert row["analysis_run_id"] == "run"


def test_replace_transactions_and_valid_view():
    async def scenario():
        engine, store = await _make_store()
        try:
            report = clean_rows(
                [_raw("1", "A"), _raw("1", "B"), _raw("1", "C", quantity="-2"), _raw("2", "A"), _raw("3", "B", customer="")],
                AnalysisSettings(),
            )
            await store.replace_transactions(report.records)
            # A second load replaces rather than appends
            await store.replace_transactions(report.records)
            valid = await store.get_valid_transactions()
            counts = await store.count_transactions()
            sizes = await store.get_basket_sizes()
            return valid, counts, sizes
        finally:
            await engine.dispose()

    valid, counts, sizes = asyncio.run(scenario())
    assert sorted((t.invoice_no, t.stock_code) for t in valid) == [("1", "A"), ("1", "B"), ("2", "A")]
    assert counts == {"rows": 5, "valid_rows": 3, "valid_orders": 2}
    assert sorted(sizes) == [1, 2]


def test_product_pair_views():
    async def scenario():
        engine, store = await _make_store()
        try:
            await store.replace_product_pairs(None, [
                _pair("A", "B", lift=2.0, support_ab=0.03, conf_ab=0.1, conf_ba=0.2),
                _pair("A", "C", lift=6.0, support_ab=0.01, conf_ab=0.3, conf_ba=0.3),
                _pair("B", "C", lift=1.4, support_ab=0.02, conf_ab=0.9, conf_ba=0.1),
            ])
            by_lift = await store.get_product_pairs("lift")
            by_support = await store.get_product_pairs("support")
            by_confidence = await store.get_product_pairs("confidence")
            top = await store.get_product_pairs("lift", limit=100, min_lift=1.5)
            for_c = await store.get_product_pairs_for_product("C")
            return by_lift, by_support, by_confidence, top, for_c
        finally:
            await engine.dispose()

    by_lift, by_support, by_confidence, top, for_c = asyncio.run(scenario())

    def keys(pairs):
        return [(p.product_a, p.product_b) for p in pairs]

    assert keys(by_lift) == [("A", "C"), ("A", "B"), ("B", "C")]
    assert keys(by_support) == [("A", "B"), ("B", "C"), ("A", "C")]
    assert keys(by_confidence) == [("B", "C"), ("A", "C"), ("A", "B")]
    assert keys(top) == [("A", "C"), ("A", "B")]
    assert keys(for_c) == [("A", "C"), ("B", "C")]
    assert by_lift[0].lift == pytest.approx(6.0)


def test_canonical_check_uses_code_point_order_per_dialect():
    pg_ddl = str(CreateTable(ProductPair.__table__).compile(dialect=postgresql.dialect()))
    sqlite_ddl = str(CreateTable(ProductPair.__table__).compile(dialect=sqlite.dialect()))

    assert 'product_a < product_b COLLATE "C"' in pg_ddl
    assert "ck_product_pairs_canonical_c" not in sqlite_ddl
    assert "product_a < product_b" in sqlite_ddl

    pg_order = str(_code_order(ProductPair.product_a, "postgresql").compile(dialect=postgresql.dialect()))
    assert 'COLLATE "C"' in pg_order


def test_mixed_case_codes_publish_and_tie_break_like_python():
    pairs = [_pair("85099B", "85099b", lift=2.0), _pair("85099B", "85099C", lift=2.0)]
    assert all(p.product_a < p.product_b for p in pairs)

    async def scenario():
        engine, store = await _make_store()
        try:
            await store.replace_product_pairs(None, pairs)
            return await store.get_product_pairs("lift")
        finally:
            await engine.dispose()

    stored = asyncio.run(scenario())
    assert [(p.product_a, p.product_b) for p in stored] == sorted((p.product_a, p.product_b) for p in pairs)


def test_published_lift_stays_above_retention_floor():
    kept = retain_canonical([_pair("A", "B", lift=1.00004), _pair("A", "C", lift=1.00006)], AnalysisSettings(min_cooccurrence=1))
    assert [(p.product_a, p.product_b) for p in kept] == [("A", "C")]

    async def scenario():
        engine, store = await _make_store()
        try:
            await store.replace_product_pairs(None, kept)
            return await store.get_product_pairs()
        finally:
            await engine.dispose()

    stored = asyncio.run(scenario())
    assert stored[0].lift > 1.0


def test_unknown_ordering_is_rejected():
    async def scenario():
        engine, store = await _make_store()
        try:
            with pytest.raises(ValueError):
                await store.get_product_pairs("popularity")
        finally:
            await engine.dispose()

    asyncio.run(scenario())


def test_publish_is_atomic():
    async def scenario():
        engine, store = await _make_store()
        try:
            await store.replace_product_pairs(None, [_pair("A", "B", 2.0), _pair("A", "C", 3.0)])
            # product_a > product_b violates the canonical check constraint mid-batch
            with pytest.raises(IntegrityError):
                await store.replace_product_pairs(None, [_pair("D", "E", 4.0), _pair("Z", "Y", 5.0)])
            return await store.get_product_pairs()
        finally:
            await engine.dispose()

    stored = asyncio.run(scenario())
    assert sorted((p.product_a, p.product_b) for p in stored) == [("A", "B"), ("A", "C")]


def test_analysis_run_lifecycle():
    async def scenario():
        engine, store = await _make_store()
        try:
            run = await store.create_analysis_run({"status": "running", "min_cooccurrence": 10, "min_lift": 1.0})
            await store.mark_analysis_run_failed(run.id, "boom")
            failed = await store.get_analysis_run(run.id)
            missing = await store.get_analysis_run("does-not-exist")
            return failed, missing
        finally:
            await engine.dispose()

    failed, missing = asyncio.run(scenario())
    assert failed.status == "failed"
    assert failed.error_message == "boom"
    assert failed.completed_at is not None
    assert missing is None
