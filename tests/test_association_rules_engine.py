import asyncio
import os
import random
import sys
from pathlib import Path
from types import SimpleNamespace

import pytest

os.environ.setdefault("DATABASE_URL", "")
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import services.association_rules_engine as engine_module
from database import Base
from schemas import ProductSupport
from services.association_rules_engine import (
    AnalysisInProgressError,
    AssociationInvariantError,
    AssociationRulesEngine,
    build_order_product_incidence,
    compute_pair_metrics,
    compute_product_support,
    count_pair_cooccurrences,
    count_pair_cooccurrences_partitioned,
    count_total_orders,
)
from services.obs.metrics import MetricsCollector
from services.storage import StorageService
from services.transaction_cleaner import clean_rows
from settings import AnalysisSettings


_DEFAULT = object()


def _line(invoice, code, description=_DEFAULT):
    if description is _DEFAULT:
        description = f"ITEM {code}"
    return SimpleNamespace(invoice_no=invoice, stock_code=code, description=description)


def _rows(*baskets):
    return [_line(f"INV{i:04d}", code) for i, basket in enumerate(baskets, 1) for code in basket]


def _engine(**overrides):
    return AssociationRulesEngine(settings=AnalysisSettings(**overrides), metrics=MetricsCollector())


def _random_baskets(seed=7, orders=300, catalogue=12):
    rng = random.Random(seed)
    codes = [f"{20000 + i}" for i in range(catalogue)]
    return [rng.sample(codes, rng.randint(1, 6)) for _ in range(orders)]


# ---------- incidence + support ----------

def test_incidence_collapses_duplicate_lines_and_keeps_max_description():
    rows = [
        _line("1", "A", "LANTERN"),
        _line("1", "A", "WHITE LANTERN"),
        _line("1", "B", "MUG"),
        _line("2", "A", "LANTERN"),
        _line("2", "C", None),
        _line("2", "D", ""),
    ]
    incidence = build_order_product_incidence(rows)
    keys = {(r.invoice_no, r.stock_code): r.description for r in incidence}

    assert keys == {("1", "A"): "WHITE LANTERN", ("1", "B"): "MUG", ("2", "A"): "LANTERN"}
    assert count_total_orders(incidence) == 2


def test_support_shares_one_denominator_and_stays_in_bounds():
    incidence = build_order_product_incidence(_rows(["A", "B"], ["A"], ["C"], ["A", "C"]))
    supports = compute_product_support(incidence, count_total_orders(incidence))

    assert supports["A"].order_count == 3
    assert supports["A"].support == pytest.approx(0.75)
    assert supports["B"].support == pytest.approx(0.25)
    assert all(0 <= s.support <= 1 for s in supports.values())


def test_support_rejects_zero_denominator():
    incidence = build_order_product_incidence(_rows(["A"]))
    with pytest.raises(AssociationInvariantError):
        compute_product_support(incidence, 0)


# ---------- co-occurrence ----------

def test_cooccurrence_counts_distinct_orders_per_canonical_pair():
    counts = count_pair_cooccurrences([["B", "A", "C"], ["A", "B"], ["C"], ["A", "A", "B"]], min_cooccurrence=1)
    assert counts == {("A", "B"): 3, ("A", "C"): 1, ("B", "C"): 1}


def test_cooccurrence_threshold_drops_rare_pairs():
    counts = count_pair_cooccurrences([["A", "B"]] * 9 + [["A", "C"]] * 10, min_cooccurrence=10)
    assert counts == {("A", "C"): 10}


@pytest.mark.parametrize("partitions", [1, 2, 3, 5, 1000])
def test_partitioned_count_matches_sequential(partitions):
    baskets = _random_baskets()
    sequential = count_pair_cooccurrences(baskets, min_cooccurrence=5)
    partitioned = count_pair_cooccurrences_partitioned(baskets, min_cooccurrence=5, partitions=partitions)
    assert partitioned == sequential


def test_partitioned_count_rejects_bad_partition_count():
    with pytest.raises(ValueError):
        count_pair_cooccurrences_partitioned([["A", "B"]], partitions=0)


# ---------- metrics ----------

def test_metrics_reject_non_canonical_or_unsupported_pairs():
    supports = {
        "A": ProductSupport("A", "ITEM A", 2, 1.0),
        "B": ProductSupport("B", "ITEM B", 2, 1.0),
    }
    with pytest.raises(AssociationInvariantError):
        compute_pair_metrics({("B", "A"): 2}, supports, 2)
    with pytest.raises(AssociationInvariantError):
        compute_pair_metrics({("A", "Z"): 2}, supports, 2)
    with pytest.raises(AssociationInvariantError):
        compute_pair_metrics({("A", "B"): 2}, supports, 0)


def test_minimal_dataset_scenario():
    result = _engine(min_cooccurrence=1).analyze(_rows(["A", "B"], ["A", "B"]))

    assert result.total_orders == 2
    assert len(result.associations) == 1
    pair = result.associations[0]
    assert (pair.product_a, pair.product_b) == ("A", "B")
    assert pair.orders_with_both == 2
    assert pair.support_a == pytest.approx(1.0)
    assert pair.support_b == pytest.approx(1.0)
    assert pair.support_ab == pytest.approx(1.0)
    assert pair.lift == pytest.approx(1.0)
    # Lift of exactly 1 is not retained under the strict lift > 1 policy
    assert result.canonical == []


def test_orders_without_descriptions_stay_in_the_denominator():
    rows = _rows(["A", "B"], ["A", "B"]) + [_line("INV0003", "C", "")]
    assert count_total_orders(rows) == 3

    result = _engine(min_cooccurrence=1).analyze(rows)

    assert result.total_orders == 3
    assert "C" not in result.supports
    assert result.supports["A"].support == pytest.approx(2 / 3)
    pair = result.associations[0]
    assert pair.total_orders == 3
    assert pair.support_ab == pytest.approx(2 / 3)
    assert pair.lift == pytest.approx(1.5)
    assert [(p.product_a, p.product_b) for p in result.canonical] == [("A", "B")]


def test_no_association_scenario():
    result = _engine(min_cooccurrence=1).analyze(_rows(["A"], ["B"]))
    assert result.associations == []
    assert result.canonical == []


def test_below_threshold_scenario():
    baskets = [["A", "B"]] * 9 + [["C"]] * 20
    assert _engine(min_cooccurrence=10).analyze(_rows(*baskets)).canonical == []

    retained = _engine(min_cooccurrence=9).analyze(_rows(*baskets)).canonical
    assert [(p.product_a, p.product_b, p.orders_with_both) for p in retained] == [("A", "B", 9)]


def test_invalid_row_exclusion_scenario():
    def raw(invoice, code, quantity="1"):
        return {
            "invoice_no": invoice,
            "stock_code": code,
            "description": f"item {code}",
            "quantity": quantity,
            "invoice_date": "2011-01-05 10:00",
            "unit_price": "1.25",
            "customer_id": "12345",
            "country": "France",
        }

    report = clean_rows(
        [raw("1", "A"), raw("1", "B"), raw("1", "C", quantity="-3"), raw("2", "A"), raw("2", "B"), raw("3", "E")],
        AnalysisSettings(),
    )
    result = _engine(min_cooccurrence=1).analyze(r for r in report.records if r.is_valid)

    assert result.supports.keys() == {"A", "B", "E"}
    assert [(p.product_a, p.product_b, p.orders_with_both) for p in result.associations] == [("A", "B", 2)]
    assert result.basket_sizes == [2, 2, 1]


def test_pipeline_invariants_hold_on_random_data():
    result = _engine(min_cooccurrence=5, min_lift=0.0).analyze(_rows(*_random_baskets()))

    assert result.associations
    seen = set()
    for pair in result.associations:
        assert pair.product_a < pair.product_b
        assert (pair.product_a, pair.product_b) not in seen
        seen.add((pair.product_a, pair.product_b))
        assert pair.orders_with_both >= 5
        assert 0 <= pair.support_ab <= min(pair.support_a, pair.support_b)
        assert 0 <= pair.confidence_a_to_b <= 1
        assert 0 <= pair.confidence_b_to_a <= 1
        assert pair.confidence_a_to_b * pair.support_a == pytest.approx(pair.support_ab)
        assert pair.confidence_b_to_a * pair.support_b == pytest.approx(pair.support_ab)
        assert pair.total_orders == result.total_orders


def test_canonical_set_is_ranked_and_filtered():
    baskets = [["A", "B"]] * 10 + [["C", "D"]] * 12 + [["A", "C"]] * 10 + [["E"]] * 30
    result = _engine(min_cooccurrence=10).analyze(_rows(*baskets))

    assert result.canonical
    assert all(p.lift > 1.0 and p.orders_with_both >= 10 for p in result.canonical)
    lifts = [p.lift for p in result.canonical]
    assert lifts == sorted(lifts, reverse=True)


def test_analysis_is_idempotent():
    rows = _rows(*_random_baskets(seed=11))
    first = _engine(min_cooccurrence=3).analyze(rows)
    second = _engine(min_cooccurrence=3).analyze(rows)
    assert first.canonical == second.canonical
    assert first.associations == second.associations


def test_partitioned_engine_matches_sequential_engine():
    rows = _rows(*_random_baskets(seed=3))
    settings = AnalysisSettings(min_cooccurrence=4)
    sequential = AssociationRulesEngine(settings=settings, metrics=MetricsCollector()).analyze(rows)
    partitioned = AssociationRulesEngine(settings=settings, metrics=MetricsCollector(), partitions=4).analyze(rows)
    assert sorted(partitioned.canonical, key=lambda p: (p.product_a, p.product_b)) == sorted(
        sequential.canonical, key=lambda p: (p.product_a, p.product_b)
    )


def test_empty_input_produces_empty_result():
    result = _engine().analyze([])
    assert result.total_orders == 0
    assert result.supports == {}
    assert result.associations == []
    assert result.canonical == []


def test_stage_metrics_are_recorded():
    metrics = MetricsCollector()
    engine = AssociationRulesEngine(settings=AnalysisSettings(min_cooccurrence=1), metrics=metrics)
    metrics.start_run("run-1")
    engine.analyze(_rows(["A", "B"], ["A", "C"]), run_id="run-1")
    summary = metrics.finish_run("run-1", 0, success=True)

    assert [s["stage"] for s in summary["stages"]] == ["incidence", "support", "cooccurrence", "metrics", "ranking"]
    assert summary["stages"][0]["input_count"] == 4


# ---------- orchestration against a private store ----------

async def _make_store():
    db_engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return db_engine, StorageService(async_sessionmaker(db_engine, expire_on_commit=False))


def _records(*baskets):
    raw = [
        {
            "invoice_no": f"5{i:05d}",
            "stock_code": code,
            "description": f"item {code}",
            "quantity": "2",
            "invoice_date": "2011-03-01 09:15",
            "unit_price": "1.65",
            "customer_id": "13047",
            "country": "United Kingdom",
        }
        for i, basket in enumerate(baskets, 1)
        for code in basket
    ]
    return clean_rows(raw, AnalysisSettings()).records


def test_generate_association_rules_publishes_and_completes_run():
    async def scenario():
        db_engine, store = await _make_store()
        try:
            await store.replace_transactions(_records(*([["A", "B"]] * 10 + [["C"]] * 10)))
            engine = AssociationRulesEngine(
                settings=AnalysisSettings(min_cooccurrence=10), store=store, metrics=MetricsCollector()
            )
            result = await engine.generate_association_rules()

            runs_pairs = await store.get_product_pairs()
            return result, runs_pairs
        finally:
            await db_engine.dispose()

    result, stored = asyncio.run(scenario())
    assert result.total_orders == 20
    assert [(p.product_a, p.product_b) for p in stored] == [("A", "B")]
    assert stored[0].lift == pytest.approx(2.0)


def test_run_row_tracks_status_and_counts():
    async def scenario():
        db_engine, store = await _make_store()
        try:
            await store.replace_transactions(_records(*([["A", "B"]] * 10 + [["C"]] * 10)))
            run = await store.create_analysis_run({"status": "running", "min_cooccurrence": 10, "min_lift": 1.0})
            engine = AssociationRulesEngine(
                settings=AnalysisSettings(min_cooccurrence=10), store=store, metrics=MetricsCollector()
            )
            await engine.generate_association_rules(run.id)
            return await store.get_analysis_run(run.id)
        finally:
            await db_engine.dispose()

    run = asyncio.run(scenario())
    assert run.status == "completed"
    assert run.total_orders == 20
    assert run.pairs_published == 1
    assert run.completed_at is not None
    assert [s["stage"] for s in run.metrics["stages"]][-1] == "publish"


def test_empty_store_completes_with_empty_set():
    async def scenario():
        db_engine, store = await _make_store()
        try:
            engine = AssociationRulesEngine(settings=AnalysisSettings(), store=store, metrics=MetricsCollector())
            result = await engine.generate_association_rules()
            return result, await store.get_product_pairs()
        finally:
            await db_engine.dispose()

    result, stored = asyncio.run(scenario())
    assert result.total_orders == 0
    assert stored == []


class _FailingPublishStore(StorageService):
    async def replace_product_pairs(self, run_id, pairs):
        raise RuntimeError("publish exploded")


def test_failed_publish_marks_run_failed_and_keeps_previous_set():
    async def scenario():
        db_engine, store = await _make_store()
        failing = _FailingPublishStore(store._session_factory)
        try:
            await store.replace_transactions(_records(*([["A", "B"]] * 10 + [["C"]] * 10)))
            settings = AnalysisSettings(min_cooccurrence=10)
            await AssociationRulesEngine(settings=settings, store=store, metrics=MetricsCollector()).generate_association_rules()

            run = await failing.create_analysis_run({"status": "running", "min_cooccurrence": 10, "min_lift": 1.0})
            with pytest.raises(RuntimeError, match="publish exploded"):
                await AssociationRulesEngine(
                    settings=settings, store=failing, metrics=MetricsCollector()
                ).generate_association_rules(run.id)

            return await store.get_analysis_run(run.id), await store.get_product_pairs()
        finally:
            await db_engine.dispose()

    run, stored = asyncio.run(scenario())
    assert run.status == "failed"
    assert "publish exploded" in run.error_message
    assert [(p.product_a, p.product_b) for p in stored] == [("A", "B")]


def test_overlapping_run_is_rejected():
    async def scenario():
        engine = AssociationRulesEngine(settings=AnalysisSettings(), metrics=MetricsCollector())
        async with engine_module._run_lock:
            assert engine_module.is_analysis_running()
            with pytest.raises(AnalysisInProgressError):
                await engine.generate_association_rules("busy")
        assert not engine_module.is_analysis_running()

    asyncio.run(scenario())


def test_reserved_slot_blocks_new_runs_until_released():
    async def scenario():
        db_engine, store = await _make_store()
        try:
            await store.replace_transactions(_records(*([["A", "B"]] * 10 + [["C"]] * 10)))
            await engine_module.acquire_run_slot()
            try:
                with pytest.raises(AnalysisInProgressError):
                    await engine_module.acquire_run_slot()

                engine = AssociationRulesEngine(
                    settings=AnalysisSettings(min_cooccurrence=10), store=store, metrics=MetricsCollector()
                )
                result = await engine.generate_association_rules(slot_reserved=True)
                # The holder of a reserved slot releases it, not the engine
                assert engine_module.is_analysis_running()
            finally:
                engine_module.release_run_slot()
            assert not engine_module.is_analysis_running()
            return result
        finally:
            await db_engine.dispose()

    result = asyncio.run(scenario())
    assert [(p.product_a, p.product_b) for p in result.canonical] == [("A", "B")]
