"""
Association Rules Engine
Pairwise market basket analysis: incidence, support, co-occurrence, lift
"""
from typing import List, Dict, Tuple, Any, Optional, Iterable, Sequence
import asyncio
import logging
import uuid
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from itertools import combinations

from schemas import OrderProductPair, ProductSupport, ProductPairAssociation
from settings import AnalysisSettings, load_analysis_settings
from services.obs.metrics import MetricsCollector, metrics_collector
from services.ranker import retain_canonical, rank_by_lift
from services.storage import StorageService, storage

logger = logging.getLogger(__name__)

PairKey = Tuple[str, str]

# One analysis run per process at a time
_run_lock = asyncio.Lock()


class AssociationInvariantError(RuntimeError):
    """A metric denominator was zero: an upstream stage broke its contract."""


class AnalysisInProgressError(RuntimeError):
    """Another analysis run is still publishing."""


def is_analysis_running() -> bool:
    return _run_lock.locked()


async def acquire_run_slot() -> None:
    """Take the run lock without waiting; the caller owns the release."""
    if _run_lock.locked():
        raise AnalysisInProgressError("An analysis run is already in progress")
    await _run_lock.acquire()


def release_run_slot() -> None:
    if _run_lock.locked():
        _run_lock.release()


# ---------- Stage 3: order x product incidence ----------

def build_order_product_incidence(rows: Iterable[Any]) -> List[OrderProductPair]:
    """Collapse valid line items to distinct (invoice, product) pairs.

    Rows without a description are dropped. When a product carries several
    descriptions the lexicographically largest one is kept.
    """
    descriptions: Dict[PairKey, str] = {}
    for row in rows:
        invoice_no = getattr(row, "invoice_no", None)
        stock_code = getattr(row, "stock_code", None)
        description = getattr(row, "description", None)
        if not invoice_no or not stock_code or not description:
            continue
        key = (invoice_no, stock_code)
        current = descriptions.get(key)
        if current is None or description > current:
            descriptions[key] = description

    return [
        OrderProductPair(invoice_no=invoice_no, stock_code=stock_code, description=description)
        for (invoice_no, stock_code), description in descriptions.items()
    ]


def count_total_orders(rows: Iterable[Any]) -> int:
    """Distinct invoices, counted before incidence drops description-less lines."""
    return len({row.invoice_no for row in rows if getattr(row, "invoice_no", None)})


def group_baskets(incidence: Iterable[OrderProductPair]) -> Dict[str, List[str]]:
    """Invoice -> sorted distinct stock codes."""
    baskets: Dict[str, set] = defaultdict(set)
    for row in incidence:
        baskets[row.invoice_no].add(row.stock_code)
    return {invoice_no: sorted(codes) for invoice_no, codes in baskets.items()}


# ---------- Stage 4: product support ----------

def compute_product_support(
    incidence: Iterable[OrderProductPair], total_orders: int
) -> Dict[str, ProductSupport]:
    """Order frequency per product, all sharing the same total_orders denominator."""
    orders_by_product: Dict[str, set] = defaultdict(set)
    product_desc: Dict[str, str] = {}
    for row in incidence:
        orders_by_product[row.stock_code].add(row.invoice_no)
        current = product_desc.get(row.stock_code)
        if current is None or row.description > current:
            product_desc[row.stock_code] = row.description

    if orders_by_product and total_orders <= 0:
        raise AssociationInvariantError(
            f"total_orders={total_orders} with {len(orders_by_product)} products observed"
        )

    supports: Dict[str, ProductSupport] = {}
    for stock_code, invoices in orders_by_product.items():
        order_count = len(invoices)
        supports[stock_code] = ProductSupport(
            stock_code=stock_code,
            description=product_desc[stock_code],
            order_count=order_count,
            support=order_count / total_orders,
        )
    return supports


# ---------- Stage 5: pairwise co-occurrence ----------

def _count_basket_pairs(baskets: Iterable[Sequence[str]]) -> Counter:
    """Unfiltered canonical pair counts for a set of baskets.

    Each basket is deduplicated and sorted, so combinations() yields every
    pair as (smaller, larger) exactly once per order.
    """
    counts: Counter = Counter()
    for basket in baskets:
        products = sorted(set(basket))
        if len(products) < 2:
            continue
        counts.update(combinations(products, 2))
    return counts


def _apply_min_count(counts: Counter, min_cooccurrence: int) -> Dict[PairKey, int]:
    return {pair: n for pair, n in counts.items() if n >= min_cooccurrence}


def count_pair_cooccurrences(
    baskets: Iterable[Sequence[str]], min_cooccurrence: int = 10
) -> Dict[PairKey, int]:
    """Distinct orders containing each canonical pair, below-threshold pairs dropped.

    Work is O(sum k_i^2) for baskets of k_i distinct products.
    """
    return _apply_min_count(_count_basket_pairs(baskets), min_cooccurrence)


def count_pair_cooccurrences_partitioned(
    baskets: Sequence[Sequence[str]], min_cooccurrence: int = 10, partitions: int = 4
) -> Dict[PairKey, int]:
    """Same result as count_pair_cooccurrences, counted per partition of orders.

    Partial counters hold canonical keys only, so summing them cannot count a
    pair twice. The threshold is applied after the merge.
    """
    if partitions < 1:
        raise ValueError(f"partitions must be >= 1, got {partitions}")
    baskets = list(baskets)
    size = max(1, -(-len(baskets) // partitions))
    merged: Counter = Counter()
    for start in range(0, len(baskets), size):
        merged.update(_count_basket_pairs(baskets[start:start + size]))
    return _apply_min_count(merged, min_cooccurrence)


# ---------- Stage 6: association metrics ----------

def compute_pair_metrics(
    pair_counts: Dict[PairKey, int],
    supports: Dict[str, ProductSupport],
    total_orders: int,
) -> List[ProductPairAssociation]:
    """Support, confidence and lift for each surviving pair.

    Every ratio comes from the same integer counts, so
    confidence_a_to_b * support_a == support_ab up to float rounding.
    """
    if pair_counts and total_orders <= 0:
        raise AssociationInvariantError(f"total_orders={total_orders} with {len(pair_counts)} pairs")

    associations: List[ProductPairAssociation] = []
    for (product_a, product_b), both in pair_counts.items():
        if product_a >= product_b:
            raise AssociationInvariantError(f"pair ({product_a}, {product_b}) is not canonical")
        support_a = supports.get(product_a)
        support_b = supports.get(product_b)
        if support_a is None or support_b is None or support_a.order_count == 0 or support_b.order_count == 0:
            raise AssociationInvariantError(
                f"pair ({product_a}, {product_b}) has a product without support"
            )

        support_ab = both / total_orders
        associations.append(ProductPairAssociation(
            product_a=product_a,
            product_a_desc=support_a.description,
            product_b=product_b,
            product_b_desc=support_b.description,
            orders_with_both=both,
            support_a=support_a.support,
            support_b=support_b.support,
            support_ab=support_ab,
            confidence_a_to_b=both / support_a.order_count,
            confidence_b_to_a=both / support_b.order_count,
            lift=support_ab / (support_a.support * support_b.support),
            total_orders=total_orders,
        ))
    return associations


# ---------- Orchestration ----------

@dataclass
class AnalysisResult:
    """Everything one pipeline pass produced."""
    total_orders: int = 0
    incidence_count: int = 0
    supports: Dict[str, ProductSupport] = field(default_factory=dict)
    basket_sizes: List[int] = field(default_factory=list)
    associations: List[ProductPairAssociation] = field(default_factory=list)
    canonical: List[ProductPairAssociation] = field(default_factory=list)

    @property
    def pairs_found(self) -> int:
        return len(self.associations)


class AssociationRulesEngine:
    """Batch pipeline: valid transactions -> published product pair set"""

    def __init__(
        self,
        settings: Optional[AnalysisSettings] = None,
        store: Optional[StorageService] = None,
        metrics: Optional[MetricsCollector] = None,
        partitions: int = 1,
    ):
        self.settings = (settings or load_analysis_settings()).validate()
        self.store = store or storage
        self.metrics = metrics or metrics_collector
        self.partitions = partitions

    def analyze(self, rows: Iterable[Any], run_id: str = "adhoc") -> AnalysisResult:
        """Run stages 3-7 in memory over already-valid rows."""
        rows = list(rows)
        result = AnalysisResult()
        # Computed once over the valid rows and threaded through every later stage
        result.total_orders = count_total_orders(rows)

        with self.metrics.stage_timer(run_id, "incidence", input_count=len(rows)) as stage:
            incidence = build_order_product_incidence(rows)
            stage.output_count = len(incidence)
        result.incidence_count = len(incidence)

        with self.metrics.stage_timer(run_id, "support", input_count=len(incidence)) as stage:
            result.supports = compute_product_support(incidence, result.total_orders)
            stage.output_count = len(result.supports)

        baskets = group_baskets(incidence)
        result.basket_sizes = [len(products) for products in baskets.values()]

        with self.metrics.stage_timer(run_id, "cooccurrence", input_count=len(baskets)) as stage:
            if self.partitions > 1:
                pair_counts = count_pair_cooccurrences_partitioned(
                    list(baskets.values()), self.settings.min_cooccurrence, self.partitions
                )
            else:
                pair_counts = count_pair_cooccurrences(baskets.values(), self.settings.min_cooccurrence)
            stage.output_count = len(pair_counts)

        with self.metrics.stage_timer(run_id, "metrics", input_count=len(pair_counts)) as stage:
            result.associations = compute_pair_metrics(pair_counts, result.supports, result.total_orders)
            stage.output_count = len(result.associations)

        with self.metrics.stage_timer(run_id, "ranking", input_count=len(result.associations)) as stage:
            result.canonical = rank_by_lift(retain_canonical(result.associations, self.settings))
            stage.output_count = len(result.canonical)

        logger.info(
            f"Analysis {run_id}: orders={result.total_orders} products={len(result.supports)} "
            f"pairs={result.pairs_found} retained={len(result.canonical)}"
        )
        return result

    async def generate_association_rules(
        self, run_id: Optional[str] = None, slot_reserved: bool = False
    ) -> AnalysisResult:
        """Read valid transactions, analyze, and publish the canonical set atomically.

        With slot_reserved the caller already holds the run slot and releases it.
        """
        if slot_reserved:
            return await self._run(run_id)

        await acquire_run_slot()
        try:
            return await self._run(run_id)
        finally:
            release_run_slot()

    async def _run(self, run_id: Optional[str]) -> AnalysisResult:
        if run_id is None:
            run = await self.store.create_analysis_run({
                "id": str(uuid.uuid4()),
                "status": "running",
                "min_cooccurrence": self.settings.min_cooccurrence,
                "min_lift": self.settings.min_lift,
            })
            run_id = run.id

        logger.info(f"Generating association rules for run: {run_id}")
        self.metrics.start_run(run_id)
        try:
            rows = await self.store.get_valid_transactions()
            logger.info(f"Processing {len(rows)} valid transactions")

            result = self.analyze(rows, run_id)

            with self.metrics.stage_timer(run_id, "publish", input_count=len(result.canonical)) as stage:
                stage.output_count = await self.store.replace_product_pairs(run_id, result.canonical)

        except Exception as e:
            logger.error(f"Association rules generation error for run {run_id}: {e}")
            summary = self.metrics.finish_run(run_id, 0, success=False)
            await self.store.mark_analysis_run_failed(run_id, str(e))
            if summary:
                await self.store.update_analysis_run(run_id, {"metrics": summary})
            raise

        summary = self.metrics.finish_run(run_id, len(result.canonical), success=True)
        await self.store.update_analysis_run(run_id, {
            "status": "completed",
            "total_orders": result.total_orders,
            "pairs_found": result.pairs_found,
            "pairs_published": len(result.canonical),
            "metrics": summary,
            "completed_at": datetime.utcnow(),
        })
        logger.info(f"Published {len(result.canonical)} association rules for run {run_id}")
        return result
