"""
Storage Service Layer
Database operations for transactions, analysis runs and the association result set
"""
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy import select, delete, insert, func, desc, or_, case
from typing import List, Optional, Dict, Any, Iterable, Sequence
import logging
from datetime import datetime

from database import AsyncSessionLocal, Transaction, AnalysisRun, ProductPair
from schemas import LIFT_DECIMALS, RATIO_DECIMALS, TransactionRecord, ProductPairAssociation
from utils import retry_async

logger = logging.getLogger(__name__)

INSERT_BATCH_SIZE = 5000

# Column sort keys for the three ranking projections
PAIR_ORDERINGS = {
    "lift": (desc(ProductPair.lift), desc(ProductPair.orders_with_both)),
    "support": (desc(ProductPair.support_ab), desc(ProductPair.lift)),
    "confidence": (
        desc(case(
            (ProductPair.confidence_a_to_b >= ProductPair.confidence_b_to_a, ProductPair.confidence_a_to_b),
            else_=ProductPair.confidence_b_to_a,
        )),
        desc(ProductPair.lift),
    ),
}


def _code_order(column, dialect_name: str):
    """Stock code tie-break in code-point order, matching Python string comparison."""
    return column.collate("C") if dialect_name == "postgresql" else column


def _batched(rows: Sequence[Dict[str, Any]], size: int = INSERT_BATCH_SIZE) -> Iterable[Sequence[Dict[str, Any]]]:
    for start in range(0, len(rows), size):
        yield rows[start:start + size]


def pair_to_row(pair: ProductPairAssociation, run_id: Optional[str]) -> Dict[str, Any]:
    """Round to the stored column precision."""
    return {
        "analysis_run_id": run_id,
        "product_a": pair.product_a,
        "product_a_desc": pair.product_a_desc,
        "product_b": pair.product_b,
        "product_b_desc": pair.product_b_desc,
        "support_a": round(pair.support_a, RATIO_DECIMALS),
        "support_b": round(pair.support_b, RATIO_DECIMALS),
        "support_ab": round(pair.support_ab, RATIO_DECIMALS),
        "confidence_a_to_b": round(pair.confidence_a_to_b, RATIO_DECIMALS),
        "confidence_b_to_a": round(pair.confidence_b_to_a, RATIO_DECIMALS),
        "lift": round(pair.lift, LIFT_DECIMALS),
        "orders_with_both": pair.orders_with_both,
        "total_orders": pair.total_orders,
    }


def row_to_association(row: ProductPair) -> ProductPairAssociation:
    return ProductPairAssociation(
        product_a=row.product_a,
        product_a_desc=row.product_a_desc,
        product_b=row.product_b,
        product_b_desc=row.product_b_desc,
        orders_with_both=row.orders_with_both,
        support_a=float(row.support_a),
        support_b=float(row.support_b),
        support_ab=float(row.support_ab),
        confidence_a_to_b=float(row.confidence_a_to_b),
        confidence_b_to_a=float(row.confidence_b_to_a),
        lift=float(row.lift),
        total_orders=row.total_orders,
    )


class StorageService:
    """Storage service providing database operations"""

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self._session_factory = session_factory or AsyncSessionLocal

    def get_session(self) -> AsyncSession:
        """Get database session context manager"""
        return self._session_factory()

    # ---------------- Transactions ----------------

    async def replace_transactions(self, records: List[TransactionRecord]) -> int:
        """Truncate-and-load the cleaned fact table inside one transaction."""
        rows = [r.to_row() for r in records]
        async with self.get_session() as session:
            try:
                await session.execute(delete(Transaction))
                for batch in _batched(rows):
                    await session.execute(insert(Transaction), list(batch))
                await session.commit()
            except Exception as e:
                await session.rollback()
                logger.error(f"Error replacing transactions: {e}")
                raise
        logger.info(f"Loaded {len(rows)} transactions")
        return len(rows)

    async def get_valid_transactions(self) -> List[Transaction]:
        """The valid transactions view: only rows flagged is_valid."""
        async with self.get_session() as session:
            query = select(Transaction).where(Transaction.is_valid.is_(True))
            result = await session.execute(query)
            return list(result.scalars().all())

    async def count_transactions(self) -> Dict[str, int]:
        async with self.get_session() as session:
            total = await session.scalar(select(func.count(Transaction.id)))
            valid = await session.scalar(
                select(func.count(Transaction.id)).where(Transaction.is_valid.is_(True))
            )
            orders = await session.scalar(
                select(func.count(func.distinct(Transaction.invoice_no))).where(Transaction.is_valid.is_(True))
            )
            return {"rows": total or 0, "valid_rows": valid or 0, "valid_orders": orders or 0}

    async def get_basket_sizes(self) -> List[int]:
        """Distinct products per valid order."""
        async with self.get_session() as session:
            query = (
                select(func.count(func.distinct(Transaction.stock_code)))
                .where(Transaction.is_valid.is_(True))
                .group_by(Transaction.invoice_no)
            )
            result = await session.execute(query)
            return [int(n) for n in result.scalars().all()]

    # ---------------- Analysis runs ----------------

    async def create_analysis_run(self, run_data: Dict[str, Any]) -> AnalysisRun:
        async with self.get_session() as session:
            run = AnalysisRun(**run_data)
            session.add(run)
            await session.commit()
            await session.refresh(run)
            return run

    async def get_analysis_run(self, run_id: str) -> Optional[AnalysisRun]:
        async with self.get_session() as session:
            return await session.get(AnalysisRun, run_id)

    async def update_analysis_run(self, run_id: str, updates: Dict[str, Any]) -> Optional[AnalysisRun]:
        async with self.get_session() as session:
            run = await session.get(AnalysisRun, run_id)
            if run:
                for key, value in updates.items():
                    setattr(run, key, value)
                await session.commit()
                await session.refresh(run)
            return run

    async def mark_analysis_run_failed(self, run_id: str, error_message: str) -> None:
        await self.update_analysis_run(run_id, {
            "status": "failed",
            "error_message": error_message[:2000],
            "completed_at": datetime.utcnow(),
        })

    # ---------------- Association result set ----------------

    @retry_async(max_retries=3, base_delay=0.5)
    async def replace_product_pairs(
        self, run_id: Optional[str], pairs: List[ProductPairAssociation]
    ) -> int:
        """Atomically swap the published association set.

        Delete and insert share one transaction, so readers see either the old
        complete set or the new one; on failure the old set stays in place.
        """
        rows = [pair_to_row(p, run_id) for p in pairs]
        async with self.get_session() as session:
            try:
                await session.execute(delete(ProductPair))
                for batch in _batched(rows):
                    await session.execute(insert(ProductPair), list(batch))
                await session.commit()
            except Exception as e:
                await session.rollback()
                logger.error(f"Error publishing product pairs for run {run_id}: {e}")
                raise
        logger.info(f"Published {len(rows)} product pairs for run {run_id}")
        return len(rows)

    async def get_product_pairs(
        self,
        order_by: str = "lift",
        limit: Optional[int] = 100,
        min_lift: Optional[float] = None,
    ) -> List[ProductPairAssociation]:
        if order_by not in PAIR_ORDERINGS:
            raise ValueError(f"order_by must be one of {sorted(PAIR_ORDERINGS)}, got {order_by!r}")
        async with self.get_session() as session:
            query = select(ProductPair)
            if min_lift is not None:
                query = query.where(ProductPair.lift >= min_lift)
            dialect_name = session.bind.dialect.name
            query = query.order_by(
                *PAIR_ORDERINGS[order_by],
                _code_order(ProductPair.product_a, dialect_name),
                _code_order(ProductPair.product_b, dialect_name),
            )
            if limit:
                query = query.limit(limit)
            result = await session.execute(query)
            return [row_to_association(r) for r in result.scalars().all()]

    async def get_product_pairs_for_product(self, stock_code: str) -> List[ProductPairAssociation]:
        async with self.get_session() as session:
            query = (
                select(ProductPair)
                .where(or_(ProductPair.product_a == stock_code, ProductPair.product_b == stock_code))
                .order_by(desc(ProductPair.lift))
            )
            result = await session.execute(query)
            return [row_to_association(r) for r in result.scalars().all()]


# Global storage instance
storage = StorageService()
