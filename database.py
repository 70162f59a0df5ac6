# --- models + engine for the basket analysis store ---

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy import (
    String, Text, Integer, Float, Numeric, DateTime, Boolean, JSON,
    ForeignKey, func, Index, CheckConstraint
)
from sqlalchemy.pool import StaticPool
from sqlalchemy import text
from datetime import datetime
from decimal import Decimal
from typing import Dict, Any, Optional
import logging, os, time, uuid

# Load environment variables early (before reading DATABASE_URL)
from dotenv import load_dotenv
load_dotenv()

# -------------------------------------------------------------------
# Engine / Session
# -------------------------------------------------------------------
DATABASE_URL = os.getenv("DATABASE_URL", "")

if DATABASE_URL:
    if DATABASE_URL.startswith("postgresql://"):
        DATABASE_URL = DATABASE_URL.replace("postgresql://", "postgresql+asyncpg://", 1)
    engine = create_async_engine(
        DATABASE_URL,
        echo=os.getenv("NODE_ENV") == "development",
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True,  # Verify connections before use
        pool_recycle=1800,  # Recycle connections after 30 minutes
        pool_timeout=15,
    )
else:
    DATABASE_URL = "sqlite+aiosqlite:///:memory:"
    engine = create_async_engine(
        DATABASE_URL,
        echo=os.getenv("NODE_ENV") == "development",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

AsyncSessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

def _redact_db_url(url: str) -> str:
    try:
        if "@" in url and "://" in url:
            head, tail = url.split("://", 1)
            creds, hostpart = tail.split("@", 1)
            if ":" in creds:
                user, _pwd = creds.split(":", 1)
                return f"{head}://{user}:******@{hostpart}"
            return url
        if "://" in url:
            return url
    except ValueError:
        pass
    return "******"

logger = logging.getLogger(__name__)
logger.info(f"Creating SQL engine for { _redact_db_url(DATABASE_URL) }")

async def probe_db_connection():
    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
        logger.info("DB connectivity probe: OK")
    except Exception as e:
        logger.exception(f"DB connectivity probe failed: {e}")

async def check_db_health() -> Dict[str, Any]:
    """Round-trip a trivial query and report latency."""
    start = time.time()
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return {"status": "healthy", "latency_ms": int((time.time() - start) * 1000)}
    except Exception as e:
        logger.error(f"DB health check failed: {e}")
        return {"status": "unhealthy", "error": str(e)}

# -------------------------------------------------------------------
# Base
# -------------------------------------------------------------------
class Base(DeclarativeBase):
    pass

# -------------------------------------------------------------------
# MODELS
# -------------------------------------------------------------------

class Transaction(Base):
    """Cleaned line item; invalid rows are kept and flagged."""
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    invoice_no: Mapped[str] = mapped_column(String(20), nullable=False)
    stock_code: Mapped[str] = mapped_column(String(50), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # NULL when the raw value did not parse
    quantity: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    invoice_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    unit_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 3), nullable=True)
    unit_price_usd: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 3), nullable=True)
    line_total_usd: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)

    customer_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    country: Mapped[str] = mapped_column(Text, nullable=False)

    is_cancellation: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_return: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_valid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    day_of_week: Mapped[str] = mapped_column(String(10), nullable=False)
    hour: Mapped[int] = mapped_column(Integer, nullable=False)

    load_date: Mapped[datetime] = mapped_column(DateTime, default=func.now(), nullable=False)


class AnalysisRun(Base):
    __tablename__ = "analysis_runs"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    status: Mapped[str] = mapped_column(Text, nullable=False, default="running")

    min_cooccurrence: Mapped[int] = mapped_column(Integer, nullable=False)
    min_lift: Mapped[float] = mapped_column(Float, nullable=False)

    total_orders: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    pairs_found: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    pairs_published: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    metrics: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    started_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    product_pairs = relationship("ProductPair", back_populates="analysis_run")

    __table_args__ = (
        CheckConstraint(
            "status IN ('running','completed','failed')",
            name="ck_analysis_runs_status",
        ),
    )


class ProductPair(Base):
    """Canonical association result set; replaced wholesale on every run."""
    __tablename__ = "product_pairs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    analysis_run_id: Mapped[Optional[str]] = mapped_column(String, ForeignKey("analysis_runs.id"), nullable=True)

    product_a: Mapped[str] = mapped_column(String(50), nullable=False)
    product_a_desc: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    product_b: Mapped[str] = mapped_column(String(50), nullable=False)
    product_b_desc: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    support_a: Mapped[Decimal] = mapped_column(Numeric(10, 6), nullable=False)
    support_b: Mapped[Decimal] = mapped_column(Numeric(10, 6), nullable=False)
    support_ab: Mapped[Decimal] = mapped_column(Numeric(10, 6), nullable=False)
    confidence_a_to_b: Mapped[Decimal] = mapped_column(Numeric(10, 6), nullable=False)
    confidence_b_to_a: Mapped[Decimal] = mapped_column(Numeric(10, 6), nullable=False)
    lift: Mapped[Decimal] = mapped_column(Numeric(10, 4), nullable=False)

    orders_with_both: Mapped[int] = mapped_column(Integer, nullable=False)
    total_orders: Mapped[int] = mapped_column(Integer, nullable=False)

    analysis_date: Mapped[datetime] = mapped_column(DateTime, default=func.now(), nullable=False)

    analysis_run = relationship("AnalysisRun", back_populates="product_pairs")

    __table_args__ = (
        # Stock codes compare by code point, never by locale collation
        CheckConstraint(
            'product_a < product_b COLLATE "C"', name="ck_product_pairs_canonical_c"
        ).ddl_if(dialect="postgresql"),
        CheckConstraint(
            "product_a < product_b", name="ck_product_pairs_canonical"
        ).ddl_if(dialect="sqlite"),
    )

# -------------------------------------------------------------------
# Indexes
# -------------------------------------------------------------------
Index('ix_transactions_invoice_no', Transaction.invoice_no)
Index('ix_transactions_stock_code', Transaction.stock_code)
Index('ix_transactions_customer_id', Transaction.customer_id)
Index('ix_transactions_is_valid', Transaction.is_valid)
Index('ix_product_pairs_lift', ProductPair.lift.desc())
Index('ix_product_pairs_product_a', ProductPair.product_a)
Index('ix_product_pairs_product_b', ProductPair.product_b)
# -------------------------------------------------------------------
# Init helpers
# -------------------------------------------------------------------
async def init_db():
    """Ensure tables exist."""
    await probe_db_connection()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("DB init complete (tables ensured).")
