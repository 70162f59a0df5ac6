"""
Transaction Cleaner
Turns raw, string-typed retail rows into typed TransactionRecords with a validity flag
"""
from typing import Any, Iterable, List, Mapping, Optional
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from schemas import TransactionRecord, CleaningReportDict
from settings import AnalysisSettings
from utils import sanitize_string

logger = logging.getLogger(__name__)

WEEKDAY_NAMES = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")

DATETIME_FORMATS = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%dT%H:%M",
    "%Y-%m-%d",
    "%m/%d/%Y %H:%M:%S",
    "%m/%d/%Y %H:%M",
    "%m/%d/%Y",
)

NULL_TOKENS = {"", "null", "none", "nan", "n/a"}

# Evaluated in this order; the first failing check names the reason
INVALID_CANCELLATION = "cancellation"
INVALID_QUANTITY = "non_positive_quantity"
INVALID_PRICE = "invalid_price"
INVALID_CUSTOMER = "missing_customer"
INVALID_STOCK_CODE = "excluded_stock_code"

PRICE_QUANT = Decimal("0.001")
TOTAL_QUANT = Decimal("0.01")


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = sanitize_string(value)
    if text.lower() in NULL_TOKENS:
        return None
    return text


def parse_quantity(value: Any) -> Optional[int]:
    """Integer text only; anything else is None."""
    text = _text(value)
    if text is None:
        return None
    try:
        return int(text)
    except ValueError:
        return None


def parse_price(value: Any) -> Optional[Decimal]:
    text = _text(value)
    if text is None:
        return None
    try:
        price = Decimal(text)
    except InvalidOperation:
        return None
    if not price.is_finite():
        return None
    return price.quantize(PRICE_QUANT, rounding=ROUND_HALF_UP)


def parse_customer_id(value: Any) -> Optional[int]:
    """Accepts "17850" and spreadsheet-style "17850.0"."""
    text = _text(value)
    if text is None:
        return None
    try:
        number = Decimal(text)
    except InvalidOperation:
        return None
    if not number.is_finite() or number != number.to_integral_value():
        return None
    return int(number)


def parse_invoice_date(value: Any) -> Optional[datetime]:
    text = _text(value)
    if text is None:
        return None
    for fmt in DATETIME_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            pass
    return None


def is_excluded_stock_code(stock_code: str, settings: AnalysisSettings) -> bool:
    code = stock_code.upper()
    if code in settings.excluded_stock_codes:
        return True
    return any(marker in code for marker in settings.excluded_stock_code_markers)


def invalid_reason(
    invoice_no: str,
    stock_code: str,
    quantity: Optional[int],
    unit_price: Optional[Decimal],
    customer_id: Optional[int],
    settings: AnalysisSettings,
) -> Optional[str]:
    """Return why a parsed line is not eligible for analysis, or None if it is."""
    if invoice_no.upper().startswith(settings.cancellation_prefix.upper()):
        return INVALID_CANCELLATION
    if quantity is None or quantity <= 0:
        return INVALID_QUANTITY
    if unit_price is None or unit_price <= 0:
        return INVALID_PRICE
    if settings.require_customer_id and customer_id is None:
        return INVALID_CUSTOMER
    if is_excluded_stock_code(stock_code, settings):
        return INVALID_STOCK_CODE
    return None


def _field(raw: Mapping[str, Any], *names: str) -> Any:
    for name in names:
        if name in raw:
            return raw[name]
    return None


def clean_row(raw: Mapping[str, Any], settings: AnalysisSettings) -> Optional[TransactionRecord]:
    """Clean one raw row. Returns None when the invoice date is unparseable."""
    invoice_date = parse_invoice_date(_field(raw, "invoice_date", "InvoiceDate"))
    if invoice_date is None:
        return None

    invoice_no = _text(_field(raw, "invoice_no", "InvoiceNo")) or ""
    stock_code = _text(_field(raw, "stock_code", "StockCode")) or ""
    description = _text(_field(raw, "description", "Description"))
    if description is not None:
        description = description.upper()
    quantity = parse_quantity(_field(raw, "quantity", "Quantity"))
    unit_price = parse_price(_field(raw, "unit_price", "UnitPrice"))
    customer_id = parse_customer_id(_field(raw, "customer_id", "CustomerID"))
    country = _text(_field(raw, "country", "Country")) or ""

    unit_price_usd = None
    line_total_usd = None
    if unit_price is not None:
        unit_price_usd = (unit_price * settings.currency_rate).quantize(PRICE_QUANT, rounding=ROUND_HALF_UP)
        if quantity is not None:
            line_total_usd = (quantity * unit_price * settings.currency_rate).quantize(
                TOTAL_QUANT, rounding=ROUND_HALF_UP
            )

    reason = invalid_reason(invoice_no, stock_code, quantity, unit_price, customer_id, settings)

    return TransactionRecord(
        invoice_no=invoice_no,
        stock_code=stock_code,
        description=description,
        quantity=quantity,
        invoice_date=invoice_date,
        unit_price=unit_price,
        unit_price_usd=unit_price_usd,
        line_total_usd=line_total_usd,
        customer_id=customer_id,
        country=country,
        is_cancellation=invoice_no.upper().startswith(settings.cancellation_prefix.upper()),
        is_return=quantity is not None and quantity < 0,
        is_valid=reason is None,
        year=invoice_date.year,
        month=invoice_date.month,
        day_of_week=WEEKDAY_NAMES[invoice_date.weekday()],
        hour=invoice_date.hour,
    )


@dataclass
class CleaningReport:
    """Result of cleaning a batch of raw rows."""
    records: List[TransactionRecord] = field(default_factory=list)
    rows_read: int = 0
    rows_dropped_invalid_date: int = 0
    invalid_reasons: Counter = field(default_factory=Counter)

    @property
    def rows_loaded(self) -> int:
        return len(self.records)

    @property
    def valid_rows(self) -> int:
        return sum(1 for r in self.records if r.is_valid)

    @property
    def cleaning_rate(self) -> float:
        if not self.records:
            return 0.0
        return self.valid_rows / self.rows_loaded

    def to_dict(self) -> CleaningReportDict:
        return {
            "rowsRead": self.rows_read,
            "rowsLoaded": self.rows_loaded,
            "rowsDroppedInvalidDate": self.rows_dropped_invalid_date,
            "validRows": self.valid_rows,
            "cleaningRatePct": round(self.cleaning_rate * 100, 2),
            "invalidReasons": dict(self.invalid_reasons),
        }


def clean_rows(rows: Iterable[Mapping[str, Any]], settings: AnalysisSettings) -> CleaningReport:
    """Clean a batch; row-level problems are counted, never raised."""
    report = CleaningReport()
    for raw in rows:
        report.rows_read += 1
        record = clean_row(raw, settings)
        if record is None:
            report.rows_dropped_invalid_date += 1
            continue
        if not record.is_valid:
            reason = invalid_reason(
                record.invoice_no,
                record.stock_code,
                record.quantity,
                record.unit_price,
                record.customer_id,
                settings,
            )
            report.invalid_reasons[reason] += 1
        report.records.append(record)

    logger.info(
        f"Cleaning complete: read={report.rows_read} loaded={report.rows_loaded} "
        f"valid={report.valid_rows} droppedDate={report.rows_dropped_invalid_date} "
        f"rate={report.cleaning_rate:.2%}"
    )
    return report


def valid_only(records: Iterable[TransactionRecord]) -> List[TransactionRecord]:
    """In-memory counterpart of the valid transactions view."""
    return [r for r in records if r.is_valid]
