"""
CSV Processor Service
Parses uploaded Online Retail CSV exports, cleans them and loads the transactions table
"""
import csv
import io
import re
import time
from typing import List, Dict, Any, Optional
import logging

from .storage import StorageService, storage
from services.transaction_cleaner import CleaningReport, clean_rows
from settings import AnalysisSettings, load_analysis_settings

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = (
    "invoice_no",
    "stock_code",
    "description",
    "quantity",
    "invoice_date",
    "unit_price",
    "customer_id",
    "country",
)


class CSVSchemaError(ValueError):
    """Uploaded file is missing columns or has no rows."""


class CSVProcessor:
    """CSV ingestion: raw rows -> cleaner -> transactions table."""

    def __init__(self, store: Optional[StorageService] = None):
        self.store = store or storage

        self.header_aliases = {
            "invoice": "invoice_no",
            "invoice_number": "invoice_no",
            "invoiceno": "invoice_no",
            "stockcode": "stock_code",
            "sku": "stock_code",
            "invoicedate": "invoice_date",
            "unitprice": "unit_price",
            "price": "unit_price",
            "customerid": "customer_id",
        }

    # ---------- Main entry ----------

    def parse_csv(self, csv_content: str) -> List[Dict[str, Any]]:
        """Read CSV text into row dicts keyed by canonical snake_case headers."""
        csv_reader = csv.DictReader(io.StringIO(csv_content))
        headers = [h or "" for h in (csv_reader.fieldnames or [])]
        self.validate_csv_schema(headers)
        rows = [self._normalize_row_keys(row) for row in csv_reader]
        if not rows:
            raise CSVSchemaError("CSV file has a header but no rows")
        return rows

    async def process_csv(
        self, csv_content: str, settings: Optional[AnalysisSettings] = None
    ) -> CleaningReport:
        """Clean the file and replace the stored transactions with the result."""
        t0 = time.time()
        settings = settings or load_analysis_settings()
        logger.info("========== CSV PROCESSING STARTED ==========")

        rows = self.parse_csv(csv_content)
        report = clean_rows(rows, settings)
        await self.store.replace_transactions(report.records)

        dur_ms = int((time.time() - t0) * 1000)
        logger.info("========== CSV PROCESSING COMPLETED ==========")
        logger.info(
            f"Rows: {report.rows_read} | Loaded: {report.rows_loaded} | "
            f"Valid: {report.valid_rows} | Duration: {dur_ms}ms"
        )
        return report

    # ---------- Validation ----------

    def validate_csv_schema(self, headers: List[str]) -> None:
        if not any(h.strip() for h in headers):
            raise CSVSchemaError("CSV file is empty")
        headers_canonical = {self._canonicalize_header(h) for h in headers}
        missing_cols = [col for col in REQUIRED_COLUMNS if col not in headers_canonical]
        if missing_cols:
            raise CSVSchemaError(
                f"CSV schema error: missing required columns {', '.join(missing_cols)}. "
                f"Found headers: {', '.join(headers[:10])}"
            )
        logger.info(f"Schema validation passed with {len(headers)} columns")

    # ---------- Header normalization helpers ----------

    def _normalize_row_keys(self, row: Dict[str, Any]) -> Dict[str, Any]:
        normalized: Dict[str, Any] = {}
        for key, value in (row or {}).items():
            if key is None:
                continue
            canonical = self._canonicalize_header(key)
            if canonical and canonical not in normalized:
                normalized[canonical] = value
        return normalized

    def _canonicalize_header(self, header: str) -> str:
        """Convert header variants (spaces, CamelCase, hyphens) to snake_case."""
        if not header:
            return ""
        h = header.strip().replace("\ufeff", "")
        h = re.sub(r"[\s\-\/]+", "_", h)
        h = re.sub(r"(.)([A-Z][a-z]+)", r"\1_\2", h)
        h = re.sub(r"([a-z0-9])([A-Z])", r"\1_\2", h)
        h = re.sub(r"__+", "_", h)
        h = h.strip("_")
        base = h.lower()
        return self.header_aliases.get(base, base)


csv_processor = CSVProcessor()
