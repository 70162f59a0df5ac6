"""
CSV Upload Router
Handles transaction file uploads, cleaning and loading
"""
from fastapi import APIRouter, UploadFile, File, HTTPException
import logging
import uuid

from services.csv_processor import CSVSchemaError, csv_processor
from services.storage import storage
from settings import ConfigurationError, load_analysis_settings

logger = logging.getLogger(__name__)
router = APIRouter()

MAX_UPLOAD_BYTES = 50 * 1024 * 1024


@router.post("/upload-transactions")
async def upload_transactions(file: UploadFile = File(...)):
    """Replace the transactions table with the cleaned contents of a CSV export."""
    request_id = str(uuid.uuid4())
    logger.info(f"[{request_id}] Upload attempt filename={file.filename!r} content_type={file.content_type!r}")

    if not file.filename or not file.filename.lower().endswith(".csv"):
        logger.warning(f"[{request_id}] Reject non-CSV filename={file.filename!r}")
        raise HTTPException(status_code=400, detail="Only CSV files are allowed")

    content = await file.read()
    size = len(content or b"")
    logger.info(f"[{request_id}] Received payload size={size} bytes")

    if size == 0:
        raise HTTPException(status_code=400, detail="Empty file")

    if size > MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=400, detail="File too large. Maximum size is 50MB")

    try:
        settings = load_analysis_settings()
        csv_content = content.decode("utf-8-sig", errors="replace")
        report = await csv_processor.process_csv(csv_content, settings)
    except (CSVSchemaError, ConfigurationError) as e:
        logger.warning(f"[{request_id}] Rejected upload: {e}")
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.exception(f"[{request_id}] Upload processing failed: {e}")
        raise HTTPException(status_code=500, detail="Failed to process CSV upload")

    return {"success": True, "filename": file.filename, "report": report.to_dict()}


@router.get("/transactions/stats")
async def get_transaction_stats():
    """Row, valid row and valid order counts for the loaded data."""
    try:
        return await storage.count_transactions()
    except Exception as e:
        logger.error(f"Transaction stats error: {e}")
        raise HTTPException(status_code=500, detail="Failed to get transaction stats")
