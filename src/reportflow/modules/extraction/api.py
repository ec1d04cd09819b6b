from __future__ import annotations

from fastapi import APIRouter, Depends, File, UploadFile

from reportflow.api.deps import get_current_user
from reportflow.core.errors import NoAmountColumnFound
from reportflow.core.logging import get_logger, log_event
from reportflow.modules.extraction.amounts import extract
from reportflow.modules.extraction.schemas import ExtractionResultOut
from reportflow.modules.identity.models import User
from reportflow.modules.reports.service import sanitize_filename, validate_report_upload

router = APIRouter(tags=["extraction"])
logger = get_logger(__name__)


@router.post("/extract", response_model=ExtractionResultOut)
async def extract_preview(
    upload: UploadFile = File(...),
    _: User = Depends(get_current_user),
) -> ExtractionResultOut:
    """Extract amounts from one report file without storing it."""
    filename = sanitize_filename(upload.filename or "") or "upload.bin"
    body = await upload.read()
    log_event(
        logger,
        "upload.received",
        filename=filename,
        content_type=upload.content_type,
        byte_size=len(body),
        preview=True,
    )
    validate_report_upload(filename=filename, body=body)
    result = extract(body, filename)
    if not result.has_amount_column:
        raise NoAmountColumnFound(
            f'No amount column found in "{filename}". Expected a header such as '
            '"Total amount charged", "Amount" or "Total".',
            file_name=filename,
        )
    return ExtractionResultOut.from_result(result)
