from __future__ import annotations

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from reportflow.core.storage import diagnose_storage
from reportflow.modules.extraction.api import router as extraction_router
from reportflow.modules.identity.api import router as identity_router
from reportflow.modules.notifications.api import router as notifications_router
from reportflow.modules.payments.api import router as payments_router
from reportflow.modules.reports.api import router as reports_router
from reportflow.modules.workflow.api import router as workflow_router

router = APIRouter()

router.include_router(identity_router, prefix="/api")
router.include_router(reports_router, prefix="/api")
router.include_router(extraction_router, prefix="/api")
router.include_router(workflow_router, prefix="/api")
router.include_router(payments_router, prefix="/api")
router.include_router(notifications_router, prefix="/api")


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/healthz/storage")
def healthz_storage(*, write_test: bool = False) -> JSONResponse:
    result = diagnose_storage(write_test=write_test)
    status_code = 200 if result.get("ok") else 503
    return JSONResponse(status_code=status_code, content=result)
