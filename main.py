from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.core import settings
from app.core.logging_config import configure_logging, get_logger
from app.db.base import Base
from app.db.session import engine

# Register models
from app.db import models  # noqa: F401

from services.wms.exceptions import (
    InsufficientInventory,
    InvalidStateTransition,
    NotFound,
    ValidationError,
    WmsError,
)
from services.wms.tasking.api import router as tasks_router
from services.wms.inventory_ops.allocation_api import router as pick_lists_router
from services.wms.inventory_ops.count_review_api import router as counts_router

logger = get_logger("api")

_STATUS_BY_ERROR = (
    (NotFound, 404),
    (InvalidStateTransition, 409),
    (InsufficientInventory, 409),
    (ValidationError, 422),
)

app = FastAPI(title="Warehouse Task Engine")


@app.on_event("startup")
async def _startup():
    configure_logging(level=settings.LOG_LEVEL)
    # Dev-friendly schema creation
    Base.metadata.create_all(bind=engine)
    logger.info("schema_ensured")


@app.exception_handler(WmsError)
async def _wms_error_handler(request: Request, exc: WmsError) -> JSONResponse:
    status = next((code for cls, code in _STATUS_BY_ERROR if isinstance(exc, cls)), 400)
    if status >= 409:
        logger.warning("request_rejected", extra={"path": request.url.path, "code": exc.code, "detail": exc.message})
    return JSONResponse(status_code=status, content={"code": exc.code, "detail": exc.message})


app.include_router(tasks_router)
app.include_router(pick_lists_router)
app.include_router(counts_router)


@app.get("/health")
def health():
    return {"ok": True}
