import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from backoffice.core.config import settings
from backoffice.core.errors import (
    Conflict,
    DomainRuleViolation,
    EngineError,
    InvalidFilterValue,
    NotFound,
    UnsupportedExportFormat,
)
from backoffice.api.router import router as admin_router

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

ERROR_STATUS = {
    NotFound: 404,
    Conflict: 409,
    DomainRuleViolation: 422,
    InvalidFilterValue: 400,
    UnsupportedExportFormat: 400,
}

app = FastAPI(title=settings.APP_NAME, version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(admin_router, prefix="/api/admin")

@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError):
    status_code = next((code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)), 400)
    if status_code >= 409:
        logger.info("%s %s -> %s: %s", request.method, request.url.path, status_code, exc.detail)
    return JSONResponse(status_code=status_code, content={"detail": exc.detail})

@app.get("/", include_in_schema=False)
def landing():
    return JSONResponse({"service": settings.APP_NAME, "status": "ok"})

@app.get("/health")
def health():
    return {"status": "ok"}
