import logging

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from policyguard.api.middleware.logging import RequestLoggingMiddleware
from policyguard.api.routes.redacted import router as redacted_router
from policyguard.api.routes.uploads import router as uploads_router
from policyguard.config import get_settings

logging.basicConfig(
    level=getattr(logging, get_settings().log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="PolicyGuard API",
    description="Document processing pipeline for institutional policy documents",
    version="1.0.0",
    docs_url="/v1/docs",
    openapi_url="/v1/openapi.json",
)

app.add_middleware(RequestLoggingMiddleware)

app.include_router(uploads_router)
app.include_router(redacted_router)


@app.get("/healthz", tags=["health"])
async def health_check() -> JSONResponse:
    return JSONResponse({"status": "ok"})
