import logging
import os
import time
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

# Load env from vanda/.env
package_dir = os.path.dirname(os.path.abspath(__file__))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(package_dir, ".env"))

from vanda.core.config import settings, validate_config
from vanda.core.logging import configure_logging
from vanda.core.middleware.request_id import RequestIdMiddleware
from vanda.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from vanda.api import billing, health
from vanda.features.metering.external import close_external_meter

configure_logging(settings.ENV, level=settings.LOG_LEVEL, fmt=settings.LOG_FORMAT)
validate_config(strict=settings.CONFIG_STRICT)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("vanda")
    logger.info("Starting Vanda backend...")
    app.state.startup_time = time.time()
    try:
        yield
    finally:
        logger.info("Stopping Vanda backend...")
        close_external_meter()


app = FastAPI(title="Vanda Studio - Quota backend", lifespan=lifespan)

app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.FRONTEND_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.root_router, tags=["health"])
app.include_router(billing.router, prefix="/api", tags=["billing"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("vanda.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")), reload=settings.ENV == "development")
