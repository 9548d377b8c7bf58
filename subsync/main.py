import logging
import os
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv

# Load env from subsync/.env
package_dir = os.path.dirname(os.path.abspath(__file__))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(package_dir, ".env"))

# Import after dotenv is loaded
from subsync.core.config import settings, validate_config  # noqa: E402
from subsync.core.database import create_all_tables  # noqa: E402
from subsync.core.logging import configure_logging  # noqa: E402
from subsync.core.middleware.request_id import RequestIdMiddleware  # noqa: E402
from subsync.core.errors import (  # noqa: E402
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from subsync.api import billing, health  # noqa: E402

configure_logging(settings.ENV)
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("subsync")
    logger.info("Starting subsync...")
    app.state.startup_time = time.time()
    try:
        create_all_tables()
    except ValueError as e:
        # No DATABASE_URL: serve health endpoints, readyz reports not ready
        logger.warning(f"Database not initialized: {e}")
    try:
        yield
    finally:
        logger.info("Stopping subsync...")


app = FastAPI(title="subsync - subscription billing", lifespan=lifespan)

app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(StarletteHTTPException, http_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.root_router, tags=["health"])
app.include_router(billing.router, prefix="/api", tags=["billing"])
