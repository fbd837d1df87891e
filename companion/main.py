import logging
import time
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

load_dotenv()

from companion.core.config import settings, validate_config  # noqa: E402
from companion.core.database import create_all_tables  # noqa: E402
from companion.core.errors import (  # noqa: E402
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from companion.core.logging import LOGGER_NAME, configure_logging  # noqa: E402
from companion.core.middleware.request_id import RequestIdMiddleware  # noqa: E402
from companion.api import admin, billing, characters, chat, health, images, tokens  # noqa: E402
from companion.features.images.tracker import registry  # noqa: E402
from companion.features.plans.service import seed_default_restrictions  # noqa: E402

configure_logging(settings.ENV)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger(LOGGER_NAME)
    logger.info("Starting companion backend...")
    validate_config(strict=settings.CONFIG_STRICT)
    create_all_tables()
    seed_default_restrictions()
    app.state.startup_time = time.time()
    try:
        yield
    finally:
        registry.cancel_all()
        logger.info("Stopping companion backend...")


app = FastAPI(title="Companion - Backend", lifespan=lifespan)

app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

# CORS (adjust origins in production)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(chat.router, prefix="/api")
app.include_router(images.router, prefix="/api")
app.include_router(tokens.router, prefix="/api")
app.include_router(characters.router, prefix="/api")
app.include_router(admin.router, prefix="/api")
app.include_router(billing.router, prefix="/api")
app.include_router(health.router, prefix="/api")
app.include_router(health.root_router)
