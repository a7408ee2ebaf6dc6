import logging
import os
import time
from contextlib import asynccontextmanager

from dotenv import load_dotenv

# Load .env from the project root before settings are read
project_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(project_dir, ".env"))

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from personachat.api import chat, health, metrics, payments, sessions, subscription, users
from personachat.core.config import settings, validate_config
from personachat.core.database import create_all_tables
from personachat.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from personachat.core.logging import configure_logging
from personachat.core.middleware.metrics import MetricsMiddleware
from personachat.core.middleware.request_id import RequestIdMiddleware
from personachat.core.middleware.security_headers import SecurityHeadersMiddleware
from personachat.core.rate_limit import FixedWindowLimiter
from personachat.core.validation import validate_env
from personachat.features.chat.gatekeeper import build_default_gatekeeper

configure_logging(settings.ENV)
validate_env()
validate_config(strict=settings.CONFIG_STRICT)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("personachat")
    logger.info("Starting PersonaChat backend...")
    app.state.startup_time = time.time()
    create_all_tables()
    try:
        yield
    finally:
        logger.info("Stopping PersonaChat backend...")


app = FastAPI(title="PersonaChat - Backend", lifespan=lifespan)

app.state.rate_limiter = FixedWindowLimiter(settings.CHAT_RATE_LIMIT_PER_MINUTE)
app.state.chat_gatekeeper = build_default_gatekeeper(app.state.rate_limiter)

# Middlewares (last added runs first)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(MetricsMiddleware)
app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(StarletteHTTPException, http_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.FRONTEND_URL] if settings.FRONTEND_URL else ["http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

app.include_router(chat.router)
app.include_router(users.router)
app.include_router(subscription.router)
app.include_router(payments.router)
app.include_router(sessions.router)
app.include_router(health.router)
app.include_router(metrics.router)


@app.get("/")
def root():
    return {"message": "PersonaChat backend is running", "version": "0.1.0"}
