import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# Import models so every table is registered with Base before create_all
from . import models  # noqa: F401
from .cache import get_redis_client
from .config import TRUST_GATEWAY_HEADERS
from .database import Base, engine
from .domain.billing import router as billing_router
from .domain.billing import webhooks_router as dodopayments_webhooks_router
from .errors import BillingError, ConflictError

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Reduce verbosity of third-party libraries
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Application starting up...")
    try:
        Base.metadata.create_all(bind=engine, checkfirst=True)
        logger.info("Database tables created successfully")
    except Exception as e:
        # Ignore "already exists" errors from race conditions between workers
        error_msg = str(e)
        if "already exists" in error_msg or "duplicate key" in error_msg:
            logger.info("Database tables already exist (created by another worker)")
        else:
            logger.error(f"Failed to create database tables: {e}")

    try:
        get_redis_client()  # Connection test
        logger.info("Redis connection established")
    except Exception as e:
        logger.warning(f"Redis connection failed - modules cache disabled: {e}")

    yield
    logger.info("Application shutting down...")


app = FastAPI(title="Nexo Billing API", version="1.0.0", lifespan=lifespan)


@app.exception_handler(BillingError)
async def billing_exception_handler(request: Request, exc: BillingError):
    """Domain errors -> 400 validation, 404 not found, 409 conflict, 502 gateway, 403 tenant"""
    content = {"detail": exc.message, **({"details": exc.details} if exc.details else {})}
    if isinstance(exc, ConflictError):
        content["reason"] = exc.reason

    if exc.status_code >= 500:
        logger.error(f"❌ {request.method} {request.url.path}: {exc.message}")
    else:
        logger.warning(f"⚠️ {request.method} {request.url.path} -> {exc.status_code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=content)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning(f"Validation error for {request.url.path}: {exc.errors()}")
    return JSONResponse(status_code=422, content={"detail": exc.errors()})


@app.middleware("http")
async def gateway_identity(request: Request, call_next):
    """
    Identity forwarded by the authenticating API gateway.
    Only honoured when TRUST_GATEWAY_HEADERS is enabled.
    """
    if TRUST_GATEWAY_HEADERS:
        org_header = request.headers.get("x-organization-id")
        user_header = request.headers.get("x-user-id")
        if org_header and org_header.isdigit():
            request.state.organizacion_id = int(org_header)
        if user_header and user_header.isdigit():
            request.state.usuario_id = int(user_header)
    return await call_next(request)


ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "http://localhost:5173,http://localhost:3000").split(",")

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"],
    allow_headers=["*"],
)

# Routes
app.include_router(billing_router)
app.include_router(dodopayments_webhooks_router)


@app.get("/")
def root():
    return {"message": "Nexo Billing API is running"}


@app.get("/health")
def health():
    return {"status": "healthy"}
