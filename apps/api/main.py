"""
Genpire API - FastAPI Backend
Progressive product image generation gated by credit reservations.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import health, billing, products, workflow, tech_pack
from services.credits import build_credits_manager
from services.errors import GenpireError
from services.generation import build_image_provider
from services.storage import build_storage_provider
from services.ttl_store import build_ttl_store
from services.vision import build_vision_analyzer

logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Genpire API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except (SQLAlchemyError, OSError) as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    try:
        stale = await app.state.credits_manager.list_stale_reservations()
        if stale:
            print(
                f"💳 {len(stale)} credit reservation(s) still held after "
                f"{settings.STALE_RESERVATION_MINUTES} min. Reconcile via /billing/reservations/stale."
            )
    except (SQLAlchemyError, OSError) as exc:
        print(f"⚠️ Stale reservation check skipped: {exc}")
    print(f"🧩 Workflow storage backend: {app.state.storage_provider.backend}")
    yield
    # Shutdown
    await app.state.ttl_store.close()
    print("👋 Shutting down API...")


app = FastAPI(
    title="Genpire API",
    description="AI product design: progressive image generation and tech packs, metered by credits",
    version="0.1.0",
    lifespan=lifespan,
)

# Injected state shared by every request handler
app.state.ttl_store = build_ttl_store()
app.state.storage_provider = build_storage_provider()
app.state.credits_manager = build_credits_manager()
app.state.image_provider = build_image_provider()
app.state.vision_analyzer = build_vision_analyzer()
app.state.disable_rate_limits = False


def _error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


@app.exception_handler(GenpireError)
async def genpire_error_handler(request: Request, exc: GenpireError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return _error_response(exc.status_code, exc.message)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return _error_response(exc.status_code, str(exc.detail))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        problems.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return _error_response(400, "Invalid request: " + "; ".join(problems))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("%s %s crashed", request.method, request.url.path)
    return _error_response(500, "Internal server error")


# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(products.router, prefix="/products", tags=["Products"])
app.include_router(workflow.router, prefix="/workflow", tags=["Workflow"])
app.include_router(tech_pack.router, prefix="/tech-pack", tags=["Tech Pack"])
app.include_router(billing.router, prefix="/billing", tags=["Billing"])

# Locally stored generations (providers that return image bytes instead of URLs)
app.mount("/media", StaticFiles(directory=settings.GENERATED_MEDIA_DIR, check_dir=False), name="media")


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Genpire API",
        "version": "0.1.0",
        "status": "running"
    }
