"""
Callos Functions - Application Entry Point

This file initializes the FastAPI app, configures middleware, exception
handlers and includes the router. Run with: python main.py
"""
import uvicorn
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from callos import __version__
from callos.api import router
from callos.config import settings
from callos.database import close_db, init_db
from callos.exceptions import APIError, CallosError
from callos.logging_config import get_logger, setup_logging
from callos.monitoring import record_error
from callos.schemas import ErrorResponse

logger = get_logger(__name__)


# ============================================
# LIFESPAN CONTEXT MANAGER
# ============================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup and shutdown."""
    # Startup
    setup_logging(settings.debug)
    await init_db()
    logger.info(
        "application_started",
        version=__version__,
        environment="development" if settings.debug else "production",
        callback_url=settings.callback_url,
        google_configured=settings.is_google_configured,
    )

    yield

    # Shutdown
    await close_db()
    logger.info("application_stopped")


# ============================================
# CREATE FASTAPI APP
# ============================================

app = FastAPI(
    title="Callos Functions",
    description="Webhook relay, automation payloads and CRM adapters for meeting analysis",
    version=__version__,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
    lifespan=lifespan,
)


# ============================================
# MIDDLEWARE CONFIGURATION
# ============================================

# Functions are called from the browser app and from provider webhooks
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["authorization", "x-client-info", "apikey", "content-type"],
)


# ============================================
# EXCEPTION HANDLERS
# ============================================

def error_body(message: str, code=None) -> dict:
    return ErrorResponse(error=message, code=code).model_dump(exclude_none=True)


@app.exception_handler(CallosError)
async def callos_error_handler(request: Request, exc: CallosError):
    log = logger.warning if exc.status_code < 500 else logger.error
    log("request_failed", path=request.url.path, status=exc.status_code, error=exc.message)
    record_error(type(exc).__name__, request.url.path.strip("/").split("/")[0] or "root")
    code = exc.code if isinstance(exc, APIError) else None
    return JSONResponse(status_code=exc.status_code, content=error_body(exc.message, code))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = errors[0].get("msg", "Invalid request body") if errors else "Invalid request body"
    logger.warning("request_validation_failed", path=request.url.path, error=message)
    record_error("RequestValidationError", request.url.path.strip("/").split("/")[0] or "root")
    return JSONResponse(status_code=400, content=error_body(message))


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    logger.warning("http_error", path=request.url.path, status=exc.status_code, error=str(exc.detail))
    return JSONResponse(status_code=exc.status_code, content=error_body(str(exc.detail)))


# ============================================
# INCLUDE ROUTERS
# ============================================

app.include_router(router)


# ============================================
# RUN APPLICATION
# ============================================

if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level="info"
    )
