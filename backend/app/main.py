"""todosync Backend API - FastAPI application."""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from .config import get_settings
from .database import Database, reset_task_store
from .logging_config import get_logger, setup_logging
from .rate_limit import limiter
from .routes import auth_router, sync_router, todos_router

logger = get_logger("todosync.api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    settings = get_settings()
    setup_logging(settings.log_level)
    logger.info(
        f"Starting todosync API (debug={settings.debug}, store={settings.storage_backend})"
    )
    yield
    logger.info("Shutting down todosync API")
    reset_task_store()


app = FastAPI(
    title="todosync API",
    description="Offline-first todo synchronization backend",
    version="0.1.0",
    lifespan=lifespan,
)

# Rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Malformed requests are a 400, with the field errors attached."""
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": "Invalid request", "errors": jsonable_encoder(exc.errors())},
    )


# CORS middleware
settings = get_settings()
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(auth_router)
app.include_router(todos_router)
app.include_router(sync_router)


@app.get("/")
async def root():
    """Service banner."""
    return {
        "service": "todosync-backend",
        "version": "0.1.0",
        "status": "ok",
    }


@app.get("/health")
async def health(db: Database):
    """Health check with an actual store round-trip."""
    db_status = "disconnected"
    try:
        db.ping()
        db_status = "connected"
    except Exception as e:
        logger.warning(f"Health check failed: {e}")
        db_status = f"error: {str(e)[:50]}"

    return {
        "status": "healthy" if db_status == "connected" else "degraded",
        "database": db_status,
    }
