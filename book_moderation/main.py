from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from book_moderation.config import settings, limiter
from book_moderation.db.session import dispose_engine, init_models
from book_moderation.api.moderation import router as moderation_router
import logging

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown"""
    logger.info("Starting Book Moderation API...")

    if settings.environment == "production" and not settings.api_key:
        logger.error(
            "SECURITY WARNING: API key authentication is disabled in production! "
            "Set API_KEY environment variable to enable authentication."
        )
    if not settings.openai_api_key:
        logger.warning("OPENAI_API_KEY is not set; moderation runs will fail until it is configured")

    # Create database tables (in production, tables are managed by migrations)
    if settings.environment == "development":
        await init_models()
        logger.info("Database tables created/verified")

    yield

    logger.info("Shutting down Book Moderation API...")
    await dispose_engine()


app = FastAPI(
    title="Book Moderation API",
    description="Age-rating moderation of book titles, descriptions, covers and chapters",
    version="1.0.0",
    lifespan=lifespan,
)

# Add rate limiting middleware
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)


@app.middleware("http")
async def check_request_size(request: Request, call_next):
    """Reject request bodies that exceed the configured size limit."""
    content_length = request.headers.get("content-length")
    if content_length and content_length.isdigit():
        max_size_bytes = settings.max_request_size_mb * 1024 * 1024
        if int(content_length) > max_size_bytes:
            return JSONResponse(
                status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                content={"detail": f"Request body too large. Maximum size is {settings.max_request_size_mb}MB"},
            )
    return await call_next(request)

# CORS middleware - configure based on environment
if settings.cors_origins:
    cors_origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]
    _allow_all = cors_origins == ["*"]
else:
    # Empty string means no CORS allowed (require explicit configuration)
    cors_origins = []
    _allow_all = False

if _allow_all and settings.environment == "production":
    logger.warning("CORS is set to allow all origins in production. This is a security risk!")

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    # Browsers reject credentialed requests to a wildcard origin
    allow_credentials=not _allow_all,
    allow_methods=["GET", "POST", "PATCH"],
    allow_headers=["Content-Type", "Authorization"],
)

app.include_router(moderation_router, prefix="/api/v1")


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Book Moderation API",
        "version": "1.0.0",
        "docs": "/docs",
    }


@app.get("/health")
async def health():
    """Health check endpoint"""
    return {"status": "healthy"}
