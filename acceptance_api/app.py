"""
Provider Acceptance Verification API - FastAPI Application.

Crowd-sourced verification of whether healthcare providers accept specific
insurance plans, with a confidence score per provider/plan pair.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import desc, select, text
from sqlalchemy.orm import Session

from acceptance_api.bot_check import get_captcha_verifier
from acceptance_api.config import get_settings
from acceptance_api.database import DecayRun, get_db, init_db
from acceptance_api.errors import register_exception_handlers
from acceptance_api.models import HealthResponse
from acceptance_api.rate_limiter import get_rate_limiter
from acceptance_api.routes import admin_router, verify_router
from acceptance_api.scheduler import start_scheduler, stop_scheduler


settings = get_settings()

# Configure logging
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# Admission and degraded-mode signals browser clients need to read
EXPOSED_HEADERS = [
    "X-RateLimit-Limit",
    "X-RateLimit-Remaining",
    "X-RateLimit-Reset",
    "X-RateLimit-Degraded",
    "Retry-After",
    "X-Security-Degraded",
    "X-Fallback-RateLimit-Limit",
    "X-Fallback-RateLimit-Remaining",
    "X-Fallback-RateLimit-Reset",
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    logger.info("Starting Provider Acceptance Verification API...")
    init_db()
    logger.info("Database initialized")

    rate_limiter = get_rate_limiter()
    rate_limiter.start()
    captcha_verifier = get_captcha_verifier()
    captcha_verifier.start()
    if settings.bot_check_bypassed:
        logger.warning(f"Bot check bypassed (environment={settings.environment})")

    if settings.enable_scheduler:
        start_scheduler()

    yield

    # Shutdown
    logger.info("Shutting down Provider Acceptance Verification API...")
    stop_scheduler()
    captcha_verifier.stop()
    rate_limiter.stop()


# Create FastAPI application
app = FastAPI(
    title=settings.app_name,
    description="""
## Provider Acceptance Verification API

Patients report whether a provider accepts an insurance plan. Each
provider/plan pair carries a 0-100 confidence score built from:

- **Data source** (0-25): how authoritative the reporting source is
- **Recency** (0-30): decays on a specialty-aware freshness window
- **Verifications** (0-25): saturates at 3 independent reports
- **Agreement** (0-20): community votes on each report

### Abuse resistance

- One report per pair per submitter inside a 30-day window
- Sliding-window rate limits on every endpoint
- Bot check on every write, with a configurable fail-open/fail-closed policy
    """,
    version=settings.app_version,
    lifespan=lifespan,
)

# Configure CORS
origins = settings.allowed_origins.split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=EXPOSED_HEADERS,
)

register_exception_handlers(app)


# Include routers
app.include_router(verify_router, prefix="/api/v1")
app.include_router(admin_router, prefix="/api/v1")


# Root endpoint
@app.get("/")
def root():
    """Root endpoint with API information."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "description": "Crowd-sourced provider/insurance plan acceptance verification",
        "docs_url": "/docs",
        "openapi_url": "/openapi.json",
        "endpoints": {
            "verify": "/api/v1/verify",
            "admin": "/api/v1/admin",
            "health": "/health",
        }
    }


@app.get("/health", response_model=HealthResponse)
def health_check(db: Session = Depends(get_db)):
    """Liveness plus database and rate limiter status."""
    try:
        db.execute(text("SELECT 1"))
        db_connected = True
    except Exception as e:
        logger.error(f"Health check database error: {e}")
        db_connected = False

    last_run = None
    if db_connected:
        last_run = db.execute(
            select(DecayRun.completed_at)
            .where(DecayRun.completed_at.is_not(None))
            .order_by(desc(DecayRun.completed_at))
            .limit(1)
        ).scalar_one_or_none()

    return HealthResponse(
        status="healthy" if db_connected else "degraded",
        version=settings.app_version,
        database_connected=db_connected,
        rate_limit_backend=get_rate_limiter().backend,
        last_decay_run=last_run,
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "acceptance_api.app:app",
        host="0.0.0.0",
        port=8001,
        reload=settings.debug
    )
