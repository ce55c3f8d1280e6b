import logging
import time

from alembic import command as alembic_command
from alembic.config import Config as AlembicConfig
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.gzip import GZipMiddleware
from starlette.responses import JSONResponse

from app.api.billing import router as billing_router
from app.api.webhooks import router as webhooks_router
from app.core.config import API_ROOT, settings
from app.core.error_handlers import register_exception_handlers
from app.core.logging import configure_logging
from app.core.rate_limit import RateLimitMiddleware
import app.models  # noqa: F401 ensures models are imported for metadata
from app.services.pricing import UsagePricing

configure_logging()

logger = logging.getLogger(__name__)

app = FastAPI(title="Usage Billing API")
register_exception_handlers(app)

# CORS should be outermost so it can attach headers to all responses, including errors
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(GZipMiddleware, minimum_size=500)
app.add_middleware(RateLimitMiddleware)

app.include_router(billing_router)  # usage accounting, summary, checkout, portal
app.include_router(webhooks_router)  # Stripe events


@app.get("/health")
def health():
    return JSONResponse({"ok": True}, headers={"Cache-Control": "public, max-age=60"})


def run_migrations(max_retries: int = 5, retry_delay: float = 3.0) -> None:
    """alembic upgrade head, retried while the database comes up."""
    cfg = AlembicConfig(str(API_ROOT / "alembic.ini"))
    cfg.set_main_option("script_location", str(API_ROOT / "alembic"))
    cfg.set_main_option("sqlalchemy.url", settings.database_url)
    cfg.attributes["configure_logger"] = False

    for attempt in range(1, max_retries + 1):
        try:
            alembic_command.upgrade(cfg, "head")
        except Exception as e:
            logger.error("Alembic migration attempt %d/%d failed: %s", attempt, max_retries, e)
            if attempt == max_retries:
                logger.error("Giving up on migrations. Set DB_MIGRATIONS_ON_STARTUP=0 to start without them.")
                raise
            time.sleep(retry_delay)
        else:
            logger.info("Database migrations applied")
            return


@app.on_event("startup")
def on_startup() -> None:
    # Refuse to serve with an incomplete price table
    UsagePricing.from_settings(settings).validate()

    if settings.db_migrations_on_startup:
        run_migrations()
    else:
        logger.info("Skipping database migrations on startup (DB_MIGRATIONS_ON_STARTUP=0)")

    logger.info("API server ready (port=%s debug=%s)", settings.api_port, settings.debug)
