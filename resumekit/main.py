import logging
from contextlib import asynccontextmanager

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# ✅ Import All API Routes
from resumekit.api.routes import subscriptions, billing_webhook, usage, health

from resumekit.core import config
from resumekit.core.errors import BillingError
from resumekit.core.logging_config import setup_logging
from resumekit.db.session import SessionLocal
from resumekit.services.change_scheduler import ChangeScheduler
from resumekit.services.payment_gateway import StripePaymentGateway

logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()


def run_subscription_sweep():
    """Scheduled job: one pass of the subscription sweep."""
    report = ChangeScheduler(SessionLocal, StripePaymentGateway()).run_sweep()
    return report.as_dict()


# ============================================
# ✅ STARTUP / SHUTDOWN
# ============================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(config.LOG_LEVEL)
    logger.info("Starting ResumeKit billing API")

    if config.RUN_MIGRATIONS:
        from resumekit.db.migrate import run_migrations
        run_migrations()

    if config.SWEEP_ENABLED:
        scheduler.add_job(
            run_subscription_sweep,
            IntervalTrigger(minutes=config.SWEEP_INTERVAL_MINUTES),
            id="subscription_sweep",
            name="Subscription renewals, pending changes and expiry",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        scheduler.start()
        logger.info(f"Subscription sweep scheduled every {config.SWEEP_INTERVAL_MINUTES} minutes")

    yield

    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Background job scheduler stopped")


# ============================================
# ✅ FASTAPI APP INIT
# ============================================

app = FastAPI(title="ResumeKit Billing", lifespan=lifespan)

# ✅ CORS LOCKDOWN: ONLY ALLOW THE FRONTEND
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        config.FRONTEND_URL,
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Authorization", "Content-Type"],
)


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError):
    if exc.status_code >= 500:
        logger.error(f"{exc.error_code} on {request.url.path}: {exc.message}")
    else:
        logger.info(f"{exc.error_code} on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_dict()})


# ============================================
# ✅ REGISTER ALL ROUTERS
# ============================================

app.include_router(subscriptions.router)
app.include_router(billing_webhook.router)
app.include_router(usage.router)
app.include_router(health.router)


# ============================================
# ✅ HEALTH CHECK ROOT ENDPOINT
# ============================================

@app.get("/")
def root():
    return {"status": "ResumeKit billing API running"}
