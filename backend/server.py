from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from database import database
from routes import billing, subscription, credits, webhooks, admin_billing
from services.billing_errors import BillingError

import os
import logging
from pathlib import Path
from dotenv import load_dotenv
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

# Load environment variables
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()

from job_runner import run_expiration_check, run_subscription_reconciliation, run_webhook_recovery

# (env var, job, id, name); a job runs only when its interval is set above zero
SCHEDULED_JOBS = (
    ("RECONCILE_INTERVAL_MINUTES", run_subscription_reconciliation,
     "subscription_reconciliation", "Stripe Subscription Reconciliation"),
    ("EXPIRATION_CHECK_INTERVAL_MINUTES", run_expiration_check,
     "subscription_expiration_check", "Subscription Expiration Check"),
    ("WEBHOOK_RECOVERY_INTERVAL_MINUTES", run_webhook_recovery,
     "webhook_recovery", "Failed Webhook Recovery"),
)


def _interval_minutes(env_name: str) -> int:
    try:
        return int(os.environ.get(env_name, "0") or 0)
    except ValueError:
        logger.warning(f"{env_name} is not an integer - scheduled job disabled")
        return 0


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    if os.environ.get("PYTEST_RUNNING"):
        yield
        return

    logger.info("Starting Billing API")
    await database.connect()

    # Stripe config: log mode (test/live) from key prefix and which price ids are configured (no secret keys)
    stripe_key = (os.environ.get("STRIPE_SECRET_KEY") or os.environ.get("STRIPE_API_KEY") or "").strip()
    if not stripe_key:
        logger.error("STRIPE_SECRET_KEY / STRIPE_API_KEY is not set. Checkout and plan changes will fail.")
    else:
        logger.info("STRIPE_MODE = %s (from Stripe key prefix)", "test" if stripe_key.startswith("sk_test_") else "live")
    from services.plan_registry import price_resolver
    for plan in price_resolver.plans():
        logger.info("Stripe price plan=%s price_id=%s credits=%s", plan.key, plan.price_id, plan.credits_per_cycle)
    for pack in price_resolver.packs():
        logger.info("Stripe price pack=%s price_id=%s credits=%s", pack.key, pack.price_id, pack.credits)

    for env_name, job, job_id, job_name in SCHEDULED_JOBS:
        interval = _interval_minutes(env_name)
        if interval <= 0:
            continue
        scheduler.add_job(
            job,
            IntervalTrigger(minutes=interval),
            id=job_id,
            name=job_name,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        logger.info(f"Scheduled {job_name} every {interval} minutes")
    if scheduler.get_jobs():
        scheduler.start()

    yield

    # Shutdown
    if scheduler.running:
        scheduler.shutdown(wait=False)
    await database.close()
    logger.info("Billing API stopped")


app = FastAPI(
    title="Billing API",
    description="Subscriptions, credit ledger and Stripe reconciliation",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in os.environ.get("CORS_ORIGINS", "*").split(",")],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(billing.router)
app.include_router(subscription.router)
app.include_router(credits.router)
app.include_router(webhooks.router)
app.include_router(admin_billing.router)


@app.get("/api/health")
async def health():
    return {"status": "ok"}


@app.exception_handler(BillingError)
async def billing_exception_handler(request: Request, exc: BillingError):
    log = logger.error if exc.status_code >= 500 else logger.info
    log("Billing error path=%s code=%s status=%s message=%s", request.url.path, exc.code, exc.status_code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": {"code": "INTERNAL_ERROR", "message": "Internal server error"}}
    )

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "server:app",
        host="0.0.0.0",
        port=8001,
        reload=os.getenv("ENVIRONMENT") == "development"
    )
