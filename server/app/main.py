import logging

import app.models  # noqa: F401
from apscheduler.schedulers.background import BackgroundScheduler
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.core.config import settings
from app.core.db import SessionLocal
from app.core.errors import BillingError
from app.routers import dues as dues_router
from app.routers import installments as installments_router
from app.routers import payment_intents as payment_intents_router
from app.services import dues_batch
from app.services import installments as installments_service
from app.services import payment_intents as payment_intents_service
from app.services.processor import get_processor

app = FastAPI(title="Chapter Dues API", version="0.1.0")

logger = logging.getLogger(__name__)

scheduler = BackgroundScheduler(timezone="UTC")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(dues_router.router)
app.include_router(payment_intents_router.router)
app.include_router(installments_router.router)


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("billing_error", extra={"path": request.url.path, "code": exc.code, "detail": exc.message})
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.get("/health", tags=["health"])
def health() -> dict[str, str]:
    return {"status": "ok"}


def _run_installment_charges() -> None:
    with SessionLocal() as session:
        counts = installments_service.process_due_installments(session, get_processor())
        if any(counts.values()):
            logger.info("installment_charge_job", extra=counts)


def _run_late_fee_sweep() -> None:
    with SessionLocal() as session:
        results = dues_batch.apply_late_fees_for_current(session)
        applied = sum(result.applied for result in results.values())
        if applied:
            logger.info("late_fee_job", extra={"applied": applied, "configurations": len(results)})


def _run_intent_reconciliation() -> None:
    with SessionLocal() as session:
        counts = payment_intents_service.reconcile_open_intents(session, get_processor())
        if counts["updated"] or counts["errors"]:
            logger.info("payment_intent_reconcile_job", extra=counts)


@app.on_event("startup")
def start_scheduled_jobs() -> None:
    if not settings.SCHEDULER_ENABLED:
        return
    if not scheduler.running:
        scheduler.start()
    scheduler.add_job(
        _run_installment_charges,
        trigger="cron",
        hour=6,
        minute=0,
        id="installment_charges",
        replace_existing=True,
    )
    scheduler.add_job(
        _run_late_fee_sweep,
        trigger="cron",
        hour=3,
        minute=0,
        id="late_fee_sweep",
        replace_existing=True,
    )
    scheduler.add_job(
        _run_intent_reconciliation,
        trigger="interval",
        minutes=30,
        id="payment_intent_reconcile",
        replace_existing=True,
    )


@app.on_event("shutdown")
def shutdown_scheduler() -> None:
    if scheduler.running:
        scheduler.shutdown(wait=False)
