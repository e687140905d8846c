# api/server.py
# ============================================================================
# CLASSPAY — FASTAPI SERVER
# ============================================================================
# Checkout, verification, webhook and operator endpoints
# ============================================================================

import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
import uvicorn
from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from classpay.config import make_credential_resolver, settings
from classpay.database import Database
from classpay.errors import ClassPayError
from classpay.logging_config import configure_logging
from classpay.pipeline.attempts import PaymentAttemptStore
from classpay.pipeline.capacity import CapacityGuard
from classpay.pipeline.notifications import LoggingNotifier, NotificationDispatcher, Notifier
from classpay.pipeline.provider_gateway import SIGNATURE_HEADER, IProviderGateway, PaystackGateway
from classpay.pipeline.reconciliation import ReconciliationEngine
from classpay.pipeline.webhooks import WebhookIngress
from classpay.schemas.models import (
    AttemptPage,
    AttemptStatus,
    BulkReminderResult,
    CreateAttemptRequest,
    ManualReviewItem,
    NotificationChannel,
    NotificationLog,
    NotificationStatus,
    PaymentAttempt,
    PendingPayment,
    Registration,
    ReconciliationResult,
    WebhookAck,
    WebhookLog,
    WebhookLogStatus,
    utcnow,
)
from classpay.storage.base import Store
from classpay.storage.memory import build_memory_store
from classpay.storage.postgres import build_postgres_store
from classpay.tasks.scheduler import ExpirySweep, ReminderSweep, Scheduler

configure_logging()
logger = structlog.get_logger().bind(component="server")

VERSION = "1.0.0"


# ============================================================================
# SERVICE WIRING
# ============================================================================

@dataclass
class Services:
    store: Store
    gateway: IProviderGateway
    attempts: PaymentAttemptStore
    engine: ReconciliationEngine
    ingress: WebhookIngress
    notifications: NotificationDispatcher
    reminders: ReminderSweep
    scheduler: Scheduler


def build_services(
    store: Store,
    gateway: Optional[IProviderGateway] = None,
    notifier: Optional[Notifier] = None,
) -> Services:
    gateway = gateway or PaystackGateway(resolve_config=make_credential_resolver())
    capacity = CapacityGuard(store.classes)
    notifications = NotificationDispatcher(notifier or LoggingNotifier(), store.notification_logs)
    attempts = PaymentAttemptStore(store, gateway, capacity=capacity)
    engine = ReconciliationEngine(store, gateway, attempts, notifications, capacity=capacity)
    reminders = ReminderSweep(store, notifications)
    return Services(
        store=store,
        gateway=gateway,
        attempts=attempts,
        engine=engine,
        ingress=WebhookIngress(gateway, engine, store.audit),
        notifications=notifications,
        reminders=reminders,
        scheduler=Scheduler(ExpirySweep(attempts), reminders),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


# ============================================================================
# LIFESPAN MANAGEMENT
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown logic"""
    logger.info("server_starting", version=VERSION, store_backend=settings.STORE_BACKEND)

    owns_database = False
    if getattr(app.state, "services", None) is None:
        if settings.STORE_BACKEND == "memory":
            store = build_memory_store()
        else:
            await Database.initialize()
            owns_database = True
            store = build_postgres_store()
        app.state.services = build_services(store)

    services: Services = app.state.services
    await services.scheduler.start()

    yield

    logger.info("server_shutting_down")
    await services.scheduler.stop()
    if owns_database:
        await Database.close()


# ============================================================================
# FASTAPI APP
# ============================================================================

app = FastAPI(
    title="ClassPay",
    description="Paid class registration: checkout, reconciliation and reminders",
    version=VERSION,
    lifespan=lifespan,
)
app.state.services = None

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ClassPayError)
async def classpay_error_handler(request: Request, exc: ClassPayError):
    if exc.http_status >= 500:
        logger.error("request_failed", path=request.url.path, code=exc.code, error=exc.message)
    else:
        logger.info("request_rejected", path=request.url.path, code=exc.code, error=exc.message)
    return JSONResponse(
        status_code=exc.http_status,
        content={"success": False, "error": exc.to_dict()},
    )


# ============================================================================
# REQUEST/RESPONSE MODELS
# ============================================================================

class InitializePaymentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    payment_attempt_id: str = Field(..., alias="paymentAttemptId", min_length=1)


class InitializePaymentResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    authorization_url: str = Field(..., serialization_alias="authorizationUrl")
    reference: str


class VerifyPaymentRequest(BaseModel):
    reference: str = Field(..., min_length=1)


class UpdateNotesRequest(BaseModel):
    notes: str = Field(..., max_length=5000)


class AttemptResponse(BaseModel):
    success: bool = True
    attempt: PaymentAttempt


class AttemptDetailResponse(BaseModel):
    success: bool = True
    attempt: PaymentAttempt
    registrations: List[Registration]


class ManualReviewResponse(BaseModel):
    success: bool = True
    items: List[ManualReviewItem]


class PendingPaymentsResponse(BaseModel):
    success: bool = True
    items: List[PendingPayment]


class SendReminderResponse(BaseModel):
    success: bool
    registration_id: str
    message: str


class BulkReminderRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    registration_ids: List[str] = Field(..., alias="registrationIds", min_length=1)


class BulkReminderResponse(BulkReminderResult):
    success: bool = True


class NotificationLogsResponse(BaseModel):
    success: bool = True
    items: List[NotificationLog]


class WebhookLogsResponse(BaseModel):
    success: bool = True
    items: List[WebhookLog]


class HealthResponse(BaseModel):
    status: str
    version: str
    uptime_seconds: float
    scheduler_running: bool


def _result_body(result: ReconciliationResult) -> Dict[str, Any]:
    body = result.model_dump(mode="json")
    body["requires_manual_review"] = result.requires_manual_review
    return body


# ============================================================================
# STARTUP TIME
# ============================================================================

START_TIME = utcnow()


# ============================================================================
# MIDDLEWARE
# ============================================================================

@app.middleware("http")
async def add_timing_header(request: Request, call_next):
    """Add response timing header."""
    start = time.perf_counter()
    response = await call_next(request)
    duration = (time.perf_counter() - start) * 1000
    response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
    return response


# ============================================================================
# HEALTH
# ============================================================================

@app.get("/health", response_model=HealthResponse)
async def health_check(request: Request):
    services: Optional[Services] = request.app.state.services
    return HealthResponse(
        status="healthy",
        version=VERSION,
        uptime_seconds=(utcnow() - START_TIME).total_seconds(),
        scheduler_running=bool(services and services.scheduler.running),
    )


# ============================================================================
# CHECKOUT
# ============================================================================

@app.post("/api/payments/attempts", status_code=201, response_model=AttemptResponse)
async def create_payment_attempt(body: CreateAttemptRequest, request: Request):
    attempt = await get_services(request).attempts.create_attempt(body)
    return AttemptResponse(attempt=attempt)


@app.post("/api/payments/initialize")
async def initialize_payment(body: InitializePaymentRequest, request: Request):
    transaction = await get_services(request).attempts.initialize_payment(body.payment_attempt_id)
    response = InitializePaymentResponse(
        authorization_url=transaction.authorization_url,
        reference=transaction.reference,
    )
    return response.model_dump(by_alias=True)


@app.post("/api/payments/verify")
async def verify_payment(body: VerifyPaymentRequest, request: Request):
    """
    Re-verify with the provider and reconcile.

    Every soft outcome (verification failed, capacity exceeded after
    payment, in progress) is a 200 with the outcome in the body.
    """
    result = await get_services(request).engine.reconcile(body.reference)
    return _result_body(result)


@app.get("/api/payments/verify/{reference}")
async def verify_payment_callback(reference: str, request: Request):
    result = await get_services(request).engine.reconcile(reference)
    return _result_body(result)


# ============================================================================
# WEBHOOKS
# ============================================================================

@app.post("/api/webhooks/paystack", response_model=WebhookAck)
async def paystack_webhook(request: Request):
    """
    Paystack webhook. Signed over the raw bytes, so the body is read
    before any parsing. 400 only for a missing or invalid signature.
    """
    payload = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)
    return await get_services(request).ingress.handle(payload, signature)


# ============================================================================
# ADMIN
# ============================================================================

@app.get("/api/admin/payment-attempts", response_model=AttemptPage)
async def list_payment_attempts(
    request: Request,
    status: Optional[AttemptStatus] = None,
    class_id: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
):
    return await get_services(request).attempts.list_attempts(
        status=status,
        class_id=class_id,
        date_from=date_from,
        date_to=date_to,
        page=page,
        limit=limit,
    )


@app.get("/api/admin/payment-attempts/{attempt_id}", response_model=AttemptDetailResponse)
async def get_payment_attempt(attempt_id: str, request: Request):
    services = get_services(request)
    attempt = await services.attempts.get_attempt(attempt_id)
    registrations = await services.store.registrations.list_for_attempt(attempt.id)
    return AttemptDetailResponse(attempt=attempt, registrations=registrations)


@app.patch("/api/admin/payment-attempts/{attempt_id}/notes", response_model=AttemptResponse)
async def update_payment_attempt_notes(attempt_id: str, body: UpdateNotesRequest, request: Request):
    attempt = await get_services(request).attempts.update_notes(attempt_id, body.notes)
    return AttemptResponse(attempt=attempt)


@app.post("/api/admin/payment-attempts/{attempt_id}/cancel", response_model=AttemptResponse)
async def cancel_payment_attempt(attempt_id: str, request: Request):
    attempt = await get_services(request).attempts.cancel(attempt_id)
    logger.info("attempt_cancelled_by_operator", attempt_id=attempt_id)
    return AttemptResponse(attempt=attempt)


@app.get("/api/admin/manual-review", response_model=ManualReviewResponse)
async def list_manual_review(request: Request, limit: int = Query(default=100, ge=1, le=500)):
    items = await get_services(request).store.manual_review.list_unresolved(limit=limit)
    return ManualReviewResponse(items=items)


@app.get("/api/admin/payment-reminders/pending", response_model=PendingPaymentsResponse)
async def list_pending_payments(
    request: Request,
    class_id: Optional[str] = None,
    limit: int = Query(default=100, ge=1, le=500),
):
    items = await get_services(request).reminders.pending_payments(class_id=class_id, limit=limit)
    return PendingPaymentsResponse(items=items)


@app.post("/api/admin/payment-reminders/send/{registration_id}", response_model=SendReminderResponse)
async def send_payment_reminder(registration_id: str, request: Request):
    """Delivery failure is a soft result; the NotificationLog carries the error."""
    sent = await get_services(request).reminders.send_manual_reminder(registration_id)
    return SendReminderResponse(
        success=sent,
        registration_id=registration_id,
        message="Payment reminder sent" if sent else "Payment reminder could not be delivered",
    )


@app.post("/api/admin/payment-reminders/send-bulk", response_model=BulkReminderResponse)
async def send_bulk_payment_reminders(body: BulkReminderRequest, request: Request):
    result = await get_services(request).reminders.send_bulk_reminders(body.registration_ids)
    return BulkReminderResponse(**result.model_dump())


@app.get("/api/admin/notification-logs", response_model=NotificationLogsResponse)
async def list_notification_logs(
    request: Request,
    channel: Optional[NotificationChannel] = None,
    status: Optional[NotificationStatus] = None,
    template_key: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=500),
):
    items = await get_services(request).store.notification_logs.list_recent(
        limit=limit, channel=channel, status=status, template_key=template_key
    )
    return NotificationLogsResponse(items=items)


@app.get("/api/admin/webhook-logs", response_model=WebhookLogsResponse)
async def list_webhook_logs(
    request: Request,
    status: Optional[WebhookLogStatus] = None,
    limit: int = Query(default=50, ge=1, le=500),
):
    items = await get_services(request).store.audit.recent_webhooks(limit=limit, status=status)
    return WebhookLogsResponse(items=items)


# ============================================================================
# MAIN
# ============================================================================

def main():
    uvicorn.run(
        "classpay.api.server:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level="info",
    )


if __name__ == "__main__":
    main()
