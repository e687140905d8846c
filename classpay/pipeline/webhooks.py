"""
Webhook Ingress
===============
Authenticated provider callbacks -> reconciliation.

Transport acknowledgement and business outcome are decoupled: once the
signature checks out the provider always gets a 200, even when processing
fails, so it does not retry into a delivery storm. Failures are written to
the webhook log for an operator instead. Only a missing or invalid
signature is rejected.
"""

import time
import uuid
from typing import Awaitable, Callable, Optional

import structlog

from classpay.database import log_event
from classpay.errors import AuthenticationError
from classpay.pipeline.provider_gateway import FAILED_EVENTS, SUCCESS_EVENTS, IProviderGateway
from classpay.pipeline.reconciliation import ReconciliationEngine
from classpay.schemas.models import (
    ReconciliationResult,
    WebhookAck,
    WebhookEvent,
    WebhookLog,
    WebhookLogStatus,
)
from classpay.storage.base import IAuditLog

WebhookHandler = Callable[[WebhookEvent, str], Awaitable[Optional[ReconciliationResult]]]


class WebhookRouter:
    """Event-type -> handler registry."""

    def __init__(self):
        self._handlers: dict[str, WebhookHandler] = {}
        self._logger = structlog.get_logger().bind(component="webhook_router")

    def register(self, *event_types: str):
        """Decorator to register a handler for one or more event types"""
        def decorator(handler: WebhookHandler):
            for event_type in event_types:
                self._handlers[event_type] = handler
                self._logger.debug("handler_registered", event_type=event_type)
            return handler
        return decorator

    def handles(self, event_type: str) -> bool:
        return event_type in self._handlers

    async def route(self, event: WebhookEvent, correlation_id: str) -> Optional[ReconciliationResult]:
        handler = self._handlers.get(event.event)
        if not handler:
            self._logger.info("no_handler", event_type=event.event)
            return None
        return await handler(event, correlation_id)

    @property
    def supported_events(self) -> list[str]:
        return list(self._handlers.keys())


class WebhookIngress:

    def __init__(
        self,
        gateway: IProviderGateway,
        engine: ReconciliationEngine,
        audit: IAuditLog,
    ):
        self.gateway = gateway
        self.engine = engine
        self.audit = audit
        self.router = WebhookRouter()
        self._register_handlers()
        self._base_logger = structlog.get_logger()

    def _get_logger(self, correlation_id: str):
        return self._base_logger.bind(component="webhook_ingress", correlation_id=correlation_id)

    def _register_handlers(self):

        @self.router.register(*sorted(SUCCESS_EVENTS))
        async def handle_success(event: WebhookEvent, correlation_id: str):
            return await self.engine.reconcile(event.reference)

        @self.router.register(*sorted(FAILED_EVENTS))
        async def handle_failed(event: WebhookEvent, correlation_id: str):
            return await self.engine.record_failure(event.reference)

    async def _record(self, entry: WebhookLog, log) -> None:
        try:
            await self.audit.record_webhook(entry)
        except Exception as e:
            log.error("webhook_log_failed", error=str(e))

    async def handle(self, raw_body: bytes, signature: Optional[str]) -> WebhookAck:
        """
        Authenticate and process one delivery.

        Raises AuthenticationError (-> 400) on a missing or invalid
        signature. Every other failure is logged and acknowledged.
        """
        correlation_id = str(uuid.uuid4())
        log = self._get_logger(correlation_id)
        started = time.perf_counter()

        def elapsed_ms() -> float:
            return round((time.perf_counter() - started) * 1000, 2)

        try:
            event = await self.gateway.authenticate_webhook(raw_body, signature)
        except AuthenticationError as e:
            log.warning("webhook_rejected", reason=e.message)
            await self._record(
                WebhookLog(
                    event="unknown",
                    status=WebhookLogStatus.ERROR,
                    error_message=e.message,
                    processing_ms=elapsed_ms(),
                ),
                log,
            )
            await log_event(
                "WEBHOOK_REJECTED",
                {"reason": e.message},
                correlation_id=correlation_id,
                component="webhook_ingress",
                severity="WARN",
            )
            raise

        log = log.bind(event_type=event.event, reference=event.reference)
        log.info("webhook_received", classification=event.classification.value)

        if not self.router.handles(event.event):
            await self._record(
                WebhookLog(
                    event=event.event,
                    reference=event.reference,
                    status=WebhookLogStatus.UNHANDLED,
                    payload=event.data,
                    processing_ms=elapsed_ms(),
                ),
                log,
            )
            return WebhookAck(
                success=True,
                message="Event acknowledged",
                event=event.event,
                reference=event.reference,
                processing_ms=elapsed_ms(),
            )

        try:
            if not event.reference:
                raise ValueError("Webhook payload has no reference")
            result = await self.router.route(event, correlation_id)
        except Exception as e:
            log.error("webhook_processing_failed", error=str(e), error_type=type(e).__name__)
            await self._record(
                WebhookLog(
                    event=event.event,
                    reference=event.reference,
                    status=WebhookLogStatus.ERROR,
                    error_message=str(e) or type(e).__name__,
                    payload=event.data,
                    processing_ms=elapsed_ms(),
                ),
                log,
            )
            await log_event(
                "WEBHOOK_ERROR",
                {"webhook_event": event.event, "reference": event.reference, "error": str(e)},
                correlation_id=correlation_id,
                component="webhook_ingress",
                severity="ERROR",
            )
            return WebhookAck(
                success=True,
                message="Webhook received; processing failed and was logged",
                event=event.event,
                reference=event.reference,
                processing_ms=elapsed_ms(),
            )

        await self._record(
            WebhookLog(
                event=event.event,
                reference=event.reference,
                status=WebhookLogStatus.SUCCESS,
                payload=event.data,
                processing_ms=elapsed_ms(),
            ),
            log,
        )
        log.info("webhook_processed", outcome=result.outcome.value if result else None)
        return WebhookAck(
            success=True,
            message="Webhook processed",
            event=event.event,
            reference=event.reference,
            outcome=result.outcome if result else None,
            processing_ms=elapsed_ms(),
        )
