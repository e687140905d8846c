# pipeline/__init__.py
# ============================================================================
# CLASSPAY — PAYMENT PIPELINE
# ============================================================================
# Provider gateway, attempt state machine, reconciliation and webhook ingress
# ============================================================================

from classpay.pipeline.attempts import PaymentAttemptStore, build_reference, parse_reference
from classpay.pipeline.capacity import CapacityGuard
from classpay.pipeline.notifications import LoggingNotifier, NotificationDispatcher, Notifier
from classpay.pipeline.provider_gateway import IProviderGateway, PaystackGateway
from classpay.pipeline.reconciliation import ReconciliationEngine, split_amount
from classpay.pipeline.webhooks import WebhookIngress, WebhookRouter

__all__ = [
    "CapacityGuard",
    "IProviderGateway",
    "LoggingNotifier",
    "NotificationDispatcher",
    "Notifier",
    "PaymentAttemptStore",
    "PaystackGateway",
    "ReconciliationEngine",
    "WebhookIngress",
    "WebhookRouter",
    "build_reference",
    "parse_reference",
    "split_amount",
]
