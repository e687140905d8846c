"""
Notification Dispatcher
=======================
Best-effort outbound email/SMS with an append-only NotificationLog.

Delivery itself belongs to a ``Notifier`` (external collaborator). The
dispatcher renders the message, hands it over, and records SUCCESS or
FAILED. It never raises: a failed notification must not unwind a payment.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Optional

import structlog

from classpay.schemas.models import (
    ClassInfo,
    NotificationChannel,
    NotificationLog,
    NotificationStatus,
    TemplateKey,
    utcnow,
)
from classpay.storage.base import INotificationLogRepository

logger = structlog.get_logger().bind(component="notifications")

SMS_MAX_LENGTH = 160


# =============================================================================
# TEMPLATES
# =============================================================================

EMAIL_TEMPLATES: dict[str, tuple[str, str]] = {
    TemplateKey.PAYMENT_CONFIRMATION.value: (
        "Payment Confirmed - {class_title}",
        "Hello {parent_name},\n\n"
        "Payment for {student_name}'s registration in {class_title} has been confirmed.\n"
        "You will receive class details and the meeting link shortly.",
    ),
    TemplateKey.PAYMENT_REMINDER.value: (
        "Payment Reminder - Complete Your Registration",
        "Hello {parent_name},\n\n"
        "Payment is still pending for {student_name}'s registration in {class_title}.\n"
        "Amount due: {currency} {amount}\n"
        "Complete payment: {payment_url}\n\n"
        "If you have already paid, please ignore this reminder.",
    ),
    TemplateKey.CHECKOUT_REMINDER.value: (
        "Finish your checkout for {class_title}",
        "Hello {parent_name},\n\n"
        "You started registering {student_names} for {class_title} but did not finish paying.\n"
        "Your checkout link is still open: {payment_url}",
    ),
    TemplateKey.CLASS_REMINDER_24H.value: (
        "Reminder: {class_title} starts tomorrow",
        "Hello {parent_name},\n\n"
        "{student_name}'s class {class_title} starts at {start_time}.\n"
        "Meeting link: {meeting_link}",
    ),
    TemplateKey.CLASS_REMINDER_1H.value: (
        "Starting soon: {class_title}",
        "Hello {parent_name},\n\n"
        "{student_name}'s class {class_title} starts within the hour ({start_time}).\n"
        "Meeting link: {meeting_link}",
    ),
}

SMS_TEMPLATES: dict[str, str] = {
    TemplateKey.PAYMENT_REMINDER.value: (
        "Hello {parent_name}, payment reminder: {student_name} registered for "
        "{class_title}. Amount: {currency} {amount}. Please complete payment."
    ),
}


class _Blank(dict):
    def __missing__(self, key):
        return ""


def render(template: str, context: dict[str, Any]) -> str:
    return template.format_map(_Blank(context))


def format_amount(amount_cents: int) -> str:
    return f"{amount_cents / 100:.2f}"


# =============================================================================
# DELIVERY
# =============================================================================

class Notifier(ABC):
    """Delivers one rendered message. Raises on failure."""

    @abstractmethod
    async def send(
        self,
        channel: NotificationChannel,
        to_address: str,
        subject: Optional[str],
        body: str,
    ) -> None:
        pass


class LoggingNotifier(Notifier):
    """Writes messages to the structured log instead of delivering them."""

    async def send(
        self,
        channel: NotificationChannel,
        to_address: str,
        subject: Optional[str],
        body: str,
    ) -> None:
        logger.info(
            "notification_delivered",
            channel=channel.value,
            to_address=to_address,
            subject=subject,
            body_chars=len(body),
        )


# =============================================================================
# DISPATCHER
# =============================================================================

class NotificationDispatcher:

    def __init__(self, notifier: Notifier, logs: INotificationLogRepository):
        self.notifier = notifier
        self.logs = logs

    async def already_sent(
        self,
        to_address: str,
        template_key: TemplateKey,
        within: timedelta,
        context_key: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """A SUCCESS email for (recipient, template, context) inside the window."""
        since = (now or utcnow()) - within
        return await self.logs.exists_recent_success(
            NotificationChannel.EMAIL,
            to_address,
            template_key.value,
            since,
            context_key=context_key,
        )

    async def _dispatch(
        self,
        channel: NotificationChannel,
        to_address: str,
        template_key: TemplateKey,
        context: dict[str, Any],
        context_key: Optional[str] = None,
    ) -> bool:
        if channel == NotificationChannel.EMAIL:
            subject_tpl, body_tpl = EMAIL_TEMPLATES[template_key.value]
            subject = render(subject_tpl, context)
        else:
            subject = None
            body_tpl = SMS_TEMPLATES[template_key.value]
        body = render(body_tpl, context)
        if channel == NotificationChannel.SMS:
            body = body[:SMS_MAX_LENGTH]

        try:
            await self.notifier.send(channel, to_address, subject, body)
            entry = NotificationLog(
                type=channel,
                to_address=to_address,
                template_key=template_key.value,
                status=NotificationStatus.SUCCESS,
                context_key=context_key,
                sent_at=utcnow(),
                payload=context,
            )
            sent = True
        except Exception as e:
            logger.error(
                "notification_failed",
                channel=channel.value,
                to_address=to_address,
                template_key=template_key.value,
                error=str(e),
            )
            entry = NotificationLog(
                type=channel,
                to_address=to_address,
                template_key=template_key.value,
                status=NotificationStatus.FAILED,
                context_key=context_key,
                error_message=str(e) or type(e).__name__,
                payload=context,
            )
            sent = False

        try:
            await self.logs.append(entry)
        except Exception as e:
            logger.error("notification_log_failed", template_key=template_key.value, error=str(e))
        return sent

    # =========================================================================
    # MESSAGES
    # =========================================================================

    async def send_payment_confirmation(
        self,
        email: str,
        parent_name: str,
        student_name: str,
        class_title: str,
        class_id: Optional[str] = None,
    ) -> bool:
        return await self._dispatch(
            NotificationChannel.EMAIL,
            email,
            TemplateKey.PAYMENT_CONFIRMATION,
            {"parent_name": parent_name, "student_name": student_name, "class_title": class_title},
            context_key=class_id,
        )

    async def send_payment_reminder(
        self,
        email: str,
        parent_name: str,
        student_name: str,
        class_title: str,
        amount_cents: int,
        payment_url: str,
        currency: str = "GHS",
        class_id: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> bool:
        context = {
            "parent_name": parent_name,
            "student_name": student_name,
            "class_title": class_title,
            "amount": format_amount(amount_cents),
            "currency": currency,
            "payment_url": payment_url,
        }
        sent = await self._dispatch(
            NotificationChannel.EMAIL, email, TemplateKey.PAYMENT_REMINDER, context, context_key=class_id
        )
        if phone:
            await self._dispatch(
                NotificationChannel.SMS, phone, TemplateKey.PAYMENT_REMINDER, context, context_key=class_id
            )
        return sent

    async def send_checkout_reminder(
        self,
        email: str,
        parent_name: str,
        student_names: list[str],
        class_title: str,
        payment_url: str,
        attempt_id: str,
    ) -> bool:
        return await self._dispatch(
            NotificationChannel.EMAIL,
            email,
            TemplateKey.CHECKOUT_REMINDER,
            {
                "parent_name": parent_name,
                "student_names": ", ".join(student_names),
                "class_title": class_title,
                "payment_url": payment_url,
            },
            context_key=attempt_id,
        )

    async def send_class_reminder(
        self,
        email: str,
        parent_name: str,
        student_name: str,
        class_info: ClassInfo,
        template_key: TemplateKey,
    ) -> bool:
        start = class_info.start_datetime
        return await self._dispatch(
            NotificationChannel.EMAIL,
            email,
            template_key,
            {
                "parent_name": parent_name,
                "student_name": student_name,
                "class_title": class_info.title,
                "start_time": start.isoformat() if start else "",
                "meeting_link": class_info.meeting_link or "",
            },
            context_key=class_info.id,
        )
