"""
Collaborator interfaces for the usage billing engine.

The engine consumes three narrow collaborators: a clock, a client directory
for scope and criteria lookups, and a notification dispatcher. Each has a
production implementation here plus, for the clock, a fixed test double.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Protocol

from django.conf import settings
from django.core.mail import send_mail
from django.utils import timezone

from apps.common.queue import queue_by_name

from . import config

logger = logging.getLogger(__name__)

NOTIFICATION_TASK = "apps.billing.usage_tasks.deliver_usage_alert_notification"


# ===============================================================================
# CLOCK
# ===============================================================================


class Clock(Protocol):
    """Current-time source"""

    def now(self) -> datetime: ...


class SystemClock:
    """Wall clock (timezone aware)"""

    def now(self) -> datetime:
        return timezone.now()


class FixedClock:
    """Deterministic clock for tests; only moves when told to"""

    def __init__(self, moment: datetime) -> None:
        self._moment = moment

    def now(self) -> datetime:
        return self._moment

    def set(self, moment: datetime) -> None:
        self._moment = moment

    def advance(self, **kwargs: Any) -> datetime:
        self._moment = self._moment + timedelta(**kwargs)
        return self._moment


# ===============================================================================
# CLIENT DIRECTORY
# ===============================================================================


@dataclass(frozen=True)
class ClientAttributes:
    """Client facts used by group-scoped rule criteria"""

    client_id: Any
    customer_type: str = ""
    country_code: str = ""
    industry: str = ""
    account_age_days: int = 0
    tags: tuple[str, ...] = ()
    status: str = "active"


class ClientDirectory(Protocol):
    """Client and contract lookups"""

    def client_attributes(self, client_id: Any) -> ClientAttributes | None: ...

    def belongs_to_contract(self, client_id: Any, contract_reference: str) -> bool: ...


class CustomerDirectory:
    """Client directory backed by apps.customers"""

    def __init__(self, clock: Clock | None = None) -> None:
        self.clock = clock or SystemClock()

    def client_attributes(self, client_id: Any) -> ClientAttributes | None:
        from apps.customers.models import Customer  # noqa: PLC0415

        try:
            customer = Customer.objects.get(pk=client_id)
        except (Customer.DoesNotExist, ValueError):
            return None
        return ClientAttributes(
            client_id=customer.pk,
            customer_type=customer.customer_type,
            country_code=customer.country_code or "",
            industry=customer.industry or "",
            account_age_days=customer.account_age_days(self.clock.now()),
            tags=tuple(str(tag) for tag in customer.tags or ()),
            status=customer.status,
        )

    def belongs_to_contract(self, client_id: Any, contract_reference: str) -> bool:
        from apps.customers.models import CustomerContract  # noqa: PLC0415

        if not contract_reference:
            return False
        memberships = CustomerContract.objects.filter(customer_id=client_id, contract_reference=contract_reference)
        now = self.clock.now()
        return any(membership.is_current(now) for membership in memberships)


# ===============================================================================
# NOTIFICATION DISPATCH
# ===============================================================================


@dataclass(frozen=True)
class DeliveryResult:
    """Outcome of handing one notification to a transport"""

    channel: str
    delivered: bool
    queued: bool = False
    task_id: str | None = None
    recipients: tuple[str, ...] = ()
    error: str = ""
    details: dict[str, Any] = field(default_factory=dict)


class NotificationDispatcher(Protocol):
    """Decides nothing; just carries a rendered alert to a channel"""

    def send(self, channel: str, recipients: list[str], template_context: dict[str, Any]) -> DeliveryResult: ...


class EmailNotificationDispatcher:
    """
    Sends the email channel through django.core.mail.

    SMS, webhook and dashboard transports are not part of this platform;
    those channels are logged and reported as undelivered.
    """

    def send(self, channel: str, recipients: list[str], template_context: dict[str, Any]) -> DeliveryResult:
        if channel != "email":
            logger.info(
                f"📨 [Notification] No transport for channel '{channel}', "
                f"alert {template_context.get('alert_code', '?')} logged only"
            )
            return DeliveryResult(channel=channel, delivered=False, recipients=tuple(recipients), error="no transport")

        if not recipients:
            return DeliveryResult(channel=channel, delivered=False, error="no recipients")

        subject = (
            f"[{str(template_context.get('severity', 'medium')).upper()}] "
            f"Usage alert: {template_context.get('alert_name', template_context.get('alert_code', ''))}"
        )
        message = "\n".join(
            [
                f"Alert: {template_context.get('alert_name', '')} ({template_context.get('alert_code', '')})",
                f"Target: {template_context.get('target', '')}",
                f"Current usage: {template_context.get('current_usage', '')}",
                f"Utilization: {template_context.get('utilization', '')}%",
                f"Threshold: {template_context.get('threshold_value', '')}",
                f"Status: {template_context.get('alert_status', '')}",
                f"Triggered at: {template_context.get('triggered_at', '')}",
            ]
        )
        try:
            sent = send_mail(
                subject=subject,
                message=message,
                from_email=getattr(settings, "DEFAULT_FROM_EMAIL", None),
                recipient_list=list(recipients),
                fail_silently=False,
            )
        except Exception as e:
            logger.error(f"📧 [Notification] Failed to send usage alert email: {e!s}")
            return DeliveryResult(channel=channel, delivered=False, recipients=tuple(recipients), error=str(e)[:200])

        logger.info(f"📧 [Notification] Usage alert email sent to {len(recipients)} recipient(s)")
        return DeliveryResult(channel=channel, delivered=bool(sent), recipients=tuple(recipients))


class QueuedNotificationDispatcher:
    """Hands delivery to a django-q2 worker so allocation never waits on a transport"""

    def send(self, channel: str, recipients: list[str], template_context: dict[str, Any]) -> DeliveryResult:
        try:
            task_id = queue_by_name(
                NOTIFICATION_TASK,
                channel,
                list(recipients),
                template_context,
                timeout=config.NOTIFICATION_TASK_TIMEOUT,
            )
        except Exception as e:
            logger.warning(f"⚠️ [Notification] Failed to queue {channel} alert delivery: {e}")
            return DeliveryResult(channel=channel, delivered=False, recipients=tuple(recipients), error=str(e)[:200])

        logger.info(f"📨 [Notification] Queued {channel} alert delivery as task {task_id}")
        return DeliveryResult(
            channel=channel, delivered=False, queued=True, task_id=task_id, recipients=tuple(recipients)
        )
