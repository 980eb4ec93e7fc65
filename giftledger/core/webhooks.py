"""
Webhook endpoint management and at-least-once delivery engine.

Deliveries are written in the same database transaction as the ledger or
card change that produced the event. A periodic drain claims due
deliveries (bumping ``attempts`` and leasing them until the next retry
time), commits the claim, then sends each one as its own task so a slow
endpoint never blocks the drain.
"""
import asyncio
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Set
from urllib.parse import urlparse

import structlog
from sqlalchemy import delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from giftledger.config import get_settings
from giftledger.core.audit import audit
from giftledger.core.codes import generate_webhook_secret
from giftledger.core.constants import WEBHOOK_EVENTS
from giftledger.core.errors import ForbiddenError, NotFoundError, ValidationError
from giftledger.core.identity import Scope
from giftledger.database.connection import get_session_factory
from giftledger.database.models import Merchant, WebhookDelivery, WebhookEndpoint, utcnow
from giftledger.integrations.webhook_sender import DeliveryResult, WebhookSender
from giftledger.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


def retry_delay(attempts: int) -> timedelta:
    """Backoff after the given attempt number: 1, 4, 9, 16... minutes."""
    return timedelta(minutes=attempts * attempts)


@dataclass
class DeliveryJob:
    """A claimed delivery, detached from its session."""

    delivery_id: uuid.UUID
    endpoint_id: uuid.UUID
    url: str
    secret: str
    payload: str
    attempts: int


# ============================================================================
# DISPATCH
# ============================================================================

async def dispatch_event(
    db: AsyncSession,
    merchant_id: uuid.UUID,
    event: str,
    data: Dict[str, Any],
) -> int:
    """
    Queue an event for every active endpoint subscribed to it.

    Endpoints owned by the merchant and by the merchant's partner both
    receive it. Nothing is committed here; the caller's transaction
    decides.

    Returns:
        int: Number of deliveries queued
    """
    if event not in WEBHOOK_EVENTS:
        raise ValueError(f"Unknown webhook event: {event}")

    owners = [WebhookEndpoint.merchant_id == merchant_id]
    partner_id = await db.scalar(select(Merchant.partner_id).where(Merchant.id == merchant_id))
    if partner_id is not None:
        owners.append(WebhookEndpoint.partner_id == partner_id)

    result = await db.execute(
        select(WebhookEndpoint).where(or_(*owners), WebhookEndpoint.status == "active")
    )
    endpoints = [e for e in result.scalars().all() if event in (e.events or [])]
    if not endpoints:
        return 0

    payload = json.dumps(
        {
            "event": event,
            "data": data,
            "timestamp": int(time.time() * 1000),
            "merchantId": str(merchant_id),
        }
    )
    for endpoint in endpoints:
        db.add(
            WebhookDelivery(
                endpoint_id=endpoint.id,
                event=event,
                payload=payload,
                status="pending",
                attempts=0,
            )
        )
    await db.flush()

    metrics.record_webhook_dispatched(event, len(endpoints))
    logger.info(
        "webhook_event_dispatched",
        event=event,
        merchant_id=str(merchant_id),
        endpoints=len(endpoints),
    )
    return len(endpoints)


# ============================================================================
# ENDPOINT MANAGEMENT
# ============================================================================

def _validate_url(url: str) -> None:
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValidationError("Invalid webhook URL")


def _validate_events(events: List[str]) -> None:
    if not events:
        raise ValidationError("At least one webhook event is required")
    for event in events:
        if event not in WEBHOOK_EVENTS:
            raise ValidationError(f"Invalid webhook event: {event}")


def _owned_by(scope: Scope, endpoint: WebhookEndpoint) -> bool:
    if scope.merchant_id is not None:
        return endpoint.merchant_id == scope.merchant_id
    return scope.partner_id is not None and endpoint.partner_id == scope.partner_id


async def create_endpoint(
    db: AsyncSession,
    scope: Scope,
    url: str,
    events: List[str],
    description: Optional[str] = None,
) -> WebhookEndpoint:
    """
    Register a webhook endpoint for the scope's merchant, or its partner
    when the scope is partner-level.

    Raises:
        ValidationError: Bad URL, unknown event, or no owner in scope
    """
    if scope.merchant_id is None and scope.partner_id is None:
        raise ValidationError("Either merchantId or partnerId must be provided")
    _validate_url(url)
    _validate_events(events)

    endpoint = WebhookEndpoint(
        merchant_id=scope.merchant_id,
        partner_id=None if scope.merchant_id is not None else scope.partner_id,
        url=url,
        description=description,
        events=list(dict.fromkeys(events)),
        secret=generate_webhook_secret(),
        status="active",
        failure_count=0,
    )
    db.add(endpoint)
    await db.flush()

    audit.log(db, scope, "webhook.created", "webhook_endpoint", endpoint.id, {"url": url})
    logger.info(
        "webhook_endpoint_created",
        endpoint_id=str(endpoint.id),
        merchant_id=str(endpoint.merchant_id) if endpoint.merchant_id else None,
        partner_id=str(endpoint.partner_id) if endpoint.partner_id else None,
        events=endpoint.events,
    )
    return endpoint


async def list_endpoints(db: AsyncSession, scope: Scope) -> List[WebhookEndpoint]:
    if scope.merchant_id is not None:
        condition = WebhookEndpoint.merchant_id == scope.merchant_id
    elif scope.partner_id is not None:
        condition = WebhookEndpoint.partner_id == scope.partner_id
    else:
        raise ValidationError("Either merchantId or partnerId must be provided")
    result = await db.execute(
        select(WebhookEndpoint).where(condition).order_by(WebhookEndpoint.created_at)
    )
    return list(result.scalars().all())


async def get_endpoint(
    db: AsyncSession, scope: Scope, endpoint_id: uuid.UUID
) -> WebhookEndpoint:
    endpoint = await db.get(WebhookEndpoint, endpoint_id)
    if endpoint is None:
        raise NotFoundError("Webhook endpoint not found")
    if not _owned_by(scope, endpoint):
        raise ForbiddenError("You do not have access to this webhook endpoint")
    return endpoint


async def delete_endpoint(db: AsyncSession, scope: Scope, endpoint_id: uuid.UUID) -> None:
    """Delete an endpoint and its delivery history."""
    endpoint = await get_endpoint(db, scope, endpoint_id)
    await db.execute(delete(WebhookDelivery).where(WebhookDelivery.endpoint_id == endpoint.id))
    await db.delete(endpoint)
    await db.flush()
    audit.log(db, scope, "webhook.deleted", "webhook_endpoint", endpoint_id)
    logger.info("webhook_endpoint_deleted", endpoint_id=str(endpoint_id))


async def reactivate_endpoint(
    db: AsyncSession, scope: Scope, endpoint_id: uuid.UUID
) -> WebhookEndpoint:
    """Re-enable a disabled endpoint and clear its failure count."""
    endpoint = await get_endpoint(db, scope, endpoint_id)
    endpoint.status = "active"
    endpoint.failure_count = 0
    await db.flush()
    audit.log(db, scope, "webhook.reactivated", "webhook_endpoint", endpoint.id)
    logger.info("webhook_endpoint_reactivated", endpoint_id=str(endpoint_id))
    return endpoint


async def list_deliveries(
    db: AsyncSession, scope: Scope, endpoint_id: uuid.UUID, limit: int = 50
) -> List[WebhookDelivery]:
    endpoint = await get_endpoint(db, scope, endpoint_id)
    result = await db.execute(
        select(WebhookDelivery)
        .where(WebhookDelivery.endpoint_id == endpoint.id)
        .order_by(WebhookDelivery.created_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


# ============================================================================
# DELIVERY ENGINE
# ============================================================================

class WebhookDeliveryEngine:
    """
    Drains pending webhook deliveries.

    A delivery is due while it is pending, its next_retry_at is unset or
    past, and its endpoint is active. Claiming it increments attempts and
    moves next_retry_at forward by the backoff for that attempt, so an
    overlapping drain will not pick it up while the send is in flight.
    """

    def __init__(
        self,
        sender: Optional[WebhookSender] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        batch_size: Optional[int] = None,
        max_retries: Optional[int] = None,
        auto_disable_threshold: Optional[int] = None,
    ):
        """
        Initialize the delivery engine.

        Args:
            sender: Outbound HTTP sender
            session_factory: Session factory (defaults to the global one)
            batch_size: Deliveries claimed per drain
            max_retries: Attempts before a delivery is marked failed
            auto_disable_threshold: Endpoint failures before it is disabled
        """
        settings = get_settings()
        self.sender = sender or WebhookSender()
        self.session_factory = session_factory or get_session_factory()
        self.batch_size = batch_size or settings.webhook_batch_size
        self.max_retries = max_retries or settings.webhook_max_retries
        self.auto_disable_threshold = (
            auto_disable_threshold or settings.webhook_auto_disable_threshold
        )
        self._inflight: Set[asyncio.Task] = set()

    async def claim_due(
        self, db: AsyncSession, now: Optional[datetime] = None
    ) -> List[DeliveryJob]:
        """
        Claim up to batch_size due deliveries.

        Args:
            db: Database session; the caller commits the claim
            now: Current time (defaults to utcnow)

        Returns:
            List[DeliveryJob]: Claimed deliveries
        """
        now = now or utcnow()
        result = await db.execute(
            select(WebhookDelivery, WebhookEndpoint)
            .join(WebhookEndpoint, WebhookEndpoint.id == WebhookDelivery.endpoint_id)
            .where(
                WebhookDelivery.status == "pending",
                or_(
                    WebhookDelivery.next_retry_at.is_(None),
                    WebhookDelivery.next_retry_at <= now,
                ),
                WebhookEndpoint.status == "active",
            )
            .order_by(WebhookDelivery.created_at)
            .limit(self.batch_size)
            .with_for_update(skip_locked=True, of=WebhookDelivery)
        )

        jobs: List[DeliveryJob] = []
        for delivery, endpoint in result.all():
            if delivery.attempts >= self.max_retries:
                delivery.status = "failed"
                delivery.next_retry_at = None
                continue
            delivery.attempts += 1
            delivery.next_retry_at = now + retry_delay(delivery.attempts)
            jobs.append(
                DeliveryJob(
                    delivery_id=delivery.id,
                    endpoint_id=endpoint.id,
                    url=endpoint.url,
                    secret=endpoint.secret,
                    payload=delivery.payload,
                    attempts=delivery.attempts,
                )
            )
        await db.flush()
        return jobs

    async def record_result(
        self,
        db: AsyncSession,
        job: DeliveryJob,
        result: DeliveryResult,
        now: Optional[datetime] = None,
    ) -> None:
        """
        Persist the outcome of one send.

        Success marks the delivery delivered and resets the endpoint's
        failure count. Failure leaves the delivery pending for its leased
        retry time, or fails it permanently once max_retries is reached, and
        counts against the endpoint.
        """
        now = now or utcnow()
        delivery = await db.get(WebhookDelivery, job.delivery_id, with_for_update=True)
        endpoint = await db.get(WebhookEndpoint, job.endpoint_id, with_for_update=True)
        if delivery is None or endpoint is None:
            logger.warning("webhook_delivery_vanished", delivery_id=str(job.delivery_id))
            return

        delivery.response_status = result.status_code
        delivery.response_body = result.response_body

        if result.success:
            delivery.status = "delivered"
            delivery.delivered_at = now
            delivery.next_retry_at = None
            endpoint.failure_count = 0
            endpoint.last_delivered_at = now
            metrics.record_webhook_delivery("delivered")
            logger.info(
                "webhook_delivered",
                delivery_id=str(delivery.id),
                endpoint_id=str(endpoint.id),
                status_code=result.status_code,
                attempts=delivery.attempts,
            )
        else:
            delivery.error_message = (
                f"HTTP {result.status_code}" if result.status_code else result.response_body
            )
            if delivery.attempts >= self.max_retries:
                delivery.status = "failed"
                delivery.next_retry_at = None
                outcome = "failed"
            else:
                outcome = "retrying"
            endpoint.failure_count += 1
            metrics.record_webhook_delivery(outcome)
            logger.warning(
                "webhook_delivery_failed",
                delivery_id=str(delivery.id),
                endpoint_id=str(endpoint.id),
                status_code=result.status_code,
                attempts=delivery.attempts,
                outcome=outcome,
                next_retry_at=delivery.next_retry_at.isoformat() if delivery.next_retry_at else None,
            )
            if (
                endpoint.status == "active"
                and endpoint.failure_count >= self.auto_disable_threshold
            ):
                endpoint.status = "disabled"
                metrics.record_endpoint_disabled()
                logger.warning(
                    "webhook_endpoint_disabled",
                    endpoint_id=str(endpoint.id),
                    failure_count=endpoint.failure_count,
                )

        await db.flush()

    async def deliver(self, job: DeliveryJob) -> DeliveryResult:
        """Send one claimed delivery and record the outcome in its own session."""
        result = await self.sender.send(job.url, job.secret, job.payload)
        async with self.session_factory() as db:
            try:
                await self.record_result(db, job, result)
                await db.commit()
            except Exception:
                await db.rollback()
                logger.exception("webhook_result_record_failed", delivery_id=str(job.delivery_id))
                raise
        return result

    async def process_batch(self, wait: bool = True) -> int:
        """
        Claim due deliveries and send them.

        Args:
            wait: Await the sends before returning; otherwise they run as
                background tasks tracked by the engine

        Returns:
            int: Number of deliveries claimed
        """
        async with self.session_factory() as db:
            try:
                jobs = await self.claim_due(db)
                await db.commit()
            except Exception:
                await db.rollback()
                raise

        metrics.record_sweep("webhook_drain", len(jobs), time.time())
        if not jobs:
            return 0

        logger.info("webhook_batch_claimed", count=len(jobs))
        tasks = [asyncio.create_task(self.deliver(job)) for job in jobs]
        if wait:
            await asyncio.gather(*tasks, return_exceptions=True)
        else:
            for task in tasks:
                self._inflight.add(task)
                task.add_done_callback(self._task_done)
        return len(jobs)

    def _task_done(self, task: asyncio.Task) -> None:
        self._inflight.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(
                "webhook_delivery_task_failed", error=str(error), error_type=type(error).__name__
            )

    async def drain_inflight(self) -> None:
        """Wait for background sends started by process_batch(wait=False)."""
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)
