"""
Transactional email queue.

Same retry shape as webhook deliveries: pending rows are claimed in
batches (attempts incremented, leased until the backoff time), sent as
separate tasks, and marked sent or, after max retries, failed with the
last error kept for operators.
"""
import asyncio
import html
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Set

import structlog
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from giftledger.config import get_settings
from giftledger.core.webhooks import retry_delay
from giftledger.database.connection import get_session_factory
from giftledger.database.models import Card, EmailQueueEntry, Merchant, utcnow
from giftledger.integrations.email_provider import (
    EmailMessage,
    EmailProvider,
    EmailProviderError,
    ResendClient,
)
from giftledger.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass
class EmailJob:
    email_id: uuid.UUID
    message: EmailMessage
    attempts: int


async def queue_email(
    db: AsyncSession,
    to: str,
    subject: str,
    html_body: str,
    text_body: Optional[str] = None,
    from_address: Optional[str] = None,
    merchant_id: Optional[uuid.UUID] = None,
    template: Optional[str] = None,
) -> EmailQueueEntry:
    """Add an email to the queue as pending with zero attempts."""
    entry = EmailQueueEntry(
        merchant_id=merchant_id,
        to_address=to,
        from_address=from_address or get_settings().email_from,
        subject=subject,
        html=html_body,
        text=text_body,
        template=template,
        status="pending",
        attempts=0,
    )
    db.add(entry)
    await db.flush()
    logger.info("email_queued", email_id=str(entry.id), template=template)
    return entry


def _format_amount(cents: int, currency: str) -> str:
    return f"{currency} ${cents / 100:.2f}"


async def send_gift_card(
    db: AsyncSession, card: Card, redemption_code: str, merchant: Merchant
) -> EmailQueueEntry:
    """
    Queue the gift card delivery email to the card's recipient.

    Raises:
        ValueError: Card has no recipient email
    """
    if not card.recipient_email:
        raise ValueError("Card has no recipient email")

    merchant_name = html.escape(merchant.name)
    balance = _format_amount(card.current_balance, card.currency)
    expiry = f"Expires: {card.expires_at.date().isoformat()}" if card.expires_at else ""
    intro = (
        f"{html.escape(card.sender_name)} sent you a gift card from <strong>{merchant_name}</strong>."
        if card.sender_name
        else f"You've received a gift card from <strong>{merchant_name}</strong>."
    )
    note = (
        f'<p style="padding: 16px; background: #f5f5f5; border-radius: 8px; '
        f'font-style: italic;">"{html.escape(card.message)}"</p>'
        if card.message
        else ""
    )

    subject = f"You received a {balance} gift card from {merchant.name}!"
    html_body = f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">
  <h1 style="color: #333;">You've received a gift card!</h1>
  <p>{intro}</p>
  {note}
  <div style="background: #f9f9f9; border: 2px solid #e0e0e0; border-radius: 12px; padding: 24px; text-align: center; margin: 24px 0;">
    <p style="font-size: 14px; color: #666; margin: 0 0 8px;">Gift Card Balance</p>
    <p style="font-size: 36px; font-weight: bold; color: #111; margin: 0;">{balance}</p>
    <hr style="border: none; border-top: 1px solid #e0e0e0; margin: 16px 0;">
    <p style="font-size: 14px; color: #666; margin: 0 0 4px;">Card Number</p>
    <p style="font-size: 18px; font-weight: bold; color: #333; letter-spacing: 2px;">{card.card_number}</p>
    <p style="font-size: 14px; color: #666; margin: 0 0 4px;">Redemption Code</p>
    <p style="font-size: 18px; font-weight: bold; color: #333; letter-spacing: 2px;">{redemption_code}</p>
    {f'<p style="font-size: 12px; color: #999;">{expiry}</p>' if expiry else ""}
  </div>
  <p style="font-size: 12px; color: #999;">This email was sent by {merchant_name} via GiftLedger.</p>
</body>
</html>"""

    text_lines = [
        f"You've received a gift card from {merchant.name}!",
        "",
        f"Balance: {balance}",
        f"Card Number: {card.card_number}",
        f"Redemption Code: {redemption_code}",
    ]
    if expiry:
        text_lines.append(expiry)
    if card.message:
        text_lines.extend(["", f'Message: "{card.message}"'])

    return await queue_email(
        db,
        to=card.recipient_email,
        subject=subject,
        html_body=html_body,
        text_body="\n".join(text_lines),
        from_address=f"{merchant.name} via GiftLedger <{_sender_address()}>",
        merchant_id=merchant.id,
        template="gift_card",
    )


def _sender_address() -> str:
    sender = get_settings().email_from
    if "<" in sender and sender.endswith(">"):
        return sender[sender.index("<") + 1 : -1]
    return sender


class EmailQueue:
    """Drains the email queue through an EmailProvider."""

    def __init__(
        self,
        provider: Optional[EmailProvider] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        batch_size: Optional[int] = None,
        max_retries: Optional[int] = None,
    ):
        settings = get_settings()
        self.provider = provider or ResendClient()
        self.session_factory = session_factory or get_session_factory()
        self.batch_size = batch_size or settings.email_batch_size
        self.max_retries = max_retries or settings.email_max_retries
        self._inflight: Set[asyncio.Task] = set()

    async def claim_due(self, db: AsyncSession, now: Optional[datetime] = None) -> List[EmailJob]:
        """Claim up to batch_size pending emails; the caller commits."""
        now = now or utcnow()
        result = await db.execute(
            select(EmailQueueEntry)
            .where(
                EmailQueueEntry.status == "pending",
                or_(
                    EmailQueueEntry.next_attempt_at.is_(None),
                    EmailQueueEntry.next_attempt_at <= now,
                ),
            )
            .order_by(EmailQueueEntry.created_at)
            .limit(self.batch_size)
            .with_for_update(skip_locked=True)
        )

        jobs: List[EmailJob] = []
        for entry in result.scalars().all():
            if entry.attempts >= self.max_retries:
                entry.status = "failed"
                entry.error_message = entry.error_message or "Max retries exceeded"
                metrics.record_email("failed")
                continue
            entry.attempts += 1
            entry.next_attempt_at = now + retry_delay(entry.attempts)
            jobs.append(
                EmailJob(
                    email_id=entry.id,
                    attempts=entry.attempts,
                    message=EmailMessage(
                        to=[entry.to_address],
                        from_address=entry.from_address,
                        subject=entry.subject,
                        html=entry.html,
                        text=entry.text,
                    ),
                )
            )
        await db.flush()
        return jobs

    async def record_result(
        self,
        db: AsyncSession,
        job: EmailJob,
        provider_message_id: Optional[str] = None,
        error: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> None:
        """Mark an email sent, or keep it pending / fail it after max retries."""
        entry = await db.get(EmailQueueEntry, job.email_id, with_for_update=True)
        if entry is None:
            return

        if error is None:
            entry.status = "sent"
            entry.sent_at = now or utcnow()
            entry.next_attempt_at = None
            entry.provider_message_id = provider_message_id
            entry.error_message = None
            metrics.record_email("sent")
            logger.info("email_sent", email_id=str(entry.id), attempts=entry.attempts)
        else:
            entry.error_message = error
            if entry.attempts >= self.max_retries:
                entry.status = "failed"
                entry.next_attempt_at = None
                metrics.record_email("failed")
            else:
                metrics.record_email("retrying")
            logger.warning(
                "email_send_failed",
                email_id=str(entry.id),
                attempts=entry.attempts,
                status=entry.status,
                error=error,
            )
        await db.flush()

    async def send(self, job: EmailJob) -> bool:
        """Send one claimed email and record the outcome in its own session."""
        message_id: Optional[str] = None
        error: Optional[str] = None
        try:
            message_id = await self.provider.send(job.message)
        except EmailProviderError as e:
            error = str(e)
        except Exception as e:
            logger.exception("email_provider_crashed", email_id=str(job.email_id))
            error = f"{type(e).__name__}: {e}"

        async with self.session_factory() as db:
            try:
                await self.record_result(db, job, provider_message_id=message_id, error=error)
                await db.commit()
            except Exception:
                await db.rollback()
                logger.exception("email_result_record_failed", email_id=str(job.email_id))
                raise
        return error is None

    async def process_batch(self, wait: bool = True) -> int:
        """
        Claim pending emails and send them.

        Returns:
            int: Number of emails claimed
        """
        async with self.session_factory() as db:
            try:
                jobs = await self.claim_due(db)
                await db.commit()
            except Exception:
                await db.rollback()
                raise

        if jobs:
            logger.info("email_batch_claimed", count=len(jobs))
        tasks = [asyncio.create_task(self.send(job)) for job in jobs]
        if wait:
            await asyncio.gather(*tasks, return_exceptions=True)
        else:
            for task in tasks:
                self._inflight.add(task)
                task.add_done_callback(self._task_done)
        metrics.record_sweep("email_drain", len(jobs), time.time())
        return len(jobs)

    def _task_done(self, task: asyncio.Task) -> None:
        self._inflight.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(
                "email_send_task_failed", error=str(error), error_type=type(error).__name__
            )

    async def drain_inflight(self) -> None:
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)
