"""
Email Outbox
============
Step emails are queued inside the transition's transaction and
delivered afterwards, at least once.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.db.models import EmailOutbox
from app.notifications.dispatcher import PENDING, EmailDispatcher


logger = logging.getLogger(__name__)


def dedup_key(workflow_id, step: int, suffix: Optional[str] = None) -> str:
    key = f"{workflow_id}:{step}"
    return f"{key}:{suffix}" if suffix else key


async def enqueue_email(
    session: AsyncSession,
    workflow_id,
    step: int,
    variables: dict[str, Any],
    sent_by: str,
    suffix: Optional[str] = None,
) -> tuple[EmailOutbox, bool]:
    """
    Add an outbox entry to the session without committing.

    Returns the entry and whether it is new. An existing entry with
    the same dedup key is returned untouched.
    """
    key = dedup_key(workflow_id, step, suffix)
    result = await session.execute(select(EmailOutbox).where(EmailOutbox.dedup_key == key))
    existing = result.scalar_one_or_none()
    if existing:
        logger.info("Email %s already queued, not queueing again", key)
        return existing, False

    entry = EmailOutbox(
        workflow_id=workflow_id,
        step=step,
        dedup_key=key,
        variables=variables,
        sent_by=sent_by,
        status=PENDING,
        attempts=0,
    )
    session.add(entry)
    return entry, True


@dataclass
class DeliveryReport:
    attempted: int = 0
    sent: int = 0
    failed: int = 0


class OutboxWorker:
    """Delivers pending outbox entries; run it from a scheduler or cron."""

    def __init__(self, session_factory: async_sessionmaker, dispatcher: EmailDispatcher):
        self.session_factory = session_factory
        self.dispatcher = dispatcher

    async def run_once(self, limit: int = 50) -> DeliveryReport:
        report = DeliveryReport()

        async with self.session_factory() as session:
            result = await session.execute(
                select(EmailOutbox)
                .where(EmailOutbox.status == PENDING)
                .order_by(EmailOutbox.created_at)
                .limit(limit)
            )
            entries = result.scalars().all()

            for entry in entries:
                report.attempted += 1
                outcome = await self.dispatcher.deliver(session, entry)
                if outcome.success:
                    report.sent += 1
                else:
                    report.failed += 1

        if report.attempted:
            logger.info(
                "Outbox pass: %d attempted, %d sent, %d failed",
                report.attempted, report.sent, report.failed,
            )
        return report
