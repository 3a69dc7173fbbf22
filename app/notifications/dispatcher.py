"""
Email Dispatcher
================
Renders a step template and hands it to an EmailSender.
Every delivery attempt is written back to the outbox row;
successful sends also land in the partnership_emails history.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional, Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from app.config import EmailConfig
from app.core.partnership_states import get_step_config
from app.db.models import EmailOutbox, Influencer, PartnershipEmail, PartnershipWorkflow
from app.notifications.templates import (
    FALLBACK_BODY,
    FALLBACK_SUBJECT,
    find_template,
    render_template,
)


logger = logging.getLogger(__name__)

PENDING = "PENDING"
SENT = "SENT"
FAILED = "FAILED"


class EmailSender(Protocol):
    """Transport for rendered emails (Gmail, SMTP, ...)."""

    async def send(self, to: str, subject: str, body: str) -> Optional[str]:
        """Send the message and return the provider's message id, if any."""


class LoggingEmailSender:
    """Default sender: logs the message instead of delivering it."""

    async def send(self, to: str, subject: str, body: str) -> Optional[str]:
        logger.info("Email to %s: %s", to, subject)
        return None


@dataclass(frozen=True)
class EmailResult:
    success: bool
    error: Optional[str] = None
    subject: Optional[str] = None
    message_id: Optional[str] = None


def format_price(price: Optional[float]) -> str:
    if price is None:
        return "0"
    if float(price).is_integer():
        return str(int(price))
    return f"{price:.2f}"


def build_template_variables(workflow: PartnershipWorkflow, influencer: Influencer) -> dict[str, Any]:
    """Variables available to every step template (present or None)."""
    return {
        "nome": influencer.name,
        "valor": format_price(workflow.agreed_price),
        "email": workflow.contact_email or influencer.email,
        "instagram": workflow.contact_instagram,
        "whatsapp": workflow.contact_whatsapp,
        "morada": workflow.shipping_address,
        "sugestao1": workflow.product_suggestion1,
        "sugestao2": workflow.product_suggestion2,
        "sugestao3": workflow.product_suggestion3,
        "url_produto": workflow.selected_product_url,
        "url_contrato": workflow.contract_url,
        "tracking_url": workflow.tracking_url,
        "cupom": workflow.coupon_code,
        "portal_token": influencer.portal_token,
    }


class EmailDispatcher:

    def __init__(self, sender: EmailSender, config: Optional[EmailConfig] = None):
        self.sender = sender
        self.config = config or EmailConfig()

    async def deliver(self, session: AsyncSession, entry: EmailOutbox) -> EmailResult:
        """
        Attempt one delivery of an outbox entry and commit the outcome.

        Failures are recorded on the entry and returned, never raised:
        a notification problem must not undo a committed transition.
        """
        if entry.status == SENT:
            return EmailResult(success=True)

        if not self.config.enabled:
            return await self._record_failure(session, entry, "Email sending disabled")

        workflow = await session.get(PartnershipWorkflow, entry.workflow_id)
        influencer = await session.get(Influencer, workflow.influencer_id) if workflow else None
        if workflow is None or influencer is None:
            return await self._record_failure(session, entry, "Workflow not found")

        variables = dict(entry.variables or {})
        has_value = (workflow.agreed_price or 0) > 0

        template = await find_template(session, entry.step, has_value)
        if template is None:
            logger.warning("No template for step %s (has_value=%s), using default", entry.step, has_value)
            config = get_step_config(entry.step)
            variables.setdefault("etapa", config.name if config else str(entry.step))
            rendered = render_template(None, FALLBACK_SUBJECT, FALLBACK_BODY, variables, self.config.signature)
        else:
            rendered = render_template(template.key, template.subject, template.body, variables, self.config.signature)

        recipient = variables.get("email") or workflow.contact_email or influencer.email
        if not recipient:
            return await self._record_failure(session, entry, "No recipient email found")

        try:
            message_id = await self.sender.send(recipient, rendered.subject, rendered.body)
        except Exception as exc:
            logger.exception("Failed to send step %s email for workflow %s", entry.step, entry.workflow_id)
            return await self._record_failure(session, entry, str(exc) or exc.__class__.__name__)

        now = datetime.now(timezone.utc)
        session.add(PartnershipEmail(
            workflow_id=entry.workflow_id,
            outbox_id=entry.id,
            step=entry.step,
            template_key=rendered.template_key,
            recipient=recipient,
            subject=rendered.subject,
            body=rendered.body,
            sent_by=entry.sent_by,
            variables=entry.variables,
            provider_message_id=message_id,
            sent_at=now,
        ))
        entry.status = SENT
        entry.attempts += 1
        entry.last_error = None
        entry.sent_at = now
        await session.commit()

        logger.info("Sent step %s email for workflow %s to %s", entry.step, entry.workflow_id, recipient)
        return EmailResult(success=True, subject=rendered.subject, message_id=message_id)

    async def _record_failure(self, session: AsyncSession, entry: EmailOutbox, error: str) -> EmailResult:
        entry.attempts += 1
        entry.last_error = error
        if entry.attempts >= self.config.max_attempts:
            entry.status = FAILED
        await session.commit()
        logger.warning(
            "Step %s email for workflow %s not sent (attempt %d): %s",
            entry.step, entry.workflow_id, entry.attempts, error,
        )
        return EmailResult(success=False, error=error)
