"""
Database-Backed Partnership FSM
===============================
Advance, restart, cancel and edit partnership workflows.
Each call runs as one transaction: the step change, the influencer
status sync, the audit event and the queued email commit together.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from app.core.errors import (
    ConcurrentModification,
    Forbidden,
    InvalidInput,
    InvalidState,
    InvalidStep,
    MissingFields,
    NotFound,
    Unauthorized,
)
from app.core.partnership_states import (
    CONTACT_FIELDS,
    FINAL_STEP,
    FIRST_STEP,
    PORTAL_ADVANCE_STEPS,
    PORTAL_EDITABLE_FIELDS,
    PORTAL_STEP_REQUIREMENTS,
    STEP_FIELDS,
    TERMINAL_STATUSES,
    InfluencerStatus,
    WorkflowEventType,
    WorkflowStatus,
    get_step_config,
    influencer_status_for,
)
from app.core.validation import validate_step
from app.db.models import EmailOutbox, Influencer, PartnershipEmail, PartnershipWorkflow, WorkflowEvent
from app.notifications.dispatcher import PENDING, SENT, EmailDispatcher, EmailResult, build_template_variables, format_price
from app.notifications.outbox import enqueue_email


logger = logging.getLogger(__name__)

# Portal contact fields mirrored onto the influencer profile
PROFILE_MIRROR = {
    "contact_email": "email",
    "contact_instagram": "instagram_handle",
    "contact_whatsapp": "phone",
}
PORTAL_PROFILE_FIELDS = ("name", "tiktok_handle")


@dataclass
class TransitionResult:
    workflow: PartnershipWorkflow
    message: str
    email: Optional[EmailResult] = None

    @property
    def email_sent(self) -> Optional[bool]:
        return None if self.email is None else self.email.success

    @property
    def email_error(self) -> Optional[str]:
        return None if self.email is None else self.email.error


@dataclass
class RestartResult:
    workflow: PartnershipWorkflow
    previous_workflow_id: uuid.UUID
    message: str = "Partnership restarted successfully"


def _as_uuid(value: Any, what: str = "Workflow") -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise NotFound(f"{what} not found")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_coupon(code: Optional[str]) -> Optional[str]:
    code = (code or "").strip()
    return code.upper() or None


class PartnershipFSM:
    """
    FSM that persists to the database.
    Every transition = one commit.
    """

    def __init__(self, session: AsyncSession, dispatcher: EmailDispatcher):
        self.session = session
        self.dispatcher = dispatcher

    # ── Loading ───────────────────────────────────────────────────────────────

    async def get_workflow(self, workflow_id, lock: bool = False) -> PartnershipWorkflow:
        query = select(PartnershipWorkflow).where(PartnershipWorkflow.id == _as_uuid(workflow_id))
        if lock:
            # Row lock serializes transitions on the same workflow (no-op on SQLite,
            # where the version column still catches lost updates)
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(query)
        workflow = result.scalar_one_or_none()
        if not workflow:
            raise NotFound("Workflow not found")
        return workflow

    async def get_influencer(self, influencer_id, lock: bool = False) -> Influencer:
        influencer_id = _as_uuid(influencer_id, "Influencer")
        if lock:
            # Serializes workflow creation per influencer
            result = await self.session.execute(
                select(Influencer)
                .where(Influencer.id == influencer_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            influencer = result.scalar_one_or_none()
        else:
            influencer = await self.session.get(Influencer, influencer_id)
        if not influencer:
            raise NotFound("Influencer not found")
        return influencer

    async def influencer_for_token(self, token: str) -> Influencer:
        if not token:
            raise Unauthorized("Invalid portal link")
        result = await self.session.execute(select(Influencer).where(Influencer.portal_token == token))
        influencer = result.scalar_one_or_none()
        if not influencer:
            raise Unauthorized("Invalid portal link")
        return influencer

    async def active_workflow(self, influencer_id, lock: bool = False) -> Optional[PartnershipWorkflow]:
        query = select(PartnershipWorkflow).where(
            PartnershipWorkflow.influencer_id == influencer_id,
            PartnershipWorkflow.status == WorkflowStatus.ACTIVE.value,
        )
        if lock:
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(query)
        return result.scalars().first()

    async def list_workflows(self, influencer_id) -> list[PartnershipWorkflow]:
        influencer = await self.get_influencer(influencer_id)
        result = await self.session.execute(
            select(PartnershipWorkflow)
            .where(PartnershipWorkflow.influencer_id == influencer.id)
            .order_by(PartnershipWorkflow.created_at.desc())
        )
        return list(result.scalars().all())

    # ── Helpers ───────────────────────────────────────────────────────────────

    def _record(self, workflow, event: WorkflowEventType, acting: str, from_step=None, to_step=None, payload=None):
        self.session.add(WorkflowEvent(
            id=uuid.uuid4(),
            workflow_id=workflow.id,
            event=event.value,
            from_step=from_step,
            to_step=to_step,
            acting=acting,
            payload=payload or {},
            occurred_at=_utcnow(),
        ))

    @staticmethod
    def _sync_influencer(workflow: PartnershipWorkflow, influencer: Influencer) -> None:
        influencer.status = influencer_status_for(workflow.status, workflow.current_step).value

    @staticmethod
    def _ensure_mutable(workflow: PartnershipWorkflow) -> None:
        if WorkflowStatus(workflow.status) in TERMINAL_STATUSES:
            raise InvalidState(f"Workflow is {workflow.status} and can no longer change")

    async def _commit(self) -> None:
        try:
            await self.session.commit()
        except StaleDataError:
            await self.session.rollback()
            raise ConcurrentModification("Workflow was modified by another request, reload and retry")
        except IntegrityError as exc:
            # e.g. a second ACTIVE workflow inserted by a concurrent request
            await self.session.rollback()
            logger.warning("Commit rejected by a database constraint: %s", exc.orig)
            raise ConcurrentModification("Conflicting change committed by another request, reload and retry")

    # ── Transitions ───────────────────────────────────────────────────────────

    async def advance(self, workflow_id, acting: str = "system") -> TransitionResult:
        """Admin advance: validate the current step against the full step table."""
        workflow = await self.get_workflow(workflow_id, lock=True)
        return await self._transition(workflow, acting)

    async def portal_advance(self, token: str) -> TransitionResult:
        """Influencer advance from the portal: steps 1, 2 and 4 only, reduced requirements."""
        influencer = await self.influencer_for_token(token)
        workflow = await self.active_workflow(influencer.id, lock=True)
        if not workflow:
            raise NotFound("No active partnership found")

        if workflow.current_step not in PORTAL_ADVANCE_STEPS:
            raise Forbidden("This step can only be advanced by the VecinoCustom team")

        return await self._transition(
            workflow,
            acting=f"portal:{influencer.id}",
            required_fields=PORTAL_STEP_REQUIREMENTS[workflow.current_step],
        )

    async def accept_counter_proposal(self, workflow_id, acting: str = "system") -> TransitionResult:
        workflow = await self.get_workflow(workflow_id, lock=True)
        if workflow.current_step != FIRST_STEP:
            raise InvalidState("Counter proposals can only be accepted on the first step")
        return await self._transition(workflow, acting)

    async def _transition(
        self,
        workflow: PartnershipWorkflow,
        acting: str,
        required_fields: Optional[Iterable[str]] = None,
    ) -> TransitionResult:
        if workflow.status != WorkflowStatus.ACTIVE.value:
            raise InvalidState(f"Cannot advance workflow with status: {workflow.status}")

        config = get_step_config(workflow.current_step)
        if config is None:
            raise InvalidStep(f"Invalid step: {workflow.current_step}")

        validation = validate_step(workflow, config.number, required_fields)
        if not validation.valid:
            raise MissingFields(validation.missing, config.number, config.name)

        influencer = await self.get_influencer(workflow.influencer_id)
        from_step = workflow.current_step

        # Final step: complete, no email
        if config.next_step is None:
            workflow.status = WorkflowStatus.COMPLETED.value
            setattr(workflow, f"step{from_step}_completed_at", _utcnow())
            self._sync_influencer(workflow, influencer)
            self._record(workflow, WorkflowEventType.COMPLETED, acting, from_step, from_step)
            await self._commit()

            logger.info("Workflow %s completed by %s", workflow.id, acting)
            return TransitionResult(workflow=workflow, message="Partnership completed successfully")

        # Queue the step email in the same transaction as the step change
        variables = build_template_variables(workflow, influencer)
        entry, _ = await enqueue_email(self.session, workflow.id, from_step, variables, acting)

        workflow.current_step = config.next_step
        setattr(workflow, f"step{from_step}_completed_at", _utcnow())
        self._sync_influencer(workflow, influencer)
        self._record(workflow, WorkflowEventType.STEP_ADVANCED, acting, from_step, config.next_step)
        await self._commit()

        next_config = get_step_config(config.next_step)
        logger.info("Workflow %s: %s -> %s by %s", workflow.id, config.name, next_config.name, acting)

        email = await self.dispatcher.deliver(self.session, entry)
        return TransitionResult(
            workflow=workflow,
            message=f"Advanced from {config.name} to {next_config.name}",
            email=email,
        )

    async def restart(self, workflow_id, acting: str = "system") -> RestartResult:
        workflow = await self.get_workflow(workflow_id, lock=True)

        if workflow.status == WorkflowStatus.RESTARTED.value:
            raise InvalidState("Workflow has already been restarted")
        # Step 5 while still ACTIVE is accepted on purpose
        if workflow.current_step < FINAL_STEP and workflow.status != WorkflowStatus.COMPLETED.value:
            raise InvalidState("Can only restart from final step or completed")

        influencer = await self.get_influencer(workflow.influencer_id, lock=True)
        other = await self.active_workflow(workflow.influencer_id)
        if other is not None and other.id != workflow.id:
            raise InvalidState("Influencer already has an active partnership")

        workflow.status = WorkflowStatus.RESTARTED.value
        fresh = PartnershipWorkflow(
            id=uuid.uuid4(),
            influencer_id=workflow.influencer_id,
            current_step=FIRST_STEP,
            status=WorkflowStatus.ACTIVE.value,
            is_restarted=True,
            previous_workflow_id=workflow.id,
            contract_signed=False,
            **{name: getattr(workflow, name) for name in CONTACT_FIELDS},
        )
        self.session.add(fresh)
        self._sync_influencer(fresh, influencer)

        self._record(workflow, WorkflowEventType.RESTARTED, acting, workflow.current_step, None,
                     {"new_workflow_id": str(fresh.id)})
        self._record(fresh, WorkflowEventType.CREATED, acting, None, FIRST_STEP,
                     {"previous_workflow_id": str(workflow.id)})
        await self._commit()

        logger.info("Workflow %s restarted as %s by %s", workflow.id, fresh.id, acting)
        return RestartResult(workflow=fresh, previous_workflow_id=workflow.id)

    async def cancel(self, workflow_id, acting: str = "system") -> PartnershipWorkflow:
        workflow = await self.get_workflow(workflow_id, lock=True)
        if workflow.status == WorkflowStatus.CANCELLED.value:
            raise InvalidState("Partnership is already cancelled")
        self._ensure_mutable(workflow)

        influencer = await self.get_influencer(workflow.influencer_id)
        workflow.status = WorkflowStatus.CANCELLED.value
        self._sync_influencer(workflow, influencer)
        self._record(workflow, WorkflowEventType.CANCELLED, acting, workflow.current_step, None)
        await self._commit()

        logger.info("Workflow %s cancelled by %s", workflow.id, acting)
        return workflow

    # ── Creation and edits ────────────────────────────────────────────────────

    async def create_workflow(self, influencer_id, acting: str = "system") -> PartnershipWorkflow:
        influencer = await self.get_influencer(influencer_id, lock=True)

        if await self.active_workflow(influencer.id) is not None:
            raise InvalidState("Influencer already has an active partnership")

        workflow = PartnershipWorkflow(
            id=uuid.uuid4(),
            influencer_id=influencer.id,
            current_step=FIRST_STEP,
            status=WorkflowStatus.ACTIVE.value,
            contact_email=influencer.email,
            contact_instagram=influencer.instagram_handle,
            contract_signed=False,
        )
        self.session.add(workflow)
        # Waiting for the influencer to answer the proposal
        influencer.status = InfluencerStatus.COUNTER_PROPOSAL.value
        self._record(workflow, WorkflowEventType.CREATED, acting, None, FIRST_STEP)
        await self._commit()

        logger.info("Workflow %s created for influencer %s", workflow.id, influencer.id)
        return workflow

    def _apply_fields(self, workflow, changes: Mapping[str, Any], allowed: Iterable[str]) -> list[str]:
        allowed = set(allowed)
        applied = []
        for name, value in changes.items():
            if name not in allowed:
                continue
            setattr(workflow, name, value)
            applied.append(name)

        ignored = sorted(set(changes) - allowed)
        if ignored:
            logger.debug("Ignoring fields outside step %s: %s", workflow.current_step, ignored)
        return applied

    async def update_fields(self, workflow_id, changes: Mapping[str, Any], acting: str = "system") -> PartnershipWorkflow:
        """Admin edit; only the current step's fields are writable."""
        workflow = await self.get_workflow(workflow_id, lock=True)
        if workflow.status != WorkflowStatus.ACTIVE.value:
            raise InvalidState(f"Cannot edit workflow with status: {workflow.status}")

        if "coupon_code" in changes:
            changes = dict(changes, coupon_code=normalize_coupon(changes["coupon_code"]))
        applied = self._apply_fields(workflow, changes, STEP_FIELDS.get(workflow.current_step, ()))
        if applied:
            self._record(workflow, WorkflowEventType.FIELDS_UPDATED, acting, workflow.current_step,
                         workflow.current_step, {"fields": applied})
            await self._commit()
        return workflow

    async def send_counter_proposal(self, workflow_id, agreed_price: float, acting: str = "system") -> TransitionResult:
        if agreed_price is None or agreed_price < 0:
            raise InvalidInput("agreedPrice is required")

        workflow = await self.get_workflow(workflow_id, lock=True)
        if workflow.status != WorkflowStatus.ACTIVE.value or workflow.current_step != FIRST_STEP:
            raise InvalidState("Proposals can only be sent on the first step of an active partnership")

        influencer = await self.get_influencer(workflow.influencer_id)
        workflow.agreed_price = agreed_price
        influencer.status = InfluencerStatus.COUNTER_PROPOSAL.value

        variables = build_template_variables(workflow, influencer)
        with self.session.no_autoflush:
            entry, _ = await enqueue_email(
                self.session, workflow.id, FIRST_STEP, variables, acting,
                suffix=f"proposal-{format_price(agreed_price)}",
            )
        self._record(workflow, WorkflowEventType.COUNTER_PROPOSAL_SENT, acting, FIRST_STEP, FIRST_STEP,
                     {"agreed_price": agreed_price})
        await self._commit()

        email = await self.dispatcher.deliver(self.session, entry)
        return TransitionResult(workflow=workflow, message="New proposal sent", email=email)

    async def set_coupon(self, workflow_id, coupon_code: str, acting: str = "system") -> PartnershipWorkflow:
        """Attach a coupon at any step; provisioning can lag behind the workflow."""
        code = normalize_coupon(coupon_code)
        if not code:
            raise InvalidInput("Coupon code is required")

        workflow = await self.get_workflow(workflow_id, lock=True)
        self._ensure_mutable(workflow)
        workflow.coupon_code = code
        self._record(workflow, WorkflowEventType.COUPON_SET, acting, workflow.current_step,
                     workflow.current_step, {"coupon_code": workflow.coupon_code})
        await self._commit()
        return workflow

    async def clear_coupon(self, workflow_id, acting: str = "system") -> PartnershipWorkflow:
        workflow = await self.get_workflow(workflow_id, lock=True)
        self._ensure_mutable(workflow)
        workflow.coupon_code = None
        self._record(workflow, WorkflowEventType.COUPON_CLEARED, acting, workflow.current_step, workflow.current_step)
        await self._commit()
        return workflow

    # ── Email history ─────────────────────────────────────────────────────────

    async def get_previous_workflow(self, workflow: PartnershipWorkflow) -> Optional[PartnershipWorkflow]:
        if workflow.previous_workflow_id is None:
            return None
        return await self.session.get(PartnershipWorkflow, workflow.previous_workflow_id)

    async def list_emails(self, workflow_id) -> tuple[list[PartnershipEmail], list[EmailOutbox]]:
        """Sent emails and queued emails (with their delivery state), newest first."""
        workflow = await self.get_workflow(workflow_id)
        sent = await self.session.execute(
            select(PartnershipEmail)
            .where(PartnershipEmail.workflow_id == workflow.id)
            .order_by(PartnershipEmail.sent_at.desc())
        )
        queued = await self.session.execute(
            select(EmailOutbox)
            .where(EmailOutbox.workflow_id == workflow.id)
            .order_by(EmailOutbox.created_at.desc())
        )
        return list(sent.scalars().all()), list(queued.scalars().all())

    async def resend_email(self, outbox_id, acting: str = "system") -> tuple[EmailOutbox, EmailResult]:
        """Give a failed or pending step email a fresh set of attempts and try it now."""
        entry = await self.session.get(EmailOutbox, _as_uuid(outbox_id, "Email"))
        if not entry:
            raise NotFound("Email not found")
        if entry.status == SENT:
            raise InvalidState("Email was already sent")

        workflow = await self.get_workflow(entry.workflow_id)
        entry.status = PENDING
        entry.attempts = 0
        self._record(workflow, WorkflowEventType.EMAIL_RESENT, acting, entry.step, entry.step,
                     {"outbox_id": str(entry.id), "last_error": entry.last_error})
        await self._commit()

        logger.info("Step %s email for workflow %s requeued by %s", entry.step, workflow.id, acting)
        return entry, await self.dispatcher.deliver(self.session, entry)

    # ── Portal ────────────────────────────────────────────────────────────────

    async def get_portal_workflow(self, token: str) -> tuple[Influencer, PartnershipWorkflow]:
        influencer = await self.influencer_for_token(token)
        workflow = await self.active_workflow(influencer.id)
        if not workflow:
            raise NotFound("No active partnership found")
        return influencer, workflow

    async def update_portal_fields(self, token: str, changes: Mapping[str, Any]) -> PartnershipWorkflow:
        influencer = await self.influencer_for_token(token)
        workflow = await self.active_workflow(influencer.id, lock=True)
        if not workflow:
            raise NotFound("No active partnership found")

        applied = self._apply_fields(workflow, changes, PORTAL_EDITABLE_FIELDS.get(workflow.current_step, ()))
        for name in applied:
            value = getattr(workflow, name)
            if name in PROFILE_MIRROR and value:
                setattr(influencer, PROFILE_MIRROR[name], value)

        for name in PORTAL_PROFILE_FIELDS:
            if changes.get(name):
                setattr(influencer, name, changes[name])

        if applied:
            self._record(workflow, WorkflowEventType.FIELDS_UPDATED, f"portal:{influencer.id}",
                         workflow.current_step, workflow.current_step, {"fields": applied})
        await self._commit()
        return workflow
