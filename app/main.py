"""
Influencer Partnership Back-Office - API
========================================
FastAPI application for prospects and partnership workflows
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from functools import lru_cache
from typing import Optional
import uuid

from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import AppConfig, configure_logging, load_config
from app.core.errors import MissingFields, Unauthorized, WorkflowError
from app.core.partnership_fsm import PartnershipFSM, TransitionResult
from app.db import database
from app.notifications.dispatcher import EmailDispatcher, EmailSender, LoggingEmailSender
from app.notifications.outbox import OutboxWorker
from app.notifications.templates import seed_default_templates
from app.prospecting.pipeline import ProspectingPipeline, RawProspect


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    config = get_config()
    configure_logging(config.log_level)
    if config.create_tables:
        await database.init_db()
        async with database.async_session_factory() as session:
            await seed_default_templates(session)
    yield


app = FastAPI(
    title="Influencer Partnership Back-Office",
    description="Step-driven influencer partnership workflows",
    version="1.0.0",
    lifespan=lifespan,
)


# ── Dependencies ──────────────────────────────────────────────────────────────

@lru_cache
def get_config() -> AppConfig:
    return load_config()


def get_session_factory():
    return database.async_session_factory


_default_sender = LoggingEmailSender()


def get_email_sender() -> EmailSender:
    return _default_sender


def get_dispatcher(
    sender: EmailSender = Depends(get_email_sender),
    config: AppConfig = Depends(get_config),
) -> EmailDispatcher:
    return EmailDispatcher(sender, config.email)


def get_fsm(
    session: AsyncSession = Depends(database.get_session),
    dispatcher: EmailDispatcher = Depends(get_dispatcher),
) -> PartnershipFSM:
    return PartnershipFSM(session, dispatcher)


def require_admin(
    authorization: Optional[str] = Header(default=None),
    config: AppConfig = Depends(get_config),
) -> str:
    """Resolve the bearer token to the acting admin, before anything is loaded."""
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise Unauthorized("Unauthorized")
    acting = config.admin_tokens.get(token.strip())
    if not acting:
        raise Unauthorized("Unauthorized")
    return acting


# ── Request/Response Models ───────────────────────────────────────────────────

class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class WorkflowOut(CamelModel):
    id: uuid.UUID
    influencer_id: uuid.UUID
    current_step: int
    status: str
    agreed_price: Optional[float] = None
    contact_email: Optional[str] = None
    contact_instagram: Optional[str] = None
    contact_whatsapp: Optional[str] = None
    shipping_address: Optional[str] = None
    product_suggestion1: Optional[str] = None
    product_suggestion2: Optional[str] = None
    product_suggestion3: Optional[str] = None
    selected_product_url: Optional[str] = None
    design_proof_url: Optional[str] = None
    design_notes: Optional[str] = None
    contract_signed: Optional[bool] = None
    contract_url: Optional[str] = None
    tracking_url: Optional[str] = None
    coupon_code: Optional[str] = None
    step1_completed_at: Optional[datetime] = None
    step2_completed_at: Optional[datetime] = None
    step3_completed_at: Optional[datetime] = None
    step4_completed_at: Optional[datetime] = None
    step5_completed_at: Optional[datetime] = None
    is_restarted: bool = False
    previous_workflow_id: Optional[uuid.UUID] = None
    version: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class InfluencerOut(CamelModel):
    id: uuid.UUID
    name: str
    email: Optional[str] = None
    instagram_handle: Optional[str] = None
    tiktok_handle: Optional[str] = None
    phone: Optional[str] = None
    fit_score: Optional[float] = None
    status: str
    portal_token: str
    created_at: Optional[datetime] = None


class PreviousWorkflowOut(CamelModel):
    id: uuid.UUID
    current_step: int
    status: str
    created_at: Optional[datetime] = None


class EmailOut(CamelModel):
    id: uuid.UUID
    step: int
    template_key: Optional[str] = None
    recipient: str
    subject: str
    sent_by: str
    sent_at: datetime


class OutboxOut(CamelModel):
    """Queued step email and its delivery state"""
    id: uuid.UUID
    step: int
    status: str
    attempts: int
    last_error: Optional[str] = None
    sent_by: str
    created_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None


class ProspectCreateRequest(CamelModel):
    name: Optional[str] = None
    email: Optional[str] = None
    instagram_handle: Optional[str] = None
    tiktok_handle: Optional[str] = None
    phone: Optional[str] = None
    fit_score: Optional[float] = None
    source_id: str = "api"


class WorkflowCreateRequest(CamelModel):
    influencer_id: uuid.UUID


class WorkflowUpdateRequest(CamelModel):
    agreed_price: Optional[float] = None
    contact_email: Optional[str] = None
    contact_instagram: Optional[str] = None
    contact_whatsapp: Optional[str] = None
    shipping_address: Optional[str] = None
    product_suggestion1: Optional[str] = None
    product_suggestion2: Optional[str] = None
    product_suggestion3: Optional[str] = None
    selected_product_url: Optional[str] = None
    design_proof_url: Optional[str] = None
    design_notes: Optional[str] = None
    contract_signed: Optional[bool] = None
    contract_url: Optional[str] = None
    tracking_url: Optional[str] = None
    coupon_code: Optional[str] = None


class PortalUpdateRequest(CamelModel):
    name: Optional[str] = None
    tiktok_handle: Optional[str] = None
    contact_email: Optional[str] = None
    contact_instagram: Optional[str] = None
    contact_whatsapp: Optional[str] = None
    shipping_address: Optional[str] = None
    product_suggestion1: Optional[str] = None
    product_suggestion2: Optional[str] = None
    product_suggestion3: Optional[str] = None
    contract_signed: Optional[bool] = None


class CounterProposalRequest(CamelModel):
    agreed_price: float


class CouponRequest(CamelModel):
    coupon_code: str


def serialize(model: type[CamelModel], row) -> dict:
    return model.model_validate(row).model_dump(mode="json", by_alias=True)


def serialize_workflow(workflow) -> dict:
    return serialize(WorkflowOut, workflow)


def serialize_influencer(influencer) -> dict:
    return serialize(InfluencerOut, influencer)


def transition_response(result: TransitionResult) -> dict:
    return {
        "success": True,
        "message": result.message,
        "data": serialize_workflow(result.workflow),
        "emailSent": result.email_sent,
        "emailError": result.email_error,
    }


# ── Errors ────────────────────────────────────────────────────────────────────

@app.exception_handler(WorkflowError)
async def workflow_error_handler(request: Request, exc: WorkflowError):
    content = {"error": exc.message, "kind": exc.kind}
    if isinstance(exc, MissingFields):
        content.update({
            "missing": [to_camel(name) for name in exc.missing],
            "step": exc.step,
            "stepName": exc.step_name,
        })
    else:
        content.update(exc.details())
    return JSONResponse(status_code=exc.status_code, content=content)


# ── Endpoints ─────────────────────────────────────────────────────────────────

@app.get("/")
async def root():
    return {
        "service": "Influencer Partnership Back-Office",
        "version": "1.0.0",
        "status": "running"
    }


@app.get("/health")
async def health():
    """Health check endpoint"""
    return {"status": "healthy"}


@app.post("/influencers")
async def create_influencer(
    prospect: ProspectCreateRequest,
    acting: str = Depends(require_admin),
    session_factory=Depends(get_session_factory),
):
    """
    Ingest a single prospect through the prospecting pipeline.

    The prospect will be:
    1. Validated (name, contact handle, email format)
    2. Deduplicated (by email and Instagram handle)
    3. Stored in database with status SUGGESTION
    """
    raw = RawProspect(
        name=prospect.name,
        email=prospect.email,
        instagram_handle=prospect.instagram_handle,
        tiktok_handle=prospect.tiktok_handle,
        phone=prospect.phone,
        fit_score=prospect.fit_score,
    )
    pipeline = ProspectingPipeline(session_factory=session_factory, source_id=prospect.source_id)
    result = await pipeline.ingest_prospect(raw)

    status_code = 201 if result.get("status") == "created" else 200
    if result.get("status") == "rejected":
        status_code = 400
    return JSONResponse(status_code=status_code, content=result)


@app.get("/influencers/{influencer_id}")
async def get_influencer(influencer_id: str, acting: str = Depends(require_admin), fsm: PartnershipFSM = Depends(get_fsm)):
    influencer = await fsm.get_influencer(influencer_id)
    return {"success": True, "data": serialize_influencer(influencer)}


@app.get("/influencers/{influencer_id}/partnerships")
async def list_partnerships(influencer_id: str, acting: str = Depends(require_admin), fsm: PartnershipFSM = Depends(get_fsm)):
    """Every workflow for the influencer, newest first (restart history)"""
    workflows = await fsm.list_workflows(influencer_id)
    return {"success": True, "count": len(workflows), "data": [serialize_workflow(w) for w in workflows]}


@app.post("/partnerships", status_code=201)
async def create_partnership(
    body: WorkflowCreateRequest,
    acting: str = Depends(require_admin),
    fsm: PartnershipFSM = Depends(get_fsm),
):
    workflow = await fsm.create_workflow(body.influencer_id, acting)
    return {"success": True, "data": serialize_workflow(workflow)}


@app.get("/partnerships/{workflow_id}")
async def get_partnership(workflow_id: str, acting: str = Depends(require_admin), fsm: PartnershipFSM = Depends(get_fsm)):
    workflow = await fsm.get_workflow(workflow_id)
    emails, outbox = await fsm.list_emails(workflow.id)
    previous = await fsm.get_previous_workflow(workflow)

    data = serialize_workflow(workflow)
    data["emails"] = [serialize(EmailOut, email) for email in emails]
    data["outbox"] = [serialize(OutboxOut, entry) for entry in outbox]
    data["previousWorkflow"] = serialize(PreviousWorkflowOut, previous) if previous else None
    return {"success": True, "data": data}


@app.patch("/partnerships/{workflow_id}")
async def update_partnership(
    workflow_id: str,
    body: WorkflowUpdateRequest,
    acting: str = Depends(require_admin),
    fsm: PartnershipFSM = Depends(get_fsm),
):
    """Update fields of the current step; fields of other steps are ignored"""
    workflow = await fsm.update_fields(workflow_id, body.model_dump(exclude_unset=True), acting)
    return {"success": True, "data": serialize_workflow(workflow)}


@app.post("/partnerships/{workflow_id}/advance")
async def advance_partnership(workflow_id: str, acting: str = Depends(require_admin), fsm: PartnershipFSM = Depends(get_fsm)):
    result = await fsm.advance(workflow_id, acting)
    return transition_response(result)


@app.post("/partnerships/{workflow_id}/restart")
async def restart_partnership(workflow_id: str, acting: str = Depends(require_admin), fsm: PartnershipFSM = Depends(get_fsm)):
    result = await fsm.restart(workflow_id, acting)
    return {
        "success": True,
        "message": result.message,
        "data": serialize_workflow(result.workflow),
        "previousWorkflowId": str(result.previous_workflow_id),
    }


@app.post("/partnerships/{workflow_id}/cancel")
async def cancel_partnership(workflow_id: str, acting: str = Depends(require_admin), fsm: PartnershipFSM = Depends(get_fsm)):
    workflow = await fsm.cancel(workflow_id, acting)
    return {"success": True, "message": "Partnership cancelled successfully", "data": serialize_workflow(workflow)}


@app.post("/partnerships/{workflow_id}/send-counter")
async def send_counter_proposal(
    workflow_id: str,
    body: CounterProposalRequest,
    acting: str = Depends(require_admin),
    fsm: PartnershipFSM = Depends(get_fsm),
):
    result = await fsm.send_counter_proposal(workflow_id, body.agreed_price, acting)
    return transition_response(result)


@app.post("/partnerships/{workflow_id}/accept-counter")
async def accept_counter_proposal(workflow_id: str, acting: str = Depends(require_admin), fsm: PartnershipFSM = Depends(get_fsm)):
    result = await fsm.accept_counter_proposal(workflow_id, acting)
    return transition_response(result)


@app.post("/partnerships/{workflow_id}/coupon")
async def set_coupon(
    workflow_id: str,
    body: CouponRequest,
    acting: str = Depends(require_admin),
    fsm: PartnershipFSM = Depends(get_fsm),
):
    workflow = await fsm.set_coupon(workflow_id, body.coupon_code, acting)
    return {"success": True, "message": "Coupon code saved", "data": serialize_workflow(workflow)}


@app.delete("/partnerships/{workflow_id}/coupon")
async def clear_coupon(workflow_id: str, acting: str = Depends(require_admin), fsm: PartnershipFSM = Depends(get_fsm)):
    workflow = await fsm.clear_coupon(workflow_id, acting)
    return {"success": True, "message": "Coupon code cleared", "data": serialize_workflow(workflow)}


@app.post("/outbox/deliver")
async def deliver_outbox(
    limit: int = 50,
    acting: str = Depends(require_admin),
    session_factory=Depends(get_session_factory),
    dispatcher: EmailDispatcher = Depends(get_dispatcher),
):
    """Retry pending step emails"""
    report = await OutboxWorker(session_factory, dispatcher).run_once(limit=limit)
    return {"attempted": report.attempted, "sent": report.sent, "failed": report.failed}


@app.post("/outbox/{outbox_id}/resend")
async def resend_email(outbox_id: str, acting: str = Depends(require_admin), fsm: PartnershipFSM = Depends(get_fsm)):
    """Requeue a failed step email and try to send it right away"""
    entry, result = await fsm.resend_email(outbox_id, acting)
    return {
        "success": True,
        "data": serialize(OutboxOut, entry),
        "emailSent": result.success,
        "emailError": result.error,
    }


# ── Portal ────────────────────────────────────────────────────────────────────

@app.get("/portal/{token}/workflow")
async def get_portal_workflow(token: str, fsm: PartnershipFSM = Depends(get_fsm)):
    influencer, workflow = await fsm.get_portal_workflow(token)
    return {
        "id": str(influencer.id),
        "name": influencer.name,
        "email": workflow.contact_email or influencer.email or "",
        "instagramHandle": workflow.contact_instagram or influencer.instagram_handle or "",
        "tiktokHandle": influencer.tiktok_handle or "",
        "phone": workflow.contact_whatsapp or influencer.phone or "",
        "status": influencer.status,
        "currentStep": workflow.current_step,
        "agreedPrice": workflow.agreed_price,
        "shippingAddress": workflow.shipping_address,
        "productSuggestion1": workflow.product_suggestion1,
        "productSuggestion2": workflow.product_suggestion2,
        "productSuggestion3": workflow.product_suggestion3,
        "chosenProduct": workflow.selected_product_url,
        "contractSigned": workflow.contract_signed,
        "trackingUrl": workflow.tracking_url,
        "couponCode": workflow.coupon_code,
    }


@app.put("/portal/{token}/workflow")
async def update_portal_workflow(token: str, body: PortalUpdateRequest, fsm: PartnershipFSM = Depends(get_fsm)):
    workflow = await fsm.update_portal_fields(token, body.model_dump(exclude_unset=True))
    return {"success": True, "currentStep": workflow.current_step}


@app.post("/portal/{token}/advance")
async def advance_portal_workflow(token: str, fsm: PartnershipFSM = Depends(get_fsm)):
    result = await fsm.portal_advance(token)
    return {
        "success": True,
        "message": result.message,
        "data": {
            "currentStep": result.workflow.current_step,
            "status": result.workflow.status,
        },
        "emailSent": result.email_sent,
        "emailError": result.email_error,
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
