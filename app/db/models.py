"""
Database Models
===============
Influencer = the prospect and its denormalized funnel status
PartnershipWorkflow = current step + step data
WorkflowEvent = immutable history (audit log)
EmailOutbox / PartnershipEmail = queued and delivered step emails
"""

import secrets
import uuid
from datetime import datetime, timezone
from sqlalchemy import Boolean, Column, String, DateTime, Float, Index, Integer, JSON, ForeignKey, Text, Uuid, text
from sqlalchemy.orm import DeclarativeBase


def utcnow():
    return datetime.now(timezone.utc)


def new_portal_token():
    return secrets.token_urlsafe(24)


class Base(DeclarativeBase):
    pass


class Influencer(Base):
    __tablename__ = "influencers"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)

    name = Column(String(255), nullable=False)
    email = Column(String(320), nullable=True)
    instagram_handle = Column(String(100), nullable=True, index=True)
    tiktok_handle = Column(String(100), nullable=True)
    phone = Column(String(50), nullable=True)
    fit_score = Column(Float, nullable=True)

    # Funnel stage, projected from the active workflow
    status = Column(String(50), nullable=False, default="SUGGESTION")

    portal_token = Column(String(64), nullable=False, unique=True, default=new_portal_token)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class PartnershipWorkflow(Base):
    """
    One row per collaboration attempt.
    At most one ACTIVE row per influencer; restarts leave a linked chain
    of RESTARTED rows behind.
    """
    __tablename__ = "partnership_workflows"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    influencer_id = Column(Uuid(as_uuid=True), ForeignKey("influencers.id", ondelete="CASCADE"), nullable=False, index=True)

    current_step = Column(Integer, nullable=False, default=1)
    status = Column(String(20), nullable=False, default="ACTIVE")

    # Step 1: Partnership
    agreed_price = Column(Float, nullable=True)
    contact_email = Column(String(320), nullable=True)
    contact_instagram = Column(String(100), nullable=True)
    contact_whatsapp = Column(String(50), nullable=True)

    # Step 2: Shipping
    shipping_address = Column(Text, nullable=True)
    product_suggestion1 = Column(Text, nullable=True)
    product_suggestion2 = Column(Text, nullable=True)
    product_suggestion3 = Column(Text, nullable=True)

    # Step 3: Preparing
    selected_product_url = Column(Text, nullable=True)
    design_proof_url = Column(Text, nullable=True)
    design_notes = Column(Text, nullable=True)

    # Step 4: Contract
    contract_signed = Column(Boolean, nullable=True, default=False)
    contract_url = Column(Text, nullable=True)

    # Step 5: Shipped
    tracking_url = Column(Text, nullable=True)
    coupon_code = Column(String(100), nullable=True)

    step1_completed_at = Column(DateTime(timezone=True), nullable=True)
    step2_completed_at = Column(DateTime(timezone=True), nullable=True)
    step3_completed_at = Column(DateTime(timezone=True), nullable=True)
    step4_completed_at = Column(DateTime(timezone=True), nullable=True)
    step5_completed_at = Column(DateTime(timezone=True), nullable=True)

    is_restarted = Column(Boolean, nullable=False, default=False)
    # Lookup only, not a foreign key
    previous_workflow_id = Column(Uuid(as_uuid=True), nullable=True)

    # Optimistic lock, checked by SQLAlchemy on every UPDATE
    version = Column(Integer, nullable=False)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        # One ACTIVE workflow per influencer, enforced by the database
        Index(
            "uq_partnership_workflows_one_active",
            "influencer_id",
            unique=True,
            postgresql_where=text("status = 'ACTIVE'"),
            sqlite_where=text("status = 'ACTIVE'"),
        ),
    )
    __mapper_args__ = {"version_id_col": version}


class WorkflowEvent(Base):
    """
    The Event Log - IMMUTABLE history.
    Every workflow mutation creates a new row here.
    """
    __tablename__ = "workflow_events"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workflow_id = Column(Uuid(as_uuid=True), ForeignKey("partnership_workflows.id", ondelete="CASCADE"), nullable=False, index=True)

    event = Column(String(50), nullable=False)
    from_step = Column(Integer, nullable=True)
    to_step = Column(Integer, nullable=True)
    acting = Column(String(100), nullable=True)
    payload = Column(JSON, nullable=True)

    occurred_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class EmailTemplate(Base):
    __tablename__ = "email_templates"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    key = Column(String(100), nullable=False, unique=True)
    name = Column(String(255), nullable=True)
    step = Column(Integer, nullable=False)
    has_value = Column(Boolean, nullable=True)
    subject = Column(Text, nullable=False)
    body = Column(Text, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class EmailOutbox(Base):
    """
    Step emails waiting for delivery.
    Written in the same transaction as the step change; dedup_key
    (workflow id + step) keeps a retried transition from queueing twice.
    """
    __tablename__ = "email_outbox"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workflow_id = Column(Uuid(as_uuid=True), ForeignKey("partnership_workflows.id", ondelete="CASCADE"), nullable=False, index=True)
    step = Column(Integer, nullable=False)
    dedup_key = Column(String(200), nullable=False, unique=True)

    variables = Column(JSON, nullable=False)
    sent_by = Column(String(100), nullable=False, default="system")

    status = Column(String(20), nullable=False, default="PENDING", index=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    sent_at = Column(DateTime(timezone=True), nullable=True)


class PartnershipEmail(Base):
    """Send history: one row per delivered step email."""
    __tablename__ = "partnership_emails"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workflow_id = Column(Uuid(as_uuid=True), ForeignKey("partnership_workflows.id", ondelete="CASCADE"), nullable=False, index=True)
    outbox_id = Column(Uuid(as_uuid=True), ForeignKey("email_outbox.id"), nullable=True)

    step = Column(Integer, nullable=False)
    template_key = Column(String(100), nullable=True)
    recipient = Column(String(320), nullable=False)
    subject = Column(Text, nullable=False)
    body = Column(Text, nullable=False)
    sent_by = Column(String(100), nullable=False)
    variables = Column(JSON, nullable=True)
    provider_message_id = Column(String(255), nullable=True)

    sent_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
