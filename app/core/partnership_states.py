"""
Partnership Workflow States
===========================
Every workflow sits on exactly ONE step (1-5) and has exactly ONE status.
The step table below drives both validation and transitions.
"""

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Optional


class WorkflowStatus(str, Enum):
    ACTIVE = "ACTIVE"              # Moving through the steps
    COMPLETED = "COMPLETED"        # Step 5 confirmed (terminal)
    CANCELLED = "CANCELLED"        # Stopped by an admin (terminal)
    RESTARTED = "RESTARTED"        # Frozen, replaced by a new workflow (terminal)


class InfluencerStatus(str, Enum):
    # Prospecting
    IMPORT_PENDING = "IMPORT_PENDING"
    SUGGESTION = "SUGGESTION"
    UNKNOWN = "UNKNOWN"
    COUNTER_PROPOSAL = "COUNTER_PROPOSAL"

    # Workflow steps
    ANALYZING = "ANALYZING"
    AGREED = "AGREED"
    PRODUCT_SELECTION = "PRODUCT_SELECTION"
    CONTRACT_PENDING = "CONTRACT_PENDING"
    SHIPPED = "SHIPPED"

    # After the workflow
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    BLACKLISTED = "BLACKLISTED"


class WorkflowEventType(str, Enum):
    CREATED = "CREATED"
    FIELDS_UPDATED = "FIELDS_UPDATED"
    STEP_ADVANCED = "STEP_ADVANCED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    RESTARTED = "RESTARTED"
    COUNTER_PROPOSAL_SENT = "COUNTER_PROPOSAL_SENT"
    COUPON_SET = "COUPON_SET"
    COUPON_CLEARED = "COUPON_CLEARED"
    EMAIL_RESENT = "EMAIL_RESENT"


# Terminal statuses - once a workflow reaches these, it never changes again
TERMINAL_STATUSES = frozenset({
    WorkflowStatus.COMPLETED,
    WorkflowStatus.CANCELLED,
    WorkflowStatus.RESTARTED,
})

FIRST_STEP = 1
FINAL_STEP = 5


@dataclass(frozen=True)
class StepConfig:
    number: int
    name: str
    status: InfluencerStatus              # influencer status while this step is current
    required_fields: tuple[str, ...]
    next_step: Optional[int]
    next_status: InfluencerStatus         # influencer status once this step is done


STEP_CONFIG = MappingProxyType({
    1: StepConfig(
        number=1,
        name="Partnership",
        status=InfluencerStatus.ANALYZING,
        required_fields=("agreed_price", "contact_email", "contact_instagram", "contact_whatsapp"),
        next_step=2,
        next_status=InfluencerStatus.AGREED,
    ),
    2: StepConfig(
        number=2,
        name="Shipping",
        status=InfluencerStatus.AGREED,
        required_fields=("shipping_address", "product_suggestion1"),
        next_step=3,
        next_status=InfluencerStatus.PRODUCT_SELECTION,
    ),
    3: StepConfig(
        number=3,
        name="Preparing",
        status=InfluencerStatus.PRODUCT_SELECTION,
        required_fields=("selected_product_url",),
        next_step=4,
        next_status=InfluencerStatus.CONTRACT_PENDING,
    ),
    4: StepConfig(
        number=4,
        name="Contract",
        status=InfluencerStatus.CONTRACT_PENDING,
        required_fields=("contract_signed",),
        next_step=5,
        next_status=InfluencerStatus.SHIPPED,
    ),
    5: StepConfig(
        number=5,
        name="Shipped",
        status=InfluencerStatus.SHIPPED,
        required_fields=("tracking_url", "coupon_code"),
        next_step=None,
        next_status=InfluencerStatus.COMPLETED,
    ),
})

# Fields an admin may edit while the workflow sits on a given step
STEP_FIELDS = MappingProxyType({
    1: ("agreed_price", "contact_email", "contact_instagram", "contact_whatsapp"),
    2: ("shipping_address", "product_suggestion1", "product_suggestion2", "product_suggestion3"),
    3: ("selected_product_url", "design_proof_url", "design_notes"),
    4: ("contract_signed", "contract_url"),
    5: ("tracking_url", "coupon_code"),
})

# Required-field value must be literally True
BOOLEAN_FIELDS = frozenset({"contract_signed"})

# Carried over verbatim on restart
CONTACT_FIELDS = ("contact_email", "contact_instagram", "contact_whatsapp")

# Portal: steps the influencer may advance, and what they must supply
PORTAL_STEP_REQUIREMENTS = MappingProxyType({
    1: ("contact_email", "contact_instagram", "contact_whatsapp"),
    2: ("shipping_address", "product_suggestion1"),
    4: ("contract_signed",),
})
PORTAL_ADVANCE_STEPS = frozenset(PORTAL_STEP_REQUIREMENTS)

# Portal: fields the influencer may edit on a given step
PORTAL_EDITABLE_FIELDS = MappingProxyType({
    1: ("contact_email", "contact_instagram", "contact_whatsapp"),
    2: ("shipping_address", "product_suggestion1", "product_suggestion2", "product_suggestion3"),
    4: ("contract_signed",),
})


def get_step_config(step: int) -> Optional[StepConfig]:
    return STEP_CONFIG.get(step)


def influencer_status_for(status: WorkflowStatus, current_step: int) -> InfluencerStatus:
    """
    Project a workflow's state onto the influencer's status.

    The influencer status is never written independently of a transition;
    every transition calls this with the workflow's new state.
    """
    status = WorkflowStatus(status)
    if status == WorkflowStatus.COMPLETED:
        return InfluencerStatus.COMPLETED
    if status == WorkflowStatus.CANCELLED:
        return InfluencerStatus.CANCELLED
    if status == WorkflowStatus.RESTARTED:
        # The replacement workflow starts over at step 1
        return STEP_CONFIG[FIRST_STEP].status
    return STEP_CONFIG[current_step].status
