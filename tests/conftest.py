import uuid

import pytest
import pytest_asyncio

from app.core.partnership_fsm import PartnershipFSM
from app.db.database import build_engine, build_session_factory, init_db
from app.db.models import Influencer, PartnershipWorkflow
from app.notifications.dispatcher import EmailDispatcher


class RecordingSender:
    """EmailSender that keeps messages in memory and can be told to fail."""

    def __init__(self):
        self.sent = []
        self.fail_with = None

    async def send(self, to, subject, body):
        if self.fail_with:
            raise RuntimeError(self.fail_with)
        self.sent.append({"to": to, "subject": subject, "body": body})
        return f"msg-{len(self.sent)}"


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def dispatcher(sender):
    return EmailDispatcher(sender)


@pytest.fixture
def fsm(session, dispatcher):
    return PartnershipFSM(session, dispatcher)


@pytest.fixture
def make_influencer(session):
    async def factory(**fields):
        data = {
            "id": uuid.uuid4(),
            "name": "Sofia Silva",
            "email": "sofia@example.com",
            "instagram_handle": "@sofiasilva",
            "status": "SUGGESTION",
        }
        data.update(fields)
        influencer = Influencer(**data)
        session.add(influencer)
        await session.commit()
        return influencer

    return factory


@pytest.fixture
def make_workflow(session, make_influencer):
    async def factory(influencer=None, **fields):
        if influencer is None:
            influencer = await make_influencer()
        data = {
            "id": uuid.uuid4(),
            "influencer_id": influencer.id,
            "current_step": 1,
            "status": "ACTIVE",
            "contract_signed": False,
        }
        data.update(fields)
        workflow = PartnershipWorkflow(**data)
        session.add(workflow)
        await session.commit()
        return workflow

    return factory


# Every field a step needs, filled in
STEP_DATA = {
    1: {
        "agreed_price": 500,
        "contact_email": "a@b.com",
        "contact_instagram": "@a",
        "contact_whatsapp": "+351900000000",
    },
    2: {"shipping_address": "Rua das Flores 123, Porto", "product_suggestion1": "Pulseira"},
    3: {"selected_product_url": "https://shop.example.com/pulseira"},
    4: {"contract_signed": True, "contract_url": "https://sign.example.com/abc"},
    5: {"tracking_url": "https://ctt.pt/EN123", "coupon_code": "SOFIA20"},
}


def complete_fields(up_to_step: int) -> dict:
    fields = {}
    for step in range(1, up_to_step + 1):
        fields.update(STEP_DATA[step])
    return fields


@pytest.fixture
def filled():
    return complete_fields


@pytest.fixture
def step_data():
    return STEP_DATA
