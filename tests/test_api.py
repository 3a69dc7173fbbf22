"""HTTP tests for the admin and portal routes."""

import httpx
import pytest
import pytest_asyncio

from app.config import AppConfig
from app.db import database
from app.main import app, get_config, get_email_sender, get_session_factory


ADMIN = {"Authorization": "Bearer secret"}


@pytest_asyncio.fixture
async def client(session_factory, sender):
    async def override_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[database.get_session] = override_session
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_email_sender] = lambda: sender
    app.dependency_overrides[get_config] = lambda: AppConfig(admin_tokens={"secret": "admin-1"})

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")
    assert response.json() == {"status": "healthy"}


@pytest.mark.asyncio
@pytest.mark.parametrize("headers", [{}, {"Authorization": "Bearer wrong"}, {"Authorization": "secret"}])
async def test_admin_routes_require_token(client, headers):
    # Rejected before the workflow id is even looked at
    response = await client.post("/partnerships/not-a-uuid/advance", headers=headers)
    assert response.status_code == 401
    assert response.json()["kind"] == "Unauthorized"


@pytest.mark.asyncio
async def test_unknown_workflow_is_404(client):
    response = await client.get("/partnerships/not-a-uuid", headers=ADMIN)
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_missing_fields_response(client, make_workflow):
    workflow = await make_workflow(agreed_price=500)

    response = await client.post(f"/partnerships/{workflow.id}/advance", headers=ADMIN)

    assert response.status_code == 400
    body = response.json()
    assert body["kind"] == "MissingFields"
    assert body["missing"] == ["contactEmail", "contactInstagram", "contactWhatsapp"]
    assert body["step"] == 1
    assert body["stepName"] == "Partnership"


@pytest.mark.asyncio
async def test_partnership_flow(client, sender):
    created = await client.post(
        "/influencers",
        json={"name": "Sofia Silva", "email": "sofia@example.com", "instagramHandle": "@sofiasilva"},
        headers=ADMIN,
    )
    assert created.status_code == 201
    influencer_id = created.json()["influencer_id"]

    response = await client.post("/partnerships", json={"influencerId": influencer_id}, headers=ADMIN)
    assert response.status_code == 201
    workflow = response.json()["data"]
    assert workflow["contactEmail"] == "sofia@example.com"

    response = await client.patch(
        f"/partnerships/{workflow['id']}",
        json={"agreedPrice": 400, "contactWhatsapp": "+351900000000", "trackingUrl": "ignored"},
        headers=ADMIN,
    )
    assert response.status_code == 200
    assert response.json()["data"]["agreedPrice"] == 400
    assert response.json()["data"]["trackingUrl"] is None

    response = await client.post(f"/partnerships/{workflow['id']}/advance", headers=ADMIN)
    body = response.json()
    assert response.status_code == 200
    assert body["data"]["currentStep"] == 2
    assert body["emailSent"] is True
    assert body["message"] == "Advanced from Partnership to Shipping"
    assert sender.sent[0]["to"] == "sofia@example.com"

    response = await client.get(f"/influencers/{influencer_id}", headers=ADMIN)
    assert response.json()["data"]["status"] == "AGREED"

    response = await client.post(f"/partnerships/{workflow['id']}/coupon", json={"couponCode": "sofia10"}, headers=ADMIN)
    assert response.json()["data"]["couponCode"] == "SOFIA10"

    response = await client.post(f"/partnerships/{workflow['id']}/cancel", headers=ADMIN)
    assert response.json()["data"]["status"] == "CANCELLED"

    response = await client.get(f"/influencers/{influencer_id}/partnerships", headers=ADMIN)
    assert response.json()["count"] == 1


@pytest.mark.asyncio
async def test_restart_route(client, make_workflow, filled):
    workflow = await make_workflow(current_step=5, status="COMPLETED", **filled(5))

    response = await client.post(f"/partnerships/{workflow.id}/restart", headers=ADMIN)

    body = response.json()
    assert response.status_code == 200
    assert body["previousWorkflowId"] == str(workflow.id)
    assert body["data"]["currentStep"] == 1
    assert body["data"]["contactEmail"] == "a@b.com"
    assert body["data"]["agreedPrice"] is None


@pytest.mark.asyncio
async def test_portal_routes(client, sender, make_influencer, make_workflow):
    influencer = await make_influencer()
    await make_workflow(influencer)
    token = influencer.portal_token

    response = await client.get(f"/portal/{token}/workflow")
    assert response.status_code == 200
    assert response.json()["currentStep"] == 1
    assert response.json()["email"] == "sofia@example.com"

    response = await client.put(
        f"/portal/{token}/workflow",
        json={"contactEmail": "sofia@example.com", "contactInstagram": "@sofiasilva", "contactWhatsapp": "+351900000000"},
    )
    assert response.status_code == 200

    response = await client.post(f"/portal/{token}/advance")
    assert response.status_code == 200
    assert response.json()["data"]["currentStep"] == 2
    assert response.json()["emailSent"] is True


@pytest.mark.asyncio
async def test_portal_forbidden_on_admin_step(client, make_influencer, make_workflow, filled):
    influencer = await make_influencer()
    await make_workflow(influencer, current_step=3, **filled(3))

    response = await client.post(f"/portal/{influencer.portal_token}/advance")

    assert response.status_code == 403
    assert response.json()["kind"] == "Forbidden"


@pytest.mark.asyncio
async def test_portal_bad_token(client):
    response = await client.get("/portal/nope/workflow")
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_partnership_detail_shows_emails_and_previous_workflow(client, sender, make_workflow, filled):
    old = await make_workflow(current_step=5, status="COMPLETED", **filled(5))
    fresh_id = (await client.post(f"/partnerships/{old.id}/restart", headers=ADMIN)).json()["data"]["id"]
    await client.patch(f"/partnerships/{fresh_id}", json={"agreedPrice": 500}, headers=ADMIN)

    sender.fail_with = "SMTP down"
    advanced = await client.post(f"/partnerships/{fresh_id}/advance", headers=ADMIN)
    assert advanced.json()["emailSent"] is False

    detail = (await client.get(f"/partnerships/{fresh_id}", headers=ADMIN)).json()["data"]
    assert detail["emails"] == []
    [queued] = detail["outbox"]
    assert queued["status"] == "PENDING"
    assert queued["attempts"] == 1
    assert queued["lastError"] == "SMTP down"
    previous = detail["previousWorkflow"]
    assert previous["id"] == str(old.id)
    assert previous["currentStep"] == 5
    assert previous["status"] == "RESTARTED"
    assert "createdAt" in previous

    sender.fail_with = None
    response = await client.post(f"/outbox/{queued['id']}/resend", headers=ADMIN)
    assert response.status_code == 200
    assert response.json()["emailSent"] is True
    assert response.json()["data"]["status"] == "SENT"

    detail = (await client.get(f"/partnerships/{fresh_id}", headers=ADMIN)).json()["data"]
    [sent] = detail["emails"]
    assert sent["step"] == 1
    assert sent["recipient"] == "a@b.com"
    assert detail["outbox"][0]["status"] == "SENT"

    again = await client.post(f"/outbox/{queued['id']}/resend", headers=ADMIN)
    assert again.status_code == 400
    assert again.json()["kind"] == "InvalidState"


@pytest.mark.asyncio
async def test_first_workflow_has_no_previous(client, make_workflow):
    workflow = await make_workflow()

    detail = (await client.get(f"/partnerships/{workflow.id}", headers=ADMIN)).json()["data"]

    assert detail["previousWorkflow"] is None
    assert detail["emails"] == []
    assert detail["outbox"] == []
