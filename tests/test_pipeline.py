"""Tests for prospect ingestion."""

import uuid

import pytest

from app.db.models import Influencer
from app.prospecting.pipeline import (
    ProspectingPipeline,
    RawProspect,
    compute_fingerprint,
    normalize_handle,
    sanitize_prospect,
)


def test_normalize_handle():
    assert normalize_handle(" @SofiaSilva ") == "@sofiasilva"
    assert normalize_handle("sofia") == "@sofia"
    assert normalize_handle("@") is None
    assert normalize_handle(None) is None


@pytest.mark.parametrize(
    "raw, error",
    [
        (RawProspect(email="a@b.com"), "missing_name"),
        (RawProspect(name="Sofia"), "missing_contact"),
        (RawProspect(name="Sofia", email="not-an-email"), "invalid_email: not-an-email"),
        (RawProspect(name="Sofia", email="x@mailinator.com"), "disposable_domain: mailinator.com"),
        (RawProspect(name="Sofia", instagram_handle="bad handle!"), "invalid_instagram_handle: @bad handle!"),
        (RawProspect(name="Sofia", email="a@b.com", fit_score=120), "invalid_fit_score: 120"),
    ],
)
def test_sanitize_rejects(raw, error):
    result = sanitize_prospect(raw)
    assert not result["valid"]
    assert error in result["errors"]


def test_sanitize_cleans_values():
    result = sanitize_prospect(RawProspect(name="Sofia", email=" Sofia@Example.COM ", instagram_handle="@Sofia"))
    assert result == {
        "valid": True,
        "email": "sofia@example.com",
        "instagram_handle": "@sofia",
        "tiktok_handle": None,
    }


def test_fingerprint_ignores_case():
    assert compute_fingerprint("A@B.com", "@Sofia") == compute_fingerprint("a@b.com", "@sofia")
    assert len(compute_fingerprint(None, None)) == 16


@pytest.mark.asyncio
async def test_ingest_creates_suggestion(session, session_factory):
    pipeline = ProspectingPipeline(session_factory, source_id="csv")

    result = await pipeline.ingest_prospect(
        RawProspect(name="Sofia Silva", email="sofia@example.com", instagram_handle="SofiaSilva", fit_score=80)
    )

    assert result["status"] == "created"
    influencer = await session.get(Influencer, uuid.UUID(result["influencer_id"]))
    assert influencer.status == "SUGGESTION"
    assert influencer.instagram_handle == "@sofiasilva"
    assert influencer.portal_token


@pytest.mark.asyncio
async def test_ingest_detects_duplicates(session_factory, make_influencer):
    existing = await make_influencer()
    pipeline = ProspectingPipeline(session_factory, source_id="csv")

    by_email = await pipeline.ingest_prospect(RawProspect(name="Other", email="SOFIA@example.com"))
    by_handle = await pipeline.ingest_prospect(RawProspect(name="Other", instagram_handle="@SofiaSilva"))

    assert by_email["status"] == "duplicate"
    assert by_email["influencer_id"] == str(existing.id)
    assert by_handle["status"] == "duplicate"


@pytest.mark.asyncio
async def test_ingest_rejected(session_factory):
    pipeline = ProspectingPipeline(session_factory, source_id="csv")
    result = await pipeline.ingest_prospect(RawProspect(name="Sofia"))
    assert result["status"] == "rejected"
    assert result["reason"] == "validation_failed"
