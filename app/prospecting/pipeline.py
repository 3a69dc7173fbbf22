"""
Prospecting Pipeline
====================
Ingests, validates and deduplicates influencer prospects
Then writes them to the database ready for a partnership
"""

import hashlib
import logging
import re
import uuid as _uuid
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import or_, select

from app.core.partnership_states import InfluencerStatus
from app.db.models import Influencer


logger = logging.getLogger(__name__)


# ── Raw Prospect Structure ────────────────────────────────────────────────────

@dataclass
class RawProspect:
    """Prospect before validation"""
    name: str | None = None
    email: str | None = None
    instagram_handle: str | None = None
    tiktok_handle: str | None = None
    phone: str | None = None
    fit_score: float | None = None


# ── Validation ────────────────────────────────────────────────────────────────

EMAIL_REGEX = re.compile(r"^[a-zA-Z0-9._%+\-]+@[a-zA-Z0-9.\-]+\.[a-zA-Z]{2,}$")
HANDLE_REGEX = re.compile(r"^[A-Za-z0-9._]{1,30}$")
DISPOSABLE_DOMAINS = {"mailinator.com", "guerrillamail.com", "temp-mail.org"}


def normalize_handle(handle: str | None) -> Optional[str]:
    if not handle:
        return None
    handle = handle.strip().lstrip("@").lower()
    return f"@{handle}" if handle else None


def sanitize_prospect(raw: RawProspect) -> dict:
    """Validate and clean a raw prospect"""
    errors = []

    if not (raw.name or "").strip():
        errors.append("missing_name")

    if not raw.email and not raw.instagram_handle and not raw.tiktok_handle:
        return {"valid": False, "errors": errors + ["missing_contact"]}

    email = None
    if raw.email:
        email = raw.email.strip().lower()
        if not EMAIL_REGEX.match(email):
            errors.append(f"invalid_email: {email}")
        else:
            domain = email.split("@")[1]
            if domain in DISPOSABLE_DOMAINS:
                errors.append(f"disposable_domain: {domain}")

    instagram = normalize_handle(raw.instagram_handle)
    tiktok = normalize_handle(raw.tiktok_handle)
    for label, handle in (("instagram", instagram), ("tiktok", tiktok)):
        if handle and not HANDLE_REGEX.match(handle[1:]):
            errors.append(f"invalid_{label}_handle: {handle}")

    if raw.fit_score is not None and not 0 <= raw.fit_score <= 100:
        errors.append(f"invalid_fit_score: {raw.fit_score}")

    if errors:
        return {"valid": False, "errors": errors}

    return {"valid": True, "email": email, "instagram_handle": instagram, "tiktok_handle": tiktok}


# ── Deduplication ─────────────────────────────────────────────────────────────

def compute_fingerprint(email: str | None, instagram_handle: str | None) -> str:
    """Generate dedup hash"""
    key = f"{(email or '').lower().strip()}|{(instagram_handle or '').lower().strip()}"
    return hashlib.sha256(key.encode()).hexdigest()[:16]


# ── Pipeline ──────────────────────────────────────────────────────────────────

class ProspectingPipeline:
    """Full pipeline: validate → dedupe → persist"""

    def __init__(self, session_factory, source_id: str):
        self.session_factory = session_factory
        self.source_id = source_id

    async def ingest_prospect(self, raw: RawProspect) -> dict:
        """Process a single prospect through the full pipeline"""

        # 1. Validate
        validation = sanitize_prospect(raw)
        if not validation["valid"]:
            logger.info("Prospect rejected from %s: %s", self.source_id, validation["errors"])
            return {
                "status": "rejected",
                "reason": "validation_failed",
                "errors": validation.get("errors")
            }

        email = validation["email"]
        instagram = validation["instagram_handle"]
        fingerprint = compute_fingerprint(email, instagram)

        # 2. Check for duplicate
        async with self.session_factory() as session:
            matches = []
            if email:
                matches.append(Influencer.email == email)
            if instagram:
                matches.append(Influencer.instagram_handle == instagram)

            existing = None
            if matches:
                result = await session.execute(select(Influencer).where(or_(*matches)).limit(1))
                existing = result.scalar_one_or_none()

            if existing:
                return {
                    "status": "duplicate",
                    "influencer_id": str(existing.id),
                    "message": "Influencer already exists"
                }

            # 3. Create influencer in database
            influencer = Influencer(
                id=_uuid.uuid4(),
                name=raw.name.strip(),
                email=email,
                instagram_handle=instagram,
                tiktok_handle=validation["tiktok_handle"],
                phone=raw.phone,
                fit_score=raw.fit_score,
                status=InfluencerStatus.SUGGESTION.value,
            )
            session.add(influencer)
            await session.commit()
            influencer_id = str(influencer.id)

        logger.info("Prospect %s ingested from %s (%s)", influencer_id, self.source_id, fingerprint)
        return {
            "status": "created",
            "influencer_id": influencer_id,
            "fingerprint": fingerprint,
            "message": "Prospect successfully ingested"
        }
