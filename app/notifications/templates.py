"""
Email Templates
===============
Template lookup, {{variable}} rendering and the default template set.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.partnership_states import get_step_config
from app.db.models import EmailTemplate


logger = logging.getLogger(__name__)

PLACEHOLDER = re.compile(r"{{\s*([A-Za-z0-9_]+)\s*}}")


@dataclass(frozen=True)
class RenderedEmail:
    template_key: Optional[str]
    subject: str
    body: str


# ── Default templates ─────────────────────────────────────────────────────────

DEFAULT_TEMPLATES = [
    {
        "key": "STEP_1_PARTNERSHIP_WITH_VALUE",
        "name": "Step 1: Primeiro Contacto (Com Valor)",
        "step": 1,
        "has_value": True,
        "subject": "Parceria VecinoCustom - Proposta de {{valor}}€",
        "body": (
            "Olá {{nome}}!\n\n"
            "Adoramos o teu conteúdo e achamos que faz sentido uma parceria entre nós!\n\n"
            "Temos uma proposta de {{valor}}€ para ti.\n\n"
            "Beijinhos,\nEquipa VecinoCustom"
        ),
    },
    {
        "key": "STEP_1_PARTNERSHIP_NO_VALUE",
        "name": "Step 1: Primeiro Contacto (Apenas Comissão)",
        "step": 1,
        "has_value": False,
        "subject": "Parceria VecinoCustom - Comissão por venda",
        "body": (
            "Olá {{nome}}!\n\n"
            "Adoramos o teu conteúdo e achamos que faz sentido uma parceria entre nós!\n\n"
            "Nesta parceria oferecemos uma comissão por cada venda que vier do teu código.\n\n"
            "Beijinhos,\nEquipa VecinoCustom"
        ),
    },
    {
        "key": "STEP_2_SHIPPING",
        "name": "Step 2: Acordo Feito",
        "step": 2,
        "has_value": None,
        "subject": "Acordo confirmado! Preparar envio",
        "body": (
            "Olá {{nome}}!\n\n"
            "Ficamos muito felizes em confirmar a nossa parceria!\n\n"
            "Morada de envio: {{morada}}\n"
            "Sugestões: {{sugestao1}}, {{sugestao2}}, {{sugestao3}}\n\n"
            "Beijinhos,\nEquipa VecinoCustom"
        ),
    },
    {
        "key": "STEP_3_PREPARING",
        "name": "Step 3: Produto Selecionado",
        "step": 3,
        "has_value": None,
        "subject": "O teu produto está a ser preparado!",
        "body": (
            "Olá {{nome}}!\n\n"
            "Já escolhemos o produto especialmente para ti: {{url_produto}}\n\n"
            "Beijinhos,\nEquipa VecinoCustom"
        ),
    },
    {
        "key": "STEP_4_CONTRACT",
        "name": "Step 4: Contrato para Assinar",
        "step": 4,
        "has_value": None,
        "subject": "Contrato da parceria - VecinoCustom",
        "body": (
            "Olá {{nome}}!\n\n"
            "Obrigado por assinares o contrato: {{url_contrato}}\n\n"
            "Vamos enviar o teu produto muito em breve!\n\n"
            "Beijinhos,\nEquipa VecinoCustom"
        ),
    },
]

FALLBACK_SUBJECT = "Parceria VecinoCustom - {{etapa}}"
FALLBACK_BODY = "Olá {{nome}}!\n\nA tua parceria avançou a partir da etapa {{etapa}}.\n\nEquipa VecinoCustom"


# ── Rendering ─────────────────────────────────────────────────────────────────

def _as_text(value: Any) -> str:
    return "" if value is None else str(value)


def render_text(text: str, variables: Mapping[str, Any]) -> str:
    """Replace {{name}} placeholders. Unknown names are left as they are."""
    lookup = {key.lower(): value for key, value in variables.items()}

    def substitute(match):
        name = match.group(1).lower()
        if name not in lookup:
            return match.group(0)
        return _as_text(lookup[name])

    return PLACEHOLDER.sub(substitute, text)


def render_template(
    template_key: Optional[str],
    subject: str,
    body: str,
    variables: Mapping[str, Any],
    signature: Optional[str] = None,
    brand: str = "VecinoCustom",
) -> RenderedEmail:
    rendered_body = render_text(body, variables)
    if signature and brand not in rendered_body:
        rendered_body = f"{rendered_body}\n\n{signature}"
    return RenderedEmail(
        template_key=template_key,
        subject=render_text(subject, variables),
        body=rendered_body,
    )


# ── Lookup ────────────────────────────────────────────────────────────────────

def template_keys(step: int, has_value: bool) -> list[str]:
    """Keys to try, most specific first."""
    config = get_step_config(step)
    if config is None:
        return []
    base = f"STEP_{step}_{config.name.upper()}"
    suffix = "WITH_VALUE" if has_value else "NO_VALUE"
    return [f"{base}_{suffix}", base]


async def find_template(session: AsyncSession, step: int, has_value: bool) -> Optional[EmailTemplate]:
    for key in template_keys(step, has_value):
        result = await session.execute(
            select(EmailTemplate).where(EmailTemplate.key == key, EmailTemplate.is_active.is_(True))
        )
        template = result.scalar_one_or_none()
        if template:
            return template

    # Any active template registered for the step
    result = await session.execute(
        select(EmailTemplate)
        .where(EmailTemplate.step == step, EmailTemplate.is_active.is_(True))
        .order_by(EmailTemplate.key)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def seed_default_templates(session: AsyncSession) -> int:
    """Insert the default templates that are not in the table yet."""
    result = await session.execute(select(EmailTemplate.key))
    existing = set(result.scalars().all())

    created = 0
    for data in DEFAULT_TEMPLATES:
        if data["key"] in existing:
            continue
        session.add(EmailTemplate(**data))
        created += 1

    await session.commit()
    if created:
        logger.info("Seeded %d email templates", created)
    return created
