import re
import unicodedata
from typing import Optional

from app.logging_config import get_logger
from app.services import template_service
from app.services.llm import LLMProvider
from app.services.session_store import SessionStore, TenantProfile

logger = get_logger("reply_service")

PRICING_KEYWORDS = ("precio", "costo", "cuanto vale", "planes", "tarifa")

DEFAULT_PROFILE = TenantProfile(name="tu negocio", category="general", description="")

PERSONA_DIRECTIVE = (
    "Hablas como una persona real del equipo: cercana, amable y profesional. "
    "Escribes en español neutro, con frases cortas, sin tecnicismos y sin listas largas."
)

OBJECTIVE_DIRECTIVE = (
    "Responde solo sobre temas relacionados con el negocio. "
    "Sé breve: máximo tres frases. "
    "Cuando tenga sentido, invita al cliente a agendar una cita o a dejar sus datos de contacto. "
    "Si no estás seguro de algo, no lo inventes: ofrece que una persona del equipo le escriba."
)


def normalize_for_matching(text: str) -> str:
    """Casefold, drop accents and collapse whitespace. Only used for matching."""
    if not text:
        return ""
    normalized = unicodedata.normalize("NFKD", text.strip().casefold())
    normalized = "".join(ch for ch in normalized if not unicodedata.combining(ch))
    return re.sub(r"\s+", " ", normalized)


def is_pricing_question(text: str) -> bool:
    normalized = normalize_for_matching(text)
    return any(keyword in normalized for keyword in PRICING_KEYWORDS)


def build_system_prompt(profile: TenantProfile) -> str:
    lines = [
        f"Eres el asistente comercial de {profile.name}, un negocio del rubro {profile.category}.",
    ]
    if profile.description:
        lines.append(f"Sobre el negocio: {profile.description}")
    lines.append(PERSONA_DIRECTIVE)
    lines.append(OBJECTIVE_DIRECTIVE)
    return "\n".join(lines)


class ReplyEngine:
    """Pre-approved templates for pricing questions, AI replies for everything else."""

    def __init__(
        self,
        store: SessionStore,
        llm: LLMProvider,
        *,
        model: Optional[str] = None,
        max_tokens: int = 250,
        temperature: float = 0.7,
    ):
        self.store = store
        self.llm = llm
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature

    async def decide(self, tenant_id: str, text: str) -> Optional[str]:
        clean_text = (text or "").strip()
        if not clean_text:
            return None

        if is_pricing_question(clean_text):
            pitch = await self._pricing_pitch(tenant_id)
            if pitch:
                logger.info(f"Pricing template reply: tenant_id={tenant_id}")
                return pitch

        profile = await self._load_profile(tenant_id)
        return await self._ai_reply(tenant_id, profile, clean_text)

    async def _pricing_pitch(self, tenant_id: str) -> Optional[str]:
        try:
            body = await template_service.resolve(self.store, tenant_id, template_service.PRICING_PITCH_EVENT)
        except Exception as exc:
            logger.warning(f"Pricing template lookup failed: tenant_id={tenant_id}, error={exc}")
            return None
        if not body:
            return None
        return template_service.render(body, {}).strip() or None

    async def _load_profile(self, tenant_id: str) -> TenantProfile:
        try:
            profile = await self.store.get_tenant_profile(tenant_id)
        except Exception as exc:
            logger.warning(f"Tenant profile lookup failed: tenant_id={tenant_id}, error={exc}")
            return DEFAULT_PROFILE
        if profile is None:
            return DEFAULT_PROFILE
        return TenantProfile(
            name=profile.name or DEFAULT_PROFILE.name,
            category=profile.category or DEFAULT_PROFILE.category,
            description=profile.description or "",
        )

    async def _ai_reply(self, tenant_id: str, profile: TenantProfile, text: str) -> Optional[str]:
        messages = [
            {"role": "system", "content": build_system_prompt(profile)},
            {"role": "user", "content": text},
        ]
        try:
            response = await self.llm.generate(
                messages,
                model=self.model,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
        except Exception as exc:
            logger.error(
                "AI reply failed",
                extra={"context": {"tenant_id": tenant_id, "error": str(exc)}},
            )
            return None
        reply = (response.content or "").strip()
        return reply or None
