import re
from typing import Any, Mapping, Optional

from app.logging_config import get_logger
from app.services.session_store import SessionStore

logger = get_logger("template_service")

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")

PRICING_PITCH_EVENT = "pricing_pitch"


def render(body: str, variables: Optional[Mapping[str, Any]] = None) -> str:
    """Replace ``{{name}}`` placeholders; unknown names become empty strings."""
    variables = variables or {}

    def _substitute(match: re.Match) -> str:
        value = variables.get(match.group(1))
        return "" if value is None else str(value)

    return PLACEHOLDER_PATTERN.sub(_substitute, body or "")


async def resolve(store: SessionStore, tenant_id: str, event: str) -> Optional[str]:
    """Active template body for ``(tenant_id, event)``, or None."""
    body = await store.find_active_template(tenant_id, event)
    if body is None:
        logger.debug(f"No active template: tenant_id={tenant_id}, event={event}")
    return body
