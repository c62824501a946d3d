import re
from typing import Any, Mapping, Optional

from app.logging_config import get_logger
from app.services import alert_service, template_service
from app.services.result import ErrorCode, Result
from app.services.session_manager import SessionCreationError, SessionManager

logger = get_logger("outbound_service")


def normalize_recipient(phone: Optional[str], suffix: str) -> Optional[str]:
    """``"1-809-555-1234"`` -> ``"18095551234@<suffix>"``; None when there are no digits."""
    digits = re.sub(r"\D", "", phone or "")
    if not digits:
        return None
    return f"{digits}@{suffix}"


async def send_template(
    manager: SessionManager,
    tenant_id: str,
    *,
    event: Optional[str],
    phone: Optional[str],
    variables: Optional[Mapping[str, Any]] = None,
    suffix: str = "s.whatsapp.net",
) -> Result[dict]:
    """Render the tenant's template for ``event`` and send it to ``phone``."""
    if not event or not phone:
        return Result.failure("event and phone are required", ErrorCode.INVALID_REQUEST)

    recipient = normalize_recipient(phone, suffix)
    if recipient is None:
        return Result.failure("phone must contain digits", ErrorCode.INVALID_REQUEST)

    if not manager.is_connected(tenant_id):
        try:
            await manager.ensure_session(tenant_id)
        except SessionCreationError as exc:
            logger.warning(f"Could not start session for outbound send: {exc}")
        if not manager.is_connected(tenant_id):
            return Result.failure("WhatsApp session is not connected", ErrorCode.NOT_CONNECTED)

    body = await template_service.resolve(manager.store, tenant_id, event)
    if body is None:
        return Result.failure(f"No active template for event '{event}'", ErrorCode.TEMPLATE_NOT_FOUND)

    message = template_service.render(body, variables)

    try:
        await manager.send_text(tenant_id, recipient, message)
    except Exception as exc:
        logger.error(
            "Template send failed",
            extra={"context": {"tenant_id": tenant_id, "event": event, "to": recipient, "error": str(exc)}},
        )
        await alert_service.alert_critical(
            "WhatsApp template send failed",
            {"tenant_id": tenant_id, "event": event, "error": str(exc)},
        )
        return Result.failure(f"Send failed: {exc}", ErrorCode.SEND_FAILED)

    logger.info(f"Template sent: tenant_id={tenant_id}, event={event}, to={recipient}")
    return Result.success({"to": recipient, "message": message})
