from typing import Any, Callable, Iterable, List, Optional

from pydantic import ValidationError

from app.logging_config import get_logger
from app.schemas.inbound import InboundMessage, MessageContent

logger = get_logger("message_service")

GROUP_SUFFIX = "@g.us"
BROADCAST_SUFFIX = "@broadcast"


def is_group_or_broadcast(jid: Optional[str]) -> bool:
    """Groups end in @g.us; status updates and broadcast lists end in @broadcast."""
    if not jid:
        return False
    return jid.endswith(GROUP_SUFFIX) or jid.endswith(BROADCAST_SUFFIX)


def _from_conversation(content: MessageContent) -> Optional[str]:
    return content.conversation


def _from_extended_text(content: MessageContent) -> Optional[str]:
    if content.extended_text_message:
        return content.extended_text_message.text
    return None


def _from_ephemeral(content: MessageContent) -> Optional[str]:
    if content.ephemeral_message and content.ephemeral_message.message:
        return extract_text(content.ephemeral_message.message)
    return None


# Tried in order; first non-empty result wins.
TEXT_EXTRACTORS: tuple[Callable[[MessageContent], Optional[str]], ...] = (
    _from_conversation,
    _from_extended_text,
    _from_ephemeral,
)


def extract_text(content: Optional[MessageContent]) -> str:
    if content is None:
        return ""
    for extractor in TEXT_EXTRACTORS:
        text = (extractor(content) or "").strip()
        if text:
            return text
    return ""


def skip_reason(message: InboundMessage) -> Optional[str]:
    """Why an inbound message must not reach the reply engine, or None."""
    if message.message is None:
        return "no_content"
    if message.key.from_me:
        return "from_me"
    if not message.key.remote_jid:
        return "no_remote_jid"
    if is_group_or_broadcast(message.key.remote_jid):
        return "group_or_broadcast"
    return None


def parse_upsert(raw_messages: Optional[Iterable[Any]]) -> List[InboundMessage]:
    """Validate a messages.upsert batch, dropping entries that do not parse."""
    parsed: List[InboundMessage] = []
    for raw in raw_messages or []:
        if isinstance(raw, InboundMessage):
            parsed.append(raw)
            continue
        try:
            parsed.append(InboundMessage.model_validate(raw))
        except ValidationError as exc:
            logger.warning(f"Dropping malformed inbound message: {exc.error_count()} errors")
    return parsed
