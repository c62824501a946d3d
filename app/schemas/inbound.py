from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class MessageKey(BaseModel):
    remote_jid: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("remoteJid", "remote_jid"),
    )
    from_me: bool = Field(default=False, validation_alias=AliasChoices("fromMe", "from_me"))
    id: Optional[str] = None
    participant: Optional[str] = None


class ExtendedTextMessage(BaseModel):
    text: Optional[str] = None


class MessageContent(BaseModel):
    """Known content shapes of an inbound message; unknown shapes are kept as extras."""

    model_config = ConfigDict(extra="allow")

    conversation: Optional[str] = None
    extended_text_message: Optional[ExtendedTextMessage] = Field(
        default=None,
        validation_alias=AliasChoices("extendedTextMessage", "extended_text_message"),
    )
    ephemeral_message: Optional["EphemeralMessage"] = Field(
        default=None,
        validation_alias=AliasChoices("ephemeralMessage", "ephemeral_message"),
    )


class EphemeralMessage(BaseModel):
    message: Optional[MessageContent] = None


MessageContent.model_rebuild()


class InboundMessage(BaseModel):
    key: MessageKey
    message: Optional[MessageContent] = None
    push_name: Optional[str] = Field(default=None, validation_alias=AliasChoices("pushName", "push_name"))
    message_timestamp: Optional[int] = Field(
        default=None,
        validation_alias=AliasChoices("messageTimestamp", "message_timestamp"),
    )
