"""
Inbound Intercom webhook validation.

Only the parts of the payload the pipeline relies on are modelled; any
extra fields are ignored.
"""
import re
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from app.errors import ValidationError


EventTopic = Literal[
    "conversation.closed",
    "conversation.admin.closed",
    "conversation.admin.replied",
    "conversation.user.created",
]

DEFAULT_AGENT_NAME = "Support Team"

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class _Lenient(BaseModel):
    model_config = ConfigDict(extra="ignore")


class WebhookContact(_Lenient):
    id: str = Field(min_length=1)
    email: str | None = None
    name: str | None = None

    @field_validator("email")
    @classmethod
    def _email_shape(cls, value: str | None) -> str | None:
        if value is not None and not _EMAIL_RE.match(value):
            raise ValueError("invalid email address")
        return value


class ContactList(_Lenient):
    contacts: list[WebhookContact] = Field(min_length=1)


class PartAuthor(_Lenient):
    name: str | None = None
    type: str


class ConversationPart(_Lenient):
    author: PartAuthor


class ConversationPartList(_Lenient):
    conversation_parts: list[ConversationPart]


class ConversationItem(_Lenient):
    id: str = Field(min_length=1)
    contacts: ContactList
    conversation_parts: ConversationPartList


class WebhookData(_Lenient):
    item: ConversationItem


class IntercomWebhookEvent(_Lenient):
    """Validated conversation event."""
    type: EventTopic
    data: WebhookData

    @model_validator(mode="before")
    @classmethod
    def _unwrap_notification_event(cls, values: Any) -> Any:
        # Intercom's native envelope carries the topic separately
        if isinstance(values, dict) and values.get("type") == "notification_event":
            values = {**values, "type": values.get("topic")}
        return values

    @property
    def topic(self) -> str:
        return self.type

    @property
    def conversation_id(self) -> str:
        return self.data.item.id

    @property
    def primary_contact(self) -> WebhookContact:
        return self.data.item.contacts.contacts[0]

    @property
    def agent_name(self) -> str:
        """Name of the most recent admin author, if any."""
        for part in reversed(self.data.item.conversation_parts.conversation_parts):
            if part.author.type == "admin" and part.author.name:
                return part.author.name
        return DEFAULT_AGENT_NAME


def parse_webhook_event(payload: Any) -> IntercomWebhookEvent:
    """
    Validate a decoded webhook body.

    Raises:
        ValidationError: payload does not match the expected shape
    """
    try:
        return IntercomWebhookEvent.model_validate(payload)
    except PydanticValidationError as exc:
        errors = [
            {"loc": ".".join(str(part) for part in err["loc"]), "msg": err["msg"]}
            for err in exc.errors()
        ]
        raise ValidationError("Invalid webhook payload", errors=errors) from exc
