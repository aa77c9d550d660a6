"""Typed payload variants attached to non-text messages."""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal, Union, assert_never

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, ValidationInfo, field_validator

from app.models.enums import AnnouncementPriority, MessageType


class LinkPayload(BaseModel):
    kind: Literal["link"] = "link"
    url: str = Field(..., min_length=1, max_length=2048)
    title: str | None = Field(default=None, max_length=255)
    description: str | None = Field(default=None, max_length=1024)


class LocationPayload(BaseModel):
    kind: Literal["location"] = "location"
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    label: str | None = Field(default=None, max_length=255)


class ContactPayload(BaseModel):
    kind: Literal["contact"] = "contact"
    name: str = Field(..., min_length=1, max_length=128)
    phone: str | None = Field(default=None, max_length=64)
    email: str | None = Field(default=None, max_length=255)
    user_id: int | None = None


class SystemPayload(BaseModel):
    """Chat lifecycle notice such as a participant joining."""

    kind: Literal["system"] = "system"
    event: str = Field(..., min_length=1, max_length=64)
    actor_id: int | None = None
    target_user_id: int | None = None


class AnnouncementPayload(BaseModel):
    kind: Literal["announcement"] = "announcement"
    announcement_id: int | None = None
    title: str = Field(..., min_length=1, max_length=200)
    priority: AnnouncementPriority = AnnouncementPriority.NORMAL


class PollPayload(BaseModel):
    kind: Literal["poll"] = "poll"
    question: str = Field(..., min_length=1, max_length=500)
    options: list[str] = Field(..., min_length=2, max_length=20)
    allow_multiple: bool = False
    is_anonymous: bool = False
    expires_at: datetime | None = None
    closed_at: datetime | None = None
    closed_by_id: int | None = None

    @field_validator("options")
    @classmethod
    def ensure_distinct_options(cls, value: list[str]) -> list[str]:
        cleaned = [option.strip() for option in value]
        if any(not option for option in cleaned):
            raise ValueError("Poll options must not be blank")
        if len(set(cleaned)) != len(cleaned):
            raise ValueError("Poll options must be distinct")
        return cleaned


class EventPayload(BaseModel):
    kind: Literal["event"] = "event"
    title: str = Field(..., min_length=1, max_length=200)
    starts_at: datetime
    ends_at: datetime | None = None
    location: str | None = Field(default=None, max_length=255)

    @field_validator("ends_at")
    @classmethod
    def ensure_ordered(cls, value: datetime | None, info: ValidationInfo) -> datetime | None:
        starts_at = info.data.get("starts_at")
        if value is not None and starts_at is not None and value < starts_at:
            raise ValueError("Event cannot end before it starts")
        return value


MessagePayload = Annotated[
    Union[
        LinkPayload,
        LocationPayload,
        ContactPayload,
        SystemPayload,
        AnnouncementPayload,
        PollPayload,
        EventPayload,
    ],
    Field(discriminator="kind"),
]

_payload_adapter: TypeAdapter[Any] = TypeAdapter(MessagePayload)


class PayloadError(ValueError):
    """Raised when a payload does not fit its message type."""


def payload_model_for(message_type: MessageType) -> tuple[type[BaseModel] | None, bool]:
    """Return the payload model for a message type and whether it is required."""

    match message_type:
        case MessageType.TEXT | MessageType.IMAGE | MessageType.DOCUMENT | MessageType.AUDIO | MessageType.VIDEO:
            return None, False
        case MessageType.LINK:
            return LinkPayload, False
        case MessageType.LOCATION:
            return LocationPayload, True
        case MessageType.CONTACT:
            return ContactPayload, True
        case MessageType.SYSTEM:
            return SystemPayload, True
        case MessageType.ANNOUNCEMENT:
            return AnnouncementPayload, False
        case MessageType.POLL:
            return PollPayload, True
        case MessageType.EVENT:
            return EventPayload, True
        case _:
            assert_never(message_type)


def parse_payload(message_type: MessageType, raw: Any) -> BaseModel | None:
    """Validate *raw* against the payload variant expected for *message_type*."""

    model, required = payload_model_for(message_type)
    if raw is None:
        if required:
            raise PayloadError(f"Messages of type '{message_type.value}' require a payload")
        return None
    if model is None:
        raise PayloadError(f"Messages of type '{message_type.value}' do not carry a payload")

    if isinstance(raw, BaseModel):
        raw = raw.model_dump(mode="json")
    if isinstance(raw, dict) and "kind" not in raw:
        raw = {**raw, "kind": model.model_fields["kind"].default}
    try:
        payload = _payload_adapter.validate_python(raw)
    except ValidationError as exc:
        raise PayloadError(f"Invalid {message_type.value} payload: {exc.errors()[0]['msg']}") from exc
    if not isinstance(payload, model):
        raise PayloadError(
            f"Payload kind '{payload.kind}' does not match message type '{message_type.value}'"
        )
    return payload


__all__ = [
    "AnnouncementPayload",
    "ContactPayload",
    "EventPayload",
    "LinkPayload",
    "LocationPayload",
    "MessagePayload",
    "PayloadError",
    "PollPayload",
    "SystemPayload",
    "parse_payload",
    "payload_model_for",
]
