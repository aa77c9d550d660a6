"""Per-chat capability toggles stored alongside the chat record."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator

DEFAULT_ALLOWED_FILE_TYPES: tuple[str, ...] = (
    "jpg",
    "jpeg",
    "png",
    "gif",
    "pdf",
    "doc",
    "docx",
    "txt",
)


class ChatSettings(BaseModel):
    """Capabilities of a chat.

    Disabling a capability only blocks future use; data that already relies
    on it is left untouched.
    """

    allow_file_sharing: bool = True
    allow_reactions: bool = True
    allow_mentions: bool = True
    allow_forwarding: bool = True
    allow_pinning: bool = True
    allow_threads: bool = True
    allow_editing: bool = True
    allow_deleting: bool = True
    message_retention_days: int | None = Field(default=None, ge=1)
    max_file_size_mb: int = Field(default=50, ge=1)
    allowed_file_types: list[str] = Field(default_factory=lambda: list(DEFAULT_ALLOWED_FILE_TYPES))

    @field_validator("allowed_file_types")
    @classmethod
    def normalize_file_types(cls, value: list[str]) -> list[str]:
        normalized: list[str] = []
        for item in value:
            cleaned = item.strip().lstrip(".").lower()
            if cleaned and cleaned not in normalized:
                normalized.append(cleaned)
        return normalized

    @property
    def max_file_size_bytes(self) -> int:
        return self.max_file_size_mb * 1024 * 1024

    def allows_file_type(self, file_format: str | None) -> bool:
        if not self.allowed_file_types:
            return True
        if not file_format:
            return False
        return file_format.strip().lstrip(".").lower() in self.allowed_file_types

    def merged(self, changes: dict[str, Any]) -> "ChatSettings":
        """Return a copy with *changes* applied on top of the current values."""

        data = self.model_dump()
        data.update(changes)
        return ChatSettings.model_validate(data)
