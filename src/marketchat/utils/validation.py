"""Default message validation collaborator."""

from __future__ import annotations

import re

from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from ..errors import ValidationError

MAX_MESSAGE_LENGTH = 2000
MAX_RAW_LENGTH = 10000

_UNSAFE_CHARS = re.compile(r"[<>/\\\"'`]")
_SCRIPT_TAG = re.compile(r"<script", re.IGNORECASE)


def sanitize_plain_text(text: str) -> str:
    """Strip markup characters, trim, and cap the length."""
    return _UNSAFE_CHARS.sub("", text).strip()[:MAX_RAW_LENGTH]


class MessageInput(BaseModel):
    """Constraints every message writer applies."""

    text: str = Field(min_length=1, max_length=MAX_MESSAGE_LENGTH)
    image_url: str | None = None

    @field_validator("image_url")
    @classmethod
    def check_image_url(cls, v: str | None) -> str | None:
        if v in (None, ""):
            return None
        if not re.match(r"^https?://[^\s]+$", v):
            raise ValueError("image_url must be an http(s) URL")
        return v


class MessageContentValidator:
    """Sanitises and validates outgoing message text."""

    def validate_message(self, text: str, image_url: str | None = None) -> str:
        """Return the text to send, or raise ValidationError."""
        if not isinstance(text, str):
            raise ValidationError("Message must be text")
        if _SCRIPT_TAG.search(text):
            raise ValidationError("Message contains invalid content")
        try:
            parsed = MessageInput(text=sanitize_plain_text(text), image_url=image_url)
        except PydanticValidationError as e:
            first = e.errors()[0]
            if first["loc"] == ("text",):
                if first["type"] == "string_too_short":
                    raise ValidationError("Message cannot be empty") from e
                raise ValidationError("Message too long") from e
            raise ValidationError(first["msg"]) from e
        return parsed.text
