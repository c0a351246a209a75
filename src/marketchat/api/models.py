"""Pydantic models for gateway rows and change events."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

CHATS_TABLE = "chats"
MESSAGES_TABLE = "messages"
LISTINGS_TABLE = "listings"
PROFILES_TABLE = "profiles"

Role = Literal["buyer", "seller"]


class ListingStatus(str, Enum):
    """Listing lifecycle states."""
    ACTIVE = "active"
    SOLD = "sold"
    DELETED = "deleted"
    EXPIRED = "expired"


CLOSED_STATUSES = frozenset({ListingStatus.SOLD.value, ListingStatus.DELETED.value, ListingStatus.EXPIRED.value})


class EventType(str, Enum):
    """Change event kinds delivered by a subscription."""
    INSERT = "INSERT"
    UPDATE = "UPDATE"


class User(BaseModel):
    """The currently authenticated user."""

    model_config = ConfigDict(extra="ignore")

    id: str


class Profile(BaseModel):
    """Public profile of a marketplace user."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    name: str | None = None

    @property
    def display_name(self) -> str:
        """Get the name to show in notifications."""
        if self.name and self.name.strip():
            return self.name.strip()
        return "Someone"


class Listing(BaseModel):
    """The parts of a listing the chat engine cares about."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    owner_id: str = Field(alias="user_id")
    status: str = ListingStatus.ACTIVE.value
    title: str | None = None

    @property
    def is_closed(self) -> bool:
        """Check if the listing refuses new conversations."""
        return self.status in CLOSED_STATUSES


class Message(BaseModel):
    """A single message within a chat."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    chat_id: str
    sender_id: str
    text: str = Field(default="", alias="message_text")
    image_url: str | None = None
    is_read: bool = False
    created_at: datetime

    @property
    def sort_key(self) -> tuple[datetime, str]:
        """Ordering key: creation time, then id as a tie-breaker."""
        return (self.created_at, self.id)


class Chat(BaseModel):
    """A two-party conversation tied to one listing and one buyer."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    listing_id: str
    buyer_id: str
    seller_id: str
    last_message_text: str | None = Field(default=None, alias="last_message")
    last_message_at: datetime | None = None
    buyer_unread_count: int = Field(default=0, ge=0)
    seller_unread_count: int = Field(default=0, ge=0)
    created_at: datetime | None = None

    @model_validator(mode="after")
    def check_distinct_parties(self) -> Chat:
        if self.buyer_id == self.seller_id:
            raise ValueError("buyer_id and seller_id must differ")
        return self

    def is_participant(self, user_id: str) -> bool:
        return user_id in (self.buyer_id, self.seller_id)

    def role_of(self, user_id: str) -> Role:
        """Get the user's side of the conversation."""
        if user_id == self.buyer_id:
            return "buyer"
        if user_id == self.seller_id:
            return "seller"
        raise ValueError(f"User {user_id} is not a participant in chat {self.id}")

    def unread_column_for(self, user_id: str) -> str:
        """Name of the counter column owned by this user."""
        return f"{self.role_of(user_id)}_unread_count"

    def unread_for(self, user_id: str) -> int:
        """Get the user's own unread counter."""
        if self.role_of(user_id) == "buyer":
            return self.buyer_unread_count
        return self.seller_unread_count

    def counterpart_of(self, user_id: str) -> str:
        """Get the other participant's id."""
        if self.role_of(user_id) == "buyer":
            return self.seller_id
        return self.buyer_id


class ChangeEvent(BaseModel):
    """A row change pushed by a subscription."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    event_type: EventType = Field(alias="eventType")
    table: str
    row: dict[str, Any] = Field(alias="new")
    old: dict[str, Any] | None = None
