"""Inbox listing of the user's conversations."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from ..api.gateway import PersistenceGateway
from ..api.models import CHATS_TABLE, ChangeEvent, Chat, Role
from ..api.query import Filter
from ..errors import TransientNetworkError
from ..utils.debounce import CallDebouncer
from ..utils.retry import retry_async
from .channels import ChannelSpec, RealtimeChannelManager

logger = logging.getLogger(__name__)

_OLDEST = datetime.min.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class InboxEntry:
    """One row of the inbox, seen from the signed-in user's side."""

    chat: Chat
    role: Role
    unread: int
    counterpart_id: str

    @property
    def has_unread(self) -> bool:
        return self.unread > 0


def _recency(chat: Chat) -> datetime:
    stamp = chat.last_message_at or chat.created_at
    if stamp is None:
        return _OLDEST
    if stamp.tzinfo is None:
        return stamp.replace(tzinfo=timezone.utc)
    return stamp


def build_entries(chats: list[Chat], user_id: str) -> list[InboxEntry]:
    """Most recently active first; chats without any message sort by creation time."""
    ordered = sorted(chats, key=lambda c: (c.last_message_at is not None, _recency(c)), reverse=True)
    return [
        InboxEntry(
            chat=chat,
            role=chat.role_of(user_id),
            unread=chat.unread_for(user_id),
            counterpart_id=chat.counterpart_of(user_id),
        )
        for chat in ordered
        if chat.is_participant(user_id)
    ]


class Inbox:
    """Keeps the user's chat list current from chat change events."""

    def __init__(
        self,
        gateway: PersistenceGateway,
        current_user_id: str,
        debounce_ms: int = 50,
        retry_attempts: int = 3,
        retry_base_delay: float = 0.5,
    ) -> None:
        self._gateway = gateway
        self.current_user_id = current_user_id
        self._channels = RealtimeChannelManager(gateway, name="inbox")
        self._debouncer = CallDebouncer(self.refresh, delay_ms=debounce_ms)
        self._stop_reconnect: Callable[[], None] | None = None
        self._retry_attempts = retry_attempts
        self._retry_base_delay = retry_base_delay
        self._observers: list[Callable[[list[InboxEntry]], Any]] = []
        self.entries: list[InboxEntry] = []
        self.load_failed = False

    def on_change(self, callback: Callable[[list[InboxEntry]], Any]) -> Callable[[], None]:
        self._observers.append(callback)

        def remove() -> None:
            if callback in self._observers:
                self._observers.remove(callback)

        return remove

    def _on_chat_event(self, event: ChangeEvent) -> None:
        self._debouncer.call()

    async def start(self) -> None:
        await self.refresh()
        user_id = self.current_user_id
        await self._channels.reconcile({
            ("inbox", "buyer"): ChannelSpec.of(CHATS_TABLE, Filter.where(buyer_id=user_id), self._on_chat_event),
            ("inbox", "seller"): ChannelSpec.of(CHATS_TABLE, Filter.where(seller_id=user_id), self._on_chat_event),
        })
        self._stop_reconnect = self._gateway.on_reconnect(self.refresh)

    async def refresh(self) -> list[InboxEntry]:
        try:
            rows = await retry_async(
                lambda: self._gateway.query(CHATS_TABLE, Filter.participant(self.current_user_id)),
                attempts=self._retry_attempts,
                base_delay=self._retry_base_delay,
                label="inbox",
            )
        except TransientNetworkError:
            self.load_failed = True
            return self.entries
        self.load_failed = False
        self.entries = build_entries([Chat(**row) for row in rows], self.current_user_id)
        for callback in list(self._observers):
            try:
                callback(self.entries)
            except Exception:
                logger.exception("Inbox observer failed")
        return self.entries

    async def flush(self) -> None:
        await self._debouncer.flush()

    async def stop(self) -> None:
        if self._stop_reconnect is not None:
            self._stop_reconnect()
            self._stop_reconnect = None
        await self._debouncer.cancel()
        await self._channels.shutdown()
        self._observers.clear()
