"""Unread counters: per-chat reset and the inbox-wide badge."""

from __future__ import annotations

import logging
from typing import Any, Callable

from ..api.gateway import PersistenceGateway
from ..api.models import CHATS_TABLE, Chat, ChangeEvent
from ..api.query import Filter
from ..errors import ChatUnavailableError, GatewayError
from ..utils.debounce import CallDebouncer
from ..utils.retry import retry_async
from .channels import ChannelSpec, RealtimeChannelManager

logger = logging.getLogger(__name__)


class UnreadCounterService:
    """
    Reads and resets the server-held unread counters.

    The counters on the chat rows are the source of truth. The aggregate is
    always re-read from them; it is never kept as a local running total.
    """

    def __init__(self, gateway: PersistenceGateway, retry_attempts: int = 3, retry_base_delay: float = 0.5) -> None:
        self._gateway = gateway
        self._retry_attempts = retry_attempts
        self._retry_base_delay = retry_base_delay

    async def _participant_chats(self, user_id: str) -> list[Chat]:
        rows = await retry_async(
            lambda: self._gateway.query(CHATS_TABLE, Filter.participant(user_id)),
            attempts=self._retry_attempts,
            base_delay=self._retry_base_delay,
            label="unread aggregate",
        )
        return [Chat(**row) for row in rows]

    async def reset_own(self, chat: Chat | str, current_user_id: str) -> None:
        """Zero the current user's counter on one chat. The counterpart's is untouched."""
        if isinstance(chat, str):
            rows = await self._gateway.query(CHATS_TABLE, Filter.where(id=chat))
            if not rows:
                raise ChatUnavailableError(chat)
            chat = Chat(**rows[0])
        column = chat.unread_column_for(current_user_id)
        await self._gateway.update(CHATS_TABLE, Filter.where(id=chat.id), {column: 0})
        logger.debug("Reset %s on chat %s", column, chat.id)

    async def aggregate_unread(self, current_user_id: str) -> int:
        """Sum the user's own counter over every chat they take part in."""
        chats = await self._participant_chats(current_user_id)
        return sum(chat.unread_for(current_user_id) for chat in chats)


def badge_label(count: int) -> str:
    """Text for the inbox badge: empty at zero, capped at "9+"."""
    if count <= 0:
        return ""
    return "9+" if count > 9 else str(count)


class UnreadBadge:
    """
    Observable unread total for the signed-in user.

    Listens to chat changes on the buyer side and the seller side and re-reads
    the aggregate after each burst of events.
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        current_user_id: str,
        counters: UnreadCounterService | None = None,
        debounce_ms: int = 50,
    ) -> None:
        self._gateway = gateway
        self.current_user_id = current_user_id
        self._counters = counters or UnreadCounterService(gateway)
        self._channels = RealtimeChannelManager(gateway, name="unread-badge")
        self._debouncer = CallDebouncer(self.refresh, delay_ms=debounce_ms)
        self._stop_reconnect: Callable[[], None] | None = None
        self._observers: list[Callable[[int], Any]] = []
        self.value = 0
        self.load_failed = False

    @property
    def label(self) -> str:
        return badge_label(self.value)

    def on_change(self, callback: Callable[[int], Any]) -> Callable[[], None]:
        """Register an observer of the total. Returns an unregister function."""
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
            ("badge", "buyer"): ChannelSpec.of(CHATS_TABLE, Filter.where(buyer_id=user_id), self._on_chat_event),
            ("badge", "seller"): ChannelSpec.of(CHATS_TABLE, Filter.where(seller_id=user_id), self._on_chat_event),
        })
        self._stop_reconnect = self._gateway.on_reconnect(self.refresh)

    async def refresh(self) -> int:
        """Re-read the aggregate and notify observers when it changed."""
        try:
            total = await self._counters.aggregate_unread(self.current_user_id)
        except GatewayError as e:
            logger.warning("Could not refresh unread badge: %s", e)
            self.load_failed = True
            return self.value
        self.load_failed = False
        if total != self.value:
            self.value = total
            for callback in list(self._observers):
                try:
                    callback(total)
                except Exception:
                    logger.exception("Unread badge observer failed")
        return total

    async def flush(self) -> None:
        """Apply any refresh still waiting on the debounce timer."""
        await self._debouncer.flush()

    async def stop(self) -> None:
        if self._stop_reconnect is not None:
            self._stop_reconnect()
            self._stop_reconnect = None
        await self._debouncer.cancel()
        await self._channels.shutdown()
        self._observers.clear()
