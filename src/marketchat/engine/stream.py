"""Per-conversation message history plus live updates."""

from __future__ import annotations

import bisect
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from ..api.gateway import MessageValidator, PersistenceGateway, Subscription
from ..api.models import MESSAGES_TABLE, ChangeEvent, EventType, Message
from ..api.query import Filter, Order
from ..errors import GatewayError, TransientNetworkError, ValidationError
from ..utils.ratelimit import RateLimiter
from ..utils.retry import retry_async
from ..utils.validation import MessageContentValidator

logger = logging.getLogger(__name__)

SEND_FAILED_NOTICE = "Message failed to send. Please try again."
LOAD_FAILED_NOTICE = "Couldn't load this conversation."


@dataclass
class ConversationSession:
    """Client-local state for one open conversation."""

    chat_id: str
    messages: list[Message] = field(default_factory=list)
    subscription: Subscription | None = None
    stop_resync: Callable[[], None] | None = None


@dataclass
class SendResult:
    """Outcome of MessageStream.send()."""

    ok: bool
    draft: str = ""
    message_id: str | None = None
    error: Exception | None = None
    notice: str | None = None
    retry_after: int = 0
    discarded: bool = False


class MessageStream:
    """
    Ordered, de-duplicated view of one chat's messages.

    History is fetched first and the subscription opened second; events are
    merged by id, so an overlap between the two is dropped and nothing falls
    in between. Sent messages are never appended locally; they show up when
    the server echoes the insert back through the subscription.
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        chat_id: str,
        current_user_id: str,
        validator: MessageValidator | None = None,
        rate_limiter: RateLimiter | None = None,
        retry_attempts: int = 3,
        retry_base_delay: float = 0.5,
    ) -> None:
        self._gateway = gateway
        self.chat_id = chat_id
        self.current_user_id = current_user_id
        self._validator = validator or MessageContentValidator()
        self._rate_limiter = rate_limiter or RateLimiter()
        self._retry_attempts = retry_attempts
        self._retry_base_delay = retry_base_delay
        self.session: ConversationSession | None = None
        self._ids: set[str] = set()
        self._observers: list[Callable[[tuple[Message, ...]], Any]] = []
        self._opened = False
        self._closed = False
        self.load_failed = False
        self.notice: str | None = None
        self.caught_up = False

    async def __aenter__(self) -> MessageStream:
        await self.open()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    @property
    def messages(self) -> tuple[Message, ...]:
        if self.session is None:
            return ()
        return tuple(self.session.messages)

    @property
    def is_open(self) -> bool:
        return self._opened and not self._closed

    def on_change(self, callback: Callable[[tuple[Message, ...]], Any]) -> Callable[[], None]:
        """Register an observer of the message list. Returns an unregister function."""
        self._observers.append(callback)

        def remove() -> None:
            if callback in self._observers:
                self._observers.remove(callback)

        return remove

    def _notify(self) -> None:
        snapshot = self.messages
        for callback in list(self._observers):
            try:
                callback(snapshot)
            except Exception:
                logger.exception("Message observer failed for chat %s", self.chat_id)

    async def open(self) -> MessageStream:
        """Load history, subscribe, then mark the counterpart's messages read."""
        if self._opened:
            raise RuntimeError(f"Stream for chat {self.chat_id} already opened")
        self._opened = True
        self.session = ConversationSession(chat_id=self.chat_id)

        try:
            rows = await self._load_history()
        except TransientNetworkError:
            self.load_failed = True
            self.notice = LOAD_FAILED_NOTICE
            self._notify()
            return self

        if self._closed:
            return self
        self._apply_rows(rows)

        subscription = await self._gateway.subscribe(
            MESSAGES_TABLE,
            Filter.where(chat_id=self.chat_id),
            (EventType.INSERT, EventType.UPDATE),
            self._on_event,
        )
        if self._closed or self.session is None:
            await subscription.close()
            return self
        self.session.subscription = subscription
        self.session.stop_resync = self._gateway.on_reconnect(self.resync)
        logger.debug("Opened chat %s with %d message(s)", self.chat_id, len(self.session.messages))
        self._notify()

        await self.mark_read()
        return self

    def _messages(self) -> list[Message]:
        if self.session is None:
            raise RuntimeError(f"Stream for chat {self.chat_id} is not open")
        return self.session.messages

    def _merge(self, message: Message) -> bool:
        """Add a message unless its id is already present. Keeps (created_at, id) order."""
        if message.id in self._ids:
            return False
        messages = self._messages()
        if not messages or message.sort_key >= messages[-1].sort_key:
            messages.append(message)
        else:
            bisect.insort(messages, message, key=lambda m: m.sort_key)
        self._ids.add(message.id)
        return True

    def _replace(self, message: Message) -> bool:
        if message.id not in self._ids:
            return False
        messages = self._messages()
        for i, existing in enumerate(messages):
            if existing.id == message.id:
                if existing == message:
                    return False
                messages[i] = message
                return True
        return False

    def _apply_rows(self, rows: Iterable[dict[str, Any]]) -> bool:
        changed = False
        for row in rows:
            message = Message(**row)
            if message.id in self._ids:
                changed = self._replace(message) or changed
            else:
                changed = self._merge(message) or changed
        return changed

    async def _load_history(self) -> list[dict[str, Any]]:
        return await retry_async(
            lambda: self._gateway.query(
                MESSAGES_TABLE, Filter.where(chat_id=self.chat_id), Order("created_at")
            ),
            attempts=self._retry_attempts,
            base_delay=self._retry_base_delay,
            label=f"history for chat {self.chat_id}",
        )

    async def resync(self) -> None:
        """
        Re-read the history and merge it by id.

        Runs after the realtime link reconnects: inserts and read flags that
        changed while it was down were never pushed to the subscription.
        """
        if not self.is_open or self.session is None or self.session.subscription is None:
            return
        try:
            rows = await self._load_history()
        except GatewayError as e:
            logger.warning("Could not resync chat %s after reconnect: %s", self.chat_id, e)
            return
        if not self.is_open:
            return
        if self._apply_rows(rows):
            logger.debug("Resynced chat %s after reconnect", self.chat_id)
            self._notify()
        await self.mark_read()

    def _on_event(self, event: ChangeEvent) -> None:
        if self._closed or self.session is None:
            return
        try:
            message = Message(**event.row)
        except ValueError as e:
            logger.warning("Ignoring malformed message row in chat %s: %s", self.chat_id, e)
            return
        if message.chat_id != self.chat_id:
            return

        if event.event_type == EventType.INSERT:
            changed = self._merge(message)
        else:
            changed = self._replace(message)
        if changed:
            self._notify()

    async def mark_read(self) -> None:
        """Flip is_read on the counterpart's messages in this chat."""
        if self.session is None:
            return
        pending = [
            m for m in self.session.messages
            if m.sender_id != self.current_user_id and not m.is_read
        ]
        if pending:
            try:
                await self._gateway.update(
                    MESSAGES_TABLE,
                    Filter.where(chat_id=self.chat_id, is_read=False).excluding(
                        sender_id=self.current_user_id
                    ),
                    {"is_read": True},
                )
            except GatewayError as e:
                logger.warning("Could not mark chat %s read: %s", self.chat_id, e)
                self.caught_up = False
                return
        self.caught_up = True

    async def send(self, text: str, image_url: str | None = None) -> SendResult:
        """
        Validate and insert a message.

        Nothing is appended locally; the subscription delivers the stored row.
        On any failure the returned result carries the draft for the input box.
        """
        if self._closed:
            return SendResult(ok=False, draft=text, discarded=True)

        try:
            clean = self._validator.validate_message(text, image_url)
        except ValidationError as e:
            logger.info("Message refused by validation in chat %s: %s", self.chat_id, e)
            return SendResult(ok=False, draft=text, error=e, notice=str(e))

        allowed, retry_after = self._rate_limiter.check(f"{self.current_user_id}:send_message")
        if not allowed:
            logger.info("Send rate limited for user %s", self.current_user_id)
            return SendResult(
                ok=False,
                draft=text,
                retry_after=retry_after,
                notice=f"Please wait {retry_after}s before sending more messages.",
            )

        message_id = str(uuid.uuid4())
        record: dict[str, Any] = {
            "id": message_id,
            "chat_id": self.chat_id,
            "sender_id": self.current_user_id,
            "message_text": clean,
        }
        if image_url:
            record["image_url"] = image_url

        try:
            await self._gateway.insert(MESSAGES_TABLE, record)
        except GatewayError as e:
            logger.warning("Send failed in chat %s: %s", self.chat_id, e)
            return SendResult(
                ok=False,
                draft=text,
                error=e,
                notice=SEND_FAILED_NOTICE,
                discarded=self._closed,
            )

        if self._closed:
            return SendResult(ok=True, message_id=message_id, discarded=True)

        logger.debug("Sent message %s in chat %s", message_id, self.chat_id)
        await self.mark_read()
        return SendResult(ok=True, message_id=message_id)

    async def close(self) -> None:
        """Cancel the subscription. No events are applied afterwards."""
        if self._closed:
            return
        self._closed = True
        session = self.session
        self.session = None
        self._observers.clear()
        if session is not None and session.stop_resync is not None:
            session.stop_resync()
            session.stop_resync = None
        if session is not None and session.subscription is not None:
            subscription = session.subscription
            session.subscription = None
            await subscription.close()
