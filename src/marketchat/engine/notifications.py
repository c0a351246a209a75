"""Desktop notifications for messages arriving outside the open conversation."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Hashable

from ..api.gateway import Notifier, PermissionState, PersistenceGateway, ProfileLookup
from ..api.models import CHATS_TABLE, MESSAGES_TABLE, ChangeEvent, EventType
from ..api.query import Filter
from ..errors import GatewayError, PermissionDenied, TransientNetworkError
from ..state.names import SenderNameCache
from ..utils.retry import retry_async
from .channels import ChannelSpec, RealtimeChannelManager

logger = logging.getLogger(__name__)

FALLBACK_SENDER = "Someone"
MAX_BODY_LENGTH = 100


class DispatcherState(str, Enum):
    UNINITIALIZED = "uninitialized"
    ROSTER_PRIMING = "roster_priming"
    ACTIVE = "active"
    TORN_DOWN = "torn_down"


@dataclass
class ViewState:
    """What the UI is showing right now. The UI layer keeps this current."""

    open_chat_id: str | None = None
    foreground: bool = True

    def open(self, chat_id: str) -> None:
        self.open_chat_id = chat_id

    def close(self, chat_id: str | None = None) -> None:
        """Clear the open conversation (only if it is `chat_id`, when given)."""
        if chat_id is None or self.open_chat_id == chat_id:
            self.open_chat_id = None

    def set_foreground(self, foreground: bool) -> None:
        self.foreground = foreground


def notification_body(text: str | None, image_url: str | None = None) -> str:
    """Preview text for a message notification."""
    body = (text or "").strip()
    if not body:
        body = "Sent an image" if image_url else "New message"
    if len(body) > MAX_BODY_LENGTH:
        body = body[:MAX_BODY_LENGTH - 3] + "..."
    return body


class NotificationDispatcher:
    """
    Watches every chat the user takes part in and raises OS notifications.

    Lifecycle: UNINITIALIZED -> ROSTER_PRIMING -> ACTIVE -> TORN_DOWN. While
    active, each new chat (seen on the roster channels) re-primes the roster
    and re-reconciles the per-chat message channels.
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        profiles: ProfileLookup,
        notifier: Notifier,
        current_user_id: str,
        view: ViewState | None = None,
        name_cache_size: int = 256,
        retry_attempts: int = 3,
        retry_base_delay: float = 0.5,
    ) -> None:
        self._gateway = gateway
        self._profiles = profiles
        self._notifier = notifier
        self.current_user_id = current_user_id
        self.view = view or ViewState()
        self.names = SenderNameCache(name_cache_size)
        self._channels = RealtimeChannelManager(gateway, name="notifications")
        self._retry_attempts = retry_attempts
        self._retry_base_delay = retry_base_delay
        self._permission_requested = False
        self._refresh_lock = asyncio.Lock()
        self._stop_reconnect: Callable[[], None] | None = None
        self.state = DispatcherState.UNINITIALIZED
        self.roster: frozenset[str] = frozenset()
        self.roster_load_failed = False

    @property
    def active_channels(self) -> frozenset[Hashable]:
        return self._channels.active_keys

    async def start(self) -> None:
        """Request permission, prime the roster and open the channels."""
        if self.state != DispatcherState.UNINITIALIZED:
            raise RuntimeError(f"Dispatcher already started (state={self.state.value})")
        self.state = DispatcherState.ROSTER_PRIMING
        await self._ensure_permission()
        await self.refresh_roster()
        self._stop_reconnect = self._gateway.on_reconnect(self.refresh_roster)
        if self.state == DispatcherState.ROSTER_PRIMING:
            self.state = DispatcherState.ACTIVE
            logger.info("Notifications active for %d chat(s)", len(self.roster))

    async def stop(self) -> None:
        """Close every channel this dispatcher owns."""
        self.state = DispatcherState.TORN_DOWN
        if self._stop_reconnect is not None:
            self._stop_reconnect()
            self._stop_reconnect = None
        await self._channels.shutdown()

    async def _ensure_permission(self) -> None:
        if self._notifier.permission_state() != PermissionState.DEFAULT or self._permission_requested:
            return
        # Asked once per session; a denial is never re-prompted.
        self._permission_requested = True
        try:
            state = await self._notifier.request_permission()
        except PermissionDenied:
            state = PermissionState.DENIED
        logger.info("Notification permission: %s", PermissionState(state).value)

    def _required_channels(self) -> dict[Hashable, ChannelSpec]:
        user_id = self.current_user_id
        required: dict[Hashable, ChannelSpec] = {
            ("roster", "buyer"): ChannelSpec.of(
                CHATS_TABLE, Filter.where(buyer_id=user_id), self._on_roster_event, (EventType.INSERT,)
            ),
            ("roster", "seller"): ChannelSpec.of(
                CHATS_TABLE, Filter.where(seller_id=user_id), self._on_roster_event, (EventType.INSERT,)
            ),
        }
        for chat_id in sorted(self.roster):
            required[("messages", chat_id)] = ChannelSpec.of(
                MESSAGES_TABLE, Filter.where(chat_id=chat_id), self._on_message_event, (EventType.INSERT,)
            )
        return required

    async def refresh_roster(self) -> None:
        """
        Re-read the chats the user takes part in and reconcile channels.

        Refreshes run one at a time, so an older roster snapshot can never
        replace a newer one.
        """
        async with self._refresh_lock:
            if self.state == DispatcherState.TORN_DOWN:
                return
            try:
                rows = await retry_async(
                    lambda: self._gateway.query(CHATS_TABLE, Filter.participant(self.current_user_id)),
                    attempts=self._retry_attempts,
                    base_delay=self._retry_base_delay,
                    label="notification roster",
                )
            except TransientNetworkError:
                # Keep the old roster; the roster channels still trigger a retry.
                self.roster_load_failed = True
            else:
                self.roster_load_failed = False
                self.roster = frozenset(row["id"] for row in rows)
            await self._channels.reconcile(self._required_channels())

    async def _on_roster_event(self, event: ChangeEvent) -> None:
        if self.state not in (DispatcherState.ROSTER_PRIMING, DispatcherState.ACTIVE):
            return
        logger.debug("Chat %s appeared; refreshing roster", event.row.get("id"))
        await self.refresh_roster()

    async def _on_message_event(self, event: ChangeEvent) -> None:
        await self.handle_message(event.row)

    def suppress(self, chat_id: str) -> bool:
        """True iff `chat_id` is the open conversation and the app is in the foreground."""
        return self.view.open_chat_id == chat_id and self.view.foreground

    async def _load_name(self, sender_id: str) -> str | None:
        try:
            profile = await self._profiles.get_profile(sender_id)
        except GatewayError as e:
            logger.warning("Sender lookup failed for %s: %s", sender_id, e)
            return None
        return profile.display_name if profile else FALLBACK_SENDER

    async def handle_message(self, row: dict[str, Any]) -> bool:
        """
        Decide on and emit a notification for one inserted message row.

        Returns:
            True if a notification was shown
        """
        if self.state not in (DispatcherState.ROSTER_PRIMING, DispatcherState.ACTIVE):
            return False
        chat_id = row.get("chat_id")
        sender_id = row.get("sender_id")
        if not chat_id or not sender_id or sender_id == self.current_user_id:
            return False
        if chat_id not in self.roster:
            logger.debug("Message for chat %s before roster caught up", chat_id)

        if self.suppress(chat_id):
            logger.debug("Suppressed notification for open chat %s", chat_id)
            return False
        if self._notifier.permission_state() != PermissionState.GRANTED:
            return False

        name = await self.names.get(sender_id, self._load_name) or FALLBACK_SENDER
        if self.state == DispatcherState.TORN_DOWN or self.suppress(chat_id):
            return False

        try:
            await self._notifier.show(
                f"New message from {name}",
                notification_body(row.get("message_text"), row.get("image_url")),
                tag=chat_id,
            )
        except PermissionDenied:
            logger.info("Notification permission revoked")
            return False
        logger.debug("Notified for chat %s", chat_id)
        return True
