"""Session facade wiring the engine components for one signed-in user."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from .api.gateway import (
    Identity,
    ListingLookup,
    MessageValidator,
    Notifier,
    PersistenceGateway,
    ProfileLookup,
    RemoteGateway,
)
from .api.models import User
from .engine.inbox import Inbox
from .engine.notifications import NotificationDispatcher, ViewState
from .engine.resolver import ChatResolver
from .engine.stream import MessageStream
from .engine.unread import UnreadBadge, UnreadCounterService
from .errors import AuthenticationError, GatewayError
from .utils.config import DEFAULTS, Config
from .utils.ratelimit import RateLimiter

logger = logging.getLogger(__name__)


class ChatSession:
    """
    Everything chat-related for one authenticated session.

    `start()` brings up the notification dispatcher, the unread badge and the
    inbox. `conversation()` opens one chat for as long as its block runs and
    always tears it down on exit. `stop()` closes every channel the session
    owns.
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        identity: Identity,
        listings: ListingLookup,
        profiles: ProfileLookup,
        notifier: Notifier,
        config: Config | None = None,
        validator: MessageValidator | None = None,
    ) -> None:
        self._gateway = gateway
        self._identity = identity
        self._listings = listings
        self._profiles = profiles
        self._notifier = notifier
        self._validator = validator
        self._settings = config.get if config is not None else _defaults
        self._closables: list[Any] = []

        self.view = ViewState()
        self.user: User | None = None
        self.resolver: ChatResolver | None = None
        self.counters: UnreadCounterService | None = None
        self.dispatcher: NotificationDispatcher | None = None
        self.badge: UnreadBadge | None = None
        self.inbox: Inbox | None = None
        self._rate_limiter = RateLimiter(
            limit=int(self._settings("send_limit")),
            window_seconds=float(self._settings("send_window_seconds")),
        )

    async def __aenter__(self) -> ChatSession:
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.stop()

    def own(self, closable: Any) -> None:
        """Close `closable` (anything with an async close()) when the session stops."""
        self._closables.append(closable)

    def _require_user(self) -> User:
        if self.user is None:
            raise RuntimeError("Session not started")
        return self.user

    async def start(self) -> None:
        user = await self._identity.current_user()
        if user is None:
            raise AuthenticationError("Not signed in", status=401)
        self.user = user

        attempts = int(self._settings("retry_attempts"))
        base_delay = float(self._settings("retry_base_delay"))
        debounce_ms = int(self._settings("badge_debounce_ms"))

        self.resolver = ChatResolver(
            self._gateway, self._listings, retry_attempts=attempts, retry_base_delay=base_delay
        )
        self.counters = UnreadCounterService(
            self._gateway, retry_attempts=attempts, retry_base_delay=base_delay
        )
        self.dispatcher = NotificationDispatcher(
            self._gateway,
            self._profiles,
            self._notifier,
            user.id,
            view=self.view,
            name_cache_size=int(self._settings("name_cache_size")),
            retry_attempts=attempts,
            retry_base_delay=base_delay,
        )
        self.badge = UnreadBadge(self._gateway, user.id, counters=self.counters, debounce_ms=debounce_ms)
        self.inbox = Inbox(
            self._gateway,
            user.id,
            debounce_ms=debounce_ms,
            retry_attempts=attempts,
            retry_base_delay=base_delay,
        )

        try:
            await self.dispatcher.start()
            await self.badge.start()
            await self.inbox.start()
        except BaseException:
            # __aexit__ never runs when __aenter__ raises
            await self.stop()
            raise
        logger.info("Chat session started for %s", user.id)

    def set_foreground(self, foreground: bool) -> None:
        """The UI reports window focus/visibility here."""
        self.view.set_foreground(foreground)

    @asynccontextmanager
    async def conversation(self, identifier: str) -> AsyncIterator[MessageStream]:
        """
        Open the conversation for a chat id or a listing id.

        Raises SelfChatError, ListingClosedError or ChatUnavailableError
        before anything is opened.
        """
        user = self._require_user()
        if self.resolver is None or self.counters is None:
            raise RuntimeError("Session not started")
        chat = await self.resolver.resolve(identifier, user.id)

        stream = MessageStream(
            self._gateway,
            chat.id,
            user.id,
            validator=self._validator,
            rate_limiter=self._rate_limiter,
            retry_attempts=int(self._settings("retry_attempts")),
            retry_base_delay=float(self._settings("retry_base_delay")),
        )
        self.view.open(chat.id)
        try:
            await stream.open()
            if not stream.load_failed:
                try:
                    await self.counters.reset_own(chat, user.id)
                except GatewayError as e:
                    logger.warning("Could not reset unread count on chat %s: %s", chat.id, e)
            yield stream
        finally:
            self.view.close(chat.id)
            await stream.close()

    async def stop(self) -> None:
        """Tear down every component, then any owned transports."""
        components = [self.dispatcher, self.badge, self.inbox]
        for component in components:
            if component is None:
                continue
            try:
                await component.stop()
            except Exception:
                logger.exception("Error stopping %s", type(component).__name__)
        for closable in reversed(self._closables):
            try:
                await closable.close()
            except Exception:
                logger.exception("Error closing %s", type(closable).__name__)
        self._closables.clear()
        if self.user is not None:
            logger.info("Chat session stopped for %s", self.user.id)


def _defaults(key: str, default: Any = None) -> Any:
    return DEFAULTS.get(key, default)


async def build_remote_session(config: Config) -> ChatSession:
    """Connect the REST and realtime adapters and wrap them in a ChatSession."""
    from .api.client import GatewayClient
    from .api.realtime import RealtimeSocket
    from .notify.desktop import DesktopNotifier
    from .utils.logging import setup_logging

    setup_logging(config.get("log_level"))
    if not config.is_configured:
        raise RuntimeError("Gateway URL and API key are not configured")

    client = GatewayClient(config.gateway_url, config.api_key, config.access_token)  # type: ignore[arg-type]
    socket = RealtimeSocket(config.realtime_url, config.api_key, config.access_token)  # type: ignore[arg-type]
    gateway = RemoteGateway(client, socket)
    await gateway.connect()

    session = ChatSession(gateway, gateway, gateway, gateway, DesktopNotifier(), config=config)
    session.own(gateway)
    return session
