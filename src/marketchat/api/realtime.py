"""Socket.IO client for row-change subscriptions."""

from __future__ import annotations

import inspect
import logging
import uuid
from typing import Any, Callable, Iterable

import socketio

from .gateway import EventCallback, ReconnectCallback
from .models import ChangeEvent, EventType
from .query import Filter

logger = logging.getLogger(__name__)


class SocketSubscription:
    """One change subscription routed over the shared socket."""

    def __init__(
        self,
        owner: RealtimeSocket,
        topic: str,
        table: str,
        filter: Filter,
        event_types: Iterable[EventType],
        callback: EventCallback,
    ) -> None:
        self._owner = owner
        self.topic = topic
        self.table = table
        self.filter = filter
        self.event_types = frozenset(EventType(e) for e in event_types)
        self._callback = callback
        self._closed = False

    @property
    def is_closed(self) -> bool:
        return self._closed

    def accepts(self, event: ChangeEvent) -> bool:
        return (
            not self._closed
            and event.table == self.table
            and event.event_type in self.event_types
            and self.filter.matches(event.row)
        )

    async def deliver(self, event: ChangeEvent) -> None:
        if self._closed:
            return
        result = self._callback(event)
        if inspect.isawaitable(result):
            await result

    def join_payload(self) -> dict[str, Any]:
        return {
            "topic": self.topic,
            "table": self.table,
            "filter": self.filter.to_params(),
            "events": sorted(e.value for e in self.event_types),
        }

    async def close(self) -> None:
        """Stop delivery, then tell the server."""
        if self._closed:
            return
        # Routing stops before the first await so nothing is delivered after close().
        self._closed = True
        self._owner._routes.pop(self.topic, None)
        await self._owner._leave(self.topic)


class RealtimeSocket:
    """Socket.IO client delivering gateway change events to subscriptions."""

    def __init__(self, server_url: str, api_key: str, access_token: str | None = None) -> None:
        self.server_url = server_url.rstrip("/")
        self.api_key = api_key
        self.access_token = access_token
        self._sio: socketio.AsyncClient | None = None
        self._connected = False
        self._has_connected = False
        self._routes: dict[str, SocketSubscription] = {}
        self._reconnect_callbacks: list[ReconnectCallback] = []

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def active_topics(self) -> list[str]:
        return list(self._routes)

    def _create_client(self) -> socketio.AsyncClient:
        """Create a new Socket.IO client with event handlers."""
        sio = socketio.AsyncClient(
            reconnection=True,
            reconnection_attempts=0,  # Infinite retries
            reconnection_delay=1,
            reconnection_delay_max=30,
            logger=False,
            engineio_logger=False,
        )

        @sio.event
        async def connect() -> None:
            await self._handle_connect()

        @sio.event
        async def disconnect() -> None:
            self._connected = False
            logger.info("Realtime socket disconnected")

        @sio.event
        async def connect_error(data: Any) -> None:
            logger.warning("Realtime socket connection error: %s", data)

        @sio.on("postgres-change")
        async def on_change(data: dict[str, Any]) -> None:
            await self._handle_change(data)

        return sio

    async def _handle_connect(self) -> None:
        reconnected = self._has_connected
        self._connected = True
        self._has_connected = True
        logger.info("Realtime socket connected; joining %d channel(s)", len(self._routes))
        # Rejoin after a reconnect; the server forgets topics on disconnect.
        for subscription in list(self._routes.values()):
            await self._join(subscription)
        if not reconnected:
            return
        # Changes committed while we were away were never pushed.
        for callback in list(self._reconnect_callbacks):
            try:
                result = callback()
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Reconnect callback failed")

    def on_reconnect(self, callback: ReconnectCallback) -> Callable[[], None]:
        """Run `callback` after every reconnect. Returns an unregister function."""
        self._reconnect_callbacks.append(callback)

        def remove() -> None:
            if callback in self._reconnect_callbacks:
                self._reconnect_callbacks.remove(callback)

        return remove

    async def connect(self) -> None:
        """Connect to the realtime endpoint."""
        if self._sio is not None and self._connected:
            return
        self._sio = self._create_client()
        await self._sio.connect(
            self.server_url,
            auth={"apikey": self.api_key, "token": self.access_token},
            transports=["websocket", "polling"],
            socketio_path="realtime/v1/socket.io",
            wait_timeout=10,
        )

    async def disconnect(self) -> None:
        """Close every subscription and disconnect."""
        for subscription in list(self._routes.values()):
            await subscription.close()
        if self._sio is not None:
            await self._sio.disconnect()
            self._sio = None
            self._connected = False

    async def subscribe(
        self,
        table: str,
        filter: Filter,
        event_types: Iterable[EventType],
        callback: EventCallback,
    ) -> SocketSubscription:
        """Open a change subscription."""
        topic = f"realtime:{table}:{filter.describe()}:{uuid.uuid4().hex[:8]}"
        subscription = SocketSubscription(self, topic, table, filter, event_types, callback)
        # Route first so events racing the join are not lost.
        self._routes[topic] = subscription
        if self._connected:
            await self._join(subscription)
        return subscription

    async def _join(self, subscription: SocketSubscription) -> None:
        if self._sio is None:
            return
        await self._sio.emit("subscribe", subscription.join_payload())

    async def _leave(self, topic: str) -> None:
        if self._sio is None or not self._connected:
            return
        await self._sio.emit("unsubscribe", {"topic": topic})

    async def _handle_change(self, data: dict[str, Any]) -> None:
        """Route a change event to the subscriptions that want it."""
        try:
            event = ChangeEvent(**data.get("data", data))
        except (TypeError, ValueError) as e:
            logger.warning("Dropping malformed change event: %s", e)
            return

        topic = data.get("topic")
        if topic is not None:
            targets = [self._routes[topic]] if topic in self._routes else []
        else:
            targets = list(self._routes.values())

        for subscription in targets:
            if not subscription.accepts(event):
                continue
            try:
                await subscription.deliver(event)
            except Exception:
                logger.exception("Subscriber for %s failed on %s", subscription.topic, event.event_type.value)
