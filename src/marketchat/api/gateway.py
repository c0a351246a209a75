"""Collaborator contracts consumed by the chat engine."""

from __future__ import annotations

from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Protocol, Union, runtime_checkable

from .models import ChangeEvent, EventType, Listing, Profile, User
from .query import Filter, Order

EventCallback = Callable[[ChangeEvent], Union[Awaitable[None], None]]
ReconnectCallback = Callable[[], Union[Awaitable[Any], None]]


class PermissionState(str, Enum):
    """Platform notification permission."""
    GRANTED = "granted"
    DENIED = "denied"
    DEFAULT = "default"


@runtime_checkable
class Subscription(Protocol):
    """Handle for a live change subscription."""

    @property
    def is_closed(self) -> bool: ...

    async def close(self) -> None:
        """Stop delivery. Idempotent; no events arrive once this is called."""
        ...


class PersistenceGateway(Protocol):
    async def query(
        self, table: str, filter: Filter, order: Order | None = None
    ) -> list[dict[str, Any]]: ...

    async def insert(self, table: str, record: dict[str, Any]) -> dict[str, Any]: ...

    async def update(self, table: str, filter: Filter, patch: dict[str, Any]) -> None: ...

    async def subscribe(
        self,
        table: str,
        filter: Filter,
        event_types: Iterable[EventType],
        callback: EventCallback,
    ) -> Subscription: ...

    def on_reconnect(self, callback: ReconnectCallback) -> Callable[[], None]:
        """Call `callback` after the realtime link comes back. Returns an unregister function."""
        ...


class Identity(Protocol):
    async def current_user(self) -> User | None: ...


class ListingLookup(Protocol):
    async def get_listing(self, listing_id: str) -> Listing | None: ...


class ProfileLookup(Protocol):
    async def get_profile(self, user_id: str) -> Profile | None: ...


class MessageValidator(Protocol):
    def validate_message(self, text: str, image_url: str | None = None) -> str:
        """Return sanitised text or raise ValidationError."""
        ...


class Notifier(Protocol):
    async def request_permission(self) -> PermissionState: ...

    def permission_state(self) -> PermissionState: ...

    async def show(self, title: str, body: str, tag: str) -> None: ...


class RemoteGateway:
    """
    Bundles the REST client and the realtime socket behind one object.

    Satisfies PersistenceGateway, Identity, ListingLookup and ProfileLookup.
    """

    def __init__(self, client: Any, socket: Any) -> None:
        self.client = client
        self.socket = socket

    async def __aenter__(self) -> RemoteGateway:
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def connect(self) -> None:
        await self.client.connect()
        await self.socket.connect()

    async def close(self) -> None:
        await self.socket.disconnect()
        await self.client.close()

    async def query(
        self, table: str, filter: Filter, order: Order | None = None
    ) -> list[dict[str, Any]]:
        return await self.client.query(table, filter, order)

    async def insert(self, table: str, record: dict[str, Any]) -> dict[str, Any]:
        return await self.client.insert(table, record)

    async def update(self, table: str, filter: Filter, patch: dict[str, Any]) -> None:
        await self.client.update(table, filter, patch)

    async def subscribe(
        self,
        table: str,
        filter: Filter,
        event_types: Iterable[EventType],
        callback: EventCallback,
    ) -> Subscription:
        return await self.socket.subscribe(table, filter, event_types, callback)

    def on_reconnect(self, callback: ReconnectCallback) -> Callable[[], None]:
        return self.socket.on_reconnect(callback)

    async def current_user(self) -> User | None:
        return await self.client.current_user()

    async def get_listing(self, listing_id: str) -> Listing | None:
        return await self.client.get_listing(listing_id)

    async def get_profile(self, user_id: str) -> Profile | None:
        return await self.client.get_profile(user_id)
