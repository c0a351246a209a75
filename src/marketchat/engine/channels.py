"""Subscribe/unsubscribe lifecycle for a set of realtime channels."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Hashable, Iterable, Mapping

from ..api.gateway import EventCallback, PersistenceGateway, Subscription
from ..api.models import EventType
from ..api.query import Filter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChannelSpec:
    """What to subscribe to when a channel key becomes required."""

    table: str
    filter: Filter
    event_types: tuple[EventType, ...]
    callback: EventCallback

    @classmethod
    def of(
        cls,
        table: str,
        filter: Filter,
        callback: EventCallback,
        event_types: Iterable[EventType] = (EventType.INSERT, EventType.UPDATE),
    ) -> ChannelSpec:
        return cls(table, filter, tuple(event_types), callback)


class RealtimeChannelManager:
    """
    Owns every subscription handle for one consumer.

    `reconcile()` diffs the required keys against the active ones: keys no
    longer required are closed, new keys are opened, keys in both are left
    alone. Reconciles run one at a time, so a key is never subscribed twice.
    `shutdown()` closes everything, including handles that a reconcile still
    in flight opens afterwards.
    """

    def __init__(self, gateway: PersistenceGateway, name: str = "channels") -> None:
        self._gateway = gateway
        self.name = name
        self._handles: dict[Hashable, Subscription] = {}
        self._lock = asyncio.Lock()
        self._shut_down = False

    @property
    def active_keys(self) -> frozenset[Hashable]:
        return frozenset(self._handles)

    @property
    def is_shut_down(self) -> bool:
        return self._shut_down

    def handle_for(self, key: Hashable) -> Subscription | None:
        return self._handles.get(key)

    async def reconcile(self, required: Mapping[Hashable, ChannelSpec]) -> None:
        """Make the active channel set equal to `required`."""
        async with self._lock:
            if self._shut_down:
                return

            for key in [k for k in self._handles if k not in required]:
                handle = self._handles.pop(key)
                await handle.close()
                logger.debug("[%s] closed channel %s", self.name, key)

            for key, spec in required.items():
                if key in self._handles:
                    continue
                if self._shut_down:
                    return
                handle = await self._gateway.subscribe(
                    spec.table, spec.filter, spec.event_types, spec.callback
                )
                if self._shut_down:
                    # shutdown() ran while we were subscribing
                    await handle.close()
                    return
                self._handles[key] = handle
                logger.debug("[%s] opened channel %s", self.name, key)

    async def shutdown(self) -> None:
        """Close every channel. Later reconciles are no-ops."""
        self._shut_down = True
        handles = list(self._handles.values())
        self._handles.clear()
        first_error: Exception | None = None
        for handle in handles:
            try:
                await handle.close()
            except Exception as e:
                logger.warning("[%s] error closing channel: %s", self.name, e)
                first_error = first_error or e
        if handles:
            logger.debug("[%s] shut down %d channel(s)", self.name, len(handles))
        if first_error is not None:
            raise first_error
