"""Bounded in-memory cache of sender display names."""

from __future__ import annotations

from collections import OrderedDict
from typing import Awaitable, Callable


class SenderNameCache:
    """
    Maps sender id to display name for one session.

    Entries are never invalidated; display names are treated as immutable
    while a session lasts. When full, the least recently used entry goes.
    """

    def __init__(self, max_size: int = 256) -> None:
        self.max_size = max(1, max_size)
        self._names: OrderedDict[str, str] = OrderedDict()
        self.misses = 0

    def __len__(self) -> int:
        return len(self._names)

    def __contains__(self, sender_id: object) -> bool:
        return sender_id in self._names

    def peek(self, sender_id: str) -> str | None:
        return self._names.get(sender_id)

    def put(self, sender_id: str, name: str) -> None:
        self._names[sender_id] = name
        self._names.move_to_end(sender_id)
        while len(self._names) > self.max_size:
            self._names.popitem(last=False)

    async def get(self, sender_id: str, loader: Callable[[str], Awaitable[str | None]]) -> str | None:
        """
        Return the cached name, calling `loader` on a miss.

        A loader result of None is passed through without being cached.
        """
        name = self._names.get(sender_id)
        if name is not None:
            self._names.move_to_end(sender_id)
            return name
        self.misses += 1
        name = await loader(sender_id)
        if name is not None:
            self.put(sender_id, name)
        return name

    def clear(self) -> None:
        self._names.clear()
