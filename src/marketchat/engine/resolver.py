"""Maps a chat id or a listing id onto one canonical Chat."""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, TypeVar

from ..api.gateway import ListingLookup, PersistenceGateway
from ..api.models import CHATS_TABLE, Chat
from ..api.query import Filter
from ..errors import ChatUnavailableError, ConstraintViolation, ListingClosedError, SelfChatError
from ..utils.retry import retry_async

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ChatResolver:
    """Finds or creates the conversation for a "contact seller" action."""

    def __init__(
        self,
        gateway: PersistenceGateway,
        listings: ListingLookup,
        retry_attempts: int = 3,
        retry_base_delay: float = 0.5,
    ) -> None:
        self._gateway = gateway
        self._listings = listings
        self._retry_attempts = retry_attempts
        self._retry_base_delay = retry_base_delay

    async def _read(self, func: Callable[[], Awaitable[T]], label: str) -> T:
        return await retry_async(
            func, attempts=self._retry_attempts, base_delay=self._retry_base_delay, label=label
        )

    async def _chat_by_id(self, chat_id: str) -> Chat | None:
        rows = await self._read(
            lambda: self._gateway.query(CHATS_TABLE, Filter.where(id=chat_id)), "chat lookup"
        )
        return Chat(**rows[0]) if rows else None

    async def _chat_for_pair(self, listing_id: str, buyer_id: str) -> Chat | None:
        rows = await self._read(
            lambda: self._gateway.query(
                CHATS_TABLE, Filter.where(listing_id=listing_id, buyer_id=buyer_id)
            ),
            "chat pair lookup",
        )
        return Chat(**rows[0]) if rows else None

    async def resolve(self, identifier: str, current_user_id: str) -> Chat:
        """
        Resolve `identifier` to a chat the current user may open.

        Args:
            identifier: An existing chat id, or a listing id
            current_user_id: The signed-in user

        Raises:
            SelfChatError: The user owns the listing
            ListingClosedError: No chat exists yet and the listing is closed
            ChatUnavailableError: Neither a chat nor a listing matches
        """
        chat = await self._chat_by_id(identifier)
        if chat is not None:
            return chat

        listing = await self._read(lambda: self._listings.get_listing(identifier), "listing lookup")
        if listing is None:
            raise ChatUnavailableError(identifier)

        if listing.owner_id == current_user_id:
            raise SelfChatError(listing.id)

        existing = await self._chat_for_pair(listing.id, current_user_id)
        if existing is not None:
            return existing

        if listing.is_closed:
            raise ListingClosedError(listing.id, str(listing.status))

        record = {
            "listing_id": listing.id,
            "buyer_id": current_user_id,
            "seller_id": listing.owner_id,
            "buyer_unread_count": 0,
            "seller_unread_count": 0,
        }
        try:
            row = await self._gateway.insert(CHATS_TABLE, record)
        except ConstraintViolation:
            # Another resolve for the same pair won the insert
            logger.info("Chat for listing %s already created concurrently; re-reading", listing.id)
            existing = await self._chat_for_pair(listing.id, current_user_id)
            if existing is None:
                raise
            return existing

        chat = Chat(**row)
        logger.info("Created chat %s for listing %s", chat.id, listing.id)
        return chat
