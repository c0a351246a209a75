"""Exception hierarchy shared by the gateway adapters and the chat engine."""

from __future__ import annotations


class MarketChatError(Exception):
    """Base exception for all marketchat errors."""


class GatewayError(MarketChatError):
    """A persistence gateway request failed."""

    def __init__(self, message: str, status: int = 0, code: str | None = None):
        super().__init__(message)
        self.status = status
        self.code = code


class TransientNetworkError(GatewayError):
    """Timed out or hit a retryable server condition."""
    pass


class ConstraintViolation(GatewayError):
    """An insert clashed with a uniqueness constraint."""
    pass


class AuthenticationError(GatewayError):
    """The gateway rejected our credentials."""
    pass


class SelfChatError(MarketChatError):
    """A listing owner tried to open a conversation on their own listing."""

    def __init__(self, listing_id: str):
        super().__init__(f"Cannot start a conversation on your own listing {listing_id}")
        self.listing_id = listing_id


class ListingClosedError(MarketChatError):
    """The listing no longer accepts new conversations."""

    def __init__(self, listing_id: str, status: str):
        super().__init__(f"Listing {listing_id} is {status}; no new conversations allowed")
        self.listing_id = listing_id
        self.status = status


class ChatUnavailableError(MarketChatError):
    """The identifier matches neither a chat nor a listing."""

    def __init__(self, identifier: str):
        super().__init__(f"No chat or listing found for {identifier!r}")
        self.identifier = identifier


class ValidationError(MarketChatError):
    """Message content failed validation."""
    pass


class PermissionDenied(MarketChatError):
    """Notification permission has not been granted."""
    pass
