"""Gateway models, contracts and remote adapters."""

from .client import GatewayClient
from .gateway import PermissionState, RemoteGateway, Subscription
from .models import ChangeEvent, Chat, EventType, Listing, ListingStatus, Message, Profile, User
from .query import Filter, Order
from .realtime import RealtimeSocket

__all__ = [
    "GatewayClient",
    "RealtimeSocket",
    "RemoteGateway",
    "Subscription",
    "PermissionState",
    "ChangeEvent",
    "Chat",
    "EventType",
    "Listing",
    "ListingStatus",
    "Message",
    "Profile",
    "User",
    "Filter",
    "Order",
]
