"""Realtime conversation engine for marketplace listings."""

__app_id__ = "marketchat"
__version__ = "0.1.0"
