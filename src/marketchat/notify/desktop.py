"""Freedesktop notifications over D-Bus (requires the `desktop` extra)."""

from __future__ import annotations

import asyncio
import logging

import gi

gi.require_version("Gio", "2.0")

from gi.repository import Gio, GLib

from ..api.gateway import PermissionState
from ..errors import PermissionDenied

logger = logging.getLogger(__name__)

BUS_NAME = "org.freedesktop.Notifications"
OBJECT_PATH = "/org/freedesktop/Notifications"


class DesktopNotifier:
    """
    Sends notifications to the session's notification daemon.

    Works with mako, dunst, swaync, GNOME Shell and other daemons that speak
    org.freedesktop.Notifications. The daemon has no permission model, so
    "granted" means a daemon answered; "denied" means none is running.
    Notifications sharing a tag replace each other instead of stacking.
    """

    def __init__(
        self,
        app_name: str = "Marketplace",
        icon_name: str = "mail-message-new-symbolic",
        desktop_entry: str | None = None,
        expire_timeout_ms: int = 5000,
    ) -> None:
        self.app_name = app_name
        self.icon_name = icon_name
        self.desktop_entry = desktop_entry
        self.expire_timeout_ms = expire_timeout_ms
        self._state = PermissionState.DEFAULT
        self._ids_by_tag: dict[str, int] = {}
        self._bus: Gio.DBusConnection | None = None

    def _get_bus(self) -> Gio.DBusConnection:
        if self._bus is None:
            self._bus = Gio.bus_get_sync(Gio.BusType.SESSION, None)
        return self._bus

    def _probe(self) -> PermissionState:
        try:
            self._get_bus().call_sync(
                BUS_NAME,
                OBJECT_PATH,
                BUS_NAME,
                "GetServerInformation",
                None,
                GLib.VariantType("(ssss)"),
                Gio.DBusCallFlags.NONE,
                2000,
                None,
            )
        except GLib.Error as e:
            logger.info("No notification daemon available: %s", e.message)
            return PermissionState.DENIED
        return PermissionState.GRANTED

    async def request_permission(self) -> PermissionState:
        self._state = await asyncio.to_thread(self._probe)
        return self._state

    def permission_state(self) -> PermissionState:
        return self._state

    def _notify(self, title: str, body: str, tag: str) -> int:
        hints = {
            "urgency": GLib.Variant("y", 1),  # Normal urgency
            "category": GLib.Variant("s", "im.received"),
        }
        if self.desktop_entry:
            hints["desktop-entry"] = GLib.Variant("s", self.desktop_entry)

        result = self._get_bus().call_sync(
            BUS_NAME,
            OBJECT_PATH,
            BUS_NAME,
            "Notify",
            GLib.Variant(
                "(susssasa{sv}i)",
                (
                    self.app_name,
                    self._ids_by_tag.get(tag, 0),  # replaces_id
                    self.icon_name,
                    title,
                    body,
                    [],
                    hints,
                    self.expire_timeout_ms,
                ),
            ),
            GLib.VariantType("(u)"),
            Gio.DBusCallFlags.NONE,
            -1,
            None,
        )
        return result.unpack()[0]

    async def show(self, title: str, body: str, tag: str) -> None:
        """Show a notification, replacing the previous one with the same tag."""
        if self._state != PermissionState.GRANTED:
            raise PermissionDenied("Notification daemon unavailable")
        try:
            notification_id = await asyncio.to_thread(self._notify, title, body, tag)
        except GLib.Error as e:
            logger.warning("Failed to send notification: %s", e.message)
            return
        self._ids_by_tag[tag] = notification_id
