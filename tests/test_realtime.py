"""Tests for realtime event routing."""

import pytest

from marketchat.api.models import ChangeEvent, EventType
from marketchat.api.query import Filter
from marketchat.api.realtime import RealtimeSocket


def payload(row: dict, event_type: str = "INSERT", table: str = "messages", topic: str | None = None) -> dict:
    data = {"eventType": event_type, "table": table, "new": row}
    return {"topic": topic, "data": data} if topic else data


class TestRouting:
    """Test delivery of change events to subscriptions."""

    @pytest.mark.asyncio
    async def test_filter_and_event_type_respected(self) -> None:
        """Only matching rows of subscribed event types are delivered."""
        socket = RealtimeSocket("https://gateway.test", "anon-key")
        received: list[ChangeEvent] = []
        await socket.subscribe("messages", Filter.where(chat_id="c1"), [EventType.INSERT], received.append)

        await socket._handle_change(payload({"id": "m1", "chat_id": "c1"}))
        await socket._handle_change(payload({"id": "m2", "chat_id": "c2"}))
        await socket._handle_change(payload({"id": "m1", "chat_id": "c1"}, event_type="UPDATE"))
        await socket._handle_change(payload({"id": "x", "chat_id": "c1"}, table="chats"))

        assert [e.row["id"] for e in received] == ["m1"]

    @pytest.mark.asyncio
    async def test_topic_routes_to_one_subscription(self) -> None:
        """Events carrying a topic go to that subscription only."""
        socket = RealtimeSocket("https://gateway.test", "anon-key")
        first: list[ChangeEvent] = []
        second: list[ChangeEvent] = []
        sub = await socket.subscribe("messages", Filter(), [EventType.INSERT], first.append)
        await socket.subscribe("messages", Filter(), [EventType.INSERT], second.append)

        await socket._handle_change(payload({"id": "m1"}, topic=sub.topic))

        assert len(first) == 1
        assert second == []

    @pytest.mark.asyncio
    async def test_async_callbacks_awaited(self) -> None:
        """Coroutine callbacks run before routing returns."""
        socket = RealtimeSocket("https://gateway.test", "anon-key")
        received: list[str] = []

        async def callback(event: ChangeEvent) -> None:
            received.append(event.row["id"])

        await socket.subscribe("messages", Filter(), [EventType.INSERT], callback)
        await socket._handle_change(payload({"id": "m1"}))
        assert received == ["m1"]

    @pytest.mark.asyncio
    async def test_closed_subscription_receives_nothing(self) -> None:
        """Closing removes the route immediately."""
        socket = RealtimeSocket("https://gateway.test", "anon-key")
        received: list[ChangeEvent] = []
        sub = await socket.subscribe("messages", Filter(), [EventType.INSERT], received.append)

        await sub.close()
        await sub.close()
        await socket._handle_change(payload({"id": "m1"}))

        assert sub.is_closed
        assert received == []
        assert socket.active_topics == []

    @pytest.mark.asyncio
    async def test_failing_subscriber_isolated(self) -> None:
        """One broken callback does not stop delivery to others."""
        socket = RealtimeSocket("https://gateway.test", "anon-key")
        received: list[ChangeEvent] = []

        def broken(event: ChangeEvent) -> None:
            raise RuntimeError("boom")

        await socket.subscribe("messages", Filter(), [EventType.INSERT], broken)
        await socket.subscribe("messages", Filter(), [EventType.INSERT], received.append)
        await socket._handle_change(payload({"id": "m1"}))

        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_malformed_event_dropped(self) -> None:
        """Payloads that do not parse are ignored."""
        socket = RealtimeSocket("https://gateway.test", "anon-key")
        received: list[ChangeEvent] = []
        await socket.subscribe("messages", Filter(), [EventType.INSERT], received.append)

        await socket._handle_change({"eventType": "DELETE", "table": "messages", "new": {}})
        assert received == []

    @pytest.mark.asyncio
    async def test_join_payload(self) -> None:
        """The join request names the table, filter and events."""
        socket = RealtimeSocket("https://gateway.test", "anon-key")
        sub = await socket.subscribe(
            "messages", Filter.where(chat_id="c1"), [EventType.UPDATE, EventType.INSERT], lambda e: None
        )
        assert sub.join_payload() == {
            "topic": sub.topic,
            "table": "messages",
            "filter": {"chat_id": "eq.c1"},
            "events": ["INSERT", "UPDATE"],
        }
        assert sub.topic.startswith("realtime:messages:chat_id=eq.c1:")


class TestReconnect:
    """Test the reconnect hook."""

    @pytest.mark.asyncio
    async def test_callbacks_run_on_reconnect_only(self) -> None:
        """The first connect is not a reconnect; later ones run every callback."""
        socket = RealtimeSocket("https://gateway.test", "anon-key")
        calls: list[str] = []

        async def resync() -> None:
            calls.append("resync")

        remove = socket.on_reconnect(resync)
        socket.on_reconnect(lambda: calls.append("refresh"))

        await socket._handle_connect()
        assert socket.is_connected
        assert calls == []

        await socket._handle_connect()
        assert calls == ["resync", "refresh"]

        remove()
        await socket._handle_connect()
        assert calls == ["resync", "refresh", "refresh"]

    @pytest.mark.asyncio
    async def test_failing_callback_isolated(self) -> None:
        """One broken callback does not stop the others."""
        socket = RealtimeSocket("https://gateway.test", "anon-key")
        calls: list[str] = []

        def broken() -> None:
            raise RuntimeError("boom")

        socket.on_reconnect(broken)
        socket.on_reconnect(lambda: calls.append("refresh"))
        await socket._handle_connect()
        await socket._handle_connect()

        assert calls == ["refresh"]
