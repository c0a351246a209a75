"""End-to-end tests for the session facade over the in-memory gateway."""

import pytest

from marketchat.api.models import CHATS_TABLE, MESSAGES_TABLE
from marketchat.engine.inbox import Inbox
from marketchat.errors import AuthenticationError, GatewayError, ListingClosedError, SelfChatError
from marketchat.session import ChatSession
from marketchat.utils.config import Config

from fakes import BUYER, SELLER, FakeIdentity, FakeNotifier, InMemoryGateway


@pytest.fixture
def config(tmp_path) -> Config:
    config = Config(config_dir=tmp_path, use_keyring=False)
    config.set("retry_base_delay", 0)
    config.set("badge_debounce_ms", 0)
    return config


def make_session(gateway: InMemoryGateway, user: str | None, notifier: FakeNotifier, config: Config) -> ChatSession:
    return ChatSession(gateway, FakeIdentity(user), gateway, gateway, notifier, config=config)


class TestSessionLifecycle:
    """Test start and stop."""

    @pytest.mark.asyncio
    async def test_requires_signed_in_user(self, gateway: InMemoryGateway, notifier: FakeNotifier, config: Config) -> None:
        """Starting without a user fails."""
        with pytest.raises(AuthenticationError):
            await make_session(gateway, None, notifier, config).start()

    @pytest.mark.asyncio
    async def test_stop_closes_every_channel(self, gateway: InMemoryGateway, notifier: FakeNotifier, config: Config) -> None:
        """Nothing stays subscribed after stop()."""
        gateway.seed_chat("c1", "listing-1", BUYER, SELLER)
        async with make_session(gateway, SELLER, notifier, config) as session:
            assert session.dispatcher is not None
            assert len(gateway.open_subscriptions()) > 0
        assert gateway.open_subscriptions() == []
        assert gateway.reconnect_callbacks == []

    @pytest.mark.asyncio
    async def test_failed_start_closes_opened_channels(
        self, gateway: InMemoryGateway, notifier: FakeNotifier, config: Config, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Channels opened before a start failure are closed again."""
        gateway.seed_chat("c1", "listing-1", BUYER, SELLER)

        async def refuse(self: Inbox) -> None:
            raise GatewayError("forbidden", status=403)

        monkeypatch.setattr(Inbox, "start", refuse)
        with pytest.raises(GatewayError):
            async with make_session(gateway, SELLER, notifier, config):
                pass

        assert gateway.subscriptions == []
        assert len(gateway.closed_subscriptions) > 0
        assert gateway.reconnect_callbacks == []

    @pytest.mark.asyncio
    async def test_owned_resources_closed(self, gateway: InMemoryGateway, notifier: FakeNotifier, config: Config) -> None:
        """Owned transports are closed on stop."""
        closed: list[str] = []

        class Transport:
            async def close(self) -> None:
                closed.append("transport")

        session = make_session(gateway, BUYER, notifier, config)
        session.own(Transport())
        await session.start()
        await session.stop()
        assert closed == ["transport"]


class TestConversation:
    """Test the scoped conversation."""

    @pytest.mark.asyncio
    async def test_view_cleared_on_error(self, gateway: InMemoryGateway, notifier: FakeNotifier, config: Config) -> None:
        """The open chat is cleared even when the block raises."""
        async with make_session(gateway, BUYER, notifier, config) as session:
            with pytest.raises(RuntimeError):
                async with session.conversation("listing-1") as stream:
                    assert session.view.open_chat_id == stream.chat_id
                    raise RuntimeError("ui crashed")
            assert session.view.open_chat_id is None
            assert all(s.callback != stream._on_event for s in gateway.open_subscriptions(MESSAGES_TABLE))
            assert stream.is_open is False

    @pytest.mark.asyncio
    async def test_terminal_resolver_errors_open_nothing(self, gateway: InMemoryGateway, notifier: FakeNotifier, config: Config) -> None:
        """Self-chat and sold listings are reported before anything opens."""
        gateway.add_listing("sold", SELLER, status="sold")
        async with make_session(gateway, SELLER, notifier, config) as session:
            with pytest.raises(SelfChatError):
                async with session.conversation("listing-1"):
                    pass
            assert session.view.open_chat_id is None
        async with make_session(gateway, BUYER, notifier, config) as session:
            with pytest.raises(ListingClosedError):
                async with session.conversation("sold"):
                    pass
        assert gateway.rows(CHATS_TABLE) == []


class TestBuyerSellerScenario:
    """A buyer contacts a seller and they exchange messages."""

    @pytest.mark.asyncio
    async def test_full_exchange(self, gateway: InMemoryGateway, config: Config) -> None:
        """Counters, badges and notifications follow the conversation."""
        buyer_notifier = FakeNotifier()
        seller_notifier = FakeNotifier()
        gateway.seed_chat("other", "listing-9", BUYER, "user-c")

        buyer = make_session(gateway, BUYER, buyer_notifier, config)
        seller = make_session(gateway, SELLER, seller_notifier, config)
        await buyer.start()
        await seller.start()
        assert buyer_notifier.requests == 1

        # The buyer contacts the listing; a chat is created with both counters at 0.
        async with buyer.conversation("listing-1") as buyer_stream:
            chat_id = buyer_stream.chat_id
            created = gateway.chat(chat_id)
            assert (created["buyer_unread_count"], created["seller_unread_count"]) == (0, 0)
            assert seller.dispatcher is not None
            assert chat_id in seller.dispatcher.roster

            result = await buyer_stream.send("Is this available?")
            assert result.ok
            assert [m.text for m in buyer_stream.messages] == ["Is this available?"]

        stored = gateway.chat(chat_id)
        assert stored["seller_unread_count"] == 1
        assert stored["buyer_unread_count"] == 0
        assert seller_notifier.shown == [("New message from Alice", "Is this available?", chat_id)]
        assert buyer_notifier.shown == []

        assert seller.badge is not None
        await seller.badge.flush()
        assert seller.badge.value == 1

        # The buyer is looking at a different chat, app in front.
        async with buyer.conversation("other"):
            assert buyer.view.open_chat_id == "other"

            async with seller.conversation(chat_id) as seller_stream:
                assert gateway.chat(chat_id)["seller_unread_count"] == 0
                assert gateway.chat(chat_id)["buyer_unread_count"] == 0
                await seller.badge.flush()
                assert seller.badge.value == 0

                reply = await seller_stream.send("Yes, still available")
                assert reply.ok

            assert buyer_notifier.tags == [chat_id]
            assert gateway.chat(chat_id)["buyer_unread_count"] == 1

        # With the chat itself open and focused, the buyer is not notified.
        async with buyer.conversation(chat_id) as buyer_stream:
            assert gateway.chat(chat_id)["buyer_unread_count"] == 0
            async with seller.conversation(chat_id) as seller_stream:
                await seller_stream.send("Pickup on Saturday?")
            assert buyer_notifier.tags == [chat_id]
            assert [m.text for m in buyer_stream.messages][-1] == "Pickup on Saturday?"

            buyer.set_foreground(False)
            async with seller.conversation(chat_id) as seller_stream:
                await seller_stream.send("Let me know")
            assert buyer_notifier.tags == [chat_id, chat_id]

        await buyer.stop()
        await seller.stop()
        assert gateway.open_subscriptions() == []
