"""Shared fixtures for the marketchat tests."""

import pytest

from marketchat.api.gateway import PermissionState

from fakes import BUYER, SELLER, FakeNotifier, InMemoryGateway


@pytest.fixture
def gateway() -> InMemoryGateway:
    """Gateway with one active listing owned by the seller and both profiles."""
    gw = InMemoryGateway()
    gw.add_listing("listing-1", SELLER)
    gw.add_profile(BUYER, "Alice")
    gw.add_profile(SELLER, "Bob")
    return gw


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier(state=PermissionState.GRANTED)


@pytest.fixture
def no_sleep(monkeypatch: pytest.MonkeyPatch) -> list[float]:
    """Skip retry backoff sleeps; returns the delays that were requested."""
    delays: list[float] = []

    async def fake_sleep(delay: float) -> None:
        delays.append(delay)

    monkeypatch.setattr("marketchat.utils.retry.asyncio.sleep", fake_sleep)
    return delays
