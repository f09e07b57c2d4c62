"""Pytest configuration and fixtures for Agent Bridge tests."""

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from agentbridge.bridge import Bridge
from agentbridge.broker import create_app
from agentbridge.contracts import ContractStore
from agentbridge.events import EventBroadcaster
from agentbridge.locks import LockRegistry
from agentbridge.messages import MessageStore


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def events() -> EventBroadcaster:
    return EventBroadcaster()


@pytest.fixture
def contracts_path(tmp_path: Path) -> Path:
    """Temporary location for the contracts snapshot."""
    return tmp_path / "data" / "contracts.json"


@pytest.fixture
def contract_store(contracts_path: Path, clock: FakeClock):
    """Contract store that only writes when flushed explicitly."""
    store = ContractStore(path=contracts_path, debounce_seconds=60.0, clock=clock)
    yield store
    store._writer.cancel()


@pytest.fixture
def bridge(contract_store: ContractStore, events: EventBroadcaster, clock: FakeClock) -> Bridge:
    return Bridge(
        contracts=contract_store,
        messages=MessageStore(events=events, clock=clock),
        locks=LockRegistry(events=events, clock=clock),
        events=events,
    )


@pytest.fixture
def client(bridge: Bridge) -> TestClient:
    return TestClient(create_app(bridge))
