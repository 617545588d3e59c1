# tests/conftest.py

from __future__ import annotations

import pytest

from packages.samterminal_core.capability_registry import CapabilityDispatcher, CapabilityRegistry
from packages.samterminal_core.event_bus import EventBus
from packages.samterminal_core.operation_runner import AsyncOperationRunner

from fakes import FakeClock


@pytest.fixture()
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture()
def runner() -> AsyncOperationRunner:
    return AsyncOperationRunner()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def registry() -> CapabilityRegistry:
    return CapabilityRegistry()


@pytest.fixture()
def dispatcher(registry: CapabilityRegistry, event_bus: EventBus) -> CapabilityDispatcher:
    """
    Dispatcher wired to the shared test bus, with a sentinel core object
    so handlers can assert that the runtime reference is injected.
    """
    return CapabilityDispatcher(registry, event_bus, core="core-sentinel")
