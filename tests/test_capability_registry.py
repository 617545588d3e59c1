# tests/test_capability_registry.py

from __future__ import annotations

import asyncio

import pytest

from packages.samterminal_core.capabilities import Action, ActionResult, action, evaluator, provider
from packages.samterminal_core.capability_registry import CapabilityKind, qualify_name
from packages.samterminal_core.exceptions import (
    CapabilityExecutionError,
    DuplicateRegistrationError,
    NotFoundError,
    OperationTimeoutError,
    RetryExhaustedError,
    ValidationError,
)
from packages.samterminal_core.operation_runner import RetryPolicy

from fakes import EventRecorder, make_token_plugin


def _noop_action(name: str):
    @action(name)
    async def handler(ctx):
        return {"success": True, "data": ctx.plugin_name}
    return handler


class Swap(Action):
    name = "swap"

    async def execute(self, context):
        return ActionResult(success=True, data={"swapped": context.input})


def test_qualified_names() -> None:
    assert qualify_name("getPrice", "tokendata") == "tokendata:getPrice"
    assert qualify_name("other:verb", "tokendata") == "other:verb"


def test_duplicate_registration_fails_on_second_call(registry) -> None:
    assert registry.register_action(_noop_action("getPrice"), "tokendata") == "tokendata:getPrice"

    with pytest.raises(DuplicateRegistrationError):
        registry.register_action(_noop_action("getPrice"), "tokendata")
    assert len(registry) == 1


def test_unregister_plugin_leaves_other_plugins_intact(registry) -> None:
    registry.register_action(_noop_action("getPrice"), "tokendata")
    registry.register_action(_noop_action("getBalance"), "tokendata")
    registry.register_action(_noop_action("swap"), "dex")

    removed = registry.unregister_plugin("tokendata")

    assert sorted(removed) == ["tokendata:getBalance", "tokendata:getPrice"]
    assert registry.list_names() == ["dex:swap"]
    assert registry.get_action("dex:swap") is not None


def test_batch_registration_is_all_or_nothing(registry) -> None:
    registry.register_action(_noop_action("taken"), "other")

    with pytest.raises(DuplicateRegistrationError):
        registry.register_plugin_capabilities(
            "newcomer",
            actions=[_noop_action("fresh"), _noop_action("other:taken")],
        )
    assert registry.list_names() == ["other:taken"]

    with pytest.raises(ValidationError):
        registry.register_plugin_capabilities("broken", actions=[_noop_action("ok"), object()])
    assert registry.list_names() == ["other:taken"]


def test_lookups_are_kind_checked(registry) -> None:
    plugin = make_token_plugin()
    registry.register_plugin_capabilities(
        "tokendata", actions=plugin.actions, providers=plugin.providers, evaluators=plugin.evaluators
    )

    assert registry.get_action("tokendata:prices") is None
    assert registry.get_provider("tokendata:prices") is not None
    assert registry.list_names(CapabilityKind.EVALUATOR) == ["tokendata:isExpensive"]
    assert registry.get_stats() == {"actions": 1, "providers": 1, "evaluators": 1, "plugins": 1}


@pytest.mark.asyncio
async def test_execute_action_returns_data_and_publishes_events(registry, dispatcher, event_bus) -> None:
    recorder = await EventRecorder().attach(event_bus, "action:*")
    registry.register_plugin_capabilities("tokendata", actions=make_token_plugin().actions)

    data = await dispatcher.execute_action("tokendata:getPrice", {"symbol": "SOL"})

    assert data == {"symbol": "SOL", "price": 150.0}
    assert recorder.names() == ["action:before", "action:after"]


@pytest.mark.asyncio
async def test_unknown_capability_raises_not_found(dispatcher) -> None:
    with pytest.raises(NotFoundError):
        await dispatcher.execute_action("nobody:nothing")
    with pytest.raises(NotFoundError):
        await dispatcher.get_data("nobody:nothing")
    with pytest.raises(NotFoundError):
        await dispatcher.evaluate("nobody:nothing")


@pytest.mark.asyncio
async def test_failed_validation_raises_before_execution(registry, dispatcher, event_bus) -> None:
    recorder = await EventRecorder().attach(event_bus, "action:*")
    registry.register_plugin_capabilities("tokendata", actions=make_token_plugin().actions)

    with pytest.raises(ValidationError):
        await dispatcher.execute_action("tokendata:getPrice", {"ticker": "SOL"})
    assert recorder.names() == []


@pytest.mark.asyncio
async def test_reported_failure_becomes_capability_error(registry, dispatcher, event_bus) -> None:
    recorder = await EventRecorder().attach(event_bus, "action:*")
    registry.register_plugin_capabilities("tokendata", actions=make_token_plugin().actions)

    with pytest.raises(CapabilityExecutionError, match="unknown symbol DOGE") as info:
        await dispatcher.execute_action("tokendata:getPrice", {"symbol": "DOGE"})

    assert info.value.capability_name == "tokendata:getPrice"
    assert recorder.names() == ["action:before", "action:error"]


@pytest.mark.asyncio
async def test_raised_handler_error_is_wrapped_with_cause(registry, dispatcher) -> None:
    @action("explode")
    async def explode(ctx):
        raise ZeroDivisionError("division by zero")

    registry.register_action(explode, "lab")

    with pytest.raises(CapabilityExecutionError) as info:
        await dispatcher.execute_action("lab:explode")
    assert isinstance(info.value.__cause__, ZeroDivisionError)


@pytest.mark.asyncio
async def test_context_carries_core_and_caller_fields(registry, dispatcher) -> None:
    seen = {}

    @action("inspect")
    async def inspect_ctx(ctx):
        seen.update(plugin=ctx.plugin_name, core=ctx.core, agent=ctx.agent_id, chain=ctx.chain_id)
        return None

    registry.register_action(inspect_ctx, "inspector")
    registry.register_action(Swap(), "dex")

    assert await dispatcher.execute_action("inspector:inspect", context={"agent_id": "agent_1", "chain_id": "solana"}) is None
    assert seen == {"plugin": "inspector", "core": "core-sentinel", "agent": "agent_1", "chain": "solana"}
    assert await dispatcher.execute_action("dex:swap", "SOL->USDC") == {"swapped": "SOL->USDC"}


@pytest.mark.asyncio
async def test_provider_and_evaluator_dispatch(registry, dispatcher, event_bus) -> None:
    recorder = await EventRecorder().attach(event_bus, "provider:*")
    plugin = make_token_plugin(prices={"SOL": 150.0, "BONK": 0.00002})
    registry.register_plugin_capabilities(
        "tokendata", providers=plugin.providers, evaluators=plugin.evaluators
    )

    assert await dispatcher.get_data("tokendata:prices") == {"SOL": 150.0, "BONK": 0.00002}
    assert recorder.names() == ["provider:before", "provider:after"]
    assert await dispatcher.evaluate("tokendata:isExpensive", "SOL") is True
    assert await dispatcher.evaluate("tokendata:isExpensive", "BONK") is False


@pytest.mark.asyncio
async def test_provider_reported_failure(registry, dispatcher) -> None:
    @provider("down")
    async def down(ctx):
        return {"success": False, "error": "rate limited"}

    @evaluator("maybe")
    async def maybe(ctx):
        raise RuntimeError("no verdict")

    registry.register_provider(down, "feed")
    registry.register_evaluator(maybe, "feed")

    with pytest.raises(CapabilityExecutionError, match="rate limited"):
        await dispatcher.get_data("feed:down")
    with pytest.raises(CapabilityExecutionError, match="no verdict"):
        await dispatcher.evaluate("feed:maybe")


@pytest.mark.asyncio
async def test_action_retry_succeeds_on_third_attempt(registry, dispatcher, event_bus) -> None:
    recorder = await EventRecorder().attach(event_bus, "action:*")
    attempts = []

    @action("flaky")
    async def flaky(ctx):
        attempts.append(ctx.input)
        if len(attempts) < 3:
            return {"success": False, "error": "rpc busy"}
        return {"success": True, "data": "filled"}

    registry.register_action(flaky, "dex")

    result = await dispatcher.execute_action("dex:flaky", "order-1", retry=RetryPolicy(max_attempts=3))

    assert result == "filled"
    assert attempts == ["order-1"] * 3
    assert recorder.names() == ["action:before", "action:after"]


@pytest.mark.asyncio
async def test_action_retry_exhausted_wraps_last_failure(registry, dispatcher) -> None:
    @action("down")
    async def down(ctx):
        raise ConnectionError("node offline")

    registry.register_action(down, "dex")

    with pytest.raises(RetryExhaustedError) as info:
        await dispatcher.execute_action("dex:down", retry=RetryPolicy(max_attempts=2))
    assert info.value.attempts == 2
    assert isinstance(info.value.last_error, CapabilityExecutionError)


@pytest.mark.asyncio
async def test_unknown_name_is_looked_up_once_despite_retry(registry, dispatcher, monkeypatch) -> None:
    lookups = []
    original = registry.get_action

    def counting_get_action(name):
        lookups.append(name)
        return original(name)

    monkeypatch.setattr(registry, "get_action", counting_get_action)

    with pytest.raises(NotFoundError):
        await dispatcher.execute_action("nobody:nothing", retry=RetryPolicy(max_attempts=5, delay=0.01))
    assert lookups == ["nobody:nothing"]


@pytest.mark.asyncio
async def test_per_call_timeout_and_provider_retry(registry, dispatcher) -> None:
    calls = []

    @action("slow")
    async def slow(ctx):
        await asyncio.sleep(0.5)
        return None

    @provider("feed")
    async def feed(ctx):
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("stale")
        return {"SOL": 150.0}

    registry.register_action(slow, "lab")
    registry.register_provider(feed, "prices")

    with pytest.raises(OperationTimeoutError, match="lab:slow"):
        await dispatcher.execute_action("lab:slow", timeout=0.01)
    assert await dispatcher.get_data("prices:feed", retry=RetryPolicy(max_attempts=2)) == {"SOL": 150.0}
    assert len(calls) == 2
