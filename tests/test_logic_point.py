# tests/test_logic_point.py

from __future__ import annotations

import asyncio

import pytest

from packages.samterminal_core.exceptions import NoBranchFoundError, NotFoundError, OperationTimeoutError
from packages.samterminal_core.logic_point import (
    LogicPointConfig,
    LogicPointContext,
    LogicPointManager,
    LogicPointResult,
    LogicPointType,
    branch_key,
    create_checkpoint,
    create_decision_point,
    create_entry_point,
)

from fakes import EventRecorder


@pytest.fixture()
def manager(runner, event_bus) -> LogicPointManager:
    return LogicPointManager(runner, event_bus)


def test_registry_queries(manager) -> None:
    entry = create_entry_point(manager, "start", lambda ctx: ctx.input)
    check = create_checkpoint(manager, "verify", lambda ctx: True)
    manager.create("act", "action", lambda ctx: None, description="does things")

    assert manager.get(entry.id) is entry
    assert manager.get_by_name("verify") is check
    assert manager.get_by_type(LogicPointType.ACTION)[0].description == "does things"
    assert manager.size == 3

    assert manager.remove(entry.id) is True
    assert manager.remove(entry.id) is False
    manager.clear()
    assert manager.get_all() == []


@pytest.mark.asyncio
async def test_handler_results_are_coerced(manager) -> None:
    plain = manager.create("plain", "action", lambda ctx: ctx.input * 2)
    shaped = manager.create("shaped", "action", lambda ctx: {"output": "x", "nextPoints": ["b"], "skip": True})

    assert await manager.execute(plain.id, {"input": 21}) == LogicPointResult(output=42)
    result = await manager.execute(shaped.id)
    assert result.next_points == ["b"]
    assert result.skip is True


@pytest.mark.asyncio
async def test_unknown_point_raises_not_found(manager) -> None:
    with pytest.raises(NotFoundError):
        await manager.execute("lp_missing")


@pytest.mark.asyncio
async def test_sequence_stops_after_skip(manager) -> None:
    calls = []

    def step(label, skip=False):
        def handler(ctx):
            calls.append((label, ctx.input))
            return LogicPointResult(output=f"{ctx.input}{label}", skip=skip)
        return handler

    a = manager.create("A", "action", step("a"))
    b = manager.create("B", "checkpoint", step("b", skip=True))
    c = manager.create("C", "exit", step("c"))

    results = await manager.execute_sequence([a.id, b.id, c.id], LogicPointContext(input=">"))

    assert [r.output for r in results] == [">a", ">ab"]
    assert calls == [("a", ">"), ("b", ">a")]


@pytest.mark.asyncio
async def test_sequence_keeps_metadata_constant(manager) -> None:
    seen = []

    def record(ctx):
        seen.append(dict(ctx.metadata))
        return ctx.input + 1

    ids = [manager.create(f"n{i}", "action", record).id for i in range(3)]

    results = await manager.execute_sequence(ids, {"input": 0, "metadata": {"run": "r1"}})

    assert results[-1].output == 3
    assert seen == [{"run": "r1"}] * 3


@pytest.mark.asyncio
async def test_decision_routes_by_output_then_default(manager) -> None:
    routed = []

    def branch(label):
        def handler(ctx):
            routed.append((label, ctx.input, ctx.metadata.get("decisionResult")))
            return label
        return handler

    is_large = create_decision_point(manager, "is-large", lambda ctx: ctx.input > 100)
    yes = manager.create("yes", "action", branch("yes"))
    fallback = manager.create("other", "action", branch("other"))

    big = await manager.execute_decision(is_large.id, {"input": 500}, {"true": yes.id, "default": fallback.id})
    small = await manager.execute_decision(is_large.id, {"input": 5}, {"true": yes.id, "default": fallback.id})

    assert (big.output, small.output) == ("yes", "other")
    assert routed == [("yes", 500, True), ("other", 5, False)]


@pytest.mark.asyncio
async def test_decision_without_matching_branch(manager) -> None:
    pick = create_decision_point(manager, "pick", lambda ctx: "blue")
    red = manager.create("red", "action", lambda ctx: "r")

    with pytest.raises(NoBranchFoundError) as info:
        await manager.execute_decision(pick.id, None, {"red": red.id})
    assert info.value.output == "blue"


def test_branch_keys() -> None:
    assert branch_key(True) == "true"
    assert branch_key(False) == "false"
    assert branch_key(None) == "null"
    assert branch_key(2.0) == "2"
    assert branch_key(2.5) == "2.5"
    assert branch_key("up") == "up"


@pytest.mark.asyncio
async def test_retry_until_success_invokes_handler_three_times(manager) -> None:
    attempts = 0

    def flaky(ctx):
        nonlocal attempts
        attempts += 1
        if attempts < 3:
            raise RuntimeError(f"attempt {attempts}")
        return "recovered"

    point = manager.create(
        "flaky", "action", flaky, config={"retryOnFailure": True, "maxRetries": 3, "retryDelay": 0}
    )

    result = await manager.execute(point.id)

    assert result.output == "recovered"
    assert attempts == 3


@pytest.mark.asyncio
async def test_exhausted_retries_surface_the_original_error(manager) -> None:
    point = manager.create(
        "doomed", "action", lambda ctx: 1 / 0,
        config=LogicPointConfig(retry_on_failure=True, max_retries=2, retry_delay=0),
    )

    with pytest.raises(ZeroDivisionError):
        await manager.execute(point.id)


@pytest.mark.asyncio
async def test_fallback_replaces_failure(manager, event_bus) -> None:
    recorder = await EventRecorder().attach(event_bus, "flow:*")
    point = manager.create("guarded", "action", lambda ctx: 1 / 0, config={"fallback": None})

    result = await manager.execute(point.id)

    assert result == LogicPointResult(output=None)
    assert recorder.names() == ["flow:point:start", "flow:point:error"]


@pytest.mark.asyncio
async def test_timeout_applies_per_point(manager) -> None:
    async def slow(ctx):
        await asyncio.sleep(0.2)

    point = manager.create("slow", "action", slow, config={"timeout": 0.02})

    with pytest.raises(OperationTimeoutError):
        await manager.execute(point.id)


def test_unknown_config_keys_are_rejected() -> None:
    with pytest.raises(ValueError):
        LogicPointConfig.from_dict({"retries": 3})
