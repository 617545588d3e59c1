# tests/test_operation_runner.py

from __future__ import annotations

import asyncio

import pytest

from packages.samterminal_core.exceptions import (
    ExecutionError,
    NotFoundError,
    OperationTimeoutError,
    RetryExhaustedError,
    ValidationError,
)
from packages.samterminal_core.operation_runner import (
    AsyncNodeStatus,
    AsyncOperation,
    RetryPolicy,
    cancel_async_node,
    create_async_node,
    create_async_operation,
    execute_async_node,
    retry,
)

from fakes import CallCounter


@pytest.mark.asyncio
async def test_concurrent_run_by_id_executes_once(runner) -> None:
    work = CallCounter("shared", delay=0.05)
    op_id = runner.register(create_async_operation(work, name="fetch"))

    first, second = await asyncio.gather(runner.run_by_id(op_id), runner.run_by_id(op_id))

    assert first == second == "shared"
    assert work.calls == 1
    assert not runner.is_running(op_id)


@pytest.mark.asyncio
async def test_run_by_id_starts_fresh_after_completion(runner) -> None:
    work = CallCounter(1, 2)
    op_id = runner.register(AsyncOperation(execute=work))

    assert await runner.run_by_id(op_id) == 1
    assert await runner.run_by_id(op_id) == 2


@pytest.mark.asyncio
async def test_run_by_id_unknown_id(runner) -> None:
    with pytest.raises(NotFoundError):
        await runner.run_by_id("op_missing")


@pytest.mark.asyncio
async def test_always_failing_operation_is_attempted_max_attempts_times(runner) -> None:
    work = CallCounter(RuntimeError("boom"))
    op = AsyncOperation(execute=work, name="flaky", retry=RetryPolicy(max_attempts=3, delay=0))

    with pytest.raises(RetryExhaustedError) as info:
        await runner.run(op)

    assert work.calls == 3
    assert info.value.attempts == 3
    assert str(info.value.last_error) == "boom"
    assert info.value.__cause__ is info.value.last_error


@pytest.mark.asyncio
async def test_single_attempt_failure_propagates_unwrapped(runner) -> None:
    with pytest.raises(KeyError):
        await runner.run(AsyncOperation(execute=CallCounter(KeyError("k"))))


@pytest.mark.asyncio
async def test_retry_recovers_after_transient_failures() -> None:
    work = CallCounter(RuntimeError("1"), RuntimeError("2"), "ok")

    assert await retry(work, RetryPolicy(max_attempts=3, delay=0)) == "ok"
    assert work.calls == 3


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [NotFoundError("Action", "x:y"), ValidationError("bad input")])
async def test_caller_errors_are_never_retried(error) -> None:
    work = CallCounter(error)

    with pytest.raises(type(error)):
        await retry(work, RetryPolicy(max_attempts=5, delay=0))
    assert work.calls == 1


@pytest.mark.asyncio
async def test_timeout_names_operation_and_leaves_work_running(runner) -> None:
    finished = asyncio.Event()

    async def slow():
        await asyncio.sleep(0.1)
        finished.set()
        return "late"

    with pytest.raises(OperationTimeoutError) as info:
        await runner.run(AsyncOperation(execute=slow, name="slow-op", timeout=0.02))

    assert info.value.operation_name == "slow-op"
    assert "slow-op" in str(info.value)
    await asyncio.wait_for(finished.wait(), 1.0)


@pytest.mark.asyncio
async def test_hooks_receive_result_or_normalized_error(runner) -> None:
    seen = []
    ok = AsyncOperation(
        execute=lambda: 42,
        on_success=lambda value: seen.append(("success", value)),
        on_finally=lambda: seen.append(("finally", None)),
    )
    bad = AsyncOperation(
        execute=CallCounter(RuntimeError("nope")),
        on_error=lambda err: seen.append(("error", type(err).__name__, str(err))),
    )

    assert await runner.run(ok) == 42
    with pytest.raises(RuntimeError):
        await runner.run(bad)

    assert seen == [("success", 42), ("finally", None), ("error", "ExecutionError", "nope")]


@pytest.mark.asyncio
async def test_failing_hook_does_not_change_outcome(runner) -> None:
    def broken(_):
        raise RuntimeError("hook bug")

    assert await runner.run(AsyncOperation(execute=lambda: "v", on_success=broken)) == "v"


@pytest.mark.asyncio
async def test_run_parallel_keeps_submission_order(runner) -> None:
    ops = [
        AsyncOperation(execute=CallCounter("a", delay=0.03)),
        AsyncOperation(execute=CallCounter("b", delay=0.01)),
        AsyncOperation(execute=CallCounter("c")),
    ]

    assert await runner.run_parallel(ops) == ["a", "b", "c"]


@pytest.mark.asyncio
async def test_run_parallel_first_failure_wins_and_others_finish(runner) -> None:
    survivor = CallCounter("done", delay=0.05)
    ops = [AsyncOperation(execute=CallCounter(RuntimeError("fail"))), AsyncOperation(execute=survivor)]

    with pytest.raises(RuntimeError, match="fail"):
        await runner.run_parallel(ops)

    await asyncio.sleep(0.1)
    assert survivor.calls == 1


@pytest.mark.asyncio
async def test_run_sequence_stops_at_first_failure(runner) -> None:
    never = CallCounter("c")
    ops = [
        AsyncOperation(execute=CallCounter("a")),
        AsyncOperation(execute=CallCounter(RuntimeError("b"))),
        AsyncOperation(execute=never),
    ]

    with pytest.raises(RuntimeError, match="b"):
        await runner.run_sequence(ops)
    assert never.calls == 0


@pytest.mark.asyncio
async def test_run_with_concurrency_respects_limit_and_drops_failures(runner) -> None:
    active = 0
    peak = 0

    def unit(value):
        async def work():
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            if value == "bad":
                raise RuntimeError("bad item")
            return value
        return work

    values = ["a", "bad", "c", "d", "e"]
    ops = [AsyncOperation(execute=unit(v), name=f"item-{v}") for v in values]

    results = await runner.run_with_concurrency(ops, limit=2)

    assert results == ["a", "c", "d", "e"]
    assert peak == 2
    assert [op.name for op, _ in runner.last_batch_errors] == ["item-bad"]


@pytest.mark.asyncio
async def test_run_with_concurrency_rejects_non_positive_limit(runner) -> None:
    with pytest.raises(ValidationError):
        await runner.run_with_concurrency([], limit=0)


@pytest.mark.asyncio
async def test_async_node_lifecycle() -> None:
    node = create_async_node("double", lambda: 21 * 2)

    assert await execute_async_node(node) == 42
    assert node.status is AsyncNodeStatus.COMPLETED
    assert node.result == 42

    with pytest.raises(ExecutionError):
        await execute_async_node(node)
    assert cancel_async_node(node) is False


@pytest.mark.asyncio
async def test_async_node_cancelled_while_running_discards_result() -> None:
    node = create_async_node("slow", CallCounter("value", delay=0.05))
    running = asyncio.ensure_future(execute_async_node(node))
    await asyncio.sleep(0.01)

    assert cancel_async_node(node) is True
    with pytest.raises(ExecutionError):
        await running
    assert node.status is AsyncNodeStatus.CANCELLED
    assert node.result is None


@pytest.mark.asyncio
async def test_failed_node_records_normalized_error() -> None:
    node = create_async_node("broken", CallCounter(ValueError("bad")))

    with pytest.raises(ValueError):
        await execute_async_node(node)
    assert node.status is AsyncNodeStatus.FAILED
    assert isinstance(node.error, ExecutionError)
