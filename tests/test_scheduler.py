# tests/test_scheduler.py

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from packages.samterminal_core.exceptions import NotFoundError, ValidationError
from packages.samterminal_core.scheduler import Scheduler, expand_cron, next_fire_time, validate_cron
from packages.samterminal_core.task_manager import TaskManager

from fakes import CallCounter, EventRecorder


@pytest.fixture()
def scheduler(clock, event_bus) -> Scheduler:
    return Scheduler(task_manager=TaskManager(event_bus=event_bus), event_bus=event_bus, clock=clock)


def test_next_fire_time_is_a_pure_cron_function() -> None:
    noon = datetime(2024, 1, 1, 12, 7, tzinfo=timezone.utc)

    assert next_fire_time(noon, "*/15 * * * *") == datetime(2024, 1, 1, 12, 15, tzinfo=timezone.utc)
    assert next_fire_time(noon, "@hourly") == datetime(2024, 1, 1, 13, 0, tzinfo=timezone.utc)
    assert next_fire_time(noon, "@daily") == datetime(2024, 1, 2, 0, 0, tzinfo=timezone.utc)
    assert next_fire_time(noon, "@yearly") == datetime(2025, 1, 1, 0, 0, tzinfo=timezone.utc)


def test_cron_presets_expand_to_five_fields() -> None:
    assert expand_cron("@weekly") == "0 0 * * 0"
    assert expand_cron("@minutely") == "* * * * *"
    assert expand_cron(" 5 4 * * * ") == "5 4 * * *"


@pytest.mark.parametrize("expr", ["not a cron", "* * * *", "61 * * * *", "@fortnightly"])
def test_invalid_cron_is_rejected(expr: str) -> None:
    with pytest.raises(ValidationError):
        validate_cron(expr)


@pytest.mark.parametrize(
    "kwargs",
    [
        {},
        {"cron": "@hourly", "interval": 1000},
        {"interval": 0},
        {"interval": -5},
        {"interval": 1.5},
    ],
)
def test_schedule_requires_exactly_one_valid_trigger(scheduler, kwargs) -> None:
    with pytest.raises(ValidationError):
        scheduler.schedule(lambda: None, name="bad", **kwargs)
    assert scheduler.get_all() == []


@pytest.mark.asyncio
async def test_interval_task_fires_once_after_interval_elapses(scheduler, clock) -> None:
    work = CallCounter("price")
    task_id = scheduler.schedule(work, name="price-check", interval=1000, action="tokendata:getPrice")
    task = scheduler.get(task_id)

    assert task.enabled is True
    assert task.next_run == clock.now + timedelta(milliseconds=1000)
    assert await scheduler.tick() == 0

    clock.advance(milliseconds=1000)
    assert await scheduler.tick() == 1

    assert work.calls == 1
    assert task.run_count == 1
    assert task.last_run == clock.now
    assert task.next_run == clock.now + timedelta(milliseconds=1000)


@pytest.mark.asyncio
@pytest.mark.parametrize("outcome", ["fine", RuntimeError("broken")])
async def test_run_once_is_disabled_after_first_firing(scheduler, clock, outcome) -> None:
    task_id = scheduler.schedule(CallCounter(outcome), name="once", interval=10, run_once=True)

    clock.advance(milliseconds=10)
    await scheduler.tick()
    clock.advance(milliseconds=10)
    await scheduler.tick()

    task = scheduler.get(task_id)
    assert task.enabled is False
    assert task.next_run is None
    assert task.run_count + task.error_count == 1


@pytest.mark.asyncio
async def test_failed_firing_is_counted_and_never_escapes(scheduler, clock, event_bus) -> None:
    recorder = await EventRecorder().attach(event_bus, "scheduler:*")
    task_id = scheduler.schedule(CallCounter(RuntimeError("rpc down")), name="flaky", interval=100)

    clock.advance(milliseconds=100)
    assert await scheduler.tick() == 1

    task = scheduler.get(task_id)
    assert task.error_count == 1
    assert task.run_count == 0
    assert task.last_error == "rpc down"
    assert recorder.payloads("scheduler:fired") == [
        {"scheduled_task_id": task_id, "name": "flaky", "success": False}
    ]


@pytest.mark.asyncio
async def test_cancelled_firing_is_counted_as_error(clock, event_bus) -> None:
    manager = TaskManager(event_bus=event_bus, max_concurrent=1)
    scheduler = Scheduler(task_manager=manager, event_bus=event_bus, clock=clock)
    gate = asyncio.Event()
    blocker = manager.enqueue(gate.wait, name="blocker")
    task_id = scheduler.schedule(CallCounter("never"), name="sweep", interval=1000, immediate=True)

    ticking = asyncio.ensure_future(scheduler.tick())
    await asyncio.sleep(0.01)
    [queued] = manager.get_pending()
    assert queued.name == "scheduled:sweep"
    assert await manager.cancel(queued.id) is True

    assert await asyncio.wait_for(ticking, 0.5) == 1
    task = scheduler.get(task_id)
    assert task.run_count == 0
    assert task.error_count == 1
    assert "was cancelled" in task.last_error

    gate.set()
    await blocker


@pytest.mark.asyncio
async def test_immediate_task_fires_on_next_tick(scheduler) -> None:
    work = CallCounter()
    scheduler.schedule(work, name="now", cron="@daily", immediate=True)

    assert await scheduler.tick() == 1
    assert work.calls == 1


@pytest.mark.asyncio
async def test_overlapping_firings_of_same_task_are_serialized(scheduler, clock) -> None:
    gate = asyncio.Event()
    calls = 0

    async def slow():
        nonlocal calls
        calls += 1
        await gate.wait()

    scheduler.schedule(slow, name="slow", interval=100)
    clock.advance(milliseconds=100)
    first = asyncio.ensure_future(scheduler.tick())
    await asyncio.sleep(0)

    clock.advance(milliseconds=100)
    assert await scheduler.tick() == 0

    gate.set()
    assert await first == 1
    assert calls == 1


def test_enable_disable_remove_report_existence(scheduler, clock) -> None:
    task_id = scheduler.schedule(lambda: None, name="t", interval=500)

    assert scheduler.disable(task_id) is True
    assert scheduler.get(task_id).next_run is None

    clock.advance(seconds=60)
    assert scheduler.enable(task_id) is True
    assert scheduler.get(task_id).next_run == clock.now + timedelta(milliseconds=500)

    assert scheduler.remove(task_id) is True
    assert scheduler.remove(task_id) is False
    assert scheduler.enable("sched_missing") is False
    assert scheduler.disable("sched_missing") is False


@pytest.mark.asyncio
async def test_run_now_bypasses_schedule(scheduler) -> None:
    work = CallCounter()
    task_id = scheduler.schedule(work, name="manual", cron="@yearly")

    await scheduler.run_now(task_id)

    assert work.calls == 1
    with pytest.raises(NotFoundError):
        await scheduler.run_now("sched_missing")


@pytest.mark.asyncio
async def test_tick_loop_start_and_stop(clock, event_bus) -> None:
    scheduler = Scheduler(TaskManager(), event_bus, tick_interval=0.01, clock=clock)
    work = CallCounter()
    scheduler.schedule(work, name="loop", interval=1000, immediate=True)

    await scheduler.start()
    assert scheduler.is_running()
    for _ in range(50):
        if work.calls:
            break
        await asyncio.sleep(0.01)
    await scheduler.stop()

    assert work.calls == 1
    assert not scheduler.is_running()
    assert scheduler.get_stats()["running"] is False


def test_summary_uses_camel_case_keys(scheduler) -> None:
    task_id = scheduler.schedule(lambda: None, name="s", interval=1000, action="a:b", action_input={"x": 1})

    summary = scheduler.get(task_id).to_dict()

    assert summary["actionInput"] == {"x": 1}
    assert summary["runOnce"] is False
    assert summary["runCount"] == 0
    assert summary["lastRun"] is None
    assert summary["nextRun"] is not None
