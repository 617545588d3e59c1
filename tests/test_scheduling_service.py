# tests/test_scheduling_service.py

from __future__ import annotations

from datetime import timedelta

import pytest

from packages.samterminal_core.exceptions import NotFoundError, ValidationError
from packages.samterminal_core.scheduler import Scheduler
from packages.samterminal_core.scheduling_service import ScheduleRequest, SchedulingService
from packages.samterminal_core.task_manager import TaskManager


class RecordingExecutor:
    def __init__(self) -> None:
        self.calls = []

    async def __call__(self, action, action_input):
        self.calls.append((action, action_input))
        return {"price": 150.0}


@pytest.fixture()
def executor() -> RecordingExecutor:
    return RecordingExecutor()


@pytest.fixture()
def service(clock, executor) -> SchedulingService:
    return SchedulingService(Scheduler(TaskManager(), clock=clock), executor)


@pytest.mark.asyncio
async def test_price_check_request_fires_action_after_interval(service, executor, clock) -> None:
    created = service.create(
        {"name": "price-check", "interval": 1000, "action": "tokendata:getPrice", "actionInput": {"symbol": "SOL"}}
    )

    assert created["enabled"] is True
    assert created["nextRun"] == (clock.now + timedelta(milliseconds=1000)).isoformat()

    clock.advance(milliseconds=1000)
    await service.scheduler.tick()

    assert executor.calls == [("tokendata:getPrice", {"symbol": "SOL"})]
    assert service.get(created["id"])["runCount"] == 1


@pytest.mark.parametrize(
    "payload",
    [
        {"name": "x", "action": "a:b"},
        {"name": "x", "action": "a:b", "cron": "@daily", "interval": 10},
        {"name": "x", "action": "a:b", "interval": 0},
        {"name": "", "action": "a:b", "interval": 10},
        {"name": "x", "interval": 10},
    ],
)
def test_invalid_requests_raise_validation_error(service, payload) -> None:
    with pytest.raises(ValidationError) as info:
        service.create(payload)
    assert info.value.errors
    assert service.list() == []


def test_invalid_cron_in_request_is_rejected(service) -> None:
    with pytest.raises(ValidationError):
        service.create(ScheduleRequest(name="x", action="a:b", cron="every tuesday"))


def test_request_accepts_snake_case_names() -> None:
    request = ScheduleRequest(name="x", action="a:b", interval=5, action_input={"k": 1}, run_once=True)

    assert request.action_input == {"k": 1}
    assert request.run_once is True


def test_toggle_flips_or_sets_enabled(service) -> None:
    task_id = service.create({"name": "t", "action": "a:b", "cron": "@hourly"})["id"]

    assert service.toggle(task_id)["enabled"] is False
    assert service.toggle(task_id)["enabled"] is True
    assert service.toggle(task_id, enabled=True)["enabled"] is True
    assert service.toggle(task_id, enabled=False)["nextRun"] is None


def test_delete_and_unknown_ids(service) -> None:
    task_id = service.create({"name": "t", "action": "a:b", "interval": 100})["id"]

    assert service.delete(task_id) == {"id": task_id, "deleted": True}
    assert service.list() == []
    with pytest.raises(NotFoundError):
        service.delete(task_id)
    with pytest.raises(NotFoundError):
        service.toggle(task_id)
    with pytest.raises(NotFoundError):
        service.get(task_id)
