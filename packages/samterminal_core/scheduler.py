# -*- coding: utf-8 -*-
"""基于 cron 表达式或固定间隔的周期任务调度器。

`Scheduler` 维护一个计划任务表，并由**单个**后台 tick 循环驱动（而不是每个任务一个计时器）。
每次 tick 检查所有已启用任务的 `next_run`，把到期任务交给 `TaskManager` 执行，
然后根据结果更新 `run_count`/`error_count`。单次触发的失败只会被记录，不会中断循环。

关键行为:
- **互斥的触发方式**: 每个计划任务必须且只能有 `cron` 或 `interval`（毫秒）之一。
- **cron 预设**: `@yearly`、`@monthly`、`@weekly`、`@daily`、`@hourly`、`@minutely`
  会先展开为标准五段式 cron 表达式，再交给 `croniter` 计算。
- **同一任务串行触发**: 如果某个任务的上一次触发仍在运行，后续 tick 会跳过它。
- **可注入时钟**: `clock` 参数和公开的 `tick(now)` 方法允许宿主或测试确定性地推进时间。
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from croniter import croniter

from packages.samterminal_core.event_bus import EventBus, Event, SCHEDULER_FIRED
from packages.samterminal_core.exceptions import NotFoundError, ValidationError
from packages.samterminal_core.id_generator import generate_id
from packages.samterminal_core.logger import logger
from packages.samterminal_core.operation_runner import WorkUnit
from packages.samterminal_core.task_manager import TaskManager

CRON_PRESETS: Dict[str, str] = {
    '@yearly': '0 0 1 1 *',
    '@annually': '0 0 1 1 *',
    '@monthly': '0 0 1 * *',
    '@weekly': '0 0 * * 0',
    '@daily': '0 0 * * *',
    '@hourly': '0 * * * *',
    '@minutely': '* * * * *',
}


def expand_cron(cron_expr: str) -> str:
    """把 cron 预设展开为五段式表达式，非预设原样返回（去除首尾空白）。"""
    expr = cron_expr.strip()
    return CRON_PRESETS.get(expr.lower(), expr)


def validate_cron(cron_expr: str) -> str:
    """校验 cron 表达式并返回展开后的形式。

    Raises:
        ValidationError: 如果表达式无效。
    """
    expanded = expand_cron(cron_expr)
    if len(expanded.split()) != 5 or not croniter.is_valid(expanded):
        raise ValidationError(f"Invalid cron expression: '{cron_expr}'", errors=[f"cron: {cron_expr}"])
    return expanded


def next_fire_time(now: datetime, cron_expr: str) -> datetime:
    """计算 cron 表达式在 `now` 之后的下一次触发时间（纯函数）。"""
    return croniter(expand_cron(cron_expr), now).get_next(datetime)


def _default_clock() -> datetime:
    return datetime.now().astimezone()


@dataclass
class ScheduledTask:
    """一个计划任务。

    Attributes:
        work: 每次触发时交给任务管理器执行的工作单元。
        name: 任务名称。
        cron: cron 表达式（与 `interval` 互斥）。
        interval: 触发间隔，单位毫秒（与 `cron` 互斥）。
        action: 触发时调用的能力名称（通过调度服务创建时）。
        action_input: 传给该能力的输入。
        run_once: 首次触发后自动禁用。
        immediate: 创建后在下一次 tick 立即触发。
    """
    work: WorkUnit
    name: str
    id: str = field(default_factory=lambda: generate_id('sched'))
    cron: Optional[str] = None
    interval: Optional[int] = None
    action: Optional[str] = None
    action_input: Dict[str, Any] = field(default_factory=dict)
    run_once: bool = False
    immediate: bool = False
    enabled: bool = True
    last_run: Optional[datetime] = None
    next_run: Optional[datetime] = None
    run_count: int = 0
    error_count: int = 0
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'enabled': self.enabled,
            'cron': self.cron,
            'interval': self.interval,
            'action': self.action,
            'actionInput': self.action_input,
            'runOnce': self.run_once,
            'lastRun': self.last_run.isoformat() if self.last_run else None,
            'nextRun': self.next_run.isoformat() if self.next_run else None,
            'runCount': self.run_count,
            'errorCount': self.error_count,
            'lastError': self.last_error,
        }


class Scheduler:
    """由单个 tick 循环驱动的计划任务调度器。

    Attributes:
        task_manager (TaskManager): 执行每次触发的任务管理器。
        tick_interval (float): tick 循环的间隔（秒）。
    """

    def __init__(self, task_manager: Optional[TaskManager] = None, event_bus: Optional[EventBus] = None,
                 tick_interval: float = 1.0, clock: Optional[Callable[[], datetime]] = None):
        self.task_manager = task_manager or TaskManager(event_bus=event_bus)
        self.event_bus = event_bus
        self.tick_interval = tick_interval
        self._clock = clock or _default_clock
        self._tasks: Dict[str, ScheduledTask] = {}
        self._in_flight: Dict[str, asyncio.Task] = {}
        self._loop_task: Optional[asyncio.Task] = None
        self._running = False

    # --- 注册 ---

    def schedule(self, work: WorkUnit, name: Optional[str] = None, cron: Optional[str] = None,
                 interval: Optional[int] = None, run_once: bool = False, immediate: bool = False,
                 action: Optional[str] = None, action_input: Optional[Dict[str, Any]] = None) -> str:
        """注册一个计划任务。

        Args:
            work: 每次触发时执行的工作单元。
            name: 任务名称。
            cron: cron 表达式或预设。
            interval: 触发间隔（毫秒）。
            run_once: 首次触发后自动禁用。
            immediate: 在下一次 tick 立即触发，而不是等待第一个周期。
            action: 关联的能力名称，仅用于展示。
            action_input: 关联的能力输入，仅用于展示。

        Returns:
            计划任务 ID。

        Raises:
            ValidationError: 没有或同时给出了 `cron` 与 `interval`，或者它们的值无效。
        """
        if (cron is None) == (interval is None):
            raise ValidationError("Exactly one of 'cron' or 'interval' must be specified",
                                  errors=['cron/interval'])
        if cron is not None:
            validate_cron(cron)
        elif isinstance(interval, bool) or not isinstance(interval, int) or interval <= 0:
            raise ValidationError(f"Interval must be a positive number of milliseconds, got {interval!r}",
                                  errors=['interval'])

        task = ScheduledTask(
            work=work,
            name=name or 'Unnamed Task',
            cron=cron,
            interval=interval,
            action=action,
            action_input=action_input or {},
            run_once=run_once,
            immediate=immediate,
        )
        now = self._clock()
        task.next_run = now if immediate else self._compute_next(task, now)
        self._tasks[task.id] = task
        logger.info(f"计划任务 '{task.name}' ({task.id}) 已注册，下次运行: {task.next_run.isoformat()}")
        return task.id

    def _compute_next(self, task: ScheduledTask, now: datetime) -> datetime:
        if task.interval is not None:
            return now + timedelta(milliseconds=task.interval)
        return next_fire_time(now, task.cron)

    # --- 触发 ---

    async def tick(self, now: Optional[datetime] = None) -> int:
        """检查一次所有任务，触发到期的任务并等待本次触发的执行结束。

        Returns:
            本次触发的任务数量。
        """
        fired = self._dispatch_due(now or self._clock())
        if fired:
            await asyncio.gather(*fired)
        return len(fired)

    def _dispatch_due(self, now: datetime) -> List[asyncio.Task]:
        """(私有) 启动所有到期任务的触发，返回这些触发的 asyncio 任务。"""
        fired = []
        for task in list(self._tasks.values()):
            if not task.enabled or task.next_run is None or task.next_run > now:
                continue
            if task.id in self._in_flight:
                logger.trace(f"计划任务 '{task.name}' 的上一次触发仍在运行，跳过本次 tick")
                continue
            task.next_run = self._compute_next(task, now)
            fired.append(self._fire(task))
        return fired

    def _fire(self, task: ScheduledTask) -> asyncio.Task:
        firing = asyncio.ensure_future(self._run_task(task))
        self._in_flight[task.id] = firing
        firing.add_done_callback(lambda _: self._in_flight.pop(task.id, None))
        return firing

    async def _run_task(self, task: ScheduledTask):
        """(私有) 通过任务管理器执行一次触发，记录结果，异常不向外传播。"""
        logger.debug(f"触发计划任务: {task.name}")
        success = True
        try:
            await self.task_manager.enqueue(
                task.work, name=f"scheduled:{task.name}", metadata={'scheduled_task_id': task.id}
            )
            task.run_count += 1
            task.last_error = None
        except Exception as e:
            success = False
            task.error_count += 1
            task.last_error = str(e)
            logger.error(f"计划任务 '{task.name}' 执行失败: {e}")
        finally:
            task.last_run = self._clock()
            if task.run_once:
                task.enabled = False
                task.next_run = None
                logger.debug(f"一次性计划任务 '{task.name}' 已自动禁用")

        if self.event_bus:
            await self.event_bus.publish(Event(
                name=SCHEDULER_FIRED,
                payload={'scheduled_task_id': task.id, 'name': task.name, 'success': success}
            ))

    async def run_now(self, task_id: str):
        """绕过计划立即执行一次任务。"""
        task = self._tasks.get(task_id)
        if task is None:
            raise NotFoundError('Scheduled task', task_id)
        await self._run_task(task)

    # --- 循环控制 ---

    async def start(self):
        if self._running:
            return
        self._running = True
        self._loop_task = asyncio.ensure_future(self._run_loop())
        logger.info(f"调度器已启动，tick 间隔 {self.tick_interval}s")

    async def stop(self):
        """停止 tick 循环。已经开始的触发会继续执行到结束。"""
        if not self._running:
            return
        self._running = False
        loop_task, self._loop_task = self._loop_task, None
        if loop_task:
            loop_task.cancel()
            try:
                await loop_task
            except asyncio.CancelledError:
                pass
        logger.info("调度器已停止")

    async def _run_loop(self):
        while self._running:
            try:
                self._dispatch_due(self._clock())
            except Exception as e:
                logger.error(f"调度器 tick 失败: {e}", exc_info=True)
            await asyncio.sleep(self.tick_interval)

    def is_running(self) -> bool:
        return self._running

    # --- 管理 ---

    def enable(self, task_id: str) -> bool:
        task = self._tasks.get(task_id)
        if task is None:
            return False
        task.enabled = True
        task.next_run = self._compute_next(task, self._clock())
        logger.debug(f"计划任务已启用: {task.name}")
        return True

    def disable(self, task_id: str) -> bool:
        task = self._tasks.get(task_id)
        if task is None:
            return False
        task.enabled = False
        task.next_run = None
        logger.debug(f"计划任务已禁用: {task.name}")
        return True

    def remove(self, task_id: str) -> bool:
        task = self._tasks.pop(task_id, None)
        if task is None:
            return False
        logger.debug(f"计划任务已移除: {task.name}")
        return True

    def get(self, task_id: str) -> Optional[ScheduledTask]:
        return self._tasks.get(task_id)

    def get_all(self) -> List[ScheduledTask]:
        return list(self._tasks.values())

    def clear(self):
        self._tasks.clear()
        logger.info("调度器任务表已清空")

    def get_stats(self) -> Dict[str, Any]:
        tasks = self._tasks.values()
        return {
            'total': len(self._tasks),
            'enabled': sum(1 for t in tasks if t.enabled),
            'total_runs': sum(t.run_count for t in tasks),
            'total_errors': sum(t.error_count for t in tasks),
            'running': self._running,
        }
