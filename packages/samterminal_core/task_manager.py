# -*- coding: utf-8 -*-
"""有界并发的优先级任务管理器。

`TaskManager` 接收临时工作单元（`enqueue`），按优先级（高者先，同优先级先进先出）
把它们放入一个大小为 `max_concurrent` 的执行池。每个任务都通过
`AsyncOperationRunner` 执行，因此自动获得超时与重试语义。

优先级只决定进入执行池的先后，不会抢占正在运行的任务。
`enqueue` 返回的 `Task` 本身可以被 await，得到任务结果或其错误。
"""
import asyncio
import heapq
import itertools
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Tuple

from packages.samterminal_core.event_bus import (
    EventBus, Event, TASK_STARTED, TASK_COMPLETED, TASK_FAILED, TASK_CANCELLED
)
from packages.samterminal_core.exceptions import (
    ExecutionError, NotFoundError, SamTerminalException, ValidationError, normalize_error
)
from packages.samterminal_core.id_generator import generate_id
from packages.samterminal_core.logger import logger
from packages.samterminal_core.operation_runner import AsyncOperation, AsyncOperationRunner, RetryPolicy, WorkUnit

AUTO_CLEANUP_THRESHOLD = 1000


class TaskStatus(str, Enum):
    PENDING = 'pending'
    RUNNING = 'running'
    COMPLETED = 'completed'
    FAILED = 'failed'
    CANCELLED = 'cancelled'


FINISHED_STATUSES = (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED)


@dataclass
class Task:
    """任务管理器中的一个任务。

    Attributes:
        work: 工作单元。
        name: 任务名称。
        id: 任务 ID。
        priority: 优先级，数值越大越先进入执行池。
        timeout: 单次尝试的超时时间（秒）。
        retry: 重试策略。
        metadata: 附加数据。
        status: 当前状态。
        result: 成功时的结果。
        error: 失败时规范化后的错误。
    """
    work: WorkUnit
    name: str = 'task'
    id: str = field(default_factory=lambda: generate_id('task'))
    priority: int = 0
    timeout: Optional[float] = None
    retry: Optional[RetryPolicy] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    status: TaskStatus = TaskStatus.PENDING
    result: Any = None
    error: Optional[SamTerminalException] = None
    _future: Optional[asyncio.Future] = field(default=None, repr=False, compare=False)

    def __await__(self):
        return self._future.__await__()

    def done(self) -> bool:
        return self.status in FINISHED_STATUSES


def _retrieve_exception(future: asyncio.Future):
    if not future.cancelled():
        future.exception()


def _mark_cancelled(task: Task):
    """(私有) 把排队中的任务标记为已取消，等待它的调用方收到 `ExecutionError`。"""
    task.status = TaskStatus.CANCELLED
    task.completed_at = time.time()
    task.error = ExecutionError(f"Task '{task.name}' was cancelled", {'task_id': task.id})
    if not task._future.done():
        task._future.set_exception(task.error)


class TaskManager:
    """有界并发的优先级任务队列。"""

    def __init__(self, runner: Optional[AsyncOperationRunner] = None, event_bus: Optional[EventBus] = None,
                 max_concurrent: int = 10, default_timeout: Optional[float] = None):
        if max_concurrent < 1:
            raise ValidationError(f"max_concurrent must be at least 1, got {max_concurrent}")
        self.runner = runner or AsyncOperationRunner()
        self.event_bus = event_bus
        self.max_concurrent = max_concurrent
        self.default_timeout = default_timeout

        self._tasks: Dict[str, Task] = {}
        self._queue: List[Tuple[int, int, Task]] = []
        self._sequence = itertools.count()
        self._running_count = 0
        self._workers: Set[asyncio.Task] = set()
        self._idle: Optional[asyncio.Event] = None

    # --- 提交 ---

    def enqueue(self, work: WorkUnit, name: Optional[str] = None, timeout: Optional[float] = None,
                priority: int = 0, retry: Optional[RetryPolicy] = None,
                metadata: Optional[Dict[str, Any]] = None) -> Task:
        """提交一个工作单元。

        Args:
            work: 工作单元。
            name: 任务名称。
            timeout: 单次尝试的超时时间（秒），默认使用管理器的 `default_timeout`。
            priority: 优先级，数值越大越先执行。
            retry: 重试策略。
            metadata: 附加数据。

        Returns:
            可被 await 的 `Task`。
        """
        task = Task(
            work=work,
            name=name or getattr(work, '__name__', 'task'),
            priority=priority,
            timeout=timeout if timeout is not None else self.default_timeout,
            retry=retry,
            metadata=metadata or {},
        )
        task._future = asyncio.get_running_loop().create_future()
        task._future.add_done_callback(_retrieve_exception)

        self._tasks[task.id] = task
        heapq.heappush(self._queue, (-priority, next(self._sequence), task))
        self._idle_event().clear()
        logger.trace(f"任务 '{task.name}' ({task.id}) 已入队，优先级 {priority}")
        self._pump()
        return task

    async def run(self, work: WorkUnit, **kwargs) -> Any:
        """提交一个工作单元并等待其结果。"""
        return await self.enqueue(work, **kwargs)

    # --- 调度 ---

    def _pump(self):
        """(私有) 在执行池有空位时按优先级放行排队中的任务。"""
        while self._running_count < self.max_concurrent and self._queue:
            _, _, task = heapq.heappop(self._queue)
            if task.status != TaskStatus.PENDING:
                continue
            task.status = TaskStatus.RUNNING
            task.started_at = time.time()
            self._running_count += 1
            worker = asyncio.ensure_future(self._execute(task))
            self._workers.add(worker)
            worker.add_done_callback(self._workers.discard)

    async def _execute(self, task: Task):
        """(私有) 通过操作执行器运行单个任务并记录结果。"""
        await self._emit(TASK_STARTED, task)
        operation = AsyncOperation(execute=task.work, name=task.name, id=task.id,
                                   timeout=task.timeout, retry=task.retry)
        try:
            result = await self.runner.run(operation)
        except Exception as e:
            task.status = TaskStatus.FAILED
            task.error = normalize_error(e)
            task.completed_at = time.time()
            if not task._future.done():
                task._future.set_exception(e)
            logger.warning(f"任务 '{task.name}' ({task.id}) 失败: {e}")
            await self._emit(TASK_FAILED, task, error=str(e))
        else:
            task.status = TaskStatus.COMPLETED
            task.result = result
            task.completed_at = time.time()
            if not task._future.done():
                task._future.set_result(result)
            await self._emit(TASK_COMPLETED, task)
        finally:
            self._running_count -= 1
            self._pump()
            self._check_idle()
            if len(self._tasks) > AUTO_CLEANUP_THRESHOLD:
                self.cleanup()

    def _check_idle(self):
        if self._running_count == 0 and not any(t.status == TaskStatus.PENDING for _, _, t in self._queue):
            self._queue.clear()
            if self._idle is not None:
                self._idle.set()

    def _idle_event(self) -> asyncio.Event:
        """(私有) 在运行中的事件循环里首次使用时才创建空闲事件。"""
        if self._idle is None:
            self._idle = asyncio.Event()
            if self._running_count == 0 and not any(t.status == TaskStatus.PENDING for _, _, t in self._queue):
                self._idle.set()
        return self._idle

    async def _emit(self, name: str, task: Task, **extra):
        if not self.event_bus:
            return
        payload = {'task_id': task.id, 'name': task.name, 'status': task.status.value}
        payload.update(extra)
        await self.event_bus.publish(Event(name=name, payload=payload))

    # --- 控制 ---

    async def cancel(self, task_id: str) -> bool:
        """取消一个尚未开始的任务。等待该任务的调用方会收到 `ExecutionError`。

        Returns:
            如果任务存在且处于 `pending` 状态并被取消，返回 True。
        """
        task = self._tasks.get(task_id)
        if task is None or task.status != TaskStatus.PENDING:
            return False
        _mark_cancelled(task)
        self._queue = [entry for entry in self._queue if entry[2] is not task]
        heapq.heapify(self._queue)
        self._check_idle()
        await self._emit(TASK_CANCELLED, task)
        return True

    async def wait_for(self, task_id: str) -> Any:
        """等待指定任务完成并返回其结果。"""
        task = self._tasks.get(task_id)
        if task is None:
            raise NotFoundError('Task', task_id)
        return await task

    async def wait_all(self):
        """等待直到没有排队中或运行中的任务。"""
        await self._idle_event().wait()

    def set_max_concurrent(self, max_concurrent: int):
        if max_concurrent < 1:
            raise ValidationError(f"max_concurrent must be at least 1, got {max_concurrent}")
        self.max_concurrent = max_concurrent
        self._pump()

    # --- 查询 ---

    def get(self, task_id: str) -> Optional[Task]:
        return self._tasks.get(task_id)

    def get_all(self) -> List[Task]:
        return list(self._tasks.values())

    def get_pending(self) -> List[Task]:
        return [t for t in self._tasks.values() if t.status == TaskStatus.PENDING]

    def get_running(self) -> List[Task]:
        return [t for t in self._tasks.values() if t.status == TaskStatus.RUNNING]

    def get_stats(self) -> Dict[str, int]:
        stats = {status.value: 0 for status in TaskStatus}
        for task in self._tasks.values():
            stats[task.status.value] += 1
        stats['total'] = len(self._tasks)
        return stats

    def cleanup(self, older_than: Optional[float] = None) -> int:
        """移除已结束的任务记录。

        Args:
            older_than: 只移除结束时间早于此秒数之前的任务；None 表示全部已结束任务。

        Returns:
            移除的任务数量。
        """
        cutoff = time.time() - older_than if older_than is not None else None
        removable = [
            task_id for task_id, task in self._tasks.items()
            if task.done() and (cutoff is None or (task.completed_at or 0) <= cutoff)
        ]
        for task_id in removable:
            del self._tasks[task_id]
        if removable:
            logger.debug(f"已清理 {len(removable)} 条已结束的任务记录")
        return len(removable)

    def clear(self):
        """取消所有排队中的任务并清空记录。运行中的任务会继续执行到结束。"""
        for _, _, task in self._queue:
            if task.status == TaskStatus.PENDING:
                _mark_cancelled(task)
        self._queue.clear()
        self._tasks = {k: t for k, t in self._tasks.items() if t.status == TaskStatus.RUNNING}
        self._check_idle()
