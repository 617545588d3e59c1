# -*- coding: utf-8 -*-
"""通用异步操作执行器。

本模块提供运行时所有执行路径共用的超时、重试、回调和单飞（single-flight）机制。
任务管理器、能力分发器和逻辑点引擎都通过 `AsyncOperationRunner` 执行工作单元。

核心语义:
- **超时只拒绝调用方的等待**: 超时后调用方收到 `OperationTimeoutError`，
  而底层工作会继续在后台运行，其结果被取回后丢弃。
- **固定间隔重试**: 固定次数、固定间隔，没有指数退避。
  `NotFoundError` 和 `ValidationError` 属于调用方错误，永不重试。
- **单飞**: 对同一个已注册 ID 的并发 `run_by_id` 调用共享同一次执行和同一个结果。
- **批量执行**: 并行（首个失败胜出）、顺序（首个失败即停止）、
  有界工作池（跑完全部操作，只返回成功结果，顺序与提交顺序一致）。

工作单元是零参数的可调用对象，可以返回协程/awaitable，也可以直接返回普通值。
"""
import asyncio
import inspect
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple, Union

from packages.samterminal_core.exceptions import (
    ExecutionError, NotFoundError, OperationTimeoutError, RetryExhaustedError,
    SamTerminalException, ValidationError, normalize_error
)
from packages.samterminal_core.id_generator import generate_id
from packages.samterminal_core.logger import logger

WorkUnit = Callable[[], Union[Any, Awaitable[Any]]]

NON_RETRYABLE_ERRORS = (NotFoundError, ValidationError)

# 超时后仍在后台运行的工作，保留强引用直到完成
_background_tasks: Set[asyncio.Future] = set()


@dataclass
class RetryPolicy:
    """固定间隔的重试策略。

    Attributes:
        max_attempts (int): 最大尝试次数（包含第一次）。
        delay (float): 两次尝试之间的固定间隔（秒）。
    """
    max_attempts: int = 1
    delay: float = 0.0


@dataclass
class AsyncOperation:
    """一个可执行的异步操作。

    Attributes:
        execute: 工作单元。
        name: 操作名称，出现在超时与重试错误信息中。
        id: 操作 ID，`register` 后可用 `run_by_id` 按 ID 执行。
        on_success: 成功后以结果调用。
        on_error: 最终失败后以规范化的 `SamTerminalException` 调用。
        on_finally: 无论成功失败都会调用。
        timeout: 单次尝试的超时时间（秒）。
        retry: 重试策略。
    """
    execute: WorkUnit
    name: str = 'operation'
    id: str = field(default_factory=lambda: generate_id('op'))
    on_success: Optional[Callable[[Any], Any]] = None
    on_error: Optional[Callable[[SamTerminalException], Any]] = None
    on_finally: Optional[Callable[[], Any]] = None
    timeout: Optional[float] = None
    retry: Optional[RetryPolicy] = None


def create_async_operation(execute: WorkUnit, name: str = 'operation', **kwargs) -> AsyncOperation:
    """创建一个带自动生成 ID 的异步操作。"""
    return AsyncOperation(execute=execute, name=name, **kwargs)


async def invoke(fn: Callable[..., Any], *args) -> Any:
    """调用一个同步或异步函数，并在需要时等待其结果。"""
    result = fn(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


def _discard_result(future: asyncio.Future):
    """(私有) 取回已被放弃的后台工作的结果，避免未检索异常的警告。"""
    _background_tasks.discard(future)
    if future.cancelled():
        return
    error = future.exception()
    if error is not None:
        logger.debug(f"超时后完成的后台工作以异常结束，结果已丢弃: {error!r}")


def _detach(future: asyncio.Future):
    """(私有) 让一个不再有人等待的 future 在后台自行运行到结束。"""
    _background_tasks.add(future)
    future.add_done_callback(_discard_result)


async def run_with_timeout(fn: WorkUnit, timeout: Optional[float], name: str = 'operation') -> Any:
    """执行工作单元，并用计时器与其完成赛跑。

    Raises:
        OperationTimeoutError: 如果在 `timeout` 秒内没有完成。工作本身不会被取消。
    """
    if not timeout:
        return await invoke(fn)

    future = asyncio.ensure_future(invoke(fn))
    try:
        done, _ = await asyncio.wait({future}, timeout=timeout)
    except asyncio.CancelledError:
        _detach(future)
        raise
    if future in done:
        return future.result()
    _detach(future)
    raise OperationTimeoutError(name, timeout)


async def retry(fn: WorkUnit, policy: Optional[RetryPolicy] = None, name: str = 'operation',
                timeout: Optional[float] = None) -> Any:
    """按固定间隔重试执行工作单元，每次尝试单独计时。

    Args:
        fn: 工作单元。
        policy: 重试策略，为 None 时只尝试一次。
        name: 操作名称。
        timeout: 单次尝试的超时时间（秒）。

    Raises:
        RetryExhaustedError: 当 `max_attempts > 1` 且全部尝试失败时，包装最后一次的错误。
        Exception: 只允许一次尝试时，原样抛出该次尝试的错误。
    """
    max_attempts = max(1, policy.max_attempts if policy else 1)
    delay = policy.delay if policy else 0.0

    last_error: Optional[Exception] = None
    for attempt in range(1, max_attempts + 1):
        try:
            return await run_with_timeout(fn, timeout, name)
        except NON_RETRYABLE_ERRORS:
            raise
        except Exception as e:
            last_error = e
            if attempt < max_attempts:
                logger.debug(f"操作 '{name}' 第 {attempt}/{max_attempts} 次尝试失败: {e}，{delay}s 后重试")
                if delay > 0:
                    await asyncio.sleep(delay)

    if max_attempts == 1:
        raise last_error
    raise RetryExhaustedError(name, max_attempts, last_error) from last_error


async def _call_hook(hook: Optional[Callable[..., Any]], hook_name: str, op_name: str, *args):
    """(私有) 执行操作的回调，回调自身的异常只记录不传播。"""
    if hook is None:
        return
    try:
        await invoke(hook, *args)
    except Exception as e:
        logger.error(f"操作 '{op_name}' 的 {hook_name} 回调执行失败: {e}", exc_info=True)


# --- 异步节点 ---

class AsyncNodeStatus(str, Enum):
    PENDING = 'pending'
    RUNNING = 'running'
    COMPLETED = 'completed'
    FAILED = 'failed'
    CANCELLED = 'cancelled'


@dataclass
class AsyncNode:
    """带生命周期状态的一次性异步工作单元。"""
    name: str
    operation: WorkUnit
    id: str = field(default_factory=lambda: generate_id('node'))
    status: AsyncNodeStatus = AsyncNodeStatus.PENDING
    result: Any = None
    error: Optional[SamTerminalException] = None
    started_at: Optional[float] = None
    completed_at: Optional[float] = None


def create_async_node(name: str, operation: WorkUnit) -> AsyncNode:
    return AsyncNode(name=name, operation=operation)


async def execute_async_node(node: AsyncNode) -> Any:
    """执行一个处于 `pending` 状态的节点。

    如果节点在运行期间被取消，其结果会被丢弃，调用方收到 `ExecutionError`。

    Raises:
        ExecutionError: 节点不在 `pending` 状态，或在运行中被取消。
    """
    if node.status != AsyncNodeStatus.PENDING:
        raise ExecutionError(f"Cannot execute node '{node.name}' in status: {node.status.value}",
                             {'node_id': node.id, 'status': node.status.value})

    node.status = AsyncNodeStatus.RUNNING
    node.started_at = time.time()
    logger.debug(f"执行异步节点: {node.name}")
    try:
        result = await invoke(node.operation)
    except Exception as e:
        if node.status == AsyncNodeStatus.CANCELLED:
            raise ExecutionError(f"Async node '{node.name}' was cancelled", {'node_id': node.id}) from e
        node.error = normalize_error(e)
        node.status = AsyncNodeStatus.FAILED
        node.completed_at = time.time()
        logger.error(f"异步节点 '{node.name}' 失败: {e}")
        raise

    if node.status == AsyncNodeStatus.CANCELLED:
        raise ExecutionError(f"Async node '{node.name}' was cancelled", {'node_id': node.id})
    node.result = result
    node.status = AsyncNodeStatus.COMPLETED
    node.completed_at = time.time()
    return result


def cancel_async_node(node: AsyncNode) -> bool:
    """协作式取消：只有 `pending` 或 `running` 的节点可以被取消。"""
    if node.status in (AsyncNodeStatus.PENDING, AsyncNodeStatus.RUNNING):
        node.status = AsyncNodeStatus.CANCELLED
        node.completed_at = time.time()
        logger.debug(f"异步节点已取消: {node.name}")
        return True
    return False


# --- 执行器 ---

_MISSING = object()


class AsyncOperationRunner:
    """异步操作执行器。

    Attributes:
        last_batch_errors (List[Tuple[AsyncOperation, Exception]]): 最近一次
            `run_with_concurrency` 中失败的操作及其错误。
    """

    def __init__(self):
        self._operations: Dict[str, AsyncOperation] = {}
        self._in_flight: Dict[str, asyncio.Task] = {}
        self.last_batch_errors: List[Tuple[AsyncOperation, Exception]] = []

    # --- 注册表 ---

    def register(self, operation: AsyncOperation) -> str:
        self._operations[operation.id] = operation
        return operation.id

    def unregister(self, operation_id: str) -> bool:
        return self._operations.pop(operation_id, None) is not None

    def get(self, operation_id: str) -> Optional[AsyncOperation]:
        return self._operations.get(operation_id)

    def is_running(self, operation_id: str) -> bool:
        return operation_id in self._in_flight

    def clear(self):
        """清空已注册的操作。正在执行的工作不受影响。"""
        self._operations.clear()
        self._in_flight.clear()

    # --- 执行 ---

    async def run(self, operation: AsyncOperation) -> Any:
        """立即执行一个操作（不需要注册）。

        失败时 `on_error` 收到规范化后的错误，调用方收到原始错误。
        """
        logger.trace(f"执行操作: {operation.name}")
        try:
            result = await retry(operation.execute, operation.retry, operation.name, operation.timeout)
        except Exception as e:
            await _call_hook(operation.on_error, 'on_error', operation.name, normalize_error(e))
            raise
        else:
            await _call_hook(operation.on_success, 'on_success', operation.name, result)
            return result
        finally:
            await _call_hook(operation.on_finally, 'on_finally', operation.name)

    async def run_by_id(self, operation_id: str) -> Any:
        """按 ID 执行已注册的操作，同一 ID 的并发调用共享同一次执行。

        Raises:
            NotFoundError: 如果 ID 未注册。
        """
        task = self._in_flight.get(operation_id)
        if task is None:
            operation = self._operations.get(operation_id)
            if operation is None:
                raise NotFoundError('Operation', operation_id)
            task = asyncio.ensure_future(self.run(operation))
            self._in_flight[operation_id] = task
            task.add_done_callback(lambda t: self._finish_in_flight(operation_id, t))
        else:
            logger.trace(f"操作 '{operation_id}' 正在执行，加入已有执行")
        return await asyncio.shield(task)

    def _finish_in_flight(self, operation_id: str, task: asyncio.Task):
        """(私有) 单飞任务完成后从在途表中移除，并取回其异常。"""
        if self._in_flight.get(operation_id) is task:
            del self._in_flight[operation_id]
        if not task.cancelled():
            task.exception()

    async def run_parallel(self, operations: List[AsyncOperation]) -> List[Any]:
        """并发执行全部操作，结果顺序与提交顺序一致。

        任一操作失败时整体以该错误失败（首个失败胜出），其余操作继续运行到结束。
        """
        tasks = [asyncio.ensure_future(self.run(op)) for op in operations]
        try:
            return list(await asyncio.gather(*tasks))
        except Exception:
            for task in tasks:
                if not task.done():
                    _detach(task)
                elif not task.cancelled():
                    task.exception()
            raise

    async def run_sequence(self, operations: List[AsyncOperation]) -> List[Any]:
        """严格按顺序执行，遇到第一个失败立即停止，不执行剩余操作。"""
        results = []
        for op in operations:
            results.append(await self.run(op))
        return results

    async def run_with_concurrency(self, operations: List[AsyncOperation], limit: int) -> List[Any]:
        """用大小为 `limit` 的工作池跑完全部操作。

        单个操作的失败不会中断批次；失败被记录在 `last_batch_errors` 中。

        Returns:
            成功结果的列表，顺序与提交顺序一致。
        """
        if limit < 1:
            raise ValidationError(f"Concurrency limit must be at least 1, got {limit}")

        slots: List[Any] = [_MISSING] * len(operations)
        errors: List[Tuple[int, AsyncOperation, Exception]] = []
        pending = iter(enumerate(operations))

        async def worker():
            for index, op in pending:
                try:
                    slots[index] = await self.run(op)
                except Exception as e:
                    logger.warning(f"批量操作 '{op.name}' 失败: {e}")
                    errors.append((index, op, e))

        await asyncio.gather(*(worker() for _ in range(min(limit, len(operations)))))
        errors.sort(key=lambda item: item[0])
        self.last_batch_errors = [(op, e) for _, op, e in errors]
        return [value for value in slots if value is not _MISSING]
