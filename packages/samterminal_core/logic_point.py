# -*- coding: utf-8 -*-
"""逻辑点（Logic Point）执行引擎。

逻辑点是执行图中的带类型节点（entry / exit / action / decision / checkpoint）。
`LogicPointManager` 管理节点注册表，并提供三种执行方式：

- `execute`: 通过 `AsyncOperationRunner` 执行单个节点，应用节点配置中的超时与重试。
  失败后如果配置了 `fallback`，以 `{output: fallback}` 成功返回；否则抛出原始错误。
- `execute_sequence`: 依次执行多个节点，上一个节点的输出作为下一个节点的输入，
  `metadata` 在整条链上保持不变；遇到 `skip=True` 的结果立即停止。
- `execute_decision`: 执行决策节点，把其输出转换为分支键，选择对应分支
  （或 `default` 分支）执行；分支节点的 `metadata` 中会加入 `decisionResult`。
"""
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

from packages.samterminal_core.event_bus import (
    EventBus, Event, FLOW_POINT_START, FLOW_POINT_COMPLETE, FLOW_POINT_ERROR
)
from packages.samterminal_core.exceptions import NoBranchFoundError, NotFoundError, RetryExhaustedError
from packages.samterminal_core.id_generator import generate_id
from packages.samterminal_core.logger import logger
from packages.samterminal_core.operation_runner import AsyncOperation, AsyncOperationRunner, RetryPolicy

DEFAULT_BRANCH = 'default'
DEFAULT_RETRY_DELAY = 1.0


class LogicPointType(str, Enum):
    ENTRY = 'entry'
    EXIT = 'exit'
    ACTION = 'action'
    DECISION = 'decision'
    CHECKPOINT = 'checkpoint'


class _NoFallback:
    def __repr__(self):
        return 'NO_FALLBACK'


NO_FALLBACK = _NoFallback()


@dataclass
class LogicPointConfig:
    """逻辑点的执行配置。

    Attributes:
        timeout (Optional[float]): 单次尝试的超时时间（秒）。
        retry_on_failure (bool): 失败时是否重试。
        max_retries (Optional[int]): 最大尝试次数（包含第一次）。
        retry_delay (float): 重试间隔（秒）。
        fallback (Any): 最终失败时返回的输出。`None` 也是合法的回退值，
            未配置时为 `NO_FALLBACK`。
    """
    timeout: Optional[float] = None
    retry_on_failure: bool = False
    max_retries: Optional[int] = None
    retry_delay: float = DEFAULT_RETRY_DELAY
    fallback: Any = NO_FALLBACK

    @property
    def has_fallback(self) -> bool:
        return self.fallback is not NO_FALLBACK

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'LogicPointConfig':
        """从字典构造配置，同时接受 snake_case 与 camelCase 键。"""
        aliases = {'retryOnFailure': 'retry_on_failure', 'maxRetries': 'max_retries', 'retryDelay': 'retry_delay'}
        values = {aliases.get(k, k): v for k, v in data.items()}
        unknown = set(values) - {'timeout', 'retry_on_failure', 'max_retries', 'retry_delay', 'fallback'}
        if unknown:
            raise ValueError(f"Unknown logic point config keys: {', '.join(sorted(unknown))}")
        return cls(**values)


@dataclass
class LogicPointContext:
    input: Any = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class LogicPointResult:
    output: Any = None
    next_points: List[str] = field(default_factory=list)
    skip: bool = False


LogicPointHandler = Callable[[LogicPointContext], Union[Any, Awaitable[Any]]]


@dataclass
class LogicPoint:
    name: str
    type: LogicPointType
    handler: LogicPointHandler
    config: LogicPointConfig = field(default_factory=LogicPointConfig)
    description: Optional[str] = None
    id: str = field(default_factory=lambda: generate_id('lp'))
    created_at: float = field(default_factory=time.time)


def to_logic_point_result(value: Any) -> LogicPointResult:
    """把处理器的返回值规范化为 `LogicPointResult`。

    带 `output` 键的字典按结果解析（`nextPoints` 与 `next_points` 均可），其它值视为输出本身。
    """
    if isinstance(value, LogicPointResult):
        return value
    if isinstance(value, dict) and 'output' in value:
        return LogicPointResult(
            output=value['output'],
            next_points=list(value.get('next_points') or value.get('nextPoints') or []),
            skip=bool(value.get('skip', False)),
        )
    return LogicPointResult(output=value)


def branch_key(output: Any) -> str:
    """把决策输出转换为分支键：布尔值为 `true`/`false`，`None` 为 `null`，整数值的浮点数去掉小数部分。"""
    if isinstance(output, bool):
        return 'true' if output else 'false'
    if output is None:
        return 'null'
    if isinstance(output, float) and output.is_integer():
        return str(int(output))
    return str(output)


def _as_context(context: Union[LogicPointContext, Mapping[str, Any], None]) -> LogicPointContext:
    if context is None:
        return LogicPointContext()
    if isinstance(context, LogicPointContext):
        return context
    return LogicPointContext(input=context.get('input'), metadata=dict(context.get('metadata') or {}))


class LogicPointManager:
    """逻辑点注册表与执行引擎。"""

    def __init__(self, runner: Optional[AsyncOperationRunner] = None, event_bus: Optional[EventBus] = None):
        self.runner = runner or AsyncOperationRunner()
        self.event_bus = event_bus
        self._points: Dict[str, LogicPoint] = {}

    # --- 注册表 ---

    def create(self, name: str, type: Union[LogicPointType, str], handler: LogicPointHandler,
               config: Union[LogicPointConfig, Mapping[str, Any], None] = None,
               description: Optional[str] = None) -> LogicPoint:
        """创建并注册一个逻辑点。"""
        if config is None:
            config = LogicPointConfig()
        elif not isinstance(config, LogicPointConfig):
            config = LogicPointConfig.from_dict(config)
        point = LogicPoint(name=name, type=LogicPointType(type), handler=handler,
                           config=config, description=description)
        self._points[point.id] = point
        logger.debug(f"逻辑点已创建: {point.name} ({point.type.value})")
        return point

    def get(self, point_id: str) -> Optional[LogicPoint]:
        return self._points.get(point_id)

    def get_by_name(self, name: str) -> Optional[LogicPoint]:
        for point in self._points.values():
            if point.name == name:
                return point
        return None

    def get_by_type(self, type: Union[LogicPointType, str]) -> List[LogicPoint]:
        type = LogicPointType(type)
        return [p for p in self._points.values() if p.type == type]

    def get_all(self) -> List[LogicPoint]:
        return list(self._points.values())

    def remove(self, point_id: str) -> bool:
        return self._points.pop(point_id, None) is not None

    def clear(self):
        self._points.clear()
        logger.debug("逻辑点已清空")

    @property
    def size(self) -> int:
        return len(self._points)

    # --- 执行 ---

    async def _emit(self, name: str, point: LogicPoint, **extra):
        if self.event_bus:
            payload = {'point_id': point.id, 'name': point.name, 'type': point.type.value}
            payload.update(extra)
            await self.event_bus.publish(Event(name=name, payload=payload))

    async def execute(self, point_id: str,
                      context: Union[LogicPointContext, Mapping[str, Any], None] = None) -> LogicPointResult:
        """执行单个逻辑点。

        Raises:
            NotFoundError: 逻辑点不存在。
            Exception: 处理器最终失败且没有配置 `fallback` 时，抛出最后一次尝试的原始错误。
        """
        point = self._points.get(point_id)
        if point is None:
            raise NotFoundError('Logic point', point_id)
        ctx = _as_context(context)
        config = point.config

        retry_policy = None
        if config.retry_on_failure and config.max_retries:
            retry_policy = RetryPolicy(max_attempts=config.max_retries, delay=config.retry_delay)
        operation = AsyncOperation(
            execute=lambda: point.handler(ctx),
            name=point.name,
            timeout=config.timeout,
            retry=retry_policy,
        )

        logger.debug(f"执行逻辑点: {point.name}")
        await self._emit(FLOW_POINT_START, point)
        try:
            result = to_logic_point_result(await self.runner.run(operation))
        except Exception as e:
            error = e.last_error if isinstance(e, RetryExhaustedError) else e
            await self._emit(FLOW_POINT_ERROR, point, error=str(error))
            if config.has_fallback:
                logger.warning(f"逻辑点 '{point.name}' 失败，使用回退值: {error}")
                return LogicPointResult(output=config.fallback)
            if error is e:
                raise
            raise error from e

        await self._emit(FLOW_POINT_COMPLETE, point, skip=result.skip)
        return result

    async def execute_sequence(self, point_ids: List[str],
                               context: Union[LogicPointContext, Mapping[str, Any], None] = None
                               ) -> List[LogicPointResult]:
        """依次执行多个逻辑点，把每个节点的输出作为下一个节点的输入。

        Returns:
            实际执行过的节点结果；遇到 `skip=True` 时包含该节点并立即停止。
        """
        ctx = _as_context(context)
        metadata = ctx.metadata
        results = []
        current = ctx
        for point_id in point_ids:
            result = await self.execute(point_id, current)
            results.append(result)
            if result.skip:
                logger.debug(f"逻辑点 '{point_id}' 请求跳过，序列提前结束")
                break
            current = LogicPointContext(input=result.output, metadata=metadata)
        return results

    async def execute_decision(self, decision_id: str,
                               context: Union[LogicPointContext, Mapping[str, Any], None],
                               branches: Mapping[str, str]) -> LogicPointResult:
        """执行决策节点并路由到对应分支。

        分支节点接收原始输入，其 `metadata` 额外包含 `decisionResult`。

        Raises:
            NoBranchFoundError: 既没有匹配的分支也没有 `default` 分支。
        """
        ctx = _as_context(context)
        decision = await self.execute(decision_id, ctx)
        key = branch_key(decision.output)
        next_id = branches.get(key, branches.get(DEFAULT_BRANCH))
        if next_id is None:
            raise NoBranchFoundError(decision_id, decision.output)

        logger.debug(f"决策 '{decision_id}' 输出 {key!r}，路由到 '{next_id}'")
        branch_ctx = LogicPointContext(input=ctx.input, metadata={**ctx.metadata, 'decisionResult': decision.output})
        return await self.execute(next_id, branch_ctx)


# --- 便捷构造函数 ---

def create_entry_point(manager: LogicPointManager, name: str, handler: LogicPointHandler, **kwargs) -> LogicPoint:
    return manager.create(name, LogicPointType.ENTRY, handler, **kwargs)


def create_exit_point(manager: LogicPointManager, name: str, handler: LogicPointHandler, **kwargs) -> LogicPoint:
    return manager.create(name, LogicPointType.EXIT, handler, **kwargs)


def create_decision_point(manager: LogicPointManager, name: str, handler: LogicPointHandler,
                          **kwargs) -> LogicPoint:
    return manager.create(name, LogicPointType.DECISION, handler, **kwargs)


def create_checkpoint(manager: LogicPointManager, name: str, handler: LogicPointHandler, **kwargs) -> LogicPoint:
    return manager.create(name, LogicPointType.CHECKPOINT, handler, **kwargs)
