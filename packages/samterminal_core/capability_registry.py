# -*- coding: utf-8 -*-
"""能力注册表与统一分发器。

`CapabilityRegistry` 以限定名 `<插件名>:<动词>` 为键保存所有 Action、Provider
和 Evaluator。限定名在整个注册表内唯一，重复注册会被拒绝。
按插件批量注册与按插件注销都在同一把可重入锁下一次完成，
任何查询都不会看到“注册了一半”或“移除了一半”的插件。

`CapabilityDispatcher` 按限定名查找处理器并执行：
- 未知名称立即抛出 `NotFoundError`，从不重试。
- Action 的 `validate` 不通过时抛出 `ValidationError`。
- 处理器返回 `{success: false, error}` 时，在这一边界转换为 `CapabilityExecutionError`。
- 处理器经由 `AsyncOperationRunner` 执行，支持单次调用的超时与重试。
"""
import inspect
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Union

from packages.samterminal_core.capabilities import (
    ActionContext, EvaluatorContext, ProviderContext,
    to_action_result, to_provider_result, to_validation_result
)
from packages.samterminal_core.event_bus import (
    EventBus, Event, ACTION_BEFORE, ACTION_AFTER, ACTION_ERROR,
    PROVIDER_BEFORE, PROVIDER_AFTER, PROVIDER_ERROR
)
from packages.samterminal_core.exceptions import (
    CapabilityExecutionError, DuplicateRegistrationError,
    SamTerminalException, ValidationError, action_failed, capability_not_found
)
from packages.samterminal_core.logger import logger
from packages.samterminal_core.operation_runner import AsyncOperation, AsyncOperationRunner, RetryPolicy


class CapabilityKind(str, Enum):
    ACTION = 'action'
    PROVIDER = 'provider'
    EVALUATOR = 'evaluator'


@dataclass
class CapabilityRegistration:
    """注册表中的一条记录。"""
    qualified_name: str
    kind: CapabilityKind
    handler: Any
    plugin_name: str
    registered_at: float = field(default_factory=time.time)


def qualify_name(handler_name: str, plugin_name: str) -> str:
    """计算限定名。已经带 `:` 的名称视为已限定，原样使用。"""
    if ':' in handler_name:
        return handler_name
    return f"{plugin_name}:{handler_name}"


class CapabilityRegistry:
    """线程安全的能力注册表。"""

    def __init__(self):
        self._entries: Dict[str, CapabilityRegistration] = {}
        self._lock = threading.RLock()

    # --- 注册 ---

    def _prepare(self, handler: Any, plugin_name: str, kind: CapabilityKind) -> CapabilityRegistration:
        """(私有) 校验处理器并构造注册记录，不修改注册表。"""
        name = getattr(handler, 'name', None)
        if not name or not isinstance(name, str):
            raise ValidationError(f"{kind.value.capitalize()} from plugin '{plugin_name}' has no name")
        method = {'action': 'execute', 'provider': 'get', 'evaluator': 'evaluate'}[kind.value]
        if not callable(getattr(handler, method, None)):
            raise ValidationError(f"{kind.value.capitalize()} '{name}' must implement '{method}()'")
        return CapabilityRegistration(qualify_name(name, plugin_name), kind, handler, plugin_name)

    def _register(self, handler: Any, plugin_name: str, kind: CapabilityKind) -> str:
        registration = self._prepare(handler, plugin_name, kind)
        with self._lock:
            existing = self._entries.get(registration.qualified_name)
            if existing is not None:
                raise DuplicateRegistrationError(kind.value, registration.qualified_name, existing.plugin_name)
            self._entries[registration.qualified_name] = registration
        logger.debug(f"已注册{kind.value}: '{registration.qualified_name}' (插件: {plugin_name})")
        return registration.qualified_name

    def register_action(self, handler: Any, plugin_name: str) -> str:
        return self._register(handler, plugin_name, CapabilityKind.ACTION)

    def register_provider(self, handler: Any, plugin_name: str) -> str:
        return self._register(handler, plugin_name, CapabilityKind.PROVIDER)

    def register_evaluator(self, handler: Any, plugin_name: str) -> str:
        return self._register(handler, plugin_name, CapabilityKind.EVALUATOR)

    def register_plugin_capabilities(self, plugin_name: str, actions: Iterable[Any] = (),
                                     providers: Iterable[Any] = (), evaluators: Iterable[Any] = ()) -> List[str]:
        """一次性注册一个插件的全部能力。

        整批先校验再写入：只要有一条无效或与现有名称（或批内其它条目）冲突，
        注册表就保持不变。

        Returns:
            注册的限定名列表。

        Raises:
            ValidationError: 某个处理器不满足契约。
            DuplicateRegistrationError: 限定名冲突。
        """
        batch = [self._prepare(h, plugin_name, CapabilityKind.ACTION) for h in actions or ()]
        batch += [self._prepare(h, plugin_name, CapabilityKind.PROVIDER) for h in providers or ()]
        batch += [self._prepare(h, plugin_name, CapabilityKind.EVALUATOR) for h in evaluators or ()]

        with self._lock:
            seen = set()
            for registration in batch:
                name = registration.qualified_name
                if name in seen:
                    raise DuplicateRegistrationError(registration.kind.value, name, plugin_name)
                existing = self._entries.get(name)
                if existing is not None:
                    raise DuplicateRegistrationError(registration.kind.value, name, existing.plugin_name)
                seen.add(name)
            for registration in batch:
                self._entries[registration.qualified_name] = registration

        if batch:
            logger.info(f"插件 '{plugin_name}' 注册了 {len(batch)} 个能力")
        return [r.qualified_name for r in batch]

    def unregister_plugin(self, plugin_name: str) -> List[str]:
        """在一次原子操作中移除某个插件拥有的全部能力。

        Returns:
            被移除的限定名列表。
        """
        with self._lock:
            removed = [name for name, r in self._entries.items() if r.plugin_name == plugin_name]
            for name in removed:
                del self._entries[name]
        if removed:
            logger.info(f"已为插件 '{plugin_name}' 移除 {len(removed)} 个能力")
        return removed

    # --- 查询 ---

    def _get(self, name: str, kind: CapabilityKind) -> Optional[CapabilityRegistration]:
        with self._lock:
            registration = self._entries.get(name)
        if registration is None or registration.kind != kind:
            return None
        return registration

    def get_action(self, name: str) -> Optional[CapabilityRegistration]:
        return self._get(name, CapabilityKind.ACTION)

    def get_provider(self, name: str) -> Optional[CapabilityRegistration]:
        return self._get(name, CapabilityKind.PROVIDER)

    def get_evaluator(self, name: str) -> Optional[CapabilityRegistration]:
        return self._get(name, CapabilityKind.EVALUATOR)

    def has(self, name: str) -> bool:
        with self._lock:
            return name in self._entries

    def list_names(self, kind: Optional[CapabilityKind] = None) -> List[str]:
        with self._lock:
            return sorted(n for n, r in self._entries.items() if kind is None or r.kind == kind)

    def get_by_plugin(self, plugin_name: str) -> List[CapabilityRegistration]:
        with self._lock:
            return [r for r in self._entries.values() if r.plugin_name == plugin_name]

    def get_stats(self) -> Dict[str, int]:
        with self._lock:
            entries = list(self._entries.values())
        return {
            'actions': sum(1 for r in entries if r.kind == CapabilityKind.ACTION),
            'providers': sum(1 for r in entries if r.kind == CapabilityKind.PROVIDER),
            'evaluators': sum(1 for r in entries if r.kind == CapabilityKind.EVALUATOR),
            'plugins': len({r.plugin_name for r in entries}),
        }

    def clear(self):
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


ContextArg = Optional[Union[Dict[str, Any], ActionContext, ProviderContext, EvaluatorContext]]


def _context_fields(context: ContextArg) -> Dict[str, Any]:
    """(私有) 从调用方给出的上下文中取出可透传的字段。"""
    if context is None:
        return {}
    if isinstance(context, dict):
        source = context
    else:
        source = vars(context)
    allowed = ('agent_id', 'chain_id', 'metadata')
    return {k: v for k, v in source.items() if k in allowed and v is not None}


class CapabilityDispatcher:
    """按限定名分发能力调用。

    Action 与 Provider 的处理器通过 `AsyncOperationRunner` 执行，因此调用方可以为单次调用
    指定 `timeout` 与 `retry`。名称查找与输入校验在重试之外完成，只会发生一次。

    Attributes:
        registry (CapabilityRegistry): 能力注册表。
        event_bus (Optional[EventBus]): 发布 `action:*` / `provider:*` 事件。
        core (Any): 注入到每个上下文中的运行时引用，供处理器回调运行时。
        runner (AsyncOperationRunner): 执行处理器的操作执行器。
    """

    def __init__(self, registry: CapabilityRegistry, event_bus: Optional[EventBus] = None, core: Any = None,
                 runner: Optional[AsyncOperationRunner] = None):
        self.registry = registry
        self.event_bus = event_bus
        self.core = core
        self.runner = runner or AsyncOperationRunner()

    async def _emit(self, name: str, payload: Dict[str, Any]):
        if self.event_bus:
            await self.event_bus.publish(Event(name=name, payload=payload))

    async def execute_action(self, name: str, input: Any = None, context: ContextArg = None, *,
                             timeout: Optional[float] = None, retry: Optional[RetryPolicy] = None) -> Any:
        """执行一个 Action 并返回其结果的 `data`。

        Args:
            name: Action 的限定名。
            input: 传给 Action 的输入。
            context: 透传到 `ActionContext` 的调用方字段。
            timeout: 单次尝试的超时时间（秒）。
            retry: 重试策略，报告失败与抛出异常的尝试都会被重试。

        Raises:
            NotFoundError: 名称未注册为 Action。
            ValidationError: Action 的输入校验未通过。
            CapabilityExecutionError: Action 报告失败或抛出异常。
            OperationTimeoutError: 单次尝试超时。
            RetryExhaustedError: 给出了多次尝试的重试策略且全部失败。
        """
        registration = self.registry.get_action(name)
        if registration is None:
            raise capability_not_found('Action', name)
        handler = registration.handler

        validate = getattr(handler, 'validate', None)
        if callable(validate):
            verdict = validate(input)
            if inspect.isawaitable(verdict):
                verdict = await verdict
            verdict = to_validation_result(verdict)
            if not verdict.valid:
                raise ValidationError(f"Invalid input for action '{name}'", errors=verdict.errors)

        ctx = ActionContext(plugin_name=registration.plugin_name, input=input, core=self.core,
                            **_context_fields(context))

        async def attempt():
            try:
                result = to_action_result(await handler.execute(ctx))
            except SamTerminalException:
                raise
            except Exception as e:
                raise action_failed(name, str(e), cause=e) from e
            if not result.success:
                raise action_failed(name, result.error or 'unknown error')
            return result.data

        await self._emit(ACTION_BEFORE, {'action': name, 'plugin': registration.plugin_name, 'input': input})
        started = time.perf_counter()
        try:
            data = await self.runner.run(AsyncOperation(execute=attempt, name=name, timeout=timeout, retry=retry))
        except Exception as e:
            await self._emit(ACTION_ERROR, {'action': name, 'error': str(e)})
            raise

        duration = time.perf_counter() - started
        await self._emit(ACTION_AFTER, {'action': name, 'success': True, 'duration': duration})
        return data

    async def get_data(self, name: str, query: Any = None, context: ContextArg = None, *,
                       timeout: Optional[float] = None, retry: Optional[RetryPolicy] = None) -> Any:
        """从 Provider 读取数据并返回其结果的 `data`。"""
        registration = self.registry.get_provider(name)
        if registration is None:
            raise capability_not_found('Provider', name)

        ctx = ProviderContext(plugin_name=registration.plugin_name, query=query, core=self.core,
                              **{k: v for k, v in _context_fields(context).items() if k != 'chain_id'})

        async def attempt():
            try:
                result = to_provider_result(await registration.handler.get(ctx))
            except SamTerminalException:
                raise
            except Exception as e:
                raise CapabilityExecutionError(f"Provider '{name}' failed: {e}", capability_name=name, cause=e) from e
            if not result.success:
                raise CapabilityExecutionError(f"Provider '{name}' failed: {result.error or 'unknown error'}",
                                               capability_name=name)
            return result

        await self._emit(PROVIDER_BEFORE, {'provider': name, 'query': query})
        try:
            result = await self.runner.run(AsyncOperation(execute=attempt, name=name, timeout=timeout, retry=retry))
        except Exception as e:
            await self._emit(PROVIDER_ERROR, {'provider': name, 'error': str(e)})
            raise

        await self._emit(PROVIDER_AFTER, {'provider': name, 'timestamp': result.timestamp.isoformat()})
        return result.data

    async def evaluate(self, name: str, input: Any = None, context: ContextArg = None) -> bool:
        """执行一个 Evaluator 并返回布尔判定。"""
        registration = self.registry.get_evaluator(name)
        if registration is None:
            raise capability_not_found('Evaluator', name)

        ctx = EvaluatorContext(plugin_name=registration.plugin_name, input=input, core=self.core,
                               **{k: v for k, v in _context_fields(context).items() if k != 'chain_id'})
        try:
            verdict = await registration.handler.evaluate(ctx)
        except SamTerminalException:
            raise
        except Exception as e:
            raise CapabilityExecutionError(f"Evaluator '{name}' failed: {e}", capability_name=name, cause=e) from e
        if isinstance(verdict, dict) and 'success' in verdict:
            if not verdict['success']:
                reason = verdict.get('error') or 'unknown error'
                raise CapabilityExecutionError(f"Evaluator '{name}' failed: {reason}", capability_name=name)
            verdict = verdict.get('data')
        return bool(verdict)
