# -*- coding: utf-8 -*-
"""插件生命周期管理器。

`PluginManager` 负责插件从加载到销毁的完整生命周期：

1.  **加载** (`load_plugin`): 接受 `NamedSource`（交给注入的加载器解析）或
    `InstanceSource`，校验插件契约后以 `loading` 状态登记，发布 `plugin:loaded`。
2.  **初始化** (`init_all`): 按注册顺序调用每个插件的 `init(core)`，声明的依赖
    通过 `graphlib.TopologicalSorter` 保证先初始化。成功后把插件的能力原子地
    注册到能力注册表。单个插件的失败按 `PluginInitPolicy` 处理：
    `ISOLATE`（默认）标记为 `failed` 并发布 `plugin:error` 后继续；
    `ABORT` 立即抛出 `PluginInitError`。
3.  **销毁** (`destroy_all`): 以实际初始化顺序的**逆序**销毁已初始化的插件，
    在调用 `destroy()` 之前先注销其能力，失败同样被隔离。仍有已初始化的插件
    依赖某个插件时，单独销毁或卸载它会被拒绝。
"""
import importlib
import importlib.util
import inspect
import itertools
import sys
import time
from enum import Enum
from graphlib import TopologicalSorter, CycleError
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from packages.samterminal_core.capability_registry import CapabilityRegistry
from packages.samterminal_core.event_bus import EventBus, Event, PLUGIN_LOADED, PLUGIN_UNLOADED, PLUGIN_ERROR
from packages.samterminal_core.exceptions import (
    DuplicateRegistrationError, NotFoundError, PluginError, PluginInitError, create_plugin_error, plugin_init_failed
)
from packages.samterminal_core.logger import logger
from packages.samterminal_core.operation_runner import invoke
from packages.samterminal_core.plugin_definition import (
    NamedSource, PluginSource, PluginState, PluginStatus, as_plugin_source, describe_plugin
)

PluginLoader = Callable[[str, Dict[str, Any]], Union[Any, Awaitable[Any]]]


class PluginInitPolicy(str, Enum):
    ISOLATE = 'isolate'
    ABORT = 'abort'


class ImportlibPluginLoader:
    """基于 importlib 的默认插件加载器。

    名称可以是模块路径（`pkg.module`）、带属性的模块路径（`pkg.module:attr`），
    或者一个 `.py` 文件路径（相对路径基于 `base_path` 解析）。模块可以导出
    `plugin`（插件对象）、`create_plugin(config)`（工厂函数）或插件类。
    """

    def __init__(self, base_path: Optional[Path] = None):
        self.base_path = base_path or Path.cwd()

    def __call__(self, name: str, config: Optional[Dict[str, Any]] = None) -> Any:
        module_ref, _, attr = name.partition(':')
        module = self._load_module(module_ref)
        if attr:
            target = getattr(module, attr, None)
            if target is None:
                raise create_plugin_error(f"Module '{module_ref}' has no attribute '{attr}'", name)
        else:
            target = getattr(module, 'plugin', None) or getattr(module, 'create_plugin', None)
            if target is None:
                raise create_plugin_error(
                    f"Module '{module_ref}' exports neither 'plugin' nor 'create_plugin'", name
                )
        return self._instantiate(target, config or {})

    @staticmethod
    def _instantiate(target: Any, config: Dict[str, Any]) -> Any:
        if inspect.isclass(target):
            return target(config) if config else target()
        if callable(target) and not hasattr(target, 'init'):
            return target(config)
        return target

    def _load_module(self, module_ref: str) -> Any:
        """(私有) 按模块路径导入，或从 `.py` 文件延迟加载一个模块。"""
        if not module_ref.endswith('.py'):
            return importlib.import_module(module_ref)

        file_path = Path(module_ref)
        if not file_path.is_absolute():
            file_path = self.base_path / file_path
        module_name = f"samterminal_plugins.{file_path.stem}"
        if module_name in sys.modules:
            return sys.modules[module_name]

        spec = importlib.util.spec_from_file_location(module_name, file_path)
        if spec is None or spec.loader is None:
            raise ImportError(f"Could not create spec for module at {file_path}")
        module = importlib.util.module_from_spec(spec)
        sys.modules[module_name] = module
        try:
            spec.loader.exec_module(module)
        except Exception:
            del sys.modules[module_name]
            raise
        return module


class PluginManager:
    """插件生命周期管理器。

    Attributes:
        registry (CapabilityRegistry): 插件能力注册到的注册表。
        event_bus (Optional[EventBus]): 发布 `plugin:*` 事件。
        loader (Optional[PluginLoader]): 解析 `NamedSource` 的加载器。
        init_policy (PluginInitPolicy): 单个插件初始化失败时的处理策略。
        core (Any): 初始化时交给插件的运行时引用。
    """

    def __init__(self, registry: CapabilityRegistry, event_bus: Optional[EventBus] = None,
                 loader: Optional[PluginLoader] = None,
                 init_policy: PluginInitPolicy = PluginInitPolicy.ISOLATE,
                 plugin_config: Optional[Dict[str, Dict[str, Any]]] = None):
        self.registry = registry
        self.event_bus = event_bus
        self.loader = loader
        self.init_policy = PluginInitPolicy(init_policy)
        self.plugin_config = plugin_config or {}
        self.core: Any = None
        self._plugins: Dict[str, PluginState] = {}
        self._sources: Dict[str, PluginSource] = {}
        self._order = itertools.count()
        self._init_sequence: List[str] = []

    def set_core(self, core: Any):
        self.core = core

    async def _emit(self, name: str, payload: Dict[str, Any]):
        if self.event_bus:
            await self.event_bus.publish(Event(name=name, payload=payload))

    # --- 加载 ---

    async def load_plugin(self, source: Any) -> PluginState:
        """加载一个插件并以 `loading` 状态登记。

        Args:
            source: `PluginSource`、插件名称字符串或插件对象。

        Raises:
            PluginError: 没有可用的加载器，或加载器失败。
            ValidationError: 插件不满足契约。
            DuplicateRegistrationError: 同名插件已加载。
        """
        source = as_plugin_source(source)
        if isinstance(source, NamedSource):
            if self.loader is None:
                raise create_plugin_error(f"No plugin loader configured to resolve '{source.name}'", source.name)
            config = source.config or self.plugin_config.get(source.name, {})
            try:
                plugin = await invoke(self.loader, source.name, config)
            except PluginError:
                raise
            except Exception as e:
                raise create_plugin_error(f"Failed to load plugin '{source.name}': {e}", source.name, e) from e
        else:
            plugin = source.plugin

        state = describe_plugin(plugin, next(self._order))
        if state.name in self._plugins:
            raise DuplicateRegistrationError('Plugin', state.name)

        self._plugins[state.name] = state
        self._sources[state.name] = source
        logger.info(f"插件 '{state.name}' v{state.version} 已加载")
        await self._emit(PLUGIN_LOADED, {'name': state.name, 'version': state.version})
        return state

    # --- 初始化 ---

    def _init_order(self, candidates: List[PluginState]) -> Tuple[List[PluginState], Dict[str, str]]:
        """(私有) 计算初始化顺序：依赖优先，其余保持注册顺序。

        Returns:
            (初始化顺序, 无法初始化的插件 -> 原因)。依赖缺失或处于循环中的插件
            被排除在顺序之外。
        """
        graph = {s.name: set(s.dependencies) for s in candidates}
        failures: Dict[str, str] = {}
        for state in candidates:
            missing = [d for d in state.dependencies if d not in self._plugins]
            if missing:
                failures[state.name] = f"missing dependencies: {', '.join(missing)}"

        while True:
            active = {n: {d for d in deps if d in graph or d in self._plugins}
                      for n, deps in graph.items() if n not in failures}
            sorter = TopologicalSorter(active)
            try:
                sorter.prepare()
            except CycleError as e:
                cycle = e.args[1]
                for name in cycle:
                    if name in active:
                        failures[name] = f"circular dependency: {' -> '.join(cycle)}"
                continue
            break

        ordered = []
        while sorter.is_active():
            for name in sorted(sorter.get_ready(), key=lambda n: self._plugins[n].order):
                if name in active:
                    ordered.append(self._plugins[name])
                sorter.done(name)
        return ordered, failures

    async def init_all(self) -> List[str]:
        """初始化所有处于 `loading` 状态的插件。

        Returns:
            本次成功初始化的插件名称列表。

        Raises:
            PluginInitError: 仅在 `ABORT` 策略下，第一个失败的插件会中止整个批次。
        """
        candidates = [s for s in self._plugins.values() if s.status == PluginStatus.LOADING]
        ordered, failures = self._init_order(candidates)

        for name, reason in failures.items():
            await self._fail(self._plugins[name], plugin_init_failed(name, PluginError(reason, name)))

        initialized = []
        for state in ordered:
            if await self._init_one(state):
                initialized.append(state.name)
        logger.info(f"插件初始化完成: {len(initialized)}/{len(candidates)} 个成功")
        return initialized

    async def _init_one(self, state: PluginState, abort: bool = False) -> bool:
        """(私有) 初始化单个插件并注册其能力。"""
        not_ready = [d for d in state.dependencies
                     if d not in self._plugins or self._plugins[d].status != PluginStatus.INITIALIZED]
        if not_ready:
            await self._fail(state, plugin_init_failed(
                state.name, PluginError(f"dependencies not initialized: {', '.join(not_ready)}", state.name)
            ), abort)
            return False

        plugin = state.plugin
        try:
            await invoke(plugin.init, self.core)
            state.capabilities = self.registry.register_plugin_capabilities(
                state.name,
                actions=getattr(plugin, 'actions', None) or (),
                providers=getattr(plugin, 'providers', None) or (),
                evaluators=getattr(plugin, 'evaluators', None) or (),
            )
        except Exception as e:
            await self._fail(state, plugin_init_failed(state.name, e), abort)
            return False

        state.status = PluginStatus.INITIALIZED
        state.error = None
        state.initialized_at = time.time()
        self._init_sequence.append(state.name)
        logger.info(f"插件 '{state.name}' 已初始化，注册了 {len(state.capabilities)} 个能力")
        return True

    async def _fail(self, state: PluginState, error: PluginInitError, abort: bool = False):
        """(私有) 把插件标记为失败，发布 `plugin:error`，并按策略决定是否中止。"""
        state.status = PluginStatus.FAILED
        state.error = str(error.cause or error)
        logger.error(f"插件 '{state.name}' 初始化失败: {state.error}")
        await self._emit(PLUGIN_ERROR, {'name': state.name, 'phase': 'init', 'error': state.error})
        if abort or self.init_policy == PluginInitPolicy.ABORT:
            raise error

    async def init_plugin(self, name: str) -> PluginState:
        """初始化单个插件。无论策略如何，失败都会以 `PluginInitError` 抛出。"""
        state = self.get_state(name)
        if state is None:
            raise NotFoundError('Plugin', name)
        if state.status == PluginStatus.INITIALIZED:
            return state
        state.status = PluginStatus.LOADING
        await self._init_one(state, abort=True)
        return state

    # --- 销毁 ---

    async def destroy_all(self) -> List[str]:
        """按实际初始化顺序的逆序销毁所有已初始化的插件，依赖者总是先于其依赖被销毁。

        Returns:
            被销毁的插件名称列表。
        """
        initialized = [self._plugins[name] for name in reversed(self._init_sequence)
                       if self.is_initialized(name)]
        for state in initialized:
            await self._destroy_one(state)
        return [s.name for s in initialized]

    async def _destroy_one(self, state: PluginState):
        """(私有) 先注销能力，再调用插件的 `destroy()`。失败只记录不传播。"""
        if state.name in self._init_sequence:
            self._init_sequence.remove(state.name)
        self.registry.unregister_plugin(state.name)
        state.capabilities = []
        destroy = getattr(state.plugin, 'destroy', None)
        try:
            if destroy is not None:
                await invoke(destroy)
        except Exception as e:
            state.error = str(e)
            logger.error(f"插件 '{state.name}' 销毁失败: {e}", exc_info=True)
            await self._emit(PLUGIN_ERROR, {'name': state.name, 'phase': 'destroy', 'error': str(e)})
        state.status = PluginStatus.DESTROYED
        logger.info(f"插件 '{state.name}' 已销毁")
        await self._emit(PLUGIN_UNLOADED, {'name': state.name})

    def _check_no_active_dependents(self, name: str):
        """(私有) 仍有已初始化的插件依赖 `name` 时拒绝销毁它。"""
        dependents = [s.name for s in self._plugins.values()
                      if s.status == PluginStatus.INITIALIZED and name in s.dependencies]
        if dependents:
            raise create_plugin_error(
                f"Cannot destroy '{name}': active plugins depend on it: {', '.join(dependents)}", name
            )

    async def destroy_plugin(self, name: str) -> bool:
        """销毁单个已初始化的插件。

        Raises:
            PluginError: 仍有已初始化的插件依赖它。
        """
        state = self._plugins.get(name)
        if state is None or state.status != PluginStatus.INITIALIZED:
            return False
        self._check_no_active_dependents(name)
        await self._destroy_one(state)
        return True

    async def unload_plugin(self, name: str) -> bool:
        """销毁（如已初始化）并从管理器中移除一个插件。

        Raises:
            PluginError: 仍有已初始化的插件依赖它。
        """
        state = self._plugins.get(name)
        if state is None:
            return False
        if state.status == PluginStatus.INITIALIZED:
            self._check_no_active_dependents(name)
            await self._destroy_one(state)
        else:
            self.registry.unregister_plugin(name)
        state.status = PluginStatus.UNLOADED
        del self._plugins[name]
        self._sources.pop(name, None)
        return True

    async def reload_plugin(self, name: str) -> PluginState:
        """卸载后从原来源重新加载并初始化一个插件。"""
        source = self._sources.get(name)
        if source is None:
            raise NotFoundError('Plugin', name)
        await self.unload_plugin(name)
        state = await self.load_plugin(source)
        return await self.init_plugin(state.name)

    # --- 查询 ---

    def get(self, name: str) -> Optional[Any]:
        state = self._plugins.get(name)
        return state.plugin if state else None

    def get_state(self, name: str) -> Optional[PluginState]:
        return self._plugins.get(name)

    def get_names(self) -> List[str]:
        return list(self._plugins.keys())

    def is_initialized(self, name: str) -> bool:
        state = self._plugins.get(name)
        return state is not None and state.status == PluginStatus.INITIALIZED

    def get_status(self) -> Dict[str, Dict[str, Any]]:
        return {name: state.to_dict() for name, state in self._plugins.items()}

    def get_stats(self) -> Dict[str, int]:
        stats = {status.value: 0 for status in PluginStatus}
        for state in self._plugins.values():
            stats[state.status.value] += 1
        stats['total'] = len(self._plugins)
        return stats
