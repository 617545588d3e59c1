# -*- coding: utf-8 -*-
"""SamTerminal 运行时引擎。

`RuntimeEngine` 是整个运行时的组合根和对外入口。它创建并持有所有子系统，
并以自身作为 `core` 交给插件，让插件可以反过来调用 `execute_action` / `get_data`。

生命周期:
- `initialize()`: idle -> initializing，按配置加载插件，-> ready，发布 `system:ready`。
  失败时进入 error 并重新抛出。
- `start()`: ready -> running，初始化所有插件，启动调度器，发布 `system:init`。
- `stop()`: -> stopping，停止调度器，等待任务管理器清空，逆序销毁插件，
  -> stopped，发布 `system:shutdown`。

子系统（均通过同名属性访问）:
`event_bus`、`state_machine`、`operation_runner`、`task_manager`、`scheduler`、
`registry`、`dispatcher`、`plugins`、`logic_points`、`scheduling`。
"""
import time
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from packages.samterminal_core.capability_registry import CapabilityDispatcher, CapabilityRegistry
from packages.samterminal_core.config import RuntimeConfig, load_runtime_config
from packages.samterminal_core.event_bus import EventBus, Event, SYSTEM_INIT, SYSTEM_READY, SYSTEM_SHUTDOWN
from packages.samterminal_core.exceptions import PluginInitError
from packages.samterminal_core.id_generator import generate_id
from packages.samterminal_core.logger import logger
from packages.samterminal_core.logic_point import LogicPointManager
from packages.samterminal_core.operation_runner import AsyncOperationRunner, RetryPolicy, WorkUnit
from packages.samterminal_core.plugin_definition import NamedSource, PluginState
from packages.samterminal_core.plugin_manager import ImportlibPluginLoader, PluginLoader, PluginManager
from packages.samterminal_core.scheduler import Scheduler
from packages.samterminal_core.scheduling_service import ScheduleRequest, SchedulingService
from packages.samterminal_core.state_machine import RuntimeState, RuntimeStateMachine
from packages.samterminal_core.task_manager import Task, TaskManager


class AgentStatus(str, Enum):
    IDLE = 'idle'
    RUNNING = 'running'
    STOPPED = 'stopped'


class AgentConfig(BaseModel):
    id: Optional[str] = None
    name: str = Field(min_length=1)
    description: Optional[str] = None
    plugins: List[str] = Field(default_factory=list)
    settings: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class Agent(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    status: AgentStatus = AgentStatus.IDLE
    config: AgentConfig
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class RuntimeEngine:
    """运行时引擎，所有子系统的组合根。

    Attributes:
        config (RuntimeConfig): 运行时配置。
    """

    def __init__(self, config: Optional[RuntimeConfig] = None, *,
                 plugin_loader: Optional[PluginLoader] = None,
                 clock: Optional[Callable[[], datetime]] = None,
                 event_bus: Optional[EventBus] = None):
        self.config = config or RuntimeConfig()

        # --- 基础设施 ---
        self._event_bus = event_bus or EventBus()
        self._state_machine = RuntimeStateMachine(self._event_bus)
        self._runner = AsyncOperationRunner()

        # --- 任务与调度 ---
        self._task_manager = TaskManager(
            runner=self._runner,
            event_bus=self._event_bus,
            max_concurrent=self.config.max_concurrent_tasks,
            default_timeout=self.config.default_task_timeout,
        )
        self._scheduler = Scheduler(
            task_manager=self._task_manager,
            event_bus=self._event_bus,
            tick_interval=self.config.scheduler_tick_interval,
            clock=clock,
        )

        # --- 能力与插件 ---
        self._registry = CapabilityRegistry()
        self._dispatcher = CapabilityDispatcher(self._registry, self._event_bus, core=self, runner=self._runner)
        self._plugins = PluginManager(
            self._registry,
            event_bus=self._event_bus,
            loader=plugin_loader or ImportlibPluginLoader(),
            init_policy=self.config.plugin_init_policy,
            plugin_config=self.config.plugin_config,
        )
        self._plugins.set_core(self)

        # --- 执行图与对外接口 ---
        self._logic_points = LogicPointManager(self._runner, self._event_bus)
        self._scheduling = SchedulingService(self._scheduler, self.execute_action)

        self._agent: Optional[Agent] = None
        self._started_at: Optional[float] = None

    @classmethod
    def from_config_file(cls, path: Optional[Union[str, Path]] = None,
                         dotenv_path: Optional[Union[str, Path]] = None, **kwargs) -> 'RuntimeEngine':
        """从 YAML 文件和环境变量加载配置，配置日志，并创建引擎。"""
        config = load_runtime_config(path, dotenv_path=dotenv_path)
        logger.setup(log_dir=config.log_dir, session_name='samterminal', console_level=config.log_level)
        return cls(config, **kwargs)

    # --- 子系统访问器 ---

    @property
    def event_bus(self) -> EventBus:
        return self._event_bus

    @property
    def state_machine(self) -> RuntimeStateMachine:
        return self._state_machine

    @property
    def operation_runner(self) -> AsyncOperationRunner:
        return self._runner

    @property
    def task_manager(self) -> TaskManager:
        return self._task_manager

    @property
    def scheduler(self) -> Scheduler:
        return self._scheduler

    @property
    def registry(self) -> CapabilityRegistry:
        return self._registry

    @property
    def dispatcher(self) -> CapabilityDispatcher:
        return self._dispatcher

    @property
    def plugins(self) -> PluginManager:
        return self._plugins

    @property
    def logic_points(self) -> LogicPointManager:
        return self._logic_points

    @property
    def scheduling(self) -> SchedulingService:
        return self._scheduling

    def get_state(self) -> RuntimeState:
        return self._state_machine.get_state()

    async def _emit(self, name: str, payload: Optional[Dict[str, Any]] = None):
        await self._event_bus.publish(Event(name=name, payload=payload or {}))

    # --- 生命周期 ---

    async def initialize(self):
        """加载配置中列出的插件并进入 `ready` 状态。"""
        logger.info("正在初始化运行时...")
        await self._state_machine.transition_to(RuntimeState.INITIALIZING)
        try:
            for name in self.config.plugins:
                await self._plugins.load_plugin(NamedSource(name, self.config.plugin_config.get(name, {})))
            await self._state_machine.transition_to(RuntimeState.READY)
        except Exception as e:
            logger.error(f"运行时初始化失败: {e}", exc_info=True)
            await self._state_machine.transition_to(RuntimeState.ERROR)
            raise
        logger.info("运行时已就绪")
        await self._emit(SYSTEM_READY)

    async def start(self):
        """初始化所有插件并启动调度器。

        Raises:
            InvalidStateTransitionError: 运行时不在 `ready` 状态。
            PluginInitError: 仅在 `abort` 插件策略下，某个插件初始化失败。
        """
        await self._state_machine.transition_to(RuntimeState.RUNNING)
        logger.info("正在启动运行时...")
        try:
            await self._plugins.init_all()
        except PluginInitError as e:
            logger.error(f"插件初始化失败，运行时启动中止: {e}")
            await self._state_machine.transition_to(RuntimeState.ERROR)
            raise
        await self._scheduler.start()
        self._started_at = time.time()
        if self._agent:
            self._agent.status = AgentStatus.RUNNING
        logger.info("运行时已启动")
        await self._emit(SYSTEM_INIT)

    async def stop(self):
        """停止调度器，等待所有任务结束，逆序销毁插件。"""
        await self._state_machine.transition_to(RuntimeState.STOPPING)
        logger.info("正在停止运行时...")
        await self._scheduler.stop()
        await self._task_manager.wait_all()
        await self._plugins.destroy_all()
        await self._state_machine.transition_to(RuntimeState.STOPPED)
        if self._agent:
            self._agent.status = AgentStatus.STOPPED
        logger.info("运行时已停止")
        await self._emit(SYSTEM_SHUTDOWN)
        await self._event_bus.clear_subscriptions()

    async def __aenter__(self) -> 'RuntimeEngine':
        await self.initialize()
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if self._state_machine.get_state() in (RuntimeState.READY, RuntimeState.RUNNING):
            await self.stop()

    async def load_plugin(self, source: Any) -> PluginState:
        """加载一个插件（名称或对象），在下一次 `start()` 或 `plugins.init_plugin()` 时初始化。"""
        return await self._plugins.load_plugin(source)

    # --- 能力调用 ---

    def _default_context(self, context: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if self._agent is None:
            return context
        merged = {'agent_id': self._agent.id}
        merged.update(context or {})
        return merged

    async def execute_action(self, name: str, input: Any = None, context: Optional[Dict[str, Any]] = None, *,
                             timeout: Optional[float] = None, retry: Optional[RetryPolicy] = None) -> Any:
        return await self._dispatcher.execute_action(name, input, self._default_context(context),
                                                     timeout=timeout, retry=retry)

    async def get_data(self, name: str, query: Any = None, context: Optional[Dict[str, Any]] = None, *,
                       timeout: Optional[float] = None, retry: Optional[RetryPolicy] = None) -> Any:
        return await self._dispatcher.get_data(name, query, self._default_context(context),
                                               timeout=timeout, retry=retry)

    async def evaluate(self, name: str, input: Any = None, context: Optional[Dict[str, Any]] = None) -> bool:
        return await self._dispatcher.evaluate(name, input, self._default_context(context))

    # --- 任务与调度 ---

    def queue_task(self, work: WorkUnit, name: Optional[str] = None, timeout: Optional[float] = None,
                   priority: int = 0, retry: Optional[RetryPolicy] = None,
                   metadata: Optional[Dict[str, Any]] = None) -> Task:
        """提交一个临时任务，返回可 await 的 `Task`。"""
        return self._task_manager.enqueue(work, name=name, timeout=timeout, priority=priority,
                                          retry=retry, metadata=metadata)

    def schedule_task(self, work: WorkUnit, name: Optional[str] = None, cron: Optional[str] = None,
                      interval: Optional[int] = None, run_once: bool = False, immediate: bool = False) -> str:
        """注册一个计划任务，返回其 ID。`interval` 单位为毫秒。"""
        return self._scheduler.schedule(work, name=name, cron=cron, interval=interval,
                                        run_once=run_once, immediate=immediate)

    def schedule_action(self, request: Union[ScheduleRequest, Dict[str, Any]]) -> Dict[str, Any]:
        """注册一个按计划调用 action 的任务，返回其摘要。"""
        return self._scheduling.create(request)

    # --- Agent ---

    async def create_agent(self, config: Union[AgentConfig, Dict[str, Any]]) -> Agent:
        if not isinstance(config, AgentConfig):
            config = AgentConfig.model_validate(config)
        agent = Agent(
            id=config.id or generate_id('agent'),
            name=config.name,
            description=config.description,
            status=AgentStatus.RUNNING if self._state_machine.is_running() else AgentStatus.IDLE,
            config=config,
        )
        self._agent = agent
        logger.info(f"Agent 已创建: {agent.name} ({agent.id})")
        return agent

    def get_agent(self) -> Optional[Agent]:
        return self._agent

    # --- 统计 ---

    def get_stats(self) -> Dict[str, Any]:
        return {
            'state': self._state_machine.get_state().value,
            'uptime': time.time() - self._started_at if self._started_at else 0.0,
            'tasks': self._task_manager.get_stats(),
            'scheduler': self._scheduler.get_stats(),
            'plugins': self._plugins.get_stats(),
            'capabilities': self._registry.get_stats(),
            'logic_points': self._logic_points.size,
        }
