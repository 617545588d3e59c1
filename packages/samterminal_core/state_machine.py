# -*- coding: utf-8 -*-
"""运行时生命周期状态机。

`RuntimeStateMachine` 用一张固定的有向边表描述运行时允许的状态迁移：

    idle -> initializing -> ready -> running -> stopping -> stopped
    idle -> ready, ready -> stopping/stopped, running -> stopped
    任意状态 -> error

`error` 和 `stopped` 是终态，只能通过 `reset()` 回到 `idle`。
非法迁移会抛出 `InvalidStateTransitionError`，并且不修改任何状态。
每次成功迁移都会记录到有界历史中，并在事件总线上发布 `state:changed`。
"""
import inspect
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Set

from packages.samterminal_core.event_bus import EventBus, Event, STATE_CHANGED
from packages.samterminal_core.exceptions import InvalidStateTransitionError
from packages.samterminal_core.logger import logger


class RuntimeState(str, Enum):
    IDLE = 'idle'
    INITIALIZING = 'initializing'
    READY = 'ready'
    RUNNING = 'running'
    STOPPING = 'stopping'
    STOPPED = 'stopped'
    ERROR = 'error'


VALID_TRANSITIONS: Dict[RuntimeState, Set[RuntimeState]] = {
    RuntimeState.IDLE: {RuntimeState.INITIALIZING, RuntimeState.READY, RuntimeState.ERROR},
    RuntimeState.INITIALIZING: {RuntimeState.READY, RuntimeState.ERROR},
    RuntimeState.READY: {RuntimeState.RUNNING, RuntimeState.STOPPING, RuntimeState.STOPPED, RuntimeState.ERROR},
    RuntimeState.RUNNING: {RuntimeState.STOPPING, RuntimeState.STOPPED, RuntimeState.ERROR},
    RuntimeState.STOPPING: {RuntimeState.STOPPED, RuntimeState.ERROR},
    RuntimeState.STOPPED: {RuntimeState.ERROR},
    RuntimeState.ERROR: set(),
}

MAX_HISTORY = 100


@dataclass
class StateTransition:
    from_state: RuntimeState
    to_state: RuntimeState
    timestamp: float


StateListener = Callable[[RuntimeState, RuntimeState], None]


class RuntimeStateMachine:
    """运行时状态机。

    Attributes:
        event_bus (Optional[EventBus]): 用于发布 `state:changed` 的事件总线。
    """

    def __init__(self, event_bus: Optional[EventBus] = None, initial_state: RuntimeState = RuntimeState.IDLE):
        self.event_bus = event_bus
        self._state = initial_state
        self._history: List[StateTransition] = []
        self._listeners: List[StateListener] = []

    def get_state(self) -> RuntimeState:
        return self._state

    @property
    def state(self) -> RuntimeState:
        return self._state

    def can_transition_to(self, target: RuntimeState) -> bool:
        return RuntimeState(target) in VALID_TRANSITIONS[self._state]

    def get_valid_transitions(self) -> List[RuntimeState]:
        return sorted(VALID_TRANSITIONS[self._state], key=lambda s: list(RuntimeState).index(s))

    async def transition_to(self, target: RuntimeState) -> RuntimeState:
        """迁移到目标状态。

        Args:
            target: 目标状态（枚举值或其字符串）。

        Returns:
            迁移前的状态。

        Raises:
            InvalidStateTransitionError: 如果边表中不存在此迁移。
        """
        target = RuntimeState(target)
        previous = self._state
        if not self.can_transition_to(target):
            raise InvalidStateTransitionError(previous.value, target.value)

        self._state = target
        self._history.append(StateTransition(previous, target, time.time()))
        if len(self._history) > MAX_HISTORY:
            del self._history[:len(self._history) - MAX_HISTORY]
        logger.debug(f"运行时状态: {previous.value} -> {target.value}")

        await self._notify(previous, target)
        return previous

    async def _notify(self, previous: RuntimeState, current: RuntimeState):
        """(私有) 通知监听器并发布 `state:changed` 事件。"""
        for listener in list(self._listeners):
            try:
                result = listener(previous, current)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"状态监听器执行失败: {e}", exc_info=True)
        if self.event_bus:
            await self.event_bus.publish(Event(
                name=STATE_CHANGED,
                payload={'from': previous.value, 'to': current.value}
            ))

    def on_change(self, listener: StateListener) -> Callable[[], None]:
        """注册一个状态变化监听器，返回取消注册的函数。"""
        self._listeners.append(listener)

        def _remove():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return _remove

    def reset(self):
        """把状态机重置为 `idle`，并清空历史。不发布事件。"""
        self._state = RuntimeState.IDLE
        self._history.clear()

    def get_history(self) -> List[StateTransition]:
        return list(self._history)

    def is_running(self) -> bool:
        return self._state == RuntimeState.RUNNING

    def is_ready(self) -> bool:
        return self._state == RuntimeState.READY

    def is_error(self) -> bool:
        return self._state == RuntimeState.ERROR
