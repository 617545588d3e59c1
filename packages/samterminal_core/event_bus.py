# -*- coding: utf-8 -*-
"""提供一个线程安全的、异步的事件总线。

此模块是运行时内部组件间通信的核心。状态机、插件管理器、能力分发器、
任务管理器和逻辑点引擎都通过它发布生命周期事件，宿主和插件通过订阅观察运行时。

功能特性:
- **主题过滤**: 支持使用 `*` 和 `?` 通配符匹配事件名称，例如 `plugin:*`。
- **频道隔离**: 支持按频道发布和订阅事件。
- **跨事件循环**: 订阅者可以指定自己的事件循环，发布会被安全地转交过去。
- **持久化订阅**: 调用 `clear_subscriptions` 时保留标记为持久的订阅。
- **订阅者隔离**: 单个订阅者抛出的异常只会被记录，不会影响发布者和其他订阅者。
"""
import asyncio
import fnmatch
import inspect
import threading
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Any, List, Optional, Union, Awaitable

from packages.samterminal_core.logger import logger


# --- 运行时事件名称 ---
SYSTEM_INIT = 'system:init'
SYSTEM_READY = 'system:ready'
SYSTEM_SHUTDOWN = 'system:shutdown'
STATE_CHANGED = 'state:changed'
PLUGIN_LOADED = 'plugin:loaded'
PLUGIN_UNLOADED = 'plugin:unloaded'
PLUGIN_ERROR = 'plugin:error'
ACTION_BEFORE = 'action:before'
ACTION_AFTER = 'action:after'
ACTION_ERROR = 'action:error'
PROVIDER_BEFORE = 'provider:before'
PROVIDER_AFTER = 'provider:after'
PROVIDER_ERROR = 'provider:error'
FLOW_POINT_START = 'flow:point:start'
FLOW_POINT_COMPLETE = 'flow:point:complete'
FLOW_POINT_ERROR = 'flow:point:error'
TASK_STARTED = 'task:started'
TASK_COMPLETED = 'task:completed'
TASK_FAILED = 'task:failed'
TASK_CANCELLED = 'task:cancelled'
SCHEDULER_FIRED = 'scheduler:fired'


def get_utc_timestamp() -> str:
    """获取当前时间的 UTC ISO 格式字符串。"""
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Event:
    """代表一个在事件总线中传递的事件。

    Attributes:
        name (str): 事件的名称，例如 "plugin:loaded"。
        payload (Dict[str, Any]): 与事件相关的任意数据。
        id (str): 事件的唯一标识符。
        timestamp (str): 事件创建时的 UTC 时间戳。
        channel (str): 事件发布的频道，默认为 '*'。
    """
    name: str
    payload: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = field(default_factory=get_utc_timestamp)
    channel: str = '*'

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "timestamp": self.timestamp,
            "payload": self.payload,
            "channel": self.channel
        }


EventHandler = Callable[[Event], Union[None, Awaitable[None]]]


@dataclass
class Subscription:
    """代表一个对特定事件模式的订阅。

    Attributes:
        callback: 匹配的事件发生时要执行的回调，可以是同步或异步函数。
        loop: 回调所属的事件循环。为 None 时在发布者的循环中执行。
        persistent: 为 True 时，`clear_subscriptions` 不会移除此订阅。
        once: 为 True 时，第一次匹配后自动取消订阅。
    """
    callback: EventHandler
    loop: Optional[asyncio.AbstractEventLoop] = None
    persistent: bool = False
    once: bool = False
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


class EventBus:
    """实现发布/订阅模式的事件总线。"""

    def __init__(self):
        self._subscriptions: Dict[str, List[Subscription]] = defaultdict(list)
        self._lock = threading.Lock()

    async def subscribe(
            self,
            event_pattern: str,
            callback: EventHandler,
            channel: str = '*',
            *,
            loop: Optional[asyncio.AbstractEventLoop] = None,
            persistent: bool = False,
            once: bool = False
    ) -> Callable[[], bool]:
        """订阅一个或多个事件。

        Args:
            event_pattern: 要订阅的事件名称模式，支持 `*` 和 `?` 通配符。
            callback: 匹配到事件时要执行的回调。
            channel: 要订阅的频道，`*` 表示所有频道。
            loop: 回调应在哪个事件循环中执行。
            persistent: 是否为持久化订阅。
            once: 是否只接收一次事件。

        Returns:
            一个无参函数，调用它即可取消本次订阅。
        """
        key = f"{channel}::{event_pattern}"
        with self._lock:
            for sub in self._subscriptions[key]:
                if sub.callback is callback and sub.loop is loop and sub.persistent == persistent:
                    return lambda: self._remove(key, sub.id)
            sub = Subscription(callback=callback, loop=loop, persistent=persistent, once=once)
            self._subscriptions[key].append(sub)
        return lambda: self._remove(key, sub.id)

    async def once(self, event_pattern: str, callback: EventHandler, channel: str = '*') -> Callable[[], bool]:
        """订阅一个事件，只触发一次。"""
        return await self.subscribe(event_pattern, callback, channel, once=True)

    def unsubscribe(self, event_pattern: str, callback: EventHandler, channel: str = '*') -> bool:
        """按模式和回调取消订阅。

        Returns:
            如果找到并移除了订阅，返回 True。
        """
        key = f"{channel}::{event_pattern}"
        with self._lock:
            subs = self._subscriptions.get(key, [])
            remaining = [s for s in subs if s.callback is not callback]
            if len(remaining) == len(subs):
                return False
            self._subscriptions[key] = remaining
            return True

    def _remove(self, key: str, sub_id: str) -> bool:
        """(私有) 按订阅 ID 移除订阅。"""
        with self._lock:
            subs = self._subscriptions.get(key, [])
            remaining = [s for s in subs if s.id != sub_id]
            if len(remaining) == len(subs):
                return False
            self._subscriptions[key] = remaining
            return True

    async def wait_for(self, event_pattern: str, timeout: Optional[float] = None, channel: str = '*') -> Event:
        """等待下一个匹配的事件。

        Raises:
            asyncio.TimeoutError: 如果在 `timeout` 秒内没有匹配的事件。
        """
        future = asyncio.get_running_loop().create_future()

        def _resolve(event: Event):
            if not future.done():
                future.set_result(event)

        remove = await self.subscribe(event_pattern, _resolve, channel, once=True)
        try:
            return await asyncio.wait_for(future, timeout)
        finally:
            remove()

    async def publish(self, event: Event):
        """发布一个事件到事件总线。

        查找所有匹配该事件名称和频道的订阅，并执行它们的回调。属于其他事件循环的
        订阅者会通过 `call_soon_threadsafe` 转交。订阅者的异常会被记录后丢弃。
        """
        try:
            current_loop = asyncio.get_running_loop()
        except RuntimeError:
            current_loop = None

        matched: List[Subscription] = []
        with self._lock:
            for key, subscriptions in list(self._subscriptions.items()):
                channel, pattern = key.split('::', 1)
                if (channel == '*' or event.channel == channel) and fnmatch.fnmatch(event.name, pattern):
                    for sub in subscriptions:
                        matched.append(sub)
                    if any(s.once for s in subscriptions):
                        self._subscriptions[key] = [s for s in subscriptions if not s.once]

        awaitables = []
        for sub in matched:
            if sub.loop and sub.loop is not current_loop:
                sub.loop.call_soon_threadsafe(self._dispatch_threadsafe, sub, event)
                continue
            try:
                result = sub.callback(event)
            except Exception as e:
                logger.error(f"事件 '{event.name}' 的订阅者执行失败: {e}", exc_info=True)
                continue
            if inspect.isawaitable(result):
                awaitables.append(result)

        if awaitables:
            results = await asyncio.gather(*awaitables, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    logger.error(f"事件 '{event.name}' 的异步订阅者执行失败: {result}")

    @staticmethod
    def _dispatch_threadsafe(sub: Subscription, event: Event):
        """(私有) 在订阅者自己的事件循环中执行回调。"""
        try:
            result = sub.callback(event)
        except Exception as e:
            logger.error(f"事件 '{event.name}' 的订阅者执行失败: {e}", exc_info=True)
            return
        if inspect.isawaitable(result):
            asyncio.ensure_future(result)

    async def emit(self, name: str, payload: Optional[Dict[str, Any]] = None, channel: str = '*'):
        """构造并发布一个事件的便捷方法。"""
        await self.publish(Event(name=name, payload=payload or {}, channel=channel))

    def subscriber_count(self, event_pattern: Optional[str] = None) -> int:
        """返回订阅数量，可以按模式过滤。"""
        with self._lock:
            return sum(
                len(subs) for key, subs in self._subscriptions.items()
                if event_pattern is None or key.split('::', 1)[1] == event_pattern
            )

    async def clear_subscriptions(self):
        """清除所有非持久化的订阅。"""
        with self._lock:
            for key, subs in list(self._subscriptions.items()):
                self._subscriptions[key] = [s for s in subs if s.persistent]
