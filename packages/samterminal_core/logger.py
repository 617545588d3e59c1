# -*- coding: utf-8 -*-
"""SamTerminal 运行时的全局日志记录器模块。

此模块提供了一个全局、单例的 `Logger` 类，用于在整个运行时中进行
统一的、可配置的日志记录。

主要特性:
- **单例模式**: 确保整个应用程序使用同一个日志记录器实例。
- **多处理器支持**: 可以同时将日志输出到控制台、滚动文件和异步队列。
- **自定义日志级别**: 添加了 `TRACE` 级别（级别号 5）用于更详细的调试。
- **异步队列处理器**: `AsyncioQueueHandler` 可以从任何线程安全地把日志
  记录发送到 `asyncio.Queue`，供 RPC 前端做实时日志流。
"""
import asyncio
import logging
import os
import sys
import time
from logging.handlers import RotatingFileHandler
from typing import Optional, Union


LOGGER_NAME = "SamTerminal"

# --- 自定义 TRACE 日志级别 ---
TRACE_LEVEL_NUM = 5
logging.addLevelName(TRACE_LEVEL_NUM, "TRACE")


def _trace(self, message, *args, **kwargs):
    if self.isEnabledFor(TRACE_LEVEL_NUM):
        self._log(TRACE_LEVEL_NUM, message, args, **kwargs)


logging.Logger.trace = _trace
# --- TRACE 配置结束 ---


class AsyncioQueueHandler(logging.Handler):
    """把日志记录放入 `asyncio.Queue` 的处理器。

    挂接时（或首次 emit 时）捕获正在运行的事件循环，之后通过 `call_soon_threadsafe`
    投递，因此工作线程里的日志也能安全地进入队列。
    """

    def __init__(self, log_queue: asyncio.Queue):
        super().__init__()
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self.bind(log_queue)

    def bind(self, log_queue: asyncio.Queue):
        """切换目标队列；在事件循环中调用时立即绑定该循环。"""
        self.log_queue = log_queue
        try:
            self.loop = asyncio.get_running_loop()
        except RuntimeError:
            self.loop = None

    def emit(self, record):
        if self.loop is None:
            try:
                self.loop = asyncio.get_running_loop()
            except RuntimeError:
                return

        log_entry = {
            'name': record.name,
            'message': record.getMessage(),
            'levelname': record.levelname,
            'levelno': record.levelno,
            'module': record.module,
            'funcName': record.funcName,
            'lineno': record.lineno,
            'created': record.created,
        }
        try:
            self.loop.call_soon_threadsafe(self.log_queue.put_nowait, log_entry)
        except RuntimeError:
            # 事件循环已关闭
            pass


class Logger:
    """SamTerminal 的单例日志记录器类。

    通过 `logger = Logger()` 获取全局唯一的实例。
    """
    _instance = None

    def __new__(cls, *args, **kwargs):
        if not cls._instance:
            cls._instance = super(Logger, cls).__new__(cls, *args, **kwargs)
            logger_obj = logging.getLogger(LOGGER_NAME)
            logger_obj.setLevel(TRACE_LEVEL_NUM)
            logger_obj.propagate = False
            if not any(h.name == "console" for h in logger_obj.handlers):
                console_handler = logging.StreamHandler(sys.stdout)
                console_handler.set_name("console")
                console_handler.setLevel(logging.INFO)
                console_handler.setFormatter(logging.Formatter(
                    '%(asctime)s - %(levelname)-8s - %(message)s', datefmt='%H:%M:%S'
                ))
                logger_obj.addHandler(console_handler)
            cls._instance.logger = logger_obj
        return cls._instance

    def _get_handler(self, name: str) -> Optional[logging.Handler]:
        """(私有) 根据名称获取一个已注册的处理器。"""
        for handler in self.logger.handlers:
            if handler.name == name:
                return handler
        return None

    def setup(self,
              log_dir: Optional[str] = None,
              session_name: Optional[str] = None,
              api_log_queue: Optional[asyncio.Queue] = None,
              console_level: Optional[Union[int, str]] = logging.INFO):
        """配置日志记录器，可以被多次调用。

        Args:
            log_dir: 日志文件存放的目录。与 `session_name` 同时给出时启用文件日志。
            session_name: 用于生成日志文件名。
            api_log_queue: 用于实时日志流的异步队列。
            console_level: 控制台输出的日志级别，`None` 表示移除控制台处理器。
        """
        console_handler = self._get_handler("console")
        if console_level is None:
            if console_handler:
                self.logger.removeHandler(console_handler)
        elif console_handler:
            console_handler.setLevel(console_level)

        if api_log_queue is not None:
            self.update_api_queue(api_log_queue)

        if log_dir and session_name:
            old_file_handler = self._get_handler("session_file")
            if old_file_handler:
                self.logger.removeHandler(old_file_handler)
                old_file_handler.close()

            os.makedirs(log_dir, exist_ok=True)
            timestamp = time.strftime("%Y%m%d-%H%M%S")
            safe_name = os.path.basename(session_name).replace('/', '_').replace('\\', '_')
            log_file_path = os.path.join(log_dir, f"{safe_name}_{timestamp}.log")

            file_handler = RotatingFileHandler(
                log_file_path, maxBytes=5 * 1024 * 1024, backupCount=3, encoding='utf-8'
            )
            file_handler.set_name("session_file")
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(logging.Formatter(
                '%(asctime)s - %(levelname)-8s - %(name)s - %(module)s.%(funcName)s:%(lineno)d - %(message)s'
            ))
            self.logger.addHandler(file_handler)
            self.info(f"文件日志已启用: {log_file_path}")

    def update_api_queue(self, new_queue: asyncio.Queue):
        """在运行时更新或添加实时日志流队列。"""
        api_handler = self._get_handler("api_queue")
        if isinstance(api_handler, AsyncioQueueHandler):
            api_handler.bind(new_queue)
            return
        api_queue_handler = AsyncioQueueHandler(new_queue)
        api_queue_handler.set_name("api_queue")
        api_queue_handler.setLevel(logging.DEBUG)
        self.logger.addHandler(api_queue_handler)
        self.debug("实时日志流队列已连接。")

    def trace(self, message, exc_info=False):
        self.logger.trace(message, exc_info=exc_info)

    def debug(self, message):
        self.logger.debug(message)

    def info(self, message):
        self.logger.info(message)

    def warning(self, message):
        self.logger.warning(message)

    def error(self, message, exc_info=False):
        self.logger.error(message, exc_info=exc_info)

    def critical(self, message, exc_info=False):
        self.logger.critical(message, exc_info=exc_info)


logger = Logger()
