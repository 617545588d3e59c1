# -*- coding: utf-8 -*-
"""定义了 SamTerminal 运行时核心使用的所有自定义异常。

这个模块建立了一个层次化的异常结构，所有自定义异常都继承自 `SamTerminalException`。
异常被分为几大类：
- **输入与注册错误**: 参数校验失败、名称冲突、查找失败等。
- **执行时错误**: 在操作、能力或逻辑点执行期间发生的实际错误。
- **生命周期错误**: 非法的状态迁移、插件初始化失败。
- **配置错误**: 与运行时或插件配置相关的错误。

此外，还提供了 `normalize_error` 用于把任意外部异常规范化为框架异常，
以及一系列工厂函数来方便地创建特定类型的异常。
"""
from typing import Optional, Dict, Any, List
import traceback


# --- 基础异常 ---

class SamTerminalException(Exception):
    """所有 SamTerminal 核心自定义异常的基类。

    Attributes:
        details (Dict[str, Any]): 包含有关异常的附加结构化数据。
        cause (Optional[BaseException]): 触发此异常的原始异常对象。
        severity (str): 异常的严重级别 ('error', 'warning', 'critical')。
    """
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None,
                 cause: Optional[BaseException] = None, severity: str = 'error'):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.cause = cause
        self.severity = severity
        if cause:
            self.__cause__ = cause

    def get_full_traceback(self) -> str:
        """获取完整的堆栈跟踪信息，包括其 cause 的信息。"""
        if self.__cause__:
            return ''.join(traceback.format_exception(type(self.__cause__), self.__cause__, self.__cause__.__traceback__))
        return ''.join(traceback.format_exception(type(self), self, self.__traceback__))

    def to_dict(self) -> Dict[str, Any]:
        """将异常序列化为字典，供事件负载和 RPC 响应使用。"""
        return {
            'type': type(self).__name__,
            'message': self.message,
            'details': self.details,
            'severity': self.severity,
        }


# --- 输入与注册错误 ---

class ValidationError(SamTerminalException):
    """输入不合法（例如调度请求同时给出了 cron 和 interval）。"""
    def __init__(self, message: str, errors: Optional[List[str]] = None, cause: Optional[BaseException] = None):
        super().__init__(message, {'errors': errors or []}, cause, severity='warning')
        self.errors = errors or []


class NotFoundError(SamTerminalException):
    """按名称或 ID 查找的对象不存在。"""
    def __init__(self, kind: str, name: str, cause: Optional[BaseException] = None):
        super().__init__(f"{kind} '{name}' not found", {'kind': kind, 'name': name}, cause)
        self.kind = kind
        self.name = name


class DuplicateRegistrationError(SamTerminalException):
    """同名对象已经注册。"""
    def __init__(self, kind: str, name: str, owner: Optional[str] = None):
        message = f"{kind} '{name}' is already registered"
        if owner:
            message += f" by '{owner}'"
        super().__init__(message, {'kind': kind, 'name': name, 'owner': owner})
        self.kind = kind
        self.name = name


# --- 生命周期错误 ---

class InvalidStateTransitionError(SamTerminalException):
    """请求了状态机中不存在的状态迁移。"""
    def __init__(self, from_state: str, to_state: str):
        super().__init__(
            f"Invalid state transition: {from_state} -> {to_state}",
            {'from': from_state, 'to': to_state}
        )
        self.from_state = from_state
        self.to_state = to_state


class PluginError(SamTerminalException):
    """与特定插件相关的错误。"""
    def __init__(self, message: str, plugin_name: Optional[str] = None, cause: Optional[BaseException] = None):
        super().__init__(message, {'plugin_name': plugin_name}, cause)
        self.plugin_name = plugin_name


class PluginInitError(PluginError):
    """插件初始化失败。"""
    pass


# --- 执行时错误 ---

class ExecutionError(SamTerminalException):
    """在执行期间发生的通用错误，也是外部异常规范化后的类型。"""
    pass


class OperationTimeoutError(ExecutionError):
    """调用方等待某个操作超时。底层工作不会因此被取消。"""
    def __init__(self, operation_name: str, timeout: float):
        super().__init__(
            f"Operation '{operation_name}' timed out after {timeout}s",
            {'operation': operation_name, 'timeout': timeout}
        )
        self.operation_name = operation_name
        self.timeout = timeout


class RetryExhaustedError(ExecutionError):
    """所有重试尝试均已失败。

    Attributes:
        attempts (int): 实际尝试的次数。
        last_error (BaseException): 最后一次尝试抛出的异常，同时作为异常链的 cause。
    """
    def __init__(self, operation_name: str, attempts: int, last_error: BaseException):
        super().__init__(
            f"Operation '{operation_name}' failed after {attempts} attempts: {last_error}",
            {'operation': operation_name, 'attempts': attempts},
            cause=last_error
        )
        self.attempts = attempts
        self.last_error = last_error


class CapabilityExecutionError(ExecutionError):
    """Action/Provider/Evaluator 报告失败或在执行中抛出异常。"""
    def __init__(self, message: str, capability_name: Optional[str] = None, cause: Optional[BaseException] = None):
        super().__init__(message, {'capability_name': capability_name}, cause)
        self.capability_name = capability_name


class NoBranchFoundError(ExecutionError):
    """决策点的输出没有匹配到任何分支。"""
    def __init__(self, point_id: str, output: Any):
        super().__init__(
            f"No branch found for decision point '{point_id}' with output {output!r}",
            {'point_id': point_id, 'output': output}
        )
        self.point_id = point_id
        self.output = output


# --- 配置错误 ---

class ConfigurationError(SamTerminalException):
    """与配置相关的错误。"""
    pass


# --- 规范化 ---

def normalize_error(error: BaseException) -> SamTerminalException:
    """把任意异常规范化为框架异常。

    框架异常原样返回；其它异常被包装为 `ExecutionError`，并保留原始异常作为 cause。
    """
    if isinstance(error, SamTerminalException):
        return error
    return ExecutionError(str(error) or type(error).__name__, {'original_type': type(error).__name__}, cause=error)


# --- 异常工厂函数 ---

def capability_not_found(kind: str, name: str) -> NotFoundError:
    """创建一个能力未找到的错误。"""
    return NotFoundError(kind, name)


def action_failed(action_name: str, reason: str, cause: Optional[BaseException] = None) -> CapabilityExecutionError:
    """创建一个 Action 失败的错误。"""
    return CapabilityExecutionError(f"Action '{action_name}' failed: {reason}", capability_name=action_name, cause=cause)


def create_plugin_error(message: str, plugin_name: Optional[str] = None,
                        cause: Optional[BaseException] = None) -> PluginError:
    """创建一个插件相关的错误。"""
    return PluginError(message, plugin_name=plugin_name, cause=cause)


def plugin_init_failed(plugin_name: str, cause: Optional[BaseException] = None) -> PluginInitError:
    """创建一个插件初始化失败的错误。"""
    reason = f": {cause}" if cause else ""
    return PluginInitError(f"Plugin '{plugin_name}' failed to initialize{reason}", plugin_name=plugin_name, cause=cause)
