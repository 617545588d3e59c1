# -*- coding: utf-8 -*-
"""插件能力（Action / Provider / Evaluator）的公共契约。

插件通过实现这里定义的三类能力向运行时暴露行为：

- **Action**: 有副作用的操作，`execute(context)` 返回 `ActionResult`。
- **Provider**: 只读的数据获取，`get(context)` 返回 `ProviderResult`。
- **Evaluator**: 布尔判定，`evaluate(context)` 返回 `bool`。

既可以继承抽象基类，也可以用 `@action` / `@provider` / `@evaluator`
装饰一个异步函数。处理器返回的普通字典会被校验为对应的 pydantic 结果模型。
"""
import inspect
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from pydantic import BaseModel, Field


# --- 结果模型 ---

class ActionResult(BaseModel):
    success: bool
    data: Any = None
    error: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ProviderResult(BaseModel):
    success: bool
    data: Any = None
    error: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    cached: bool = False


class ValidationResult(BaseModel):
    valid: bool
    errors: List[str] = Field(default_factory=list)


def to_action_result(value: Any) -> ActionResult:
    """把处理器的返回值规范化为 `ActionResult`。

    已经是结果模型或带 `success` 键的字典会按结果解析；其它值视为成功的数据。
    """
    if isinstance(value, ActionResult):
        return value
    if isinstance(value, dict) and 'success' in value:
        return ActionResult.model_validate(value)
    return ActionResult(success=True, data=value)


def to_provider_result(value: Any) -> ProviderResult:
    if isinstance(value, ProviderResult):
        return value
    if isinstance(value, dict) and 'success' in value:
        return ProviderResult.model_validate(value)
    return ProviderResult(success=True, data=value)


def to_validation_result(value: Any) -> ValidationResult:
    if isinstance(value, ValidationResult):
        return value
    if isinstance(value, dict) and 'valid' in value:
        return ValidationResult.model_validate(value)
    return ValidationResult(valid=bool(value))


# --- 上下文 ---

@dataclass
class ActionContext:
    """传给 `Action.execute` 的上下文。"""
    plugin_name: str
    input: Any = None
    agent_id: Optional[str] = None
    chain_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    core: Any = None


@dataclass
class ProviderContext:
    """传给 `Provider.get` 的上下文。"""
    plugin_name: str
    query: Any = None
    agent_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    core: Any = None


@dataclass
class EvaluatorContext:
    """传给 `Evaluator.evaluate` 的上下文。"""
    plugin_name: str
    input: Any = None
    agent_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    core: Any = None


# --- 抽象基类 ---

class Action(ABC):
    """有副作用的能力。子类必须设置 `name` 并实现 `execute`。"""
    name: str = ''
    description: str = ''

    @abstractmethod
    async def execute(self, context: ActionContext) -> Union[ActionResult, Dict[str, Any]]:
        ...

    def validate(self, input: Any) -> Union[ValidationResult, bool]:
        return ValidationResult(valid=True)


class Provider(ABC):
    """只读数据能力。"""
    name: str = ''
    description: str = ''

    @abstractmethod
    async def get(self, context: ProviderContext) -> Union[ProviderResult, Dict[str, Any]]:
        ...


class Evaluator(ABC):
    """布尔判定能力。"""
    name: str = ''
    description: str = ''

    @abstractmethod
    async def evaluate(self, context: EvaluatorContext) -> bool:
        ...


# --- 函数式能力 ---

async def _maybe_await(value):
    if inspect.isawaitable(value):
        return await value
    return value


class FunctionAction(Action):
    def __init__(self, func: Callable[[ActionContext], Any], name: str, description: str = '',
                 validator: Optional[Callable[[Any], Any]] = None):
        self.func = func
        self.name = name
        self.description = description or (inspect.getdoc(func) or '')
        self._validator = validator

    async def execute(self, context: ActionContext):
        return await _maybe_await(self.func(context))

    def validate(self, input: Any):
        if self._validator is None:
            return ValidationResult(valid=True)
        return self._validator(input)


class FunctionProvider(Provider):
    def __init__(self, func: Callable[[ProviderContext], Any], name: str, description: str = ''):
        self.func = func
        self.name = name
        self.description = description or (inspect.getdoc(func) or '')

    async def get(self, context: ProviderContext):
        return await _maybe_await(self.func(context))


class FunctionEvaluator(Evaluator):
    def __init__(self, func: Callable[[EvaluatorContext], Any], name: str, description: str = ''):
        self.func = func
        self.name = name
        self.description = description or (inspect.getdoc(func) or '')

    async def evaluate(self, context: EvaluatorContext) -> bool:
        return bool(await _maybe_await(self.func(context)))


def action(name: str, description: str = '', validator: Optional[Callable[[Any], Any]] = None):
    """装饰器工厂，把一个（异步）函数包装为 Action。

    Args:
        name: 能力名称（动词），注册时会加上插件名前缀。
        description: 描述，默认取函数的文档字符串。
        validator: 可选的输入校验函数，返回 `bool` 或 `ValidationResult`。
    """
    def decorator(func: Callable[[ActionContext], Awaitable[Any]]) -> FunctionAction:
        return FunctionAction(func, name, description, validator)
    return decorator


def provider(name: str, description: str = ''):
    """装饰器工厂，把一个（异步）函数包装为 Provider。"""
    def decorator(func: Callable[[ProviderContext], Awaitable[Any]]) -> FunctionProvider:
        return FunctionProvider(func, name, description)
    return decorator


def evaluator(name: str, description: str = ''):
    """装饰器工厂，把一个（异步）函数包装为 Evaluator。"""
    def decorator(func: Callable[[EvaluatorContext], Awaitable[Any]]) -> FunctionEvaluator:
        return FunctionEvaluator(func, name, description)
    return decorator
