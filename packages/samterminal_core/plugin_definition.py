# -*- coding: utf-8 -*-
"""定义了插件的数据模型与插件来源。

- `PluginSource`: 插件来源的标签联合，`NamedSource`（由注入的加载器解析的名称）
  或 `InstanceSource`（已经构造好的插件对象）。
- `PluginState`: 插件管理器为每个已加载插件维护的生命周期记录。
- `validate_plugin_contract`: 检查对象是否满足运行时要求的插件契约
  （`name`、`version`、可调用的 `init`，可选的 `destroy` 与 `dependencies`）。
"""
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from packages.samterminal_core.exceptions import ValidationError


@dataclass
class NamedSource:
    """按名称引用的插件，例如 `"my_plugins.tokendata"` 或 `"my_plugins.tokendata:plugin"`。"""
    name: str
    config: Dict[str, Any] = field(default_factory=dict)


@dataclass
class InstanceSource:
    """已经构造好的插件对象。"""
    plugin: Any


PluginSource = Union[NamedSource, InstanceSource]


def as_plugin_source(source: Any) -> PluginSource:
    """把字符串或插件对象包装为 `PluginSource`。"""
    if isinstance(source, (NamedSource, InstanceSource)):
        return source
    if isinstance(source, str):
        return NamedSource(source)
    return InstanceSource(source)


class PluginStatus(str, Enum):
    UNLOADED = 'unloaded'
    LOADING = 'loading'
    INITIALIZED = 'initialized'
    FAILED = 'failed'
    DESTROYED = 'destroyed'


@dataclass
class PluginState:
    """一个已加载插件的生命周期记录。

    Attributes:
        plugin (Any): 插件对象。
        name (str): 插件名称，在管理器内唯一。
        version (str): 插件版本。
        dependencies (List[str]): 必须先于本插件初始化的插件名称。
        order (int): 注册顺序，在依赖约束之外决定初始化的先后。
        status (PluginStatus): 当前生命周期状态。
        capabilities (List[str]): 初始化成功后注册的限定名。
        error (Optional[str]): 最近一次失败的原因。
    """
    plugin: Any
    name: str
    version: str
    dependencies: List[str] = field(default_factory=list)
    order: int = 0
    status: PluginStatus = PluginStatus.LOADING
    capabilities: List[str] = field(default_factory=list)
    error: Optional[str] = None
    loaded_at: float = field(default_factory=time.time)
    initialized_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'version': self.version,
            'status': self.status.value,
            'dependencies': list(self.dependencies),
            'capabilities': list(self.capabilities),
            'error': self.error,
        }


def validate_plugin_contract(plugin: Any) -> List[str]:
    """检查插件对象是否满足契约。

    Returns:
        错误描述列表，为空表示通过。
    """
    errors = []
    name = getattr(plugin, 'name', None)
    if not isinstance(name, str) or not name:
        errors.append("plugin must have a non-empty string 'name'")
    if not isinstance(getattr(plugin, 'version', None), str):
        errors.append("plugin must have a string 'version'")
    if not callable(getattr(plugin, 'init', None)):
        errors.append("plugin must implement 'init(core)'")
    destroy = getattr(plugin, 'destroy', None)
    if destroy is not None and not callable(destroy):
        errors.append("plugin 'destroy' must be callable")
    dependencies = getattr(plugin, 'dependencies', None) or []
    if not isinstance(dependencies, (list, tuple)) or not all(isinstance(d, str) for d in dependencies):
        errors.append("plugin 'dependencies' must be a list of plugin names")
    return errors


def describe_plugin(plugin: Any, order: int) -> PluginState:
    """校验插件并创建其生命周期记录。

    Raises:
        ValidationError: 插件不满足契约。
    """
    errors = validate_plugin_contract(plugin)
    if errors:
        raise ValidationError(f"Invalid plugin {getattr(plugin, 'name', plugin)!r}", errors=errors)
    return PluginState(
        plugin=plugin,
        name=plugin.name,
        version=plugin.version,
        dependencies=list(getattr(plugin, 'dependencies', None) or []),
        order=order,
    )
