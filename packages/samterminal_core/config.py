# -*- coding: utf-8 -*-
"""运行时配置模型与分层加载器。

`RuntimeConfig` 是一个 pydantic 模型，描述运行时引擎的所有可调参数。
`load_runtime_config` 按以下优先级（从低到高）合并配置：

1.  模型默认值。
2.  YAML 配置文件（顶层键，或 `runtime:` 段）。
3.  `.env` 文件与以 `SAMTERMINAL_` 开头的环境变量。嵌套键使用双下划线分隔，
    例如 `SAMTERMINAL_PLUGIN_CONFIG__TOKENDATA__API_KEY`。
"""
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, Optional, Union

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, field_validator

from packages.samterminal_core.exceptions import ConfigurationError
from packages.samterminal_core.logger import logger

ENV_PREFIX = 'SAMTERMINAL_'
NESTED_SEPARATOR = '__'


class RuntimeConfig(BaseModel):
    """运行时引擎配置。

    Attributes:
        max_concurrent_tasks: 任务管理器的最大并发数。
        default_task_timeout: 任务默认的单次超时时间（秒），None 表示不限制。
        scheduler_tick_interval: 调度器 tick 间隔（秒）。
        plugin_init_policy: 插件初始化失败时隔离（`isolate`）还是中止（`abort`）。
        plugins: `initialize()` 时按名称加载的插件。
        plugin_config: 每个插件的配置，按插件名索引。
        log_level: 控制台日志级别。
        log_dir: 文件日志目录，None 表示不写文件日志。
    """
    model_config = ConfigDict(extra='ignore')

    max_concurrent_tasks: int = Field(10, ge=1)
    default_task_timeout: Optional[float] = Field(None, gt=0)
    scheduler_tick_interval: float = Field(1.0, gt=0)
    plugin_init_policy: Literal['isolate', 'abort'] = 'isolate'
    plugins: List[str] = Field(default_factory=list)
    plugin_config: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    log_level: str = 'INFO'
    log_dir: Optional[str] = None

    @field_validator('plugins', mode='before')
    @classmethod
    def _split_plugin_list(cls, value):
        if isinstance(value, str):
            return [item.strip() for item in value.split(',') if item.strip()]
        return value

    @field_validator('log_level')
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in ('TRACE', 'DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'):
            raise ValueError(f"unknown log level '{value}'")
        return level


def _set_nested_key(d: Dict[str, Any], keys: List[str], value: Any):
    for key in keys[:-1]:
        d = d.setdefault(key, {})
    d[keys[-1]] = value


def _deep_merge(destination: Dict[str, Any], source: Mapping[str, Any]):
    for key, value in source.items():
        if isinstance(value, Mapping) and isinstance(destination.get(key), dict):
            _deep_merge(destination[key], value)
        else:
            destination[key] = value


def env_overrides(env: Mapping[str, str]) -> Dict[str, Any]:
    """从环境变量中提取 `SAMTERMINAL_` 前缀的配置。"""
    overrides: Dict[str, Any] = {}
    for key, value in env.items():
        if not key.upper().startswith(ENV_PREFIX):
            continue
        path = key[len(ENV_PREFIX):].lower().split(NESTED_SEPARATOR)
        if all(path):
            _set_nested_key(overrides, path, value)
    return overrides


def _read_yaml(path: Path) -> Dict[str, Any]:
    if not path.is_file():
        raise ConfigurationError(f"Config file not found: {path}", {'path': str(path)})
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in config file {path}: {e}", {'path': str(path)}, cause=e) from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping", {'path': str(path)})
    runtime_section = data.get('runtime')
    return dict(runtime_section) if isinstance(runtime_section, dict) else data


def load_runtime_config(path: Optional[Union[str, Path]] = None,
                        env: Optional[Mapping[str, str]] = None,
                        dotenv_path: Optional[Union[str, Path]] = None) -> RuntimeConfig:
    """加载并校验运行时配置。

    Args:
        path: YAML 配置文件路径。
        env: 环境变量映射，默认使用 `os.environ`。
        dotenv_path: 要先加载进 `os.environ` 的 `.env` 文件。

    Raises:
        ConfigurationError: 文件缺失、YAML 无效或配置值不合法。
    """
    data: Dict[str, Any] = {}
    if path is not None:
        data.update(_read_yaml(Path(path)))
        logger.info(f"已加载运行时配置文件: '{path}'")

    if dotenv_path is not None and Path(dotenv_path).is_file():
        load_dotenv(dotenv_path=dotenv_path, override=True)
        logger.info(f"已从 '{dotenv_path}' 加载环境变量。")

    overrides = env_overrides(os.environ if env is None else env)
    if overrides:
        logger.debug(f"已加载 {len(overrides)} 个环境变量配置项。")
        _deep_merge(data, overrides)

    try:
        return RuntimeConfig.model_validate(data)
    except PydanticValidationError as e:
        raise ConfigurationError(f"Invalid runtime configuration: {e}", {'errors': e.errors()}, cause=e) from e
