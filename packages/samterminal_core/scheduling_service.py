# -*- coding: utf-8 -*-
"""面向外部工具前端的调度请求接口。

`SchedulingService` 把前端的创建/列出/切换/删除请求翻译为对 `Scheduler` 的调用。
请求由 pydantic 模型 `ScheduleRequest` 校验（`cron` 与 `interval` 必须且只能给出一个，
`interval` 的单位为毫秒）；每次触发都会以请求中的 `action` 和 `actionInput`
调用注入的能力执行函数（通常是运行时引擎的 `execute_action`）。
"""
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, model_validator

from packages.samterminal_core.exceptions import NotFoundError, ValidationError
from packages.samterminal_core.logger import logger
from packages.samterminal_core.scheduler import Scheduler

ActionExecutor = Callable[[str, Dict[str, Any]], Awaitable[Any]]


class ScheduleRequest(BaseModel):
    """创建计划任务的请求。字段同时接受 camelCase 别名。"""
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(min_length=1)
    cron: Optional[str] = None
    interval: Optional[int] = Field(None, gt=0)
    action: str = Field(min_length=1)
    action_input: Dict[str, Any] = Field(default_factory=dict, alias='actionInput')
    run_once: bool = Field(False, alias='runOnce')
    immediate: bool = False

    @model_validator(mode='after')
    def _exactly_one_trigger(self) -> 'ScheduleRequest':
        if (self.cron is None) == (self.interval is None):
            raise ValueError("exactly one of 'cron' or 'interval' must be specified")
        return self


class SchedulingService:
    """调度请求接口。

    Attributes:
        scheduler (Scheduler): 底层调度器。
        executor (ActionExecutor): 触发时调用的能力执行函数。
    """

    def __init__(self, scheduler: Scheduler, executor: ActionExecutor):
        self.scheduler = scheduler
        self.executor = executor

    def create(self, request: Union[ScheduleRequest, Dict[str, Any]]) -> Dict[str, Any]:
        """创建一个按 action 触发的计划任务，返回其摘要。

        Raises:
            ValidationError: 请求不合法（包括无效的 cron 表达式）。
        """
        if not isinstance(request, ScheduleRequest):
            try:
                request = ScheduleRequest.model_validate(request)
            except PydanticValidationError as e:
                raise ValidationError(
                    "Invalid schedule request",
                    errors=[f"{'.'.join(str(p) for p in err['loc']) or 'request'}: {err['msg']}" for err in e.errors()],
                    cause=e
                ) from e

        action, action_input = request.action, dict(request.action_input)

        async def fire():
            return await self.executor(action, dict(action_input))

        task_id = self.scheduler.schedule(
            fire,
            name=request.name,
            cron=request.cron,
            interval=request.interval,
            run_once=request.run_once,
            immediate=request.immediate,
            action=action,
            action_input=action_input,
        )
        logger.info(f"已通过调度接口创建计划任务 '{request.name}' -> {action}")
        return self.scheduler.get(task_id).to_dict()

    def list(self) -> List[Dict[str, Any]]:
        return [task.to_dict() for task in self.scheduler.get_all()]

    def get(self, task_id: str) -> Dict[str, Any]:
        task = self.scheduler.get(task_id)
        if task is None:
            raise NotFoundError('Scheduled task', task_id)
        return task.to_dict()

    def toggle(self, task_id: str, enabled: Optional[bool] = None) -> Dict[str, Any]:
        """启用或禁用一个计划任务；`enabled` 为 None 时取反。"""
        task = self.scheduler.get(task_id)
        if task is None:
            raise NotFoundError('Scheduled task', task_id)
        target = (not task.enabled) if enabled is None else enabled
        if target:
            self.scheduler.enable(task_id)
        else:
            self.scheduler.disable(task_id)
        return task.to_dict()

    def delete(self, task_id: str) -> Dict[str, Any]:
        if not self.scheduler.remove(task_id):
            raise NotFoundError('Scheduled task', task_id)
        return {'id': task_id, 'deleted': True}
