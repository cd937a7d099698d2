# Copyright (c) 2024 Converge Contributors
# MIT License

"""
Converge Task Executor

Runs one task on one host: evaluates ``when``, expands loops, renders the
arguments, resolves privilege escalation and delegation, runs the module
and applies ``changed_when`` / ``failed_when`` / ``ignore_errors`` /
``register`` to the outcome.

Module failures come back as failed TaskResults, never as exceptions; the
scheduler decides what a failure means for the rest of the host's play.
"""

import asyncio
import dataclasses
import logging
from typing import Any, Dict, List, Optional

from converge.engine.detached import DetachedDispatcher
from converge.engine.errors import ConnectionError, ModuleError, TemplateError, ValidationError
from converge.engine.inventory import LOCALHOST_NAMES, Host, InventoryManager
from converge.engine.playbook import Task
from converge.engine.results import TaskResult, TaskStatus
from converge.engine.scheduler import HostContext
from converge.engine.templating import TemplateEngine, get_template_engine
from converge.engine.variables import mask_secrets
from converge.modules.base import Module, ModuleResult, get_module


logger = logging.getLogger(__name__)


class TaskExecutor:
    """
    Executes tasks for the scheduler.

    Args:
        inventory: Used to resolve ``delegate_to`` targets
        connection_pool: Source of connections for delegated tasks
        dispatcher: Receives fire-and-forget (``async``/``poll: 0``) jobs
        templar: Template engine; the shared one by default
    """

    def __init__(
        self,
        inventory: Optional[InventoryManager] = None,
        connection_pool: Any = None,
        dispatcher: Optional[DetachedDispatcher] = None,
        templar: Optional[TemplateEngine] = None,
    ):
        self.inventory = inventory
        self.connection_pool = connection_pool
        self.dispatcher = dispatcher or DetachedDispatcher()
        self.templar = templar or get_template_engine()

    async def execute(self, task: Task, ctx: HostContext) -> TaskResult:
        """Run a task on the host of ``ctx`` and return its result."""
        variables = ctx.get_vars()
        name = self._task_name(task, variables)

        try:
            run = self.templar.evaluate_when(task.when, variables)
        except TemplateError as e:
            result = self._failed(ctx, name, f"The conditional check '{task.when}' failed: {e}")
        else:
            if not run:
                result = TaskResult(
                    host=ctx.host.name,
                    task_name=name,
                    status=TaskStatus.SKIPPED,
                    msg="Conditional result was False",
                )
            elif task.loop is not None:
                result = await self._run_loop(task, ctx, variables, name)
            else:
                result = await self._run_single(task, ctx, variables, name)

        if result.failed and task.ignore_errors and result.status == TaskStatus.FAILED:
            result.ignored = True

        if task.register:
            ctx.register_result(task.register, result)

        logger.info("task=%r host=%s status=%s", name, ctx.host.name, result.status.value)
        return result

    def _task_name(self, task: Task, variables: Dict[str, Any]) -> str:
        try:
            return str(self.templar.render(task.name, variables))
        except TemplateError:
            return task.name

    def _failed(self, ctx: HostContext, name: str, msg: str, **kwargs: Any) -> TaskResult:
        return TaskResult(host=ctx.host.name, task_name=name, status=TaskStatus.FAILED, msg=msg, **kwargs)

    async def _run_loop(
        self,
        task: Task,
        ctx: HostContext,
        variables: Dict[str, Any],
        name: str,
    ) -> TaskResult:
        """Run every item; the task fails if any item failed."""
        try:
            items = self.templar.render_recursive(task.loop, variables)
        except TemplateError as e:
            return self._failed(ctx, name, str(e))
        if not isinstance(items, list):
            return self._failed(ctx, name, f"Invalid data passed to 'loop', it requires a list, got {items!r}")

        item_results: List[TaskResult] = []
        for index, item in enumerate(items):
            item_vars = dict(variables)
            item_vars[task.loop_var] = item
            item_vars['ansible_loop'] = {
                'index': index + 1,
                'index0': index,
                'first': index == 0,
                'last': index == len(items) - 1,
                'length': len(items),
            }
            result = await self._run_single(task, ctx, item_vars, name)
            result.results[task.loop_var] = item
            item_results.append(result)

        changed = any(r.changed for r in item_results)
        failed = any(r.status in (TaskStatus.FAILED, TaskStatus.UNREACHABLE) for r in item_results)
        if failed:
            status = TaskStatus.FAILED
        elif item_results and all(r.status == TaskStatus.SKIPPED for r in item_results):
            status = TaskStatus.SKIPPED
        else:
            status = TaskStatus.CHANGED if changed else TaskStatus.OK

        return TaskResult(
            host=ctx.host.name,
            task_name=name,
            status=status,
            changed=changed,
            msg="One or more items failed" if failed else "",
            loop_results=item_results,
        )

    async def _run_single(
        self,
        task: Task,
        ctx: HostContext,
        variables: Dict[str, Any],
        name: str,
    ) -> TaskResult:
        try:
            args = self.templar.render_recursive(task.args, variables)
            environment = self.templar.render_recursive(task.environment, variables)
            delegate = self.templar.render(task.delegate_to, variables) if task.delegate_to else None
        except TemplateError as e:
            return self._failed(ctx, name, str(e))

        if not task.no_log:
            logger.debug("task=%r host=%s module=%s args=%s", name, ctx.host.name, task.module, mask_secrets(args))

        module_class = get_module(task.module)
        if module_class is None:
            return self._failed(ctx, name, f"Unknown module: {task.module}")

        try:
            task_ctx = await self._task_context(task, ctx, environment, delegate)
        except ConnectionError as e:
            return TaskResult(host=ctx.host.name, task_name=name, status=TaskStatus.UNREACHABLE, msg=str(e))

        module = module_class(args, task_ctx)
        error = module.validate_args()
        if error:
            return self._failed(ctx, name, error)

        if task.detached and not task_ctx.check_mode:
            return self._dispatch(task, ctx, module, name)

        try:
            if task.async_seconds:
                module_result = await asyncio.wait_for(self._invoke(module), task.async_seconds)
            else:
                module_result = await self._invoke(module)
        except asyncio.TimeoutError:
            return self._failed(ctx, name, f"async task did not complete within the requested time - {task.async_seconds}s")
        except ValidationError as e:
            return self._failed(ctx, name, str(e), rc=e.rc or 1, stderr=e.stderr or "")
        except ModuleError as e:
            return self._failed(ctx, name, str(e), rc=e.rc or 1, stdout=e.stdout or "", stderr=e.stderr or "")
        except TemplateError as e:
            return self._failed(ctx, name, str(e))
        except ConnectionError as e:
            return TaskResult(host=ctx.host.name, task_name=name, status=TaskStatus.UNREACHABLE, msg=str(e))

        result = module_result.to_task_result(ctx.host.name, name)
        if delegate:
            result.results['delegate_to'] = delegate
        if module_result.facts and not result.failed:
            ctx.set_facts(module_result.facts)

        return self._apply_conditions(task, result, variables)

    async def _invoke(self, module: Module) -> ModuleResult:
        if module.check_mode:
            return await module.check()
        return await module.run()

    async def _task_context(
        self,
        task: Task,
        ctx: HostContext,
        environment: Dict[str, Any],
        delegate: Optional[str],
    ) -> HostContext:
        """Per-task view of the host context: become, environment, check mode, delegation."""
        merged_env = dict(ctx.environment)
        merged_env.update({str(k): str(v) for k, v in (environment or {}).items()})
        changes: Dict[str, Any] = {
            'become': ctx.become if task.become is None else task.become,
            'become_user': task.become_user or ctx.become_user,
            'environment': merged_env,
        }
        if task.check_mode is not None:
            changes['check_mode'] = bool(task.check_mode)
        if delegate:
            delegate = str(delegate).strip()
            if delegate != ctx.host.name:
                changes['connection'] = await self._delegate_connection(delegate, ctx)
        return dataclasses.replace(ctx, **changes)

    async def _delegate_connection(self, name: str, ctx: HostContext) -> Any:
        if self.connection_pool is None:
            return ctx.connection
        host = self._resolve_host(name)
        logger.debug("delegating from %s to %s", ctx.host.name, host.name)
        return await self.connection_pool.get(host)

    def _resolve_host(self, name: str) -> Host:
        if self.inventory is not None:
            if name in self.inventory.hosts:
                return self.inventory.hosts[name]
            if name in LOCALHOST_NAMES:
                return self.inventory.implicit_localhost(name)
        if name in LOCALHOST_NAMES:
            return Host(name, {'ansible_connection': 'local'})
        return Host(name)

    def _dispatch(self, task: Task, ctx: HostContext, module: Module, name: str) -> TaskResult:
        """Hand the module run to the dispatcher and report it as started."""
        job_id = self.dispatcher.dispatch(
            f"{name} on {ctx.host.name}",
            module.run(),
            timeout=task.async_seconds,
        )
        return TaskResult(
            host=ctx.host.name,
            task_name=name,
            status=TaskStatus.CHANGED,
            changed=True,
            results={
                'ansible_job_id': job_id,
                'started': 1,
                'finished': 0,
            },
            detached=True,
        )

    def _apply_conditions(self, task: Task, result: TaskResult, variables: Dict[str, Any]) -> TaskResult:
        """Override changed/failed with changed_when and failed_when."""
        if task.changed_when is None and task.failed_when is None:
            return result
        if result.status in (TaskStatus.SKIPPED, TaskStatus.UNREACHABLE):
            return result

        condition_vars = dict(variables)
        registered = result.as_registered()
        condition_vars['result'] = registered
        if task.register:
            condition_vars[task.register] = registered

        try:
            if task.changed_when is not None:
                result.changed = self.templar.evaluate_when(task.changed_when, condition_vars)
                if result.status != TaskStatus.FAILED:
                    result.status = TaskStatus.CHANGED if result.changed else TaskStatus.OK
            if task.failed_when is not None:
                if self.templar.evaluate_when(task.failed_when, condition_vars):
                    result.status = TaskStatus.FAILED
                    result.msg = result.msg or "failed_when condition was true"
                elif result.status == TaskStatus.FAILED:
                    result.status = TaskStatus.CHANGED if result.changed else TaskStatus.OK
        except TemplateError as e:
            result.status = TaskStatus.FAILED
            result.msg = f"Error evaluating changed_when/failed_when: {e}"
        return result
