# Copyright (c) 2024 Converge Contributors
# MIT License

"""
Converge Scheduler

Async execution scheduler with fork-style parallelism using asyncio.

Each host of a play gets one coroutine that walks the play's tasks strictly
in declared order; up to ``forks`` hosts run at the same time. A failed task
stops the remaining tasks of that host for the play, except for the rescue
and always sections of the enclosing blocks.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from converge.engine.errors import ConnectionError
from converge.engine.inventory import Host
from converge.engine.plan import PlannedPlay
from converge.engine.playbook import Block, Task
from converge.engine.results import PlayResult, TaskResult, TaskStatus
from converge.engine.variables import VariableSet


logger = logging.getLogger(__name__)


@dataclass
class HostContext:
    """Runtime context for a single host during playbook execution."""

    host: Host
    variables: VariableSet = field(default_factory=VariableSet)
    # registered results and set_fact values; shared by all plays of a run
    runtime_vars: Dict[str, Any] = field(default_factory=dict)
    failed: bool = False
    unreachable: bool = False
    connection: Any = None
    check_mode: bool = False
    diff_mode: bool = False
    become: bool = False
    become_user: str = "root"
    environment: Dict[str, str] = field(default_factory=dict)
    notified_handlers: Dict[str, None] = field(default_factory=dict)

    def get_vars(self) -> Dict[str, Any]:
        """Get all variables for templating."""
        return self.variables.overlay(self.runtime_vars)

    def register_result(self, name: str, result: TaskResult) -> None:
        """Register a task result for later use."""
        self.runtime_vars[name] = result.as_registered()

    def set_facts(self, facts: Dict[str, Any]) -> None:
        self.runtime_vars.update(facts)

    def notify(self, handler_names: Iterable[str]) -> None:
        for name in handler_names:
            self.notified_handlers[name] = None


class _PlayRun:
    """Per-play state shared by the host coroutines."""

    def __init__(self, planned: PlannedPlay, executor: Any, result: PlayResult):
        self.planned = planned
        self.executor = executor
        self.result = result
        self.once: Dict[int, "asyncio.Future[TaskResult]"] = {}


class Scheduler:
    """
    Async scheduler for playbook execution.

    Uses asyncio with a semaphore to limit concurrency (like Ansible's forks).
    """

    def __init__(
        self,
        forks: int = 5,
        connection_pool: Any = None,
        display: Any = None,
        become_user: str = "root",
    ):
        """
        Initialize the scheduler.

        Args:
            forks: Maximum number of hosts executing at the same time
            connection_pool: Object with ``async get(host)`` returning an open
                connection (see converge.connections.ConnectionPool)
            display: Optional console reporter
            become_user: Escalation user of plays that do not name one
        """
        self.forks = max(1, forks)
        self.connection_pool = connection_pool
        self.display = display
        self.become_user = become_user
        self._runtime: Dict[str, Dict[str, Any]] = {}

    async def run_play(
        self,
        planned: PlannedPlay,
        executor: Any,
        variables_for: Callable[[Host], VariableSet],
        check_mode: bool = False,
        diff_mode: bool = False,
    ) -> PlayResult:
        """
        Run a single planned play.

        Args:
            planned: Play with its resolved hosts and selected tasks
            executor: Object with ``async execute(task, ctx) -> TaskResult``
            variables_for: Builds the variable set of a host for this play
            check_mode: Report what would change without changing it
            diff_mode: Collect before/after diffs

        Returns:
            PlayResult with task results for this play
        """
        play = planned.play
        play_result = PlayResult(play_name=play.name, hosts=[h.name for h in planned.hosts])

        if self.display:
            self.display.play_start(planned)

        if not planned.hosts:
            logger.info("play %r: no hosts matched %r", play.name, play.hosts)
            return play_result

        state = _PlayRun(planned, executor, play_result)
        semaphore = asyncio.Semaphore(self.forks)

        async def run_host(host: Host) -> None:
            ctx = HostContext(
                host=host,
                variables=variables_for(host),
                runtime_vars=self._runtime.setdefault(host.name, {}),
                check_mode=check_mode,
                diff_mode=diff_mode,
                become=play.become,
                become_user=play.become_user or self.become_user,
                environment=dict(play.environment),
            )
            async with semaphore:
                await self._run_host(ctx, state)

        await asyncio.gather(*(run_host(h) for h in planned.hosts))
        return play_result

    async def _run_host(self, ctx: HostContext, state: _PlayRun) -> None:
        logger.debug("host %s: starting play %r", ctx.host.name, state.planned.name)
        if self.connection_pool is not None:
            try:
                ctx.connection = await self.connection_pool.get(ctx.host)
            except ConnectionError as e:
                ctx.unreachable = True
                ctx.failed = True
                result = TaskResult(
                    host=ctx.host.name,
                    task_name='connect',
                    status=TaskStatus.UNREACHABLE,
                    msg=str(e),
                )
                self._record(state, None, result)
                return

        await self._run_entries(state.planned.body, ctx, state)

        if not ctx.failed and ctx.notified_handlers:
            await self._run_handlers(ctx, state)

        if ctx.failed:
            logger.info("host %s failed in play %r", ctx.host.name, state.planned.name)

    async def _run_entries(
        self,
        entries: List[Union[Task, Block]],
        ctx: HostContext,
        state: _PlayRun,
    ) -> bool:
        """Run entries in order; stop at the first unrecovered failure."""
        for entry in entries:
            if isinstance(entry, Block):
                ok = await self._run_block(entry, ctx, state)
            else:
                ok = await self._run_task(entry, ctx, state)
            if not ok:
                return False
        return True

    async def _run_block(self, block: Block, ctx: HostContext, state: _PlayRun) -> bool:
        """
        Run a block with rescue/always semantics.

        - a failure in ``block`` runs ``rescue``; a successful rescue
          recovers the host
        - ``always`` runs whether or not the block failed
        - if the failure was not recovered the host stays failed after
          ``always`` has run
        """
        ok = await self._run_entries(block.block, ctx, state)

        if not ok and block.rescue and not ctx.unreachable:
            logger.debug("host %s: rescuing block %r", ctx.host.name, block.name)
            state.result.stats_for(ctx.host.name).rescued += 1
            ctx.failed = False
            ok = await self._run_entries(block.rescue, ctx, state)

        if block.always and not ctx.unreachable:
            ctx.failed = False
            always_ok = await self._run_entries(block.always, ctx, state)
            ok = ok and always_ok

        ctx.failed = not ok
        return ok

    async def _run_task(self, task: Task, ctx: HostContext, state: _PlayRun) -> bool:
        if task.run_once:
            result = await self._run_once(task, ctx, state)
        else:
            result = await self._execute(task, ctx, state)

        self._record(state, task, result)

        if result.status == TaskStatus.UNREACHABLE:
            ctx.unreachable = True
            ctx.failed = True
            return False
        if result.failed and not result.ignored:
            ctx.failed = True
            return False
        if result.changed and task.notify:
            ctx.notify(task.notify)
        return True

    async def _execute(self, task: Task, ctx: HostContext, state: _PlayRun) -> TaskResult:
        try:
            return await state.executor.execute(task, ctx)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("unexpected error running %r on %s", task.name, ctx.host.name)
            return TaskResult(
                host=ctx.host.name,
                task_name=task.name,
                status=TaskStatus.FAILED,
                msg=f"{type(e).__name__}: {e}",
            )

    async def _run_once(self, task: Task, ctx: HostContext, state: _PlayRun) -> TaskResult:
        """The first host to reach the task runs it; the others reuse its result."""
        key = id(task)
        future = state.once.get(key)
        if future is None:
            future = asyncio.get_running_loop().create_future()
            state.once[key] = future
            try:
                result = await self._execute(task, ctx, state)
            except asyncio.CancelledError:
                future.cancel()
                raise
            future.set_result(result)
            return result

        shared = await future
        result = TaskResult(
            host=ctx.host.name,
            task_name=shared.task_name,
            status=shared.status,
            changed=shared.changed,
            rc=shared.rc,
            stdout=shared.stdout,
            stderr=shared.stderr,
            msg=shared.msg,
            results=dict(shared.results),
            loop_results=shared.loop_results,
            ignored=shared.ignored,
            detached=shared.detached,
        )
        if task.register:
            ctx.register_result(task.register, result)
        return result

    async def _run_handlers(self, ctx: HostContext, state: _PlayRun) -> None:
        """Run notified handlers once each, in handler declaration order."""
        notified = ctx.notified_handlers
        for handler in state.planned.play.handlers:
            if handler.name not in notified and not any(t in notified for t in handler.listen):
                continue
            result = await self._execute(handler, ctx, state)
            self._record(state, handler, result)
            if result.failed and not result.ignored:
                ctx.failed = True
                break
        notified.clear()

    def _record(self, state: _PlayRun, task: Optional[Task], result: TaskResult) -> None:
        state.result.add_result(result)
        if self.display:
            self.display.task_result(task, result)
