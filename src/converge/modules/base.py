# Copyright (c) 2024 Converge Contributors
# MIT License

"""
Converge Module Base

Base class and registry for all modules.

A module inspects the current state of the host, compares it with the state
its arguments describe and mutates only what differs. Helpers for the common
pieces (privilege escalation, reading and safely replacing files, applying
mode/ownership) live here so every module does them the same way.
"""

import logging
import os
import tempfile
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Type, Union

from converge.connections.base import RunResult, shell_quote
from converge.engine.errors import ModuleError, ValidationError
from converge.engine.results import TaskResult, TaskStatus
from converge.engine.scheduler import HostContext
from converge.engine.state import (
    ChangeSet,
    FileSnapshot,
    changes_for_attributes,
    inspect_file,
)


logger = logging.getLogger(__name__)


@dataclass
class ModuleResult:
    """Result of module execution."""

    changed: bool = False
    rc: int = 0
    stdout: str = ""
    stderr: str = ""
    msg: str = ""
    failed: bool = False
    skipped: bool = False
    results: Dict[str, Any] = field(default_factory=dict)
    diff: Optional[str] = None
    # Host variables to set (set_fact)
    facts: Dict[str, Any] = field(default_factory=dict)

    def to_task_result(self, host: str, task_name: str) -> TaskResult:
        """Convert to TaskResult."""
        if self.skipped:
            status = TaskStatus.SKIPPED
        elif self.failed:
            status = TaskStatus.FAILED
        elif self.changed:
            status = TaskStatus.CHANGED
        else:
            status = TaskStatus.OK

        results = dict(self.results)
        if self.diff:
            results['diff'] = self.diff

        return TaskResult(
            host=host,
            task_name=task_name,
            status=status,
            changed=self.changed,
            rc=self.rc,
            stdout=self.stdout,
            stderr=self.stderr,
            msg=self.msg,
            results=results,
        )


class Module(ABC):
    """
    Base class for all modules.

    Modules implement task execution logic for specific operations.
    """

    # Module name (used for registration)
    name: str = ""

    # Required arguments
    required_args: List[str] = []

    # Optional arguments with defaults
    optional_args: Dict[str, Any] = {}

    # Whether run() honours check mode (no mutation, report would-be changes)
    supports_check_mode: bool = False

    def __init__(self, args: Dict[str, Any], context: HostContext):
        self.args = args
        self.context = context
        self.connection = context.connection

    @property
    def check_mode(self) -> bool:
        return self.context.check_mode

    @property
    def diff_mode(self) -> bool:
        return self.context.diff_mode

    def validate_args(self) -> Optional[str]:
        """
        Validate module arguments.

        Returns:
            Error message if validation fails, None otherwise
        """
        for required in self.required_args:
            if required not in self.args:
                return f"Missing required argument: {required}"
        known = set(self.required_args) | set(self.optional_args) | {'_raw_params'}
        unknown = sorted(k for k in self.args if k not in known)
        if unknown:
            return f"Unsupported parameters for ({self.name}) module: {', '.join(unknown)}"
        return None

    def get_arg(self, name: str, default: Any = None) -> Any:
        """Get an argument value with optional default."""
        if name in self.args:
            return self.args[name]
        if name in self.optional_args:
            return self.optional_args[name]
        return default

    def get_bool(self, name: str, default: bool = False) -> bool:
        """Get a boolean argument, accepting yes/no/true/false strings."""
        value = self.get_arg(name, default)
        if isinstance(value, str):
            return value.strip().lower() in ('yes', 'true', '1', 'on', 'y')
        return bool(value)

    def wrap_become(self, cmd: str) -> str:
        """Wrap command with privilege escalation if become is enabled."""
        if not self.context.become:
            return cmd
        user = self.context.become_user or 'root'
        return f"sudo -H -n -u {shell_quote(user)} /bin/sh -c {shell_quote(cmd)}"

    async def run_command(
        self,
        cmd: str,
        cwd: Optional[str] = None,
        environment: Optional[Dict[str, str]] = None,
        timeout: Optional[int] = None,
        become: bool = True,
    ) -> RunResult:
        """Run a shell command on the host, escalated when become is set."""
        command = self.wrap_become(cmd) if become else cmd
        logger.debug("%s: %s", self.context.host.name, cmd)
        env = dict(self.context.environment)
        env.update(environment or {})
        return await self.connection.run(
            command,
            shell=True,
            timeout=timeout,
            cwd=cwd,
            environment=env or None,
        )

    async def check_command(self, cmd: str, what: str) -> RunResult:
        """Run a command and raise ModuleError unless it succeeds."""
        result = await self.run_command(cmd)
        if result.rc != 0:
            raise ModuleError(
                self.name,
                f"{what} failed",
                rc=result.rc,
                stdout=result.stdout,
                stderr=result.stderr or result.stdout,
            )
        return result

    # --- files -------------------------------------------------------------

    async def read_file(self, path: str, read_content: bool = True) -> FileSnapshot:
        """Snapshot a path on the host."""
        return await inspect_file(self.run_command, path, read_content=read_content)

    async def file_checksum(self, path: str) -> Optional[str]:
        """SHA-256 of a file on the host, None if it cannot be read."""
        result = await self.run_command(f"sha256sum -- {shell_quote(path)}")
        if result.rc != 0 or not result.stdout.strip():
            return None
        return result.stdout.split()[0]

    async def backup_file(self, path: str) -> str:
        """Copy a file next to itself with a timestamp suffix; return the copy's path."""
        backup = f"{path}.{time.strftime('%Y-%m-%d@%H:%M:%S')}~"
        await self.check_command(f"cp -p {shell_quote(path)} {shell_quote(backup)}", f"backup of {path}")
        return backup

    async def write_file(
        self,
        path: str,
        content: Union[str, bytes],
        validate: Optional[str] = None,
        make_parents: bool = False,
    ) -> None:
        """
        Replace the content of a file on the host.

        The content is uploaded to a temporary file first. If ``validate`` is
        given (a command with ``%s`` standing for the candidate file) it must
        succeed before the real file is touched; otherwise ValidationError is
        raised and ``path`` is left as it was. The real file is overwritten in
        place so its mode and ownership are kept.

        Raises:
            ValidationError: the validate command rejected the candidate
            ModuleError: upload or write failed
        """
        fd, local_tmp = tempfile.mkstemp(prefix='converge-')
        try:
            with os.fdopen(fd, 'wb') as handle:
                handle.write(content.encode('utf-8') if isinstance(content, str) else content)

            made = await self.run_command("mktemp", become=False)
            if made.rc != 0 or not made.stdout.strip():
                raise ModuleError(self.name, "could not create a temporary file", rc=made.rc, stderr=made.stderr)
            remote_tmp = made.stdout.strip()

            try:
                await self.connection.put(Path(local_tmp), remote_tmp)

                if validate:
                    await self._validate(path, remote_tmp, validate)

                if make_parents:
                    parent = os.path.dirname(path)
                    if parent:
                        await self.check_command(f"mkdir -p {shell_quote(parent)}", f"creating {parent}")

                await self.check_command(
                    f"cat {shell_quote(remote_tmp)} > {shell_quote(path)}",
                    f"writing {path}",
                )
            finally:
                await self.run_command(f"rm -f {shell_quote(remote_tmp)}", become=False)
        finally:
            os.unlink(local_tmp)

    async def _validate(self, path: str, candidate: str, validate: str) -> None:
        if '%s' not in validate:
            raise ModuleError(self.name, f"validate must contain %s: {validate}")
        command = validate.replace('%s', shell_quote(candidate))
        result = await self.run_command(command)
        if result.rc != 0:
            raise ValidationError(
                self.name,
                path,
                validate,
                rc=result.rc,
                stderr=(result.stderr or result.stdout).strip(),
            )

    async def apply_attributes(
        self,
        path: str,
        snapshot: FileSnapshot,
        mode: Any = None,
        owner: Optional[str] = None,
        group: Optional[str] = None,
        recurse: bool = False,
    ) -> ChangeSet:
        """Bring mode/owner/group of an existing path in line; return what differed."""
        changes = changes_for_attributes(ChangeSet(), snapshot, mode, owner, group)
        if not changes or self.check_mode:
            return changes

        flag = '-R ' if recurse else ''
        quoted = shell_quote(path)
        if 'owner' in changes or 'group' in changes:
            spec = str(owner) if owner is not None else ''
            if group is not None:
                spec += f":{group}"
            await self.check_command(f"chown {flag}{shell_quote(spec)} {quoted}", f"chown {path}")
        if 'mode' in changes:
            mode_change = changes.get('mode')
            await self.check_command(f"chmod {flag}{mode_change.after} {quoted}", f"chmod {path}")
        return changes

    @abstractmethod
    async def run(self) -> ModuleResult:
        """
        Execute the module.

        Returns:
            ModuleResult with execution outcome
        """

    async def check(self) -> ModuleResult:
        """Run in check mode; modules that cannot predict changes are skipped."""
        if not self.supports_check_mode:
            return ModuleResult(skipped=True, msg=f"{self.name} does not support check mode")
        return await self.run()


# Module registry
_modules: Dict[str, Type[Module]] = {}


def register_module(cls: Type[Module]) -> Type[Module]:
    """Decorator to register a module class."""
    _modules[cls.name] = cls
    return cls


def get_module(name: str) -> Optional[Type[Module]]:
    """Get a module class by name."""
    _import_builtin_modules()
    return _modules.get(name)


def list_modules() -> List[str]:
    """List all registered module names."""
    _import_builtin_modules()
    return sorted(_modules)


def _import_builtin_modules() -> None:
    """Import all built-in modules to register them."""
    # These imports trigger the @register_module decorators
    from converge.modules import builtin_apt  # noqa: F401
    from converge.modules import builtin_assert  # noqa: F401
    from converge.modules import builtin_command  # noqa: F401
    from converge.modules import builtin_copy  # noqa: F401
    from converge.modules import builtin_debug  # noqa: F401
    from converge.modules import builtin_fail  # noqa: F401
    from converge.modules import builtin_file  # noqa: F401
    from converge.modules import builtin_get_url  # noqa: F401
    from converge.modules import builtin_group  # noqa: F401
    from converge.modules import builtin_lineinfile  # noqa: F401
    from converge.modules import builtin_ping  # noqa: F401
    from converge.modules import builtin_service  # noqa: F401
    from converge.modules import builtin_set_fact  # noqa: F401
    from converge.modules import builtin_stat  # noqa: F401
    from converge.modules import builtin_user  # noqa: F401
    from converge.modules import crypto_openssh_keypair  # noqa: F401
