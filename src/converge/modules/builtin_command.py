# Copyright (c) 2024 Converge Contributors
# MIT License

"""
Converge command and shell modules

Pass-through execution of commands. Nothing about the effect of the command
can be known beforehand, so a run always reports changed unless creates or
removes short-circuit it; the only failure signal is the exit code.
"""

import shlex
from typing import Optional

from converge.connections.base import shell_quote
from converge.modules.base import Module, ModuleResult, register_module


@register_module
class CommandModule(Module):
    """
    Execute commands on target hosts.

    Unlike shell, the command line is split into words and executed without
    shell processing, so redirections and pipes are passed as arguments.
    """

    name = "command"
    required_args = []  # Either _raw_params or cmd
    optional_args = {
        "cmd": None,
        "argv": None,
        "chdir": None,
        "creates": None,
        "removes": None,
        "stdin": None,
    }

    def validate_args(self) -> Optional[str]:
        error = super().validate_args()
        if error:
            return error
        if not (self.args.get("_raw_params") or self.args.get("cmd") or self.args.get("argv")):
            return "no command given: use a free-form command, 'cmd' or 'argv'"
        return None

    def command_line(self) -> str:
        argv = self.args.get("argv")
        if argv:
            return ' '.join(shell_quote(str(a)) for a in argv)
        cmd = str(self.args.get("_raw_params") or self.args.get("cmd"))
        # re-quote every word so the shell treats it literally
        return ' '.join(shell_quote(word) for word in shlex.split(cmd))

    async def _short_circuit(self) -> Optional[ModuleResult]:
        creates = self.get_arg("creates")
        if creates:
            probe = await self.run_command(f"test -e {shell_quote(creates)}")
            if probe.rc == 0:
                return ModuleResult(msg=f"skipped, since {creates} exists", rc=0)

        removes = self.get_arg("removes")
        if removes:
            probe = await self.run_command(f"test -e {shell_quote(removes)}")
            if probe.rc != 0:
                return ModuleResult(msg=f"skipped, since {removes} does not exist", rc=0)
        return None

    async def run(self) -> ModuleResult:
        short = await self._short_circuit()
        if short is not None:
            return short

        if self.check_mode:
            return ModuleResult(skipped=True, msg="command would run (check mode)")

        command = self.command_line()
        stdin = self.get_arg("stdin")
        if stdin is not None:
            command = f"printf '%s\\n' {shell_quote(stdin)} | {command}"

        result = await self.run_command(command, cwd=self.get_arg("chdir"))
        return ModuleResult(
            changed=True,
            rc=result.rc,
            stdout=result.stdout.rstrip('\n'),
            stderr=result.stderr.rstrip('\n'),
            failed=result.rc != 0,
            msg=f"non-zero return code: {result.rc}" if result.rc != 0 else "",
            results={"cmd": self.args.get("_raw_params") or self.args.get("cmd") or self.args.get("argv")},
        )


@register_module
class ShellModule(CommandModule):
    """
    Execute commands through /bin/sh (or ``executable``).

    Redirections, pipes and variables work as in an interactive shell.
    """

    name = "shell"
    optional_args = {
        "cmd": None,
        "chdir": None,
        "creates": None,
        "removes": None,
        "stdin": None,
        "executable": None,
    }

    def command_line(self) -> str:
        script = str(self.args.get("_raw_params") or self.args.get("cmd"))
        executable = self.get_arg("executable")
        if executable:
            return f"{shell_quote(executable)} -c {shell_quote(script)}"
        return script
