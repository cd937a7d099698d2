# Copyright (c) 2024 Converge Contributors
# MIT License

"""
Converge ping module

Verify that a host can run commands.
"""

from converge.modules.base import Module, ModuleResult, register_module


@register_module
class PingModule(Module):
    """
    Run a trivial command on the host.

    Succeeds with 'pong' when the connection (and become, if enabled) works.
    """

    name = "ping"
    required_args = []
    optional_args = {
        "data": "pong",
    }
    supports_check_mode = True

    async def run(self) -> ModuleResult:
        data = self.get_arg("data", "pong")
        result = await self.run_command("true")
        if result.rc != 0:
            return ModuleResult(
                failed=True,
                rc=result.rc,
                stderr=result.stderr,
                msg=f"host cannot run commands: {result.stderr.strip()}",
            )
        return ModuleResult(msg=str(data), results={"ping": data})
