# Copyright (c) 2024 Converge Contributors
# MIT License

"""
Converge fail module

Fail the host with a message.
"""

from converge.modules.base import Module, ModuleResult, register_module


@register_module
class FailModule(Module):
    """Fail the current host, usually guarded by a when condition."""

    name = "fail"
    required_args = []
    optional_args = {
        "msg": "Failed as requested from task",
    }
    supports_check_mode = True

    async def run(self) -> ModuleResult:
        return ModuleResult(failed=True, msg=str(self.get_arg("msg")))
