# Copyright (c) 2024 Converge Contributors
# MIT License

"""
Converge group module
"""

from typing import Optional

from converge.connections.base import shell_quote
from converge.engine.state import inspect_group
from converge.modules.base import Module, ModuleResult, register_module


@register_module
class GroupModule(Module):
    """Ensure a local group is present or absent."""

    name = "group"
    required_args = ["name"]
    optional_args = {
        "state": "present",
        "gid": None,
        "system": False,
    }
    supports_check_mode = True

    def validate_args(self) -> Optional[str]:
        error = super().validate_args()
        if error:
            return error
        if self.get_arg("state") not in ("present", "absent"):
            return f"state must be present or absent, got {self.get_arg('state')!r}"
        return None

    async def run(self) -> ModuleResult:
        name = str(self.args["name"])
        gid = await inspect_group(self.run_command, name)
        wanted_gid = self.get_arg("gid")
        results = {"name": name, "gid": gid}

        if self.get_arg("state") == "absent":
            if gid is None:
                return ModuleResult(results=results)
            if not self.check_mode:
                await self.check_command(f"groupdel {shell_quote(name)}", f"removing group {name}")
            return ModuleResult(changed=True, msg=f"group {name} removed", results=results)

        if gid is None:
            if not self.check_mode:
                options = ""
                if wanted_gid is not None:
                    options += f"-g {int(wanted_gid)} "
                if self.get_bool("system"):
                    options += "-r "
                await self.check_command(f"groupadd {options}{shell_quote(name)}", f"creating group {name}")
            return ModuleResult(changed=True, msg=f"group {name} created", results=results)

        if wanted_gid is not None and int(wanted_gid) != gid:
            if not self.check_mode:
                await self.check_command(
                    f"groupmod -g {int(wanted_gid)} {shell_quote(name)}",
                    f"changing gid of {name}",
                )
            results["gid"] = int(wanted_gid)
            return ModuleResult(changed=True, msg=f"group {name} gid changed", results=results)

        return ModuleResult(results=results)
