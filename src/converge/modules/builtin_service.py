# Copyright (c) 2024 Converge Contributors
# MIT License

"""
Converge service modules

Manage systemd units through systemctl.
"""

from typing import Optional

from converge.connections.base import shell_quote
from converge.engine.state import DesiredService, inspect_service
from converge.modules.base import Module, ModuleResult, register_module


STATES = ("started", "stopped", "restarted", "reloaded")

ACTIONS = {
    "started": "start",
    "stopped": "stop",
    "restarted": "restart",
    "reloaded": "reload",
}


@register_module
class ServiceModule(Module):
    """
    Manage services.

    started/stopped compare with ``systemctl is-active``; restarted always
    restarts and so always reports changed. ``enabled`` compares with
    ``systemctl is-enabled``.
    """

    name = "service"
    required_args = ["name"]
    optional_args = {
        "state": None,
        "enabled": None,
    }
    supports_check_mode = True

    def validate_args(self) -> Optional[str]:
        error = super().validate_args()
        if error:
            return error
        state = self.get_arg("state")
        if state is not None and state not in STATES:
            return f"state must be one of {', '.join(STATES)}, got {state!r}"
        if state is None and self.get_arg("enabled") is None:
            return "one of 'state' or 'enabled' is required"
        return None

    async def run(self) -> ModuleResult:
        name = str(self.args["name"])
        enabled = self.get_arg("enabled")
        desired = DesiredService(
            name=name,
            state=self.get_arg("state"),
            enabled=self.get_bool("enabled") if enabled is not None else None,
        )

        snapshot = await inspect_service(self.run_command, name)
        if not snapshot.exists:
            return ModuleResult(failed=True, msg=f"Could not find the requested service {name}")

        changes = desired.changes(snapshot)
        results = {"name": name, "state": snapshot.active_state, "enabled": snapshot.enabled_state}
        if not changes:
            return ModuleResult(results=results)
        if self.check_mode:
            return ModuleResult(changed=True, results=results)

        quoted = shell_quote(name)
        enabled_change = changes.get("enabled")
        if enabled_change is not None:
            verb = "enable" if enabled_change.after else "disable"
            await self.check_command(f"systemctl {verb} {quoted}", f"{verb} {name}")

        state_change = changes.get("state")
        if state_change is not None:
            action = "start" if state_change.after == "started" else ACTIONS[state_change.after]
            await self.check_command(f"systemctl {action} {quoted}", f"{action} {name}")
            results["state"] = "inactive" if action == "stop" else "active"

        return ModuleResult(
            changed=True,
            msg="; ".join(changes.describe()),
            results=results,
        )


@register_module
class SystemdModule(ServiceModule):
    """systemd-flavoured alias of service, with daemon_reload."""

    name = "systemd"
    optional_args = {
        "state": None,
        "enabled": None,
        "daemon_reload": False,
    }

    def validate_args(self) -> Optional[str]:
        if self.get_bool("daemon_reload") and self.get_arg("state") is None and self.get_arg("enabled") is None:
            return Module.validate_args(self)
        return super().validate_args()

    async def run(self) -> ModuleResult:
        reloaded = False
        if self.get_bool("daemon_reload"):
            if not self.check_mode:
                await self.check_command("systemctl daemon-reload", "daemon-reload")
            reloaded = True
        if self.get_arg("state") is None and self.get_arg("enabled") is None:
            return ModuleResult(changed=reloaded, msg="daemon reloaded")
        result = await super().run()
        result.changed = result.changed or reloaded
        return result
