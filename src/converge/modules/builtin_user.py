# Copyright (c) 2024 Converge Contributors
# MIT License

"""
Converge user module

Manage local accounts with useradd/usermod/userdel.
"""

from typing import List, Optional

from converge.connections.base import shell_quote
from converge.engine.state import DesiredUser, inspect_user
from converge.modules.base import Module, ModuleResult, register_module


@register_module
class UserModule(Module):
    """
    Manage user accounts.

    ``password`` is the crypted hash stored in /etc/shadow, not a plain
    text password. With ``append`` only groups the user is missing are
    added; otherwise the supplementary groups are set to exactly ``groups``.
    """

    name = "user"
    required_args = ["name"]
    optional_args = {
        "state": "present",
        "password": None,
        "update_password": "always",
        "shell": None,
        "home": None,
        "uid": None,
        "group": None,
        "groups": None,
        "append": False,
        "comment": None,
        "system": False,
        "create_home": True,
        "remove": False,
    }
    supports_check_mode = True

    def validate_args(self) -> Optional[str]:
        error = super().validate_args()
        if error:
            return error
        if self.get_arg("state") not in ("present", "absent"):
            return f"state must be present or absent, got {self.get_arg('state')!r}"
        if self.get_arg("update_password") not in ("always", "on_create"):
            return "update_password must be always or on_create"
        return None

    def groups(self) -> List[str]:
        groups = self.get_arg("groups")
        if not groups:
            return []
        if isinstance(groups, str):
            groups = groups.split(",")
        return [str(g).strip() for g in groups if str(g).strip()]

    def desired(self, creating: bool) -> DesiredUser:
        password = self.get_arg("password")
        if not creating and self.get_arg("update_password") == "on_create":
            password = None
        uid = self.get_arg("uid")
        return DesiredUser(
            name=str(self.args["name"]),
            uid=int(uid) if uid is not None else None,
            group=self.get_arg("group"),
            groups=tuple(self.groups()),
            append=self.get_bool("append"),
            shell=self.get_arg("shell"),
            home=self.get_arg("home"),
            comment=self.get_arg("comment"),
            password=str(password) if password is not None else None,
        )

    async def run(self) -> ModuleResult:
        name = str(self.args["name"])
        snapshot = await inspect_user(self.run_command, name)
        results = {"name": name, "state": self.get_arg("state")}

        if self.get_arg("state") == "absent":
            if not snapshot.exists:
                return ModuleResult(results=results)
            if not self.check_mode:
                flag = "-r " if self.get_bool("remove") else ""
                await self.check_command(f"userdel {flag}{shell_quote(name)}", f"removing user {name}")
            return ModuleResult(changed=True, msg=f"user {name} removed", results=results)

        desired = self.desired(creating=not snapshot.exists)
        changes = desired.changes(snapshot)
        results["changes"] = changes.describe()
        if not changes:
            return ModuleResult(results=results)
        if self.check_mode:
            return ModuleResult(changed=True, results=results)

        if not snapshot.exists:
            await self.check_command(self._useradd(desired), f"creating user {name}")
            msg = f"user {name} created"
        else:
            await self.check_command(self._usermod(desired, changes), f"modifying user {name}")
            msg = f"user {name} updated: {', '.join(c.attribute for c in changes)}"
        return ModuleResult(changed=True, msg=msg, results=results)

    def _common_options(self, desired: DesiredUser, attributes) -> List[str]:
        options = []
        if "uid" in attributes and desired.uid is not None:
            options += ["-u", str(desired.uid)]
        if "group" in attributes and desired.group is not None:
            options += ["-g", desired.group]
        if "shell" in attributes and desired.shell is not None:
            options += ["-s", desired.shell]
        if "home" in attributes and desired.home is not None:
            options += ["-d", desired.home]
        if "comment" in attributes and desired.comment is not None:
            options += ["-c", desired.comment]
        if "password" in attributes and desired.password is not None:
            options += ["-p", desired.password]
        return options

    def _useradd(self, desired: DesiredUser) -> str:
        everything = {"uid", "group", "shell", "home", "comment", "password"}
        options = self._common_options(desired, everything)
        if desired.groups:
            options += ["-G", ",".join(desired.groups)]
        if self.get_bool("system"):
            options.append("-r")
        options.append("-m" if self.get_bool("create_home", True) else "-M")
        return " ".join(["useradd"] + [shell_quote(o) for o in options] + [shell_quote(desired.name)])

    def _usermod(self, desired: DesiredUser, changes) -> str:
        attributes = {c.attribute for c in changes}
        options = self._common_options(desired, attributes)
        if "groups" in attributes:
            if desired.append:
                options += ["-a", "-G", ",".join(desired.groups)]
            else:
                options += ["-G", ",".join(desired.groups)]
        if "home" in attributes:
            options.append("-m")
        return " ".join(["usermod"] + [shell_quote(o) for o in options] + [shell_quote(desired.name)])
