# Copyright (c) 2024 Converge Contributors
# MIT License

"""
Converge file module

Manage files, directories, symlinks and their attributes.
"""

from typing import Optional

from converge.connections.base import shell_quote
from converge.modules.base import Module, ModuleResult, register_module


STATES = ("file", "directory", "touch", "absent", "link")


@register_module
class FileModule(Module):
    """
    Manage a path on the host.

    - directory: created with parents when missing
    - absent: removed (recursively) when present
    - touch: created when missing, otherwise its timestamps are updated,
      which always counts as a change
    - link: symlink to ``src``
    - file: must already exist; only attributes are managed
    """

    name = "file"
    required_args = ["path"]
    optional_args = {
        "state": None,
        "mode": None,
        "owner": None,
        "group": None,
        "recurse": False,
        "src": None,
        "force": False,
    }
    supports_check_mode = True

    def validate_args(self) -> Optional[str]:
        error = super().validate_args()
        if error:
            return error
        state = self.get_arg("state")
        if state is not None and state not in STATES:
            return f"state must be one of {', '.join(STATES)}, got {state!r}"
        if state == "link" and not self.get_arg("src"):
            return "src is required for state=link"
        if self.get_bool("recurse") and state != "directory":
            return "recurse requires state=directory"
        return None

    async def run(self) -> ModuleResult:
        path = str(self.args["path"])
        snapshot = await self.read_file(path, read_content=False)

        state = self.get_arg("state")
        if state is None:
            state = ("directory" if snapshot.is_dir else "file") if snapshot.exists else "file"

        results = {"path": path, "state": state}
        handler = getattr(self, f"_state_{state}")
        return await handler(path, snapshot, results)

    async def _attributes(self, path, snapshot, results, changed: bool, msg: str = "") -> ModuleResult:
        if self.check_mode and changed:
            return ModuleResult(changed=True, msg=msg, results=results)
        if changed:
            snapshot = await self.read_file(path, read_content=False)
        attributes = await self.apply_attributes(
            path,
            snapshot,
            mode=self.get_arg("mode"),
            owner=self.get_arg("owner"),
            group=self.get_arg("group"),
            recurse=self.get_bool("recurse"),
        )
        return ModuleResult(changed=changed or bool(attributes), msg=msg, results=results)

    async def _state_file(self, path, snapshot, results) -> ModuleResult:
        if not snapshot.exists:
            return ModuleResult(
                failed=True,
                msg=f"file ({path}) is absent, cannot continue",
                results=results,
            )
        if snapshot.is_dir:
            return ModuleResult(failed=True, msg=f"{path} is a directory", results=results)
        return await self._attributes(path, snapshot, results, changed=False)

    async def _state_directory(self, path, snapshot, results) -> ModuleResult:
        if snapshot.exists and not snapshot.is_dir:
            return ModuleResult(
                failed=True,
                msg=f"{path} already exists as a file",
                results=results,
            )
        created = not snapshot.exists
        if created and not self.check_mode:
            await self.check_command(f"mkdir -p {shell_quote(path)}", f"creating {path}")
        return await self._attributes(path, snapshot, results, created, "directory created" if created else "")

    async def _state_touch(self, path, snapshot, results) -> ModuleResult:
        if snapshot.is_dir:
            return ModuleResult(failed=True, msg=f"{path} is a directory", results=results)
        if not self.check_mode:
            await self.check_command(f"touch {shell_quote(path)}", f"touching {path}")
        msg = "file touched" if snapshot.exists else "file created"
        return await self._attributes(path, snapshot, results, True, msg)

    async def _state_absent(self, path, snapshot, results) -> ModuleResult:
        if not snapshot.exists:
            return ModuleResult(msg=f"{path} is already absent", results=results)
        if not self.check_mode:
            await self.check_command(f"rm -rf -- {shell_quote(path)}", f"removing {path}")
        return ModuleResult(changed=True, msg=f"{path} removed", results=results)

    async def _state_link(self, path, snapshot, results) -> ModuleResult:
        src = str(self.args["src"])
        if snapshot.is_link and snapshot.link_target == src:
            return await self._attributes(path, snapshot, results, changed=False)
        if snapshot.exists and not snapshot.is_link and not self.get_bool("force"):
            return ModuleResult(
                failed=True,
                msg=f"refusing to convert from {'directory' if snapshot.is_dir else 'file'} to symlink for {path}",
                results=results,
            )
        if not self.check_mode:
            await self.check_command(
                f"ln -sfn {shell_quote(src)} {shell_quote(path)}",
                f"linking {path}",
            )
        return ModuleResult(changed=True, msg=f"{path} -> {src}", results=results)
