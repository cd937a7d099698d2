# Copyright (c) 2024 Converge Contributors
# MIT License

"""
Converge copy module

Copy inline content or a control-node file to the host.
"""

import hashlib
import os
from pathlib import Path
from typing import Optional, Union

from converge.engine.errors import ModuleError
from converge.engine.state import unified_diff
from converge.modules.base import Module, ModuleResult, register_module


@register_module
class CopyModule(Module):
    """
    Ensure a file on the host has the given content.

    The SHA-256 of the desired content is compared with the file on the host;
    the file is only rewritten when they differ.
    """

    name = "copy"
    required_args = ["dest"]
    optional_args = {
        "src": None,
        "content": None,
        "mode": None,
        "owner": None,
        "group": None,
        "validate": None,
        "backup": False,
        "force": True,
    }
    supports_check_mode = True

    def validate_args(self) -> Optional[str]:
        error = super().validate_args()
        if error:
            return error
        has_src = self.args.get("src") is not None
        has_content = self.args.get("content") is not None
        if has_src == has_content:
            return "exactly one of 'src' or 'content' is required"
        return None

    def _desired_content(self) -> Union[str, bytes]:
        content = self.args.get("content")
        if content is not None:
            if isinstance(content, (dict, list)):
                raise ModuleError(self.name, "'content' must be a string")
            return str(content)

        src = Path(str(self.args["src"])).expanduser()
        if not src.is_file():
            raise ModuleError(self.name, f"could not find src={src}")
        return src.read_bytes()

    def _destination(self, dest: str, is_dir: bool) -> str:
        src = self.args.get("src")
        if src is not None and (dest.endswith('/') or is_dir):
            return os.path.join(dest, os.path.basename(str(src)))
        return dest

    async def run(self) -> ModuleResult:
        desired = self._desired_content()
        data = desired.encode('utf-8') if isinstance(desired, str) else desired
        checksum = hashlib.sha256(data).hexdigest()

        dest = str(self.args["dest"])
        target = await self.read_file(dest, read_content=False)
        if target.exists and target.is_dir:
            dest = self._destination(dest, True)
            if dest == str(self.args["dest"]):
                return ModuleResult(failed=True, msg=f"Destination {dest} is a directory")
            target = await self.read_file(dest, read_content=False)

        current_checksum = await self.file_checksum(dest) if target.exists else None
        results = {"dest": dest, "checksum": checksum}

        if target.exists and not self.get_bool("force", True):
            return ModuleResult(msg=f"{dest} exists and force=no", results=results)

        content_changed = current_checksum != checksum

        diff = None
        if self.diff_mode and content_changed and isinstance(desired, str):
            before = (await self.read_file(dest)).content if target.exists else ""
            diff = unified_diff(before, desired, dest)

        if self.check_mode:
            return ModuleResult(changed=content_changed, diff=diff, results=results)

        if content_changed:
            if target.exists and self.get_bool("backup"):
                results["backup_file"] = await self.backup_file(dest)
            await self.write_file(
                dest,
                desired,
                validate=self.get_arg("validate"),
                make_parents=not target.exists,
            )
            target = await self.read_file(dest, read_content=False)

        attributes = await self.apply_attributes(
            dest,
            target,
            mode=self.get_arg("mode"),
            owner=self.get_arg("owner"),
            group=self.get_arg("group"),
        )

        return ModuleResult(
            changed=content_changed or bool(attributes),
            msg=f"{dest} updated" if content_changed else "",
            diff=diff,
            results=results,
        )
