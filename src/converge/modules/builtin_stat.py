# Copyright (c) 2024 Converge Contributors
# MIT License

"""
Converge stat module

Retrieve file or file system status. Never changes anything.
"""

from typing import Any, Dict

from converge.connections.base import shell_quote
from converge.engine.state import normalize_mode
from converge.modules.base import Module, ModuleResult, register_module


STAT_FORMAT = "%F|%a|%u|%g|%U|%G|%s|%Y"


@register_module
class StatModule(Module):
    """Report whether a path exists and what it is, under ``result.stat``."""

    name = "stat"
    required_args = ["path"]
    optional_args = {
        "get_checksum": True,
        "follow": False,
    }
    supports_check_mode = True

    async def run(self) -> ModuleResult:
        path = str(self.args["path"])
        flag = "-L " if self.get_bool("follow") else ""
        result = await self.run_command(f"stat {flag}-c '{STAT_FORMAT}' -- {shell_quote(path)}")

        if result.rc != 0:
            return ModuleResult(results={"stat": {"exists": False, "path": path}})

        info = self._parse(path, result.stdout.strip())
        if info["isreg"] and self.get_bool("get_checksum", True):
            checksum = await self.file_checksum(path)
            if checksum:
                info["checksum"] = checksum
        return ModuleResult(results={"stat": info})

    @staticmethod
    def _parse(path: str, line: str) -> Dict[str, Any]:
        fields = (line.split("|") + [""] * 8)[:8]
        kind, mode, uid, gid, owner, group, size, mtime = fields
        return {
            "exists": True,
            "path": path,
            "isdir": kind == "directory",
            "isreg": kind.startswith("regular"),
            "islnk": kind == "symbolic link",
            "mode": normalize_mode(mode),
            "uid": int(uid) if uid.isdigit() else None,
            "gid": int(gid) if gid.isdigit() else None,
            "pw_name": owner or None,
            "gr_name": group or None,
            "size": int(size) if size.isdigit() else 0,
            "mtime": int(mtime) if mtime.isdigit() else None,
        }
