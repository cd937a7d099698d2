# Copyright (c) 2024 Converge Contributors
# MIT License

"""
Converge lineinfile module

Manage single lines in text files.
"""

import re
from typing import List, Optional, Tuple

from converge.engine.state import unified_diff
from converge.modules.base import Module, ModuleResult, register_module


def edit_lines(
    lines: List[str],
    line: Optional[str],
    regexp: Optional[str] = None,
    state: str = "present",
    insertafter: Optional[str] = None,
    insertbefore: Optional[str] = None,
    firstmatch: bool = False,
) -> Tuple[List[str], str]:
    """
    Apply a lineinfile edit to a list of lines (without line endings).

    present:
        - regexp matches: the last matching line is replaced by ``line``
        - otherwise, ``line`` already present: nothing to do
        - otherwise ``line`` is inserted (insertafter/insertbefore, default EOF)
    absent:
        every line matching ``regexp`` (or equal to ``line``) is removed

    Returns:
        (new lines, message); the message is empty when nothing changed
    """
    lines = list(lines)

    if state == "absent":
        if regexp is not None:
            pattern = re.compile(regexp)
            kept = [l for l in lines if not pattern.search(l)]
        else:
            kept = [l for l in lines if l != line]
        removed = len(lines) - len(kept)
        return kept, (f"{removed} line(s) removed" if removed else "")

    if regexp is not None:
        pattern = re.compile(regexp)
        matches = [i for i, l in enumerate(lines) if pattern.search(l)]
        if matches:
            index = matches[0] if firstmatch else matches[-1]
            if lines[index] == line:
                return lines, ""
            lines[index] = line
            return lines, "line replaced"

    if line in lines:
        return lines, ""

    index = _insertion_index(lines, insertafter, insertbefore, firstmatch)
    lines.insert(index, line)
    return lines, "line added"


def _insertion_index(
    lines: List[str],
    insertafter: Optional[str],
    insertbefore: Optional[str],
    firstmatch: bool,
) -> int:
    if insertbefore is not None:
        if insertbefore == "BOF":
            return 0
        pattern = re.compile(insertbefore)
        matches = [i for i, l in enumerate(lines) if pattern.search(l)]
        if matches:
            return matches[0] if firstmatch else matches[-1]
        return len(lines)

    if insertafter is not None and insertafter != "EOF":
        pattern = re.compile(insertafter)
        matches = [i for i, l in enumerate(lines) if pattern.search(l)]
        if matches:
            return (matches[0] if firstmatch else matches[-1]) + 1
    return len(lines)


def join_lines(lines: List[str], original: str) -> str:
    """Rejoin lines; the result always ends with a newline unless empty."""
    if not lines:
        return ""
    newline = "\r\n" if "\r\n" in original else "\n"
    return newline.join(lines) + newline


@register_module
class LineinfileModule(Module):
    """
    Ensure a particular line is in a file, or replace an existing line.

    Repeated runs never duplicate a line: a regexp match is replaced in
    place and an exact match is left alone.
    """

    name = "lineinfile"
    required_args = ["path"]
    optional_args = {
        "line": None,
        "regexp": None,
        "state": "present",
        "create": False,
        "backup": False,
        "insertafter": None,
        "insertbefore": None,
        "firstmatch": False,
        "validate": None,
        "mode": None,
        "owner": None,
        "group": None,
    }
    supports_check_mode = True

    def validate_args(self) -> Optional[str]:
        error = super().validate_args()
        if error:
            return error
        state = self.get_arg("state")
        if state not in ("present", "absent"):
            return f"state must be present or absent, got {state!r}"
        if state == "present" and self.get_arg("line") is None:
            return "'line' is required when state=present"
        if state == "absent" and self.get_arg("line") is None and self.get_arg("regexp") is None:
            return "'line' or 'regexp' is required when state=absent"
        if self.get_arg("insertafter") is not None and self.get_arg("insertbefore") is not None:
            return "insertafter and insertbefore are mutually exclusive"
        for key in ("regexp", "insertafter", "insertbefore"):
            value = self.get_arg(key)
            if value is not None and value not in ("EOF", "BOF"):
                try:
                    re.compile(value)
                except re.error as e:
                    return f"invalid {key} pattern {value!r}: {e}"
        return None

    async def run(self) -> ModuleResult:
        path = str(self.args["path"])
        state = self.get_arg("state")
        line = self.get_arg("line")
        if line is not None:
            line = str(line)

        snapshot = await self.read_file(path)
        if snapshot.exists and snapshot.is_dir:
            return ModuleResult(failed=True, msg=f"Path {path} is a directory !")

        if not snapshot.exists:
            if state == "absent":
                return ModuleResult(msg=f"{path} does not exist")
            if not self.get_bool("create"):
                return ModuleResult(failed=True, rc=257, msg=f"Destination {path} does not exist !")
            original = ""
        else:
            original = snapshot.content or ""

        new_lines, message = edit_lines(
            original.splitlines(),
            line,
            regexp=self.get_arg("regexp"),
            state=state,
            insertafter=self.get_arg("insertafter"),
            insertbefore=self.get_arg("insertbefore"),
            firstmatch=self.get_bool("firstmatch"),
        )
        new_content = join_lines(new_lines, original)
        content_changed = bool(message) or not snapshot.exists
        if not message and not snapshot.exists:
            message = "file created"

        diff = None
        if self.diff_mode and content_changed:
            diff = unified_diff(original, new_content, path)

        if self.check_mode:
            return ModuleResult(changed=content_changed, msg=message, diff=diff)

        results = {}
        if content_changed:
            if snapshot.exists and self.get_bool("backup"):
                results["backup_file"] = await self.backup_file(path)
            await self.write_file(
                path,
                new_content,
                validate=self.get_arg("validate"),
                make_parents=not snapshot.exists,
            )
            snapshot = await self.read_file(path, read_content=False)

        attributes = await self.apply_attributes(
            path,
            snapshot,
            mode=self.get_arg("mode"),
            owner=self.get_arg("owner"),
            group=self.get_arg("group"),
        )
        if attributes and not message:
            message = "ownership, perms or SE linux context changed"

        return ModuleResult(
            changed=content_changed or bool(attributes),
            msg=message,
            diff=diff,
            results=results,
        )
