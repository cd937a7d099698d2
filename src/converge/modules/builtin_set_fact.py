# Copyright (c) 2024 Converge Contributors
# MIT License

"""
Converge set_fact module

Set host variables during playbook execution.
"""

import re
from typing import Optional

from converge.modules.base import Module, ModuleResult, register_module


_IDENTIFIER = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')


@register_module
class SetFactModule(Module):
    """
    Set host facts from task.

    Variables set with set_fact are available for subsequent tasks on the
    same host, in this and later plays.
    """

    name = "set_fact"
    required_args = []
    optional_args = {
        "cacheable": False,
    }
    supports_check_mode = True

    def validate_args(self) -> Optional[str]:
        names = [k for k in self.args if k != "cacheable"]
        if not names:
            return "set_fact requires at least one key=value"
        bad = [k for k in names if not _IDENTIFIER.match(str(k))]
        if bad:
            return f"Invalid variable name(s): {', '.join(bad)}"
        return None

    async def run(self) -> ModuleResult:
        facts = {k: v for k, v in self.args.items() if k != "cacheable"}
        return ModuleResult(
            msg=f"Set {len(facts)} fact(s)",
            results={"ansible_facts": facts},
            facts=facts,
        )
