# Copyright (c) 2024 Converge Contributors
# MIT License

"""
Converge debug module

Print debug messages during playbook execution.
"""

import json

from converge.engine.templating import get_template_engine
from converge.modules.base import Module, ModuleResult, register_module


@register_module
class DebugModule(Module):
    """
    Print debug messages.

    Useful for printing variable values and troubleshooting playbooks.
    """

    name = "debug"
    required_args = []
    optional_args = {
        "msg": "Hello world!",
        "var": None,
        "verbosity": 0,
    }
    supports_check_mode = True

    async def run(self) -> ModuleResult:
        var = self.get_arg("var")

        if var:
            value = get_template_engine().render(
                "{{ %s | default('VARIABLE IS NOT DEFINED!') }}" % var,
                self.context.get_vars(),
            )
            if isinstance(value, (dict, list)):
                output = f"{var}: {json.dumps(value, indent=2, default=str)}"
            else:
                output = f"{var}: {value}"
            return ModuleResult(msg=output, results={var: value})

        output = str(self.get_arg("msg"))
        return ModuleResult(msg=output, results={"msg": output})
