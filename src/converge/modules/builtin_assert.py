# Copyright (c) 2024 Converge Contributors
# MIT License

"""
Converge assert module

Assert conditions during playbook execution.
"""

from converge.engine.errors import TemplateError
from converge.engine.templating import evaluate_when
from converge.modules.base import Module, ModuleResult, register_module


@register_module
class AssertModule(Module):
    """
    Assert conditions are true.

    Useful for validating state before proceeding with tasks.
    """

    name = "assert"
    required_args = ["that"]
    optional_args = {
        "msg": None,
        "success_msg": None,
        "fail_msg": None,
        "quiet": False,
    }
    supports_check_mode = True

    async def run(self) -> ModuleResult:
        that = self.args["that"]
        conditions = [that] if isinstance(that, (str, bool)) else list(that)

        host_vars = self.context.get_vars()
        failed_conditions = []
        for condition in conditions:
            try:
                if not evaluate_when(condition, host_vars):
                    failed_conditions.append(str(condition))
            except TemplateError as e:
                failed_conditions.append(f"{condition} (error: {e.message})")

        if failed_conditions:
            message = self.get_arg("fail_msg") or self.get_arg("msg") or \
                f"Assertion failed: {', '.join(failed_conditions)}"
            return ModuleResult(
                failed=True,
                msg=str(message),
                results={"assertion": failed_conditions[0], "evaluated_to": False},
            )

        success = self.get_arg("success_msg") or "All assertions passed"
        return ModuleResult(msg="" if self.get_bool("quiet") else str(success))
