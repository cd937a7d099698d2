# Copyright (c) 2024 Converge Contributors
# MIT License

"""
Converge Modules

Built-in modules for task execution.
"""

from converge.modules.base import Module, ModuleResult, get_module, list_modules, register_module

__all__ = [
    'Module',
    'ModuleResult',
    'get_module',
    'list_modules',
    'register_module',
]
