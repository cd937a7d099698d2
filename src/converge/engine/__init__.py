# Copyright (c) 2024 Converge Contributors
# MIT License

"""
Converge Engine

Core execution engine for parsing and running playbooks.
"""

from converge.engine.inventory import InventoryManager, Host
from converge.engine.playbook import PlaybookParser, Play, Task, Block
from converge.engine.plan import ExecutionPlan, build_plan
from converge.engine.templating import TemplateEngine
from converge.engine.scheduler import Scheduler, HostContext
from converge.engine.results import TaskResult, TaskStatus, PlayResult, PlaybookResult
from converge.engine.variables import VariableSet
from converge.engine.errors import (
    ConvergeError,
    ParseError,
    UnsupportedFeatureError,
    TemplateError,
    ConnectionError,
    ModuleError,
    ValidationError,
)

__all__ = [
    'InventoryManager',
    'Host',
    'PlaybookParser',
    'Play',
    'Task',
    'Block',
    'ExecutionPlan',
    'build_plan',
    'TemplateEngine',
    'Scheduler',
    'HostContext',
    'TaskResult',
    'TaskStatus',
    'PlayResult',
    'PlaybookResult',
    'VariableSet',
    'ConvergeError',
    'ParseError',
    'UnsupportedFeatureError',
    'TemplateError',
    'ConnectionError',
    'ModuleError',
    'ValidationError',
]
