# Copyright (c) 2024 Converge Contributors
# MIT License

"""
Converge Templating Engine

Jinja2-based templating with a minimal filter set for variable expansion.

Resolution is strict: an undefined name anywhere in a template raises
TemplateError, so a module never receives a partially substituted value.
"""

import base64
import json
import os
import re
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional

import yaml
from jinja2 import Environment, StrictUndefined, TemplateSyntaxError, Undefined, UndefinedError

from converge.engine.errors import TemplateError


# "{{ expr }}" and nothing else: rendered to the native value of expr
_SINGLE_EXPRESSION = re.compile(r'^\s*\{\{\s*(.+?)\s*\}\}\s*$', re.DOTALL)


def _filter_default(value: Any, default: Any = '', boolean: bool = False) -> Any:
    """Return default if value is undefined/None (or falsy with boolean=True)."""
    if isinstance(value, Undefined) or value is None:
        return default
    if boolean and not value:
        return default
    return value


def _filter_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in ('true', 'yes', '1', 'on', 'y')
    return bool(value)


def _filter_to_yaml(value: Any) -> str:
    return yaml.safe_dump(value, default_flow_style=False)


def _filter_b64encode(value: Any) -> str:
    if isinstance(value, bytes):
        return base64.b64encode(value).decode('utf-8')
    return base64.b64encode(str(value).encode('utf-8')).decode('utf-8')


def _filter_join(value: Any, sep: str = '') -> str:
    if isinstance(value, str):
        return value
    return sep.join(str(i) for i in value)


CUSTOM_FILTERS: Dict[str, Callable[..., Any]] = {
    'default': _filter_default,
    'd': _filter_default,
    'lower': lambda x: str(x).lower(),
    'upper': lambda x: str(x).upper(),
    'replace': lambda s, old, new: str(s).replace(old, new),
    'to_json': lambda x: json.dumps(x),
    'to_yaml': _filter_to_yaml,
    'bool': _filter_bool,
    'int': lambda x: int(x),
    'string': lambda x: str(x),
    'trim': lambda x: str(x).strip(),
    'length': lambda x: len(x),
    'join': _filter_join,
    'first': lambda x: x[0] if x else None,
    'last': lambda x: x[-1] if x else None,
    'basename': lambda p: os.path.basename(str(p)),
    'dirname': lambda p: os.path.dirname(str(p)),
    'regex_replace': lambda v, pattern, repl='': re.sub(pattern, repl, str(v)),
    'b64decode': lambda v: base64.b64decode(v).decode('utf-8'),
    'b64encode': _filter_b64encode,
}


def lookup(kind: str, *terms: Any, default: Any = None) -> Any:
    """
    Control-node lookups, evaluated while templating.

    Supported kinds:
        env: environment variable value ('' when unset, like Ansible)
        file: contents of a file, trailing newline stripped
    """
    values = []
    for term in terms:
        if kind == 'env':
            value = os.environ.get(str(term))
            values.append(default if value is None and default is not None else (value or ''))
        elif kind == 'file':
            path = Path(str(term)).expanduser()
            if not path.is_file():
                raise TemplateError(f"lookup('file'): {path} not found")
            values.append(path.read_text(encoding='utf-8').rstrip('\n'))
        else:
            raise TemplateError(f"Unsupported lookup plugin: {kind}")
    if len(values) == 1:
        return values[0]
    return ','.join(str(v) for v in values)


class TemplateEngine:
    """
    Jinja2 templating engine with Ansible-like behavior.

    Provides:
    - Variable interpolation in strings (native types for single expressions)
    - Recursive template rendering in dicts/lists
    - 'when' condition evaluation
    - lookup('env', ...) and lookup('file', ...)
    """

    def __init__(self):
        self.env = Environment(
            undefined=StrictUndefined,
            autoescape=False,
            keep_trailing_newline=True,
        )

        for name, func in CUSTOM_FILTERS.items():
            self.env.filters[name] = func

        self.env.globals['lookup'] = lookup
        self.env.globals['query'] = lambda kind, *terms: [lookup(kind, t) for t in terms]

        self.env.tests['string'] = lambda x: isinstance(x, str)
        self.env.tests['number'] = lambda x: isinstance(x, (int, float)) and not isinstance(x, bool)
        self.env.tests['mapping'] = lambda x: isinstance(x, Mapping)
        self.env.tests['sequence'] = lambda x: isinstance(x, (list, tuple))
        self.env.tests['iterable'] = lambda x: hasattr(x, '__iter__') and not isinstance(x, str)
        self.env.tests['truthy'] = lambda x: _filter_bool(x)
        self.env.tests['falsy'] = lambda x: not _filter_bool(x)
        self.env.tests['changed'] = lambda r: bool(isinstance(r, Mapping) and r.get('changed'))
        self.env.tests['failed'] = lambda r: bool(isinstance(r, Mapping) and r.get('failed'))
        self.env.tests['succeeded'] = lambda r: not (isinstance(r, Mapping) and r.get('failed'))
        self.env.tests['skipped'] = lambda r: bool(isinstance(r, Mapping) and r.get('skipped'))

    def render(self, template_str: Any, variables: Mapping[str, Any]) -> Any:
        """
        Render a template string with variables.

        Args:
            template_str: String potentially containing {{ }} expressions
            variables: Variables for rendering

        Returns:
            Rendered value. A string consisting of a single expression keeps
            the expression's native type (int, list, dict...).

        Raises:
            TemplateError: If template is invalid or a variable is undefined
        """
        if not isinstance(template_str, str):
            return template_str

        if '{{' not in template_str and '{%' not in template_str:
            return template_str

        single = _SINGLE_EXPRESSION.match(template_str)
        if single and '{{' not in single.group(1) and '{%' not in template_str:
            return self._evaluate(single.group(1), variables, template_str)

        try:
            return self.env.from_string(template_str).render(dict(variables))
        except UndefinedError as e:
            raise TemplateError(f"Undefined variable: {e}", template=template_str)
        except TemplateSyntaxError as e:
            raise TemplateError(f"Template syntax error: {e}", template=template_str)
        except TemplateError:
            raise
        except Exception as e:
            raise TemplateError(f"{type(e).__name__}: {e}", template=template_str)

    def _evaluate(self, expression: str, variables: Mapping[str, Any], source: str) -> Any:
        try:
            value = self.env.compile_expression(expression, undefined_to_none=False)(**dict(variables))
        except UndefinedError as e:
            raise TemplateError(f"Undefined variable: {e}", template=source)
        except TemplateSyntaxError as e:
            raise TemplateError(f"Template syntax error: {e}", template=source)
        except TemplateError:
            raise
        except Exception as e:
            raise TemplateError(f"{type(e).__name__}: {e}", template=source)
        if isinstance(value, Undefined):
            raise TemplateError(f"Undefined variable in '{expression}'", template=source)
        return value

    def render_recursive(self, data: Any, variables: Mapping[str, Any]) -> Any:
        """
        Recursively render templates in a data structure.

        Args:
            data: Data structure (dict, list, or scalar)
            variables: Variables for rendering

        Returns:
            Data structure with all templates rendered
        """
        if isinstance(data, str):
            return self.render(data, variables)

        if isinstance(data, dict):
            return {
                (self.render(k, variables) if isinstance(k, str) else k): self.render_recursive(v, variables)
                for k, v in data.items()
            }

        if isinstance(data, (list, tuple)):
            return [self.render_recursive(item, variables) for item in data]

        return data

    def evaluate_when(self, condition: Any, variables: Mapping[str, Any]) -> bool:
        """
        Evaluate a 'when' (or changed_when/failed_when) condition.

        Args:
            condition: Jinja2 expression without braces, a bool, or a list of
                expressions that must all hold

        Returns:
            Boolean result of the condition

        Raises:
            TemplateError: If the condition is invalid or references an
                undefined variable outside an 'is defined' test
        """
        if condition is None:
            return True
        if isinstance(condition, bool):
            return condition
        if isinstance(condition, (list, tuple)):
            return all(self.evaluate_when(c, variables) for c in condition)

        expression = str(condition).strip()
        if expression.startswith('{{') and expression.endswith('}}'):
            expression = expression[2:-2].strip()
        if not expression:
            return True

        return _filter_bool(self._evaluate(expression, variables, expression))


_engine: Optional[TemplateEngine] = None


def get_template_engine() -> TemplateEngine:
    """Get the shared template engine instance."""
    global _engine
    if _engine is None:
        _engine = TemplateEngine()
    return _engine


def render(template_str: Any, variables: Mapping[str, Any]) -> Any:
    return get_template_engine().render(template_str, variables)


def render_recursive(data: Any, variables: Mapping[str, Any]) -> Any:
    return get_template_engine().render_recursive(data, variables)


def evaluate_when(condition: Any, variables: Mapping[str, Any]) -> bool:
    return get_template_engine().evaluate_when(condition, variables)
