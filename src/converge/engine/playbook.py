# Copyright (c) 2024 Converge Contributors
# MIT License

"""
Converge Playbook Parser

Parses YAML playbooks into executable Play, Block and Task objects.
"""

import re
from dataclasses import dataclass, field
from itertools import count
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Union

import yaml

from converge.engine.errors import ParseError, UnsupportedFeatureError


# Collections whose modules map onto a builtin short name
FQCN_PREFIXES = ('ansible.builtin.', 'ansible.legacy.')

MODULE_ALIASES = {
    'community.crypto.openssh_keypair': 'openssh_keypair',
    'ansible.posix.sysctl': 'sysctl',
    'systemd_service': 'systemd',
}

# Modules implemented by converge.modules
SUPPORTED_MODULES = {
    'apt', 'assert', 'command', 'copy', 'debug', 'fail', 'file', 'get_url',
    'group', 'lineinfile', 'openssh_keypair', 'ping', 'service', 'set_fact',
    'shell', 'stat', 'systemd', 'user',
}

# Modules taking a free-form string (the command line)
FREE_FORM_MODULES = {'command', 'shell'}

# Module args that may be embedded in a free-form string
FREE_FORM_PARAMS = ('creates', 'removes', 'chdir', 'executable')
_FREE_FORM_PARAM = re.compile(r'(?:^|\s)(%s)=(\S+)' % '|'.join(FREE_FORM_PARAMS))

_KEY_VALUE = re.compile(r'(\w+)=(?:"([^"]*)"|\'([^\']*)\'|(\S+))')

# Task keys that are NOT module names
TASK_KEYWORDS = {
    'name', 'vars', 'become', 'become_user', 'become_method', 'environment',
    'ignore_errors', 'tags', 'when', 'register', 'loop', 'loop_control',
    'with_items', 'with_list', 'changed_when', 'failed_when', 'notify',
    'listen', 'delegate_to', 'run_once', 'block', 'rescue', 'always', 'args',
    'async', 'poll', 'no_log', 'check_mode', 'diff',
}

# Features outside the supported subset
UNSUPPORTED_TASK_KEYS = {
    'delegate_facts',
    'local_action',
    'include',
    'include_tasks',
    'import_tasks',
    'include_role',
    'import_role',
    'until',
    'retries',
}

UNSUPPORTED_PLAY_KEYS = {
    'roles',
    'strategy',
    'serial',
    'import_playbook',
}

# Default poll interval of an async task that does not set one
DEFAULT_POLL = 15

BLOCK_SECTIONS = ('block', 'rescue', 'always')


@dataclass
class Task:
    """Represents a single task in a playbook."""

    name: str
    module: str
    args: Dict[str, Any]
    register: Optional[str] = None
    when: Any = None
    loop: Optional[Any] = None
    loop_var: str = "item"
    ignore_errors: bool = False
    changed_when: Any = None
    failed_when: Any = None
    environment: Dict[str, str] = field(default_factory=dict)
    tags: List[str] = field(default_factory=list)
    become: Optional[bool] = None  # None = inherit from play
    become_user: Optional[str] = None
    notify: List[str] = field(default_factory=list)
    listen: List[str] = field(default_factory=list)
    delegate_to: Optional[str] = None
    run_once: bool = False
    async_seconds: Optional[int] = None
    poll: Optional[int] = None
    no_log: bool = False
    check_mode: Optional[bool] = None

    # Block metadata, set when the task belongs to a block
    block_id: Optional[int] = None
    block_name: Optional[str] = None
    block_role: Optional[str] = None

    @property
    def detached(self) -> bool:
        """Fire-and-forget: dispatched and never awaited."""
        return self.async_seconds is not None and self.poll == 0

    def __repr__(self) -> str:
        return f"Task(name={self.name!r}, module={self.module!r})"


@dataclass
class Block:
    """An ordered group of tasks sharing a failure boundary."""

    name: str = ""
    block: List[Union["Task", "Block"]] = field(default_factory=list)
    rescue: List[Union["Task", "Block"]] = field(default_factory=list)
    always: List[Union["Task", "Block"]] = field(default_factory=list)
    block_id: int = 0

    def iter_tasks(self) -> Iterator[Task]:
        for section in BLOCK_SECTIONS:
            yield from _iter_entries(getattr(self, section))

    def __repr__(self) -> str:
        return f"Block(name={self.name!r}, tasks={len(self.block)})"


def _iter_entries(entries: List[Union[Task, Block]]) -> Iterator[Task]:
    for entry in entries:
        if isinstance(entry, Block):
            yield from entry.iter_tasks()
        else:
            yield entry


@dataclass
class Play:
    """Represents a single play in a playbook."""

    name: str
    hosts: str
    body: List[Union[Task, Block]] = field(default_factory=list)
    handlers: List[Task] = field(default_factory=list)
    vars: Dict[str, Any] = field(default_factory=dict)
    vars_files: List[str] = field(default_factory=list)
    gather_facts: bool = False
    environment: Dict[str, str] = field(default_factory=dict)
    tags: List[str] = field(default_factory=list)
    become: bool = False
    # None = the run-wide default (root unless configured)
    become_user: Optional[str] = None
    base_dir: Optional[Path] = None

    @property
    def tasks(self) -> List[Task]:
        """All tasks in declared order, blocks flattened."""
        return list(_iter_entries(self.body))

    def __repr__(self) -> str:
        return f"Play(name={self.name!r}, hosts={self.hosts!r}, tasks={len(self.tasks)})"


def normalize_module_name(key: str) -> str:
    """Map a fully-qualified collection name onto the builtin module name."""
    if key in MODULE_ALIASES:
        return MODULE_ALIASES[key]
    for prefix in FQCN_PREFIXES:
        if key.startswith(prefix):
            short = key[len(prefix):]
            return MODULE_ALIASES.get(short, short)
    return key


def _combine_when(outer: Any, inner: Any) -> Any:
    """AND two conditions; None means unconditional."""
    if outer is None:
        return inner
    if inner is None:
        return outer
    outer_list = outer if isinstance(outer, list) else [outer]
    inner_list = inner if isinstance(inner, list) else [inner]
    return outer_list + inner_list


class PlaybookParser:
    """
    Parse YAML playbooks into Play and Task objects.

    Validates against the supported subset and raises errors for unsupported
    features before anything runs.
    """

    def __init__(self, playbook_path: Union[str, Path]):
        self.playbook_path = Path(playbook_path)
        self.plays: List[Play] = []
        self._base_dir = self.playbook_path.parent
        self._block_ids = count(1)

    def parse(self) -> List[Play]:
        """
        Parse the playbook file.

        Returns:
            List of Play objects

        Raises:
            ParseError: If the playbook has syntax errors
            UnsupportedFeatureError: If playbook uses unsupported features
        """
        if not self.playbook_path.exists():
            raise ParseError(
                f"Playbook not found: {self.playbook_path}",
                file_path=str(self.playbook_path)
            )

        content = self.playbook_path.read_text(encoding='utf-8')
        return self.parse_text(content)

    def parse_text(self, content: str) -> List[Play]:
        """Parse playbook YAML already read into memory."""
        try:
            documents = list(yaml.safe_load_all(content))
        except yaml.YAMLError as e:
            raise ParseError(
                f"YAML syntax error: {e}",
                file_path=str(self.playbook_path)
            )

        all_plays = []
        for doc in documents:
            if doc is None:
                continue
            if isinstance(doc, list):
                all_plays.extend(doc)
            elif isinstance(doc, dict):
                all_plays.append(doc)
            else:
                raise ParseError(
                    f"Playbook must be a list of plays, got {type(doc).__name__}",
                    file_path=str(self.playbook_path)
                )

        for play_data in all_plays:
            if not isinstance(play_data, dict):
                raise ParseError(
                    f"Play must be a mapping, got {type(play_data).__name__}",
                    file_path=str(self.playbook_path)
                )
            self.plays.append(self._parse_play(play_data))

        return self.plays

    def _parse_play(self, data: Dict[str, Any]) -> Play:
        """Parse a single play from YAML data."""
        for key in UNSUPPORTED_PLAY_KEYS:
            if key in data:
                raise UnsupportedFeatureError(
                    f"'{key}' in plays",
                    suggestion=f"Remove '{key}' or inline the tasks into the play"
                )

        if 'hosts' not in data:
            raise ParseError(
                "Play missing required 'hosts' field",
                file_path=str(self.playbook_path)
            )

        hosts = data['hosts']
        if isinstance(hosts, list):
            hosts = ','.join(str(h) for h in hosts)

        play = Play(
            name=data.get('name') or str(hosts),
            hosts=str(hosts),
            gather_facts=bool(data.get('gather_facts', False)),
            environment=data.get('environment') or {},
            tags=self._ensure_list(data.get('tags')),
            become=bool(data.get('become', False)),
            become_user=data.get('become_user'),
            base_dir=self._base_dir,
        )

        if 'vars' in data and data['vars'] is not None:
            if not isinstance(data['vars'], dict):
                raise ParseError(
                    f"'vars' must be a dictionary, got {type(data['vars']).__name__}",
                    file_path=str(self.playbook_path)
                )
            play.vars = dict(data['vars'])

        play.vars_files = [str(v) for v in self._ensure_list(data.get('vars_files'))]

        for section in ('pre_tasks', 'tasks', 'post_tasks'):
            play.body.extend(self._parse_entries(data.get(section), section))

        for handler_data in self._ensure_list(data.get('handlers')):
            if not isinstance(handler_data, dict):
                raise ParseError("Handler must be a mapping", file_path=str(self.playbook_path))
            play.handlers.append(self._parse_task(handler_data))

        return play

    def _parse_entries(self, entries: Any, section: str) -> List[Union[Task, Block]]:
        if entries is None:
            return []
        if not isinstance(entries, list):
            raise ParseError(
                f"'{section}' must be a list, got {type(entries).__name__}",
                file_path=str(self.playbook_path)
            )
        parsed: List[Union[Task, Block]] = []
        for entry in entries:
            if not isinstance(entry, dict):
                raise ParseError(
                    f"Task in '{section}' must be a mapping, got {type(entry).__name__}",
                    file_path=str(self.playbook_path)
                )
            parsed.append(self._parse_task_or_block(entry))
        return parsed

    def _parse_task_or_block(self, data: Dict[str, Any]) -> Union[Task, Block]:
        if 'block' in data:
            return self._parse_block(data)
        return self._parse_task(data)

    def _parse_block(self, data: Dict[str, Any]) -> Block:
        """
        Parse a block.

        when/become/become_user/tags of the block are pushed down onto every
        member so each task is self-describing at execution time.
        """
        block = Block(name=data.get('name', 'block'), block_id=next(self._block_ids))
        block_when = data.get('when')
        block_become = data.get('become')
        block_become_user = data.get('become_user')
        block_tags = self._ensure_list(data.get('tags'))
        block_ignore = data.get('ignore_errors')

        def apply_block_props(entry: Union[Task, Block], role: str) -> None:
            if isinstance(entry, Block):
                for task in entry.iter_tasks():
                    apply_inherited(task)
                return
            apply_inherited(entry)
            entry.block_id = block.block_id
            entry.block_name = block.name
            entry.block_role = role

        def apply_inherited(task: Task) -> None:
            task.when = _combine_when(block_when, task.when)
            if block_become is not None and task.become is None:
                task.become = bool(block_become)
            if block_become_user and not task.become_user:
                task.become_user = block_become_user
            if block_ignore and not task.ignore_errors:
                task.ignore_errors = bool(block_ignore)
            for tag in block_tags:
                if tag not in task.tags:
                    task.tags.append(tag)

        for section in BLOCK_SECTIONS:
            entries = self._parse_entries(data.get(section), section)
            for entry in entries:
                apply_block_props(entry, section)
            setattr(block, section, entries)

        return block

    def _parse_task(self, data: Dict[str, Any]) -> Task:
        """Parse a single task from YAML data."""
        for key in UNSUPPORTED_TASK_KEYS:
            if key in data:
                raise UnsupportedFeatureError(
                    f"'{key}' in tasks",
                    suggestion=f"Remove '{key}' or restructure the task"
                )

        module_name = None
        module_args: Any = None

        for key, value in data.items():
            if key in TASK_KEYWORDS:
                continue
            normalized = normalize_module_name(key)
            if normalized in SUPPORTED_MODULES:
                module_name = normalized
                module_args = value
                break
            raise UnsupportedFeatureError(
                f"Module '{key}' is not supported",
                suggestion=f"Supported modules: {', '.join(sorted(SUPPORTED_MODULES))}"
            )

        if module_name is None:
            raise ParseError(
                f"Task has no recognized module: {list(data.keys())}",
                file_path=str(self.playbook_path)
            )

        args = self._normalize_args(module_name, module_args)
        extra_args = data.get('args')
        if extra_args is not None:
            if not isinstance(extra_args, dict):
                raise ParseError(
                    f"'args' must be a dictionary in task {data.get('name', module_name)!r}",
                    file_path=str(self.playbook_path)
                )
            args.update(extra_args)

        loop = None
        if 'loop' in data:
            loop = data['loop']
        elif 'with_items' in data:
            loop = data['with_items']
        elif 'with_list' in data:
            loop = data['with_list']

        loop_var = "item"
        if isinstance(data.get('loop_control'), dict):
            loop_var = data['loop_control'].get('loop_var', 'item')

        async_seconds, poll = self._parse_async(data)

        become = data.get('become')
        return Task(
            name=data.get('name') or module_name,
            module=module_name,
            args=args,
            register=data.get('register'),
            when=data.get('when'),
            loop=loop,
            loop_var=loop_var,
            ignore_errors=bool(data.get('ignore_errors', False)),
            changed_when=data.get('changed_when'),
            failed_when=data.get('failed_when'),
            environment=data.get('environment') or {},
            tags=[str(t) for t in self._ensure_list(data.get('tags'))],
            become=None if become is None else bool(become),
            become_user=data.get('become_user'),
            notify=[str(n) for n in self._ensure_list(data.get('notify'))],
            listen=[str(n) for n in self._ensure_list(data.get('listen'))],
            delegate_to=data.get('delegate_to'),
            run_once=bool(data.get('run_once', False)),
            async_seconds=async_seconds,
            poll=poll,
            no_log=bool(data.get('no_log', False)),
            check_mode=data.get('check_mode'),
        )

    def _parse_async(self, data: Dict[str, Any]) -> "tuple[Optional[int], Optional[int]]":
        if 'async' not in data:
            if 'poll' in data:
                raise ParseError(
                    f"'poll' without 'async' in task {data.get('name')!r}",
                    file_path=str(self.playbook_path)
                )
            return None, None
        try:
            async_seconds = int(data['async'])
            poll = int(data.get('poll', DEFAULT_POLL))
        except (TypeError, ValueError):
            raise ParseError(
                f"'async' and 'poll' must be integers in task {data.get('name')!r}",
                file_path=str(self.playbook_path)
            )
        if async_seconds < 0 or poll < 0:
            raise ParseError(
                f"'async' and 'poll' must not be negative in task {data.get('name')!r}",
                file_path=str(self.playbook_path)
            )
        return async_seconds, poll

    def _normalize_args(self, module_name: str, args: Any) -> Dict[str, Any]:
        """Normalize module arguments to a dictionary."""
        if args is None:
            return {}

        if isinstance(args, dict):
            return dict(args)

        if module_name in FREE_FORM_MODULES:
            text = str(args)
            parsed: Dict[str, Any] = {}
            for match in _FREE_FORM_PARAM.finditer(text):
                parsed[match.group(1)] = match.group(2)
            parsed['_raw_params'] = _FREE_FORM_PARAM.sub('', text).strip()
            return parsed

        if isinstance(args, str):
            # Inline args: "name=foo state=present"
            parsed = {}
            for match in _KEY_VALUE.finditer(args):
                value = match.group(2)
                if value is None:
                    value = match.group(3)
                if value is None:
                    value = match.group(4)
                parsed[match.group(1)] = value
            if not parsed:
                raise ParseError(
                    f"Module '{module_name}' does not take free-form arguments: {args!r}",
                    file_path=str(self.playbook_path)
                )
            return parsed

        raise ParseError(
            f"Arguments of module '{module_name}' must be a mapping",
            file_path=str(self.playbook_path)
        )

    def _ensure_list(self, value: Any) -> List[Any]:
        """Ensure a value is a list."""
        if value is None:
            return []
        if isinstance(value, list):
            return value
        return [value]


def load_playbook(path: Union[str, Path]) -> List[Play]:
    """Parse one playbook file."""
    return PlaybookParser(path).parse()
