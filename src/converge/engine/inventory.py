# Copyright (c) 2024 Converge Contributors
# MIT License

"""
Converge Inventory Manager

Parses INI and YAML inventories plus host_vars/ and group_vars/ directories,
and resolves host patterns to hosts in declaration order.
"""

import json
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml

from converge.engine.errors import InventoryError

logger = logging.getLogger(__name__)

LOCALHOST_NAMES = ('localhost', '127.0.0.1')


class Host:
    """A machine in the inventory, reachable over SSH or locally."""

    def __init__(self, name: str, variables: Optional[Dict[str, Any]] = None):
        self.name = name
        self.vars: Dict[str, Any] = variables.copy() if variables else {}
        # dict keeps membership order stable for reporting
        self._groups: Dict[str, None] = {}

    @property
    def address(self) -> str:
        """Address to connect to (ansible_host or the inventory name)."""
        return str(self.vars.get('ansible_host', self.name))

    @property
    def port(self) -> int:
        return int(self.vars.get('ansible_port', 22))

    @property
    def user(self) -> Optional[str]:
        return self.vars.get('ansible_user')

    @property
    def connection_type(self) -> str:
        """Transport name: ssh (default) or local."""
        default = 'local' if self.name in LOCALHOST_NAMES else 'ssh'
        return str(self.vars.get('ansible_connection', default))

    @property
    def groups(self) -> List[str]:
        """Return list of group names this host belongs to."""
        return list(self._groups)

    def add_group(self, group_name: str) -> None:
        self._groups[group_name] = None

    def set_variable(self, key: str, value: Any) -> None:
        self.vars[key] = value

    def get_variable(self, key: str, default: Any = None) -> Any:
        return self.vars.get(key, default)

    def get_vars(self) -> Dict[str, Any]:
        """Return host variables plus the magic inventory_* names."""
        result = self.vars.copy()
        result['inventory_hostname'] = self.name
        result['inventory_hostname_short'] = self.name.split('.')[0]
        result['ansible_host'] = self.address
        result['group_names'] = sorted(g for g in self._groups if g not in ('all', 'ungrouped'))
        return result

    def __repr__(self) -> str:
        return f"Host({self.name!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Host):
            return NotImplemented
        return self.name == other.name

    def __hash__(self) -> int:
        return hash(self.name)


class Group:
    """Represents a group of hosts."""

    def __init__(self, name: str, variables: Optional[Dict[str, Any]] = None):
        self.name = name
        self.vars: Dict[str, Any] = variables.copy() if variables else {}
        self._hosts: Dict[str, None] = {}
        self._children: Dict[str, None] = {}
        self._parents: Dict[str, None] = {}

    @property
    def hosts(self) -> List[str]:
        """Host names directly in this group."""
        return list(self._hosts)

    @property
    def children(self) -> List[str]:
        return list(self._children)

    @property
    def parents(self) -> List[str]:
        return list(self._parents)

    def add_host(self, host_name: str) -> None:
        self._hosts[host_name] = None

    def add_child(self, group_name: str) -> None:
        self._children[group_name] = None

    def add_parent(self, group_name: str) -> None:
        self._parents[group_name] = None

    def set_variable(self, key: str, value: Any) -> None:
        self.vars[key] = value

    def __repr__(self) -> str:
        return f"Group({self.name!r}, hosts={len(self._hosts)})"


class InventoryManager:
    """
    Manages inventory parsing and host resolution.

    Supports:
    - INI format inventory files
    - YAML format inventory files
    - host_vars/ and group_vars/ directories
    - Host patterns for plays and --limit
    """

    # Pattern for host range expansion: web[01:10].example.com
    RANGE_PATTERN = re.compile(r'\[(\d+):(\d+)\]')
    # Pattern for INI variable assignment: key=value
    VAR_PATTERN = re.compile(r'(\w+)=(?:"([^"]*)"|\'([^\']*)\'|(\S+))')

    def __init__(self):
        self.hosts: Dict[str, Host] = {}
        self.groups: Dict[str, Group] = {}
        self._inventory_dir: Optional[Path] = None

        self.groups['all'] = Group('all')
        self.groups['ungrouped'] = Group('ungrouped')

    def parse(self, source: Union[str, Path]) -> 'InventoryManager':
        """
        Parse an inventory source.

        Args:
            source: Path to inventory file or directory

        Returns:
            self for chaining
        """
        source_path = Path(source)

        if not source_path.exists():
            raise InventoryError(f"Inventory path does not exist: {source_path}")

        if source_path.is_file():
            self._inventory_dir = source_path.parent
            self._parse_file(source_path)
        else:
            self._inventory_dir = source_path
            self._parse_directory(source_path)

        self._load_vars_directories(self._inventory_dir)
        self._finalize()
        logger.info("inventory %s: %d hosts, %d groups", source_path, len(self.hosts), len(self.groups))
        return self

    def add_host(self, name: str, variables: Optional[Dict[str, Any]] = None,
                 groups: Optional[List[str]] = None) -> Host:
        """Add (or update) a host programmatically."""
        host = self.hosts.get(name)
        if host is None:
            host = Host(name, variables)
            self.hosts[name] = host
        elif variables:
            host.vars.update(variables)
        for group_name in groups or []:
            group = self.groups.setdefault(group_name, Group(group_name))
            group.add_host(name)
            host.add_group(group_name)
        self._finalize()
        return host

    def _finalize(self) -> None:
        """Put every host in 'all' and hosts without groups in 'ungrouped'."""
        for host_name, host in self.hosts.items():
            self.groups['all'].add_host(host_name)
            host.add_group('all')
            explicit = [g for g in host.groups if g not in ('all', 'ungrouped')]
            if not explicit:
                self.groups['ungrouped'].add_host(host_name)
                host.add_group('ungrouped')

    def get_hosts(self, pattern: str = "all") -> List[Host]:
        """
        Get hosts matching a pattern.

        Supported patterns:
        - "all" - all hosts
        - "group_name" - all hosts in a group (including children)
        - "host_name" - single host
        - "localhost" - implicit local host when not in the inventory
        - "host1,host2" - multiple hosts/groups
        - "group1:&group2" - intersection
        - "!group" - exclusion

        Returns:
            Matching hosts, in inventory declaration order
        """
        names = self._match(pattern or 'all')
        ordered = [h for name, h in self.hosts.items() if name in names]
        for name in names:
            if name not in self.hosts and name in LOCALHOST_NAMES:
                ordered.append(self.implicit_localhost(name))
        return ordered

    def implicit_localhost(self, name: str = 'localhost') -> Host:
        """A local-connection host used when 'localhost' is not in the inventory."""
        variables = dict(self.groups['all'].vars)
        variables['ansible_connection'] = 'local'
        return Host(name, variables)

    def _match(self, pattern: str) -> set:
        pattern = pattern.strip()
        if pattern in ('all', '*'):
            return set(self.hosts)

        if ',' in pattern:
            result: set = set()
            for sub in pattern.split(','):
                if sub.strip():
                    result |= self._match(sub)
            return result

        if ':&' in pattern:
            first, _, second = pattern.partition(':&')
            return self._match(first) & self._match(second)

        if ':!' in pattern:
            first, _, second = pattern.partition(':!')
            return self._match(first) - self._match(second)

        if pattern.startswith('!'):
            return set(self.hosts) - self._match(pattern[1:])

        if ':' in pattern:
            result = set()
            for sub in pattern.split(':'):
                if sub.strip():
                    result |= self._match(sub)
            return result

        if pattern in self.groups:
            return {h.name for h in self._get_group_hosts_recursive(pattern)}

        if pattern in self.hosts:
            return {pattern}

        if pattern in LOCALHOST_NAMES:
            return {pattern}

        return set()

    def _get_group_hosts_recursive(self, group_name: str, seen: Optional[set] = None) -> List[Host]:
        """Get all hosts in a group, including from child groups."""
        seen = seen if seen is not None else set()
        if group_name not in self.groups or group_name in seen:
            return []
        seen.add(group_name)

        group = self.groups[group_name]
        result: Dict[str, Host] = {n: self.hosts[n] for n in group.hosts if n in self.hosts}
        for child_name in group.children:
            for host in self._get_group_hosts_recursive(child_name, seen):
                result.setdefault(host.name, host)
        return list(result.values())

    def _group_chain(self, host: Host) -> List[str]:
        """Groups of a host ordered from most general to most specific."""
        chain: List[str] = []

        def visit(name: str) -> None:
            if name in chain or name not in self.groups:
                return
            for parent in self.groups[name].parents:
                visit(parent)
            chain.append(name)

        visit('all')
        for name in host.groups:
            visit(name)
        return chain

    def get_host_vars(self, host_name: str) -> Dict[str, Any]:
        """Get all variables for a host (merged from groups and host)."""
        host = self.hosts.get(host_name)
        if host is None:
            if host_name in LOCALHOST_NAMES:
                return self.implicit_localhost(host_name).get_vars()
            return {}

        merged_vars: Dict[str, Any] = {}
        for group_name in self._group_chain(host):
            merged_vars.update(self.groups[group_name].vars)
        merged_vars.update(host.get_vars())
        return merged_vars

    def _parse_file(self, path: Path) -> None:
        """Parse a single inventory file."""
        content = path.read_text(encoding='utf-8')

        if path.suffix in ('.yml', '.yaml'):
            self._parse_yaml_string(content, path)
        elif path.suffix == '.json':
            try:
                data = json.loads(content)
            except json.JSONDecodeError as e:
                raise InventoryError(f"Invalid JSON inventory: {e}", file_path=str(path))
            self._parse_yaml_data(data)
        elif content.lstrip().startswith(('---', 'all:')):
            self._parse_yaml_string(content, path)
        else:
            self._parse_ini_string(content, path)

    def _parse_directory(self, path: Path) -> None:
        """Parse all inventory files in a directory."""
        for item in sorted(path.iterdir()):
            if not item.is_file() or item.name.startswith('.'):
                continue
            if item.suffix in ('.bak', '.orig', '.pyc', '.pyo', '.cfg', '.md'):
                continue
            self._parse_file(item)

    def _load_vars_directories(self, base_path: Path) -> None:
        """Load variables from host_vars/ and group_vars/ directories."""
        group_vars_dir = base_path / 'group_vars'
        if group_vars_dir.is_dir():
            for item in sorted(group_vars_dir.iterdir()):
                group = self.groups.setdefault(item.stem, Group(item.stem))
                for key, value in self._read_vars_entry(item).items():
                    group.set_variable(key, value)

        host_vars_dir = base_path / 'host_vars'
        if host_vars_dir.is_dir():
            for item in sorted(host_vars_dir.iterdir()):
                host = self.hosts.get(item.stem)
                if host is None:
                    logger.debug("host_vars for unknown host %s ignored", item.stem)
                    continue
                for key, value in self._read_vars_entry(item).items():
                    host.set_variable(key, value)

    def _read_vars_entry(self, item: Path) -> Dict[str, Any]:
        """Read a vars file, or every YAML file of a vars directory."""
        files: List[Path] = []
        if item.is_file() and item.suffix in ('.yml', '.yaml'):
            files = [item]
        elif item.is_dir():
            files = sorted(list(item.glob('*.yml')) + list(item.glob('*.yaml')))

        merged: Dict[str, Any] = {}
        for vars_file in files:
            try:
                data = yaml.safe_load(vars_file.read_text(encoding='utf-8')) or {}
            except yaml.YAMLError as e:
                raise InventoryError(f"Invalid YAML: {e}", file_path=str(vars_file))
            if not isinstance(data, dict):
                raise InventoryError("Variables file must contain a mapping", file_path=str(vars_file))
            merged.update(data)
        return merged

    def _parse_ini_string(self, content: str, source_path: Optional[Path] = None) -> None:
        """Parse INI format inventory."""
        current_group: Optional[str] = None
        current_section: Optional[str] = None  # 'hosts', 'vars', 'children'

        for line in content.splitlines():
            line = line.strip()

            if not line or line.startswith('#') or line.startswith(';'):
                continue

            if line.startswith('[') and line.endswith(']'):
                header = line[1:-1].strip()

                if header.endswith(':vars'):
                    current_group = header[:-len(':vars')].strip()
                    current_section = 'vars'
                elif header.endswith(':children'):
                    current_group = header[:-len(':children')].strip()
                    current_section = 'children'
                else:
                    current_group = header
                    current_section = 'hosts'

                self.groups.setdefault(current_group, Group(current_group))
                continue

            if current_section == 'vars':
                key, value = self._parse_variable_line(line)
                if current_group and key:
                    self.groups[current_group].set_variable(key, value)

            elif current_section == 'children':
                child_name = line.split()[0]
                if current_group:
                    self.groups.setdefault(child_name, Group(child_name))
                    self.groups[current_group].add_child(child_name)
                    self.groups[child_name].add_parent(current_group)

            else:
                for host in self._parse_host_line(line):
                    existing = self.hosts.get(host.name)
                    if existing is not None:
                        existing.vars.update(host.vars)
                        host = existing
                    else:
                        self.hosts[host.name] = host
                    if current_group:
                        self.groups[current_group].add_host(host.name)
                        host.add_group(current_group)

    def _parse_host_line(self, line: str) -> List[Host]:
        """Parse a single host line, handling ranges and variables."""
        parts = line.split(None, 1)
        host_pattern = parts[0]
        var_string = parts[1] if len(parts) > 1 else ''

        variables: Dict[str, Any] = {}
        for match in self.VAR_PATTERN.finditer(var_string):
            key = match.group(1)
            value = match.group(2) if match.group(2) is not None else (
                match.group(3) if match.group(3) is not None else match.group(4)
            )
            variables[key] = self._convert_value(value)

        return [Host(name, variables=variables) for name in self._expand_host_pattern(host_pattern)]

    def _expand_host_pattern(self, pattern: str) -> List[str]:
        """Expand host patterns like web[01:03].example.com."""
        match = self.RANGE_PATTERN.search(pattern)
        if not match:
            return [pattern]

        start = int(match.group(1))
        end = int(match.group(2))
        width = len(match.group(1))

        results = []
        for i in range(start, end + 1):
            expanded = pattern[:match.start()] + str(i).zfill(width) + pattern[match.end():]
            results.extend(self._expand_host_pattern(expanded))
        return results

    def _parse_variable_line(self, line: str) -> Tuple[str, Any]:
        """Parse a variable assignment line."""
        if '=' not in line:
            return '', None

        key, _, value = line.partition('=')
        key = key.strip()
        value = value.strip()

        if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
            return key, value[1:-1]

        return key, self._convert_value(value)

    def _convert_value(self, value: str) -> Any:
        """Convert string value to appropriate Python type."""
        if not isinstance(value, str):
            return value

        lowered = value.lower()
        if lowered in ('true', 'yes'):
            return True
        if lowered in ('false', 'no'):
            return False
        if lowered in ('null', 'none', '~'):
            return None

        for convert in (int, float):
            try:
                return convert(value)
            except ValueError:
                pass

        return value

    def _parse_yaml_string(self, content: str, source_path: Optional[Path] = None) -> None:
        """Parse YAML format inventory."""
        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise InventoryError(
                f"Invalid YAML inventory: {e}",
                file_path=str(source_path) if source_path else None,
            )
        if data:
            self._parse_yaml_data(data)

    def _parse_yaml_data(self, data: Any) -> None:
        """Parse YAML inventory data structure."""
        if not isinstance(data, dict):
            raise InventoryError("YAML inventory must be a mapping of groups")

        for group_name, group_data in data.items():
            self._parse_yaml_group(group_name, group_data or {})

    def _parse_yaml_group(self, name: str, data: Dict[str, Any]) -> None:
        """Parse a single group from YAML inventory."""
        group = self.groups.setdefault(name, Group(name))

        if not isinstance(data, dict):
            return

        hosts_data = data.get('hosts') or {}
        if isinstance(hosts_data, dict):
            for host_name, host_vars in hosts_data.items():
                host = self.hosts.get(host_name)
                if host is None:
                    host = Host(host_name, variables=host_vars or {})
                    self.hosts[host_name] = host
                elif host_vars:
                    host.vars.update(host_vars)
                group.add_host(host_name)
                host.add_group(name)

        vars_data = data.get('vars') or {}
        if isinstance(vars_data, dict):
            for key, value in vars_data.items():
                group.set_variable(key, value)

        children_data = data.get('children') or {}
        if isinstance(children_data, dict):
            for child_name, child_data in children_data.items():
                group.add_child(child_name)
                self._parse_yaml_group(child_name, child_data or {})
                self.groups[child_name].add_parent(name)
