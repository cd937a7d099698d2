# Copyright (c) 2024 Converge Contributors
# MIT License

"""
Converge State Inspection

Explicit inspection of the current host state as typed snapshots, compared
against desired-state value objects. A module decides changed/unchanged
from the resulting ChangeSet before it mutates anything.

Inspection runs shell commands through a CommandRunner, normally a module's
privilege-wrapped ``run``:

    snapshot = await inspect_file(module.run_command, '/etc/sudoers')
    changes = DesiredFile('/etc/sudoers', content=new).changes(snapshot)
"""

import difflib
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, Iterator, List, Optional

from converge.connections.base import RunResult, shell_quote


CommandRunner = Callable[[str], Awaitable[RunResult]]


def normalize_mode(mode: Any) -> Optional[str]:
    """
    Normalize a file mode to four octal digits ('644' -> '0644').

    Integers are taken as the numeric mode (YAML reads 0644 as 420).
    Symbolic modes (u+x) are returned unchanged.
    """
    if mode is None or mode == '':
        return None
    if isinstance(mode, int):
        return format(mode, '04o')
    text = str(mode).strip()
    if text.isdigit():
        return format(int(text, 8), '04o')
    return text


@dataclass(frozen=True)
class Change:
    """One attribute that differs between actual and desired state."""

    attribute: str
    before: Any
    after: Any

    def __str__(self) -> str:
        return f"{self.attribute}: {self.before!r} -> {self.after!r}"


class ChangeSet:
    """Differences between a snapshot and a desired state; empty means unchanged."""

    def __init__(self, changes: Optional[Iterable[Change]] = None):
        self._changes: List[Change] = list(changes or [])

    def add(self, attribute: str, before: Any, after: Any) -> None:
        self._changes.append(Change(attribute, before, after))

    def __bool__(self) -> bool:
        return bool(self._changes)

    def __len__(self) -> int:
        return len(self._changes)

    def __iter__(self) -> Iterator[Change]:
        return iter(self._changes)

    def __contains__(self, attribute: object) -> bool:
        return any(c.attribute == attribute for c in self._changes)

    def get(self, attribute: str) -> Optional[Change]:
        for change in self._changes:
            if change.attribute == attribute:
                return change
        return None

    def describe(self) -> List[str]:
        return [str(c) for c in self._changes]

    def __repr__(self) -> str:
        return f"ChangeSet({self.describe()})"


# --- snapshots -------------------------------------------------------------


@dataclass(frozen=True)
class FileSnapshot:
    path: str
    exists: bool
    is_dir: bool = False
    is_link: bool = False
    content: Optional[str] = None
    mode: Optional[str] = None
    owner: Optional[str] = None
    group: Optional[str] = None
    size: int = 0
    link_target: Optional[str] = None

    @property
    def is_file(self) -> bool:
        return self.exists and not self.is_dir and not self.is_link


@dataclass(frozen=True)
class ServiceSnapshot:
    name: str
    active: bool
    enabled: Optional[bool]
    active_state: str = ''
    enabled_state: str = ''
    exists: bool = True


@dataclass(frozen=True)
class UserSnapshot:
    name: str
    exists: bool
    uid: Optional[int] = None
    gid: Optional[int] = None
    comment: str = ''
    home: Optional[str] = None
    shell: Optional[str] = None
    groups: tuple = ()
    primary_group: Optional[str] = None
    password_hash: Optional[str] = None


@dataclass(frozen=True)
class PackageSnapshot:
    name: str
    installed: bool
    version: Optional[str] = None


# --- inspection ------------------------------------------------------------


async def inspect_file(run: CommandRunner, path: str, read_content: bool = True) -> FileSnapshot:
    """Snapshot a path: type, mode, ownership and (for regular files) content."""
    quoted = shell_quote(path)
    result = await run(f"stat -c '%F|%a|%U|%G|%s' -- {quoted}")
    if result.rc != 0:
        return FileSnapshot(path=path, exists=False)

    kind, mode, owner, group, size = (result.stdout.strip().split('|') + [''] * 5)[:5]
    is_dir = kind == 'directory'
    is_link = kind == 'symbolic link'

    link_target = None
    if is_link:
        link = await run(f"readlink -- {quoted}")
        link_target = link.stdout.strip() if link.rc == 0 else None

    content = None
    if read_content and not is_dir and not is_link:
        read = await run(f"cat -- {quoted}")
        if read.rc == 0:
            content = read.stdout

    return FileSnapshot(
        path=path,
        exists=True,
        is_dir=is_dir,
        is_link=is_link,
        content=content,
        mode=normalize_mode(mode),
        owner=owner or None,
        group=group or None,
        size=int(size) if size.isdigit() else 0,
        link_target=link_target,
    )


async def inspect_service(run: CommandRunner, name: str) -> ServiceSnapshot:
    """Snapshot a systemd unit via systemctl is-active / is-enabled."""
    active = await run(f"systemctl is-active {shell_quote(name)}")
    enabled = await run(f"systemctl is-enabled {shell_quote(name)}")
    active_state = active.stdout.strip()
    enabled_state = enabled.stdout.strip()

    enabled_flag: Optional[bool]
    if enabled_state in ('enabled', 'enabled-runtime', 'alias'):
        enabled_flag = True
    elif enabled_state in ('disabled', 'masked', 'masked-runtime', 'indirect'):
        enabled_flag = False
    else:
        # static/generated units cannot be toggled
        enabled_flag = None

    exists = not ('could not be found' in enabled.stderr or 'No such file' in enabled.stderr)
    return ServiceSnapshot(
        name=name,
        active=active_state == 'active',
        enabled=enabled_flag,
        active_state=active_state,
        enabled_state=enabled_state,
        exists=exists,
    )


async def inspect_user(run: CommandRunner, name: str) -> UserSnapshot:
    """Snapshot an account from getent passwd/shadow and id -Gn."""
    passwd = await run(f"getent passwd {shell_quote(name)}")
    if passwd.rc != 0 or not passwd.stdout.strip():
        return UserSnapshot(name=name, exists=False)

    fields = passwd.stdout.strip().splitlines()[0].split(':')
    fields += [''] * (7 - len(fields))

    groups_result = await run(f"id -Gn {shell_quote(name)}")
    group_names = groups_result.stdout.split() if groups_result.rc == 0 else []

    shadow = await run(f"getent shadow {shell_quote(name)}")
    password_hash = None
    if shadow.rc == 0 and shadow.stdout.strip():
        shadow_fields = shadow.stdout.strip().split(':')
        if len(shadow_fields) > 1:
            password_hash = shadow_fields[1]

    return UserSnapshot(
        name=name,
        exists=True,
        uid=int(fields[2]) if fields[2].isdigit() else None,
        gid=int(fields[3]) if fields[3].isdigit() else None,
        comment=fields[4],
        home=fields[5] or None,
        shell=fields[6] or None,
        groups=tuple(group_names[1:]),
        primary_group=group_names[0] if group_names else None,
        password_hash=password_hash,
    )


async def inspect_group(run: CommandRunner, name: str) -> Optional[int]:
    """Return the gid of a group, or None if it does not exist."""
    result = await run(f"getent group {shell_quote(name)}")
    if result.rc != 0 or not result.stdout.strip():
        return None
    fields = result.stdout.strip().split(':')
    return int(fields[2]) if len(fields) > 2 and fields[2].isdigit() else None


async def inspect_packages(run: CommandRunner, names: Iterable[str]) -> Dict[str, PackageSnapshot]:
    """Snapshot installation state of Debian packages via dpkg-query."""
    names = list(names)
    snapshots = {name: PackageSnapshot(name=name, installed=False) for name in names}
    if not names:
        return snapshots

    query = ' '.join(shell_quote(n) for n in names)
    # rc is 1 when some names are unknown; known ones are still listed
    result = await run(f"dpkg-query -W -f='${{Package}}\\t${{Status}}\\t${{Version}}\\n' {query}")
    for line in result.stdout.splitlines():
        parts = line.split('\t')
        if len(parts) < 3:
            continue
        package, status, version = parts[0], parts[1], parts[2]
        installed = status.split()[-1:] == ['installed']
        for name in names:
            if name == package or name.split('=')[0] == package:
                snapshots[name] = PackageSnapshot(
                    name=name,
                    installed=installed,
                    version=version if installed else None,
                )
    return snapshots


# --- desired state ---------------------------------------------------------


@dataclass(frozen=True)
class DesiredFile:
    """Desired regular file; None fields are not managed."""

    path: str
    content: Optional[str] = None
    mode: Any = None
    owner: Optional[str] = None
    group: Optional[str] = None

    def changes(self, snapshot: FileSnapshot) -> ChangeSet:
        changes = ChangeSet()
        if not snapshot.exists:
            changes.add('state', 'absent', 'file')
            return changes
        if self.content is not None and snapshot.content != self.content:
            changes.add('content', snapshot.content, self.content)
        changes_for_attributes(changes, snapshot, self.mode, self.owner, self.group)
        return changes


def changes_for_attributes(
    changes: ChangeSet,
    snapshot: FileSnapshot,
    mode: Any,
    owner: Optional[str],
    group: Optional[str],
) -> ChangeSet:
    """Add mode/owner/group differences of an existing path."""
    wanted_mode = normalize_mode(mode)
    if wanted_mode is not None and wanted_mode != snapshot.mode:
        changes.add('mode', snapshot.mode, wanted_mode)
    if owner is not None and str(owner) != snapshot.owner:
        changes.add('owner', snapshot.owner, str(owner))
    if group is not None and str(group) != snapshot.group:
        changes.add('group', snapshot.group, str(group))
    return changes


@dataclass(frozen=True)
class DesiredService:
    """
    Desired service state.

    state is one of started, stopped, restarted, reloaded or None.
    restarted always produces a change.
    """

    name: str
    state: Optional[str] = None
    enabled: Optional[bool] = None

    def changes(self, snapshot: ServiceSnapshot) -> ChangeSet:
        changes = ChangeSet()
        if self.state == 'started' and not snapshot.active:
            changes.add('state', snapshot.active_state, 'started')
        elif self.state == 'stopped' and snapshot.active:
            changes.add('state', snapshot.active_state, 'stopped')
        elif self.state == 'restarted':
            changes.add('state', snapshot.active_state, 'restarted')
        elif self.state == 'reloaded':
            changes.add('state', snapshot.active_state, 'reloaded' if snapshot.active else 'started')

        if self.enabled is not None and snapshot.enabled is not None and snapshot.enabled != self.enabled:
            changes.add('enabled', snapshot.enabled, self.enabled)
        return changes


@dataclass(frozen=True)
class DesiredUser:
    """Desired account attributes; None fields are not managed."""

    name: str
    uid: Optional[int] = None
    group: Optional[str] = None
    groups: tuple = ()
    append: bool = False
    shell: Optional[str] = None
    home: Optional[str] = None
    comment: Optional[str] = None
    password: Optional[str] = None

    def changes(self, snapshot: UserSnapshot) -> ChangeSet:
        changes = ChangeSet()
        if not snapshot.exists:
            changes.add('state', 'absent', 'present')
            return changes
        if self.uid is not None and snapshot.uid != int(self.uid):
            changes.add('uid', snapshot.uid, int(self.uid))
        if self.group is not None and snapshot.primary_group != self.group:
            changes.add('group', snapshot.primary_group, self.group)
        if self.shell is not None and snapshot.shell != self.shell:
            changes.add('shell', snapshot.shell, self.shell)
        if self.home is not None and snapshot.home != self.home:
            changes.add('home', snapshot.home, self.home)
        if self.comment is not None and snapshot.comment != self.comment:
            changes.add('comment', snapshot.comment, self.comment)
        if self.password is not None and snapshot.password_hash != self.password:
            changes.add('password', '********', '********')
        if self.groups:
            current = set(snapshot.groups)
            wanted = set(self.groups)
            if self.append:
                missing = [g for g in self.groups if g not in current]
                if missing:
                    changes.add('groups', sorted(current), sorted(current | wanted))
            elif current != wanted:
                changes.add('groups', sorted(current), sorted(wanted))
        return changes


def unified_diff(before: Optional[str], after: Optional[str], path: str) -> str:
    """Unified diff between two versions of a file, for --diff output."""
    before_lines = (before or '').splitlines(keepends=True)
    after_lines = (after or '').splitlines(keepends=True)
    return ''.join(difflib.unified_diff(
        before_lines,
        after_lines,
        fromfile=f"{path} (before)",
        tofile=f"{path} (after)",
    ))
