# Copyright (c) 2024 Converge Contributors
# MIT License

"""
Converge Result Classes

Data structures for task, play, and playbook execution results.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum
import json


class TaskStatus(Enum):
    """Status of a task execution."""
    OK = "ok"
    CHANGED = "changed"
    FAILED = "failed"
    SKIPPED = "skipped"
    UNREACHABLE = "unreachable"


@dataclass
class TaskResult:
    """Result of executing a single task on a single host."""

    host: str
    task_name: str
    status: TaskStatus
    changed: bool = False
    rc: int = 0
    stdout: str = ""
    stderr: str = ""
    msg: str = ""
    # Module-specific return values (stat, fingerprint, job_id, diff, ...)
    results: Dict[str, Any] = field(default_factory=dict)
    loop_results: Optional[List['TaskResult']] = None
    ignored: bool = False
    detached: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON output."""
        result = {
            "host": self.host,
            "task": self.task_name,
            "status": self.status.value,
            "changed": self.changed,
            "rc": self.rc,
        }
        if self.stdout:
            result["stdout"] = self.stdout
        if self.stderr:
            result["stderr"] = self.stderr
        if self.msg:
            result["msg"] = self.msg
        if self.results:
            result["results"] = self.results
        if self.loop_results:
            result["loop_results"] = [r.to_dict() for r in self.loop_results]
        if self.ignored:
            result["ignored"] = True
        if self.detached:
            result["detached"] = True
        return result

    def as_registered(self) -> Dict[str, Any]:
        """Shape used when a task result is stored with ``register``."""
        registered = {
            'changed': self.changed,
            'failed': self.failed,
            'skipped': self.status == TaskStatus.SKIPPED,
            'rc': self.rc,
            'stdout': self.stdout,
            'stderr': self.stderr,
            'stdout_lines': self.stdout.splitlines() if self.stdout else [],
            'stderr_lines': self.stderr.splitlines() if self.stderr else [],
            'msg': self.msg,
        }
        registered.update(self.results)
        if self.loop_results is not None:
            registered['results'] = [r.as_registered() for r in self.loop_results]
        return registered

    @property
    def failed(self) -> bool:
        """Check if the task failed."""
        return self.status in (TaskStatus.FAILED, TaskStatus.UNREACHABLE)

    @property
    def ok(self) -> bool:
        """Check if the task succeeded (ok or changed)."""
        return self.status in (TaskStatus.OK, TaskStatus.CHANGED)


@dataclass
class HostStats:
    """Statistics for a single host across all tasks."""

    host: str
    ok: int = 0
    changed: int = 0
    failed: int = 0
    skipped: int = 0
    unreachable: int = 0
    rescued: int = 0
    ignored: int = 0

    def record(self, result: TaskResult) -> None:
        """Record a task result."""
        status = result.status
        if result.ignored:
            # failed with ignore_errors: counted apart, never as a failure
            self.ignored += 1
            return
        if status == TaskStatus.OK:
            self.ok += 1
        elif status == TaskStatus.CHANGED:
            # ansible-playbook counts changed tasks under ok as well
            self.ok += 1
            self.changed += 1
        elif status == TaskStatus.FAILED:
            self.failed += 1
        elif status == TaskStatus.SKIPPED:
            self.skipped += 1
        elif status == TaskStatus.UNREACHABLE:
            self.unreachable += 1

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "host": self.host,
            "ok": self.ok,
            "changed": self.changed,
            "failed": self.failed,
            "skipped": self.skipped,
            "unreachable": self.unreachable,
            "rescued": self.rescued,
            "ignored": self.ignored,
        }

    def merge(self, other: 'HostStats') -> None:
        """Merge another HostStats into this one."""
        self.ok += other.ok
        self.changed += other.changed
        self.failed += other.failed
        self.skipped += other.skipped
        self.unreachable += other.unreachable
        self.rescued += other.rescued
        self.ignored += other.ignored

    @property
    def has_failures(self) -> bool:
        """Check if host has any unrecovered failures."""
        return self.failed > self.rescued or self.unreachable > 0


@dataclass
class PlayResult:
    """Result of executing a single play."""

    play_name: str
    hosts: List[str]
    task_results: List[TaskResult] = field(default_factory=list)
    host_stats: Dict[str, HostStats] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for host in self.hosts:
            self.host_stats.setdefault(host, HostStats(host))

    def add_result(self, result: TaskResult) -> None:
        """Add a task result."""
        self.task_results.append(result)
        self.stats_for(result.host).record(result)

    def stats_for(self, host: str) -> HostStats:
        """Return (creating if needed) the stats entry for a host."""
        if host not in self.host_stats:
            self.host_stats[host] = HostStats(host)
        return self.host_stats[host]

    def results_for(self, host: str) -> List[TaskResult]:
        """Task results of one host, in execution order."""
        return [r for r in self.task_results if r.host == host]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON output."""
        return {
            "play": self.play_name,
            "hosts": self.hosts,
            "tasks": [r.to_dict() for r in self.task_results],
            "stats": {h: s.to_dict() for h, s in self.host_stats.items()},
        }

    @property
    def has_failures(self) -> bool:
        """Check if any host failed in this play."""
        return any(s.has_failures for s in self.host_stats.values())


@dataclass
class PlaybookResult:
    """Result of executing an entire playbook."""

    playbook_path: str
    play_results: List[PlayResult] = field(default_factory=list)

    def add_play_result(self, result: PlayResult) -> None:
        """Add a play result."""
        self.play_results.append(result)

    def get_final_stats(self) -> Dict[str, HostStats]:
        """Get aggregated stats for all hosts across all plays."""
        final_stats: Dict[str, HostStats] = {}

        for play_result in self.play_results:
            for host, stats in play_result.host_stats.items():
                if host not in final_stats:
                    final_stats[host] = HostStats(host)
                final_stats[host].merge(stats)

        return final_stats

    @property
    def changed_count(self) -> int:
        """Total number of changed task results across the run."""
        return sum(s.changed for s in self.get_final_stats().values())

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON output."""
        return {
            "playbook": self.playbook_path,
            "plays": [p.to_dict() for p in self.play_results],
            "stats": {h: s.to_dict() for h, s in self.get_final_stats().items()},
        }

    def to_json(self, indent: int = 2) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict(), indent=indent, default=str)

    @property
    def success(self) -> bool:
        """Check if the entire playbook succeeded."""
        return not any(p.has_failures for p in self.play_results)

    @property
    def exit_code(self) -> int:
        """Get appropriate exit code."""
        return 0 if self.success else 2
