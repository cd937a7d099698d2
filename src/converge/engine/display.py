# Copyright (c) 2024 Converge Contributors
# MIT License

"""
Converge Display

Console output in the style of ansible-playbook: play and task banners,
one coloured line per host result and the final recap. Everything is
suppressed in JSON mode, where the run report is printed instead.
"""

import sys
from typing import Any, Dict, Optional, TextIO

from converge.engine.results import HostStats, TaskResult, TaskStatus


COLORS = {
    'ok': '\033[32m',           # Green
    'changed': '\033[33m',      # Yellow
    'failed': '\033[31m',       # Red
    'skipped': '\033[36m',      # Cyan
    'unreachable': '\033[31m',  # Red
    'rescued': '\033[35m',      # Magenta
    'ignored': '\033[35m',
}
RESET = '\033[0m'

NO_LOG_MESSAGE = "the output has been hidden due to the fact that 'no_log: true' was specified for this result"


class Display:
    """Prints progress of a run."""

    def __init__(
        self,
        verbosity: int = 0,
        json_output: bool = False,
        diff: bool = False,
        stream: Optional[TextIO] = None,
        color: Optional[bool] = None,
    ):
        self.verbosity = verbosity
        self.json_output = json_output
        self.diff = diff
        self.stream = stream or sys.stdout
        if color is None:
            color = hasattr(self.stream, 'isatty') and self.stream.isatty()
        self.color = color
        self._last_task: Optional[str] = None

    def _print(self, text: str = "") -> None:
        if not self.json_output:
            print(text, file=self.stream)

    def _paint(self, text: str, status: str) -> str:
        if not self.color:
            return text
        return f"{COLORS.get(status, '')}{text}{RESET}"

    def banner(self, title: str) -> None:
        self._print()
        self._print(f"{title} " + "*" * max(3, 72 - len(title)))

    def playbook_start(self, path: str) -> None:
        if self.verbosity > 0:
            self._print(f"PLAYBOOK: {path}")

    def play_start(self, planned: Any) -> None:
        self._last_task = None
        self.banner(f"PLAY [{planned.name}]")
        if not planned.hosts:
            self.warning(f"No hosts matched for play: {planned.play.hosts}")

    def task_result(self, task: Any, result: TaskResult) -> None:
        """Print one host's result, preceded by the task banner when the task changes."""
        if result.task_name != self._last_task:
            self._last_task = result.task_name
            self.banner(f"TASK [{result.task_name}]")

        status = result.status.value
        if result.ignored:
            status = 'failed'
        line = f"{status}: [{result.host}]"
        if result.results.get('delegate_to'):
            line = f"{status}: [{result.host} -> {result.results['delegate_to']}]"

        no_log = bool(task is not None and getattr(task, 'no_log', False))
        detail = self._detail(task, result, no_log)
        if detail:
            line += f" => {detail}"
        self._print(self._paint(line, status))

        if result.ignored:
            self._print(self._paint("...ignoring", 'ignored'))

        diff = result.results.get('diff')
        if self.diff and diff and not no_log:
            self._print(diff.rstrip('\n'))

    def _detail(self, task: Any, result: TaskResult, no_log: bool) -> str:
        if no_log and result.status != TaskStatus.SKIPPED:
            return NO_LOG_MESSAGE
        if result.detached:
            return f"started detached job {result.results.get('ansible_job_id')}"
        if result.status in (TaskStatus.FAILED, TaskStatus.UNREACHABLE):
            parts = [result.msg or f"rc={result.rc}"]
            if result.stderr:
                parts.append(f"stderr: {result.stderr.strip()}")
            return "; ".join(parts)
        if task is not None and getattr(task, 'module', None) == 'debug':
            return result.msg
        if self.verbosity > 0:
            return result.msg or result.stdout.strip()
        return ""

    def warning(self, msg: str) -> None:
        if not self.json_output:
            text = f"[WARNING]: {msg}"
            print(self._paint(text, 'changed'), file=sys.stderr)

    def error(self, msg: str) -> None:
        text = f"ERROR! {msg}"
        print(self._paint(text, 'failed'), file=sys.stderr)

    def recap(self, stats: Dict[str, HostStats]) -> None:
        """Print the PLAY RECAP table."""
        self.banner("PLAY RECAP")
        for host, host_stats in stats.items():
            counters = [
                ('ok', host_stats.ok),
                ('changed', host_stats.changed),
                ('unreachable', host_stats.unreachable),
                ('failed', host_stats.failed),
                ('skipped', host_stats.skipped),
                ('rescued', host_stats.rescued),
                ('ignored', host_stats.ignored),
            ]
            parts = []
            for name, value in counters:
                text = f"{name}={value}"
                parts.append(self._paint(text, name) if value else text)
            self._print(f"{host:<26} : " + "  ".join(parts))
