# Copyright (c) 2024 Converge Contributors
# MIT License

"""
Converge Execution Plan

Pairs every play with the hosts it targets and the tasks that survive tag
filtering. Declared order is never changed: plays stay in file order, tasks
in play order, and block members stay together inside their block.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence, Union

from converge.engine.inventory import Host, InventoryManager
from converge.engine.playbook import Block, Play, Task


logger = logging.getLogger(__name__)

ALWAYS_TAG = 'always'
NEVER_TAG = 'never'


@dataclass
class PlannedPlay:
    """A play bound to its target hosts and its selected tasks."""

    play: Play
    hosts: List[Host]
    body: List[Union[Task, Block]] = field(default_factory=list)

    @property
    def name(self) -> str:
        return self.play.name

    @property
    def tasks(self) -> List[Task]:
        tasks: List[Task] = []
        for entry in self.body:
            if isinstance(entry, Block):
                tasks.extend(entry.iter_tasks())
            else:
                tasks.append(entry)
        return tasks


@dataclass
class ExecutionPlan:
    """Ordered list of planned plays."""

    plays: List[PlannedPlay] = field(default_factory=list)

    @property
    def task_count(self) -> int:
        return sum(len(p.tasks) for p in self.plays)

    def describe(self) -> List[str]:
        """Human-readable outline, used by --list-tasks."""
        lines = []
        for planned in self.plays:
            hosts = ', '.join(h.name for h in planned.hosts) or 'no hosts matched'
            lines.append(f"play: {planned.name} ({hosts})")
            for task in planned.tasks:
                marker = ''
                if task.block_role and task.block_role != 'block':
                    marker = f" [{task.block_role}]"
                if task.detached:
                    marker += ' [detached]'
                lines.append(f"  {task.name}{marker}")
        return lines


class TagFilter:
    """Decides whether a task is selected by --tags / --skip-tags."""

    def __init__(self, tags: Optional[Iterable[str]] = None, skip_tags: Optional[Iterable[str]] = None):
        self.tags = {t for t in (tags or []) if t}
        self.skip_tags = {t for t in (skip_tags or []) if t}

    def selects(self, task_tags: Sequence[str]) -> bool:
        tags = set(task_tags)
        if tags & self.skip_tags:
            return False
        if not self.tags or 'all' in self.tags:
            return NEVER_TAG not in tags or bool(tags & self.tags)
        if ALWAYS_TAG in tags:
            return True
        return bool(tags & self.tags)


def _filter_entries(
    entries: List[Union[Task, Block]],
    tag_filter: TagFilter,
    play_tags: Sequence[str],
) -> List[Union[Task, Block]]:
    selected: List[Union[Task, Block]] = []
    for entry in entries:
        if isinstance(entry, Block):
            block = Block(
                name=entry.name,
                block=_filter_entries(entry.block, tag_filter, play_tags),
                rescue=_filter_entries(entry.rescue, tag_filter, play_tags),
                always=_filter_entries(entry.always, tag_filter, play_tags),
                block_id=entry.block_id,
            )
            if block.block or block.always:
                selected.append(block)
        elif tag_filter.selects(list(entry.tags) + list(play_tags)):
            selected.append(entry)
    return selected


def build_plan(
    plays: List[Play],
    inventory: InventoryManager,
    limit: Optional[str] = None,
    tags: Optional[Iterable[str]] = None,
    skip_tags: Optional[Iterable[str]] = None,
) -> ExecutionPlan:
    """
    Build the execution plan.

    Args:
        plays: Parsed plays, in file order
        inventory: Inventory used to resolve each play's host pattern
        limit: Optional --limit pattern further restricting hosts
        tags: Only run tasks carrying one of these tags
        skip_tags: Never run tasks carrying one of these tags

    Returns:
        ExecutionPlan; plays with no matching hosts are kept with an empty
        host list so they can be reported.
    """
    tag_filter = TagFilter(tags, skip_tags)
    allowed = None
    if limit:
        allowed = {h.name for h in inventory.get_hosts(limit)}

    plan = ExecutionPlan()
    for play in plays:
        hosts = inventory.get_hosts(play.hosts)
        if allowed is not None:
            hosts = [h for h in hosts if h.name in allowed]
        body = _filter_entries(play.body, tag_filter, play.tags)
        logger.debug("planned play %r: %d hosts, %d entries", play.name, len(hosts), len(body))
        plan.plays.append(PlannedPlay(play=play, hosts=hosts, body=body))
    return plan
