# Copyright (c) 2024 Converge Contributors
# MIT License

"""
Converge Playbook Runner

High-level runner that coordinates inventory, playbook parsing, variable
loading, planning, execution and output.

Everything that can be rejected up front (inventory, playbooks, vars files,
vault secrets) is loaded before the first task runs, so a parse error never
leaves a host half configured.
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from converge.connections.base import ConnectionOptions, ConnectionPool
from converge.engine.detached import DetachedDispatcher
from converge.engine.display import Display
from converge.engine.errors import (
    ConvergeError,
    ExitCode,
    ParseError,
    UnsupportedFeatureError,
)
from converge.engine.executor import TaskExecutor
from converge.engine.inventory import Host, InventoryManager
from converge.engine.plan import ExecutionPlan, PlannedPlay, build_plan
from converge.engine.playbook import Play, PlaybookParser
from converge.engine.results import PlaybookResult
from converge.engine.scheduler import Scheduler
from converge.engine.variables import VariableSet, load_vars_files
from converge.engine.vault import VaultLib, VaultSecret


logger = logging.getLogger(__name__)


class PlaybookRunner:
    """
    High-level playbook runner.

    Coordinates:
    - Inventory loading and host selection
    - Playbook parsing (or ready-made Play objects)
    - Variable layering and vault decryption
    - Connection pooling, scheduling and detached jobs
    - Output formatting and exit codes
    """

    def __init__(
        self,
        inventory_source: Optional[str] = None,
        playbook_paths: Iterable[str] = (),
        plays: Optional[List[Play]] = None,
        forks: int = 5,
        limit: Optional[str] = None,
        tags: Optional[Iterable[str]] = None,
        skip_tags: Optional[Iterable[str]] = None,
        check_mode: bool = False,
        diff_mode: bool = False,
        verbosity: int = 0,
        extra_vars: Optional[Dict[str, Any]] = None,
        json_output: bool = False,
        vault_password_file: Optional[str] = None,
        connection_options: Optional[ConnectionOptions] = None,
        connection_factory: Optional[Callable] = None,
        detached_grace: float = 5.0,
        become_user: str = "root",
        inventory: Optional[InventoryManager] = None,
        display: Optional[Display] = None,
    ):
        self.inventory_source = inventory_source
        self.playbook_paths = list(playbook_paths)
        self.plays = plays
        self.forks = forks
        self.limit = limit
        self.tags = list(tags or [])
        self.skip_tags = list(skip_tags or [])
        self.check_mode = check_mode
        self.diff_mode = diff_mode
        self.verbosity = verbosity
        self.extra_vars = extra_vars or {}
        self.json_output = json_output
        self.vault_password_file = vault_password_file
        self.connection_options = connection_options or ConnectionOptions()
        self.connection_factory = connection_factory
        self.detached_grace = detached_grace
        self.become_user = become_user
        self.inventory = inventory
        self.display = display or Display(verbosity=verbosity, json_output=json_output, diff=diff_mode)

    def run(self) -> int:
        """
        Run synchronously.

        Returns:
            Exit code (0=success, 2=host failures, 3=parse error, 4=unsupported)
        """
        try:
            result = asyncio.run(self.run_async())
        except ParseError as e:
            return self._fail("parse_error", str(e), e.exit_code)
        except UnsupportedFeatureError as e:
            return self._fail("unsupported_feature", str(e), e.exit_code)
        except ConvergeError as e:
            return self._fail("error", str(e), e.exit_code)
        except KeyboardInterrupt:
            return self._fail("interrupted", "Execution interrupted", ExitCode.KEYBOARD_INTERRUPT)

        if self.json_output:
            print(result.to_json())
        return result.exit_code

    def _fail(self, error_type: str, message: str, exit_code: int) -> int:
        logger.debug("run aborted: %s", message)
        if self.json_output:
            print(json.dumps({
                "error": True,
                "error_type": error_type,
                "message": message,
                "exit_code": int(exit_code),
            }, indent=2))
        else:
            self.display.error(message)
        return int(exit_code)

    # --- loading -----------------------------------------------------------

    def load_inventory(self) -> InventoryManager:
        if self.inventory is None:
            self.inventory = InventoryManager()
            if self.inventory_source:
                self.inventory.parse(self.inventory_source)
        return self.inventory

    def load_plays(self) -> List[Play]:
        plays: List[Play] = list(self.plays or [])
        for path in self.playbook_paths:
            self.display.playbook_start(path)
            plays.extend(PlaybookParser(path).parse())
        return plays

    def load_vault(self) -> VaultLib:
        vault = VaultLib()
        if self.vault_password_file:
            vault.add_secret(VaultSecret.from_file(self.vault_password_file))
        return vault

    def build(self) -> ExecutionPlan:
        """Load inventory and plays and build the plan, without running anything."""
        inventory = self.load_inventory()
        return build_plan(
            self.load_plays(),
            inventory,
            limit=self.limit,
            tags=self.tags,
            skip_tags=self.skip_tags,
        )

    # --- running -----------------------------------------------------------

    async def run_async(self) -> PlaybookResult:
        """Run every planned play in order and return the run report."""
        plan = self.build()
        inventory = self.load_inventory()
        vault = self.load_vault()

        play_files = [
            load_vars_files(p.play.vars_files, p.play.base_dir or Path.cwd(), vault)
            for p in plan.plays
        ]

        pool = ConnectionPool(self.connection_options, self.connection_factory)
        dispatcher = DetachedDispatcher()
        executor = TaskExecutor(inventory=inventory, connection_pool=pool, dispatcher=dispatcher)
        scheduler = Scheduler(
            forks=self.forks,
            connection_pool=pool,
            display=self.display,
            become_user=self.become_user,
        )

        name = self.playbook_paths[0] if self.playbook_paths else "<provisioning>"
        result = PlaybookResult(playbook_path=name)
        failed_hosts: Set[str] = set()

        try:
            for planned, files_vars in zip(plan.plays, play_files):
                planned = self._without_failed(planned, failed_hosts)
                play_result = await scheduler.run_play(
                    planned,
                    executor,
                    self._variables_for(inventory, planned.play, files_vars),
                    check_mode=self.check_mode,
                    diff_mode=self.diff_mode,
                )
                result.add_play_result(play_result)
                failed_hosts.update(h for h, s in play_result.host_stats.items() if s.has_failures)
        finally:
            await dispatcher.drain(self.detached_grace)
            await pool.close_all()

        self.display.recap(result.get_final_stats())
        return result

    def _variables_for(
        self,
        inventory: InventoryManager,
        play: Play,
        files_vars: Dict[str, Any],
    ) -> Callable[[Host], VariableSet]:
        def variables_for(host: Host) -> VariableSet:
            return VariableSet(
                inventory.get_host_vars(host.name) or host.get_vars(),
                play.vars,
                files_vars,
                extra_vars=self.extra_vars,
            )
        return variables_for

    @staticmethod
    def _without_failed(planned: PlannedPlay, failed_hosts: Set[str]) -> PlannedPlay:
        """Hosts that failed in an earlier play take no part in later plays."""
        if not failed_hosts:
            return planned
        hosts = [h for h in planned.hosts if h.name not in failed_hosts]
        if len(hosts) != len(planned.hosts):
            logger.info("play %r: skipping failed hosts %s", planned.name,
                        sorted(h.name for h in planned.hosts if h.name in failed_hosts))
        return PlannedPlay(play=planned.play, hosts=hosts, body=planned.body)
