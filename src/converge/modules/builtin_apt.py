# Copyright (c) 2024 Converge Contributors
# MIT License

"""
Converge apt module

Manage Debian packages with apt-get, deciding what to do from dpkg-query.
"""

import time
from typing import List, Optional

from converge.connections.base import shell_quote
from converge.engine.errors import ModuleError
from converge.engine.state import inspect_packages
from converge.modules.base import Module, ModuleResult, register_module


APT_GET = "env DEBIAN_FRONTEND=noninteractive apt-get -y -q"
CACHE_STAMP = "/var/lib/apt/lists"


@register_module
class AptModule(Module):
    """
    Manage packages with apt.

    present installs only what dpkg-query reports as missing, so a second
    run is a no-op. Refreshing the package index alone is not reported as
    a change.
    """

    name = "apt"
    required_args = []
    optional_args = {
        "name": None,
        "pkg": None,
        "state": "present",
        "update_cache": False,
        "cache_valid_time": 0,
        "install_recommends": None,
        "purge": False,
    }
    supports_check_mode = True

    def validate_args(self) -> Optional[str]:
        error = super().validate_args()
        if error:
            return error
        state = self.get_arg("state")
        if state not in ("present", "absent", "latest"):
            return f"state must be one of present, absent, latest, got {state!r}"
        if not self.packages() and not self.get_bool("update_cache"):
            return "one of 'name' or 'update_cache' is required"
        return None

    def packages(self) -> List[str]:
        names = self.args.get("name", self.args.get("pkg"))
        if names is None:
            return []
        if isinstance(names, str):
            names = names.split(",")
        return [str(n).strip() for n in names if str(n).strip()]

    async def run(self) -> ModuleResult:
        results = {}
        if self.get_bool("update_cache"):
            results["cache_updated"] = await self._update_cache()

        names = self.packages()
        if not names:
            return ModuleResult(msg="package index refreshed", results=results)

        state = self.get_arg("state")
        if state == "absent":
            return await self._remove(names, results)
        if state == "latest":
            return await self._latest(names, results)
        return await self._install(names, results)

    async def _update_cache(self) -> bool:
        valid = int(self.get_arg("cache_valid_time") or 0)
        if valid > 0:
            probe = await self.run_command(f"stat -c %Y {CACHE_STAMP}")
            if probe.rc == 0 and probe.stdout.strip().isdigit():
                age = time.time() - int(probe.stdout.strip())
                if age < valid:
                    return False
        if self.check_mode:
            return False
        await self.check_command(f"{APT_GET} update", "apt-get update")
        return True

    def _install_flags(self) -> str:
        recommends = self.get_arg("install_recommends")
        if recommends is None:
            return ""
        return "--install-recommends " if self.get_bool("install_recommends") else "--no-install-recommends "

    async def _install(self, names: List[str], results: dict) -> ModuleResult:
        snapshots = await inspect_packages(self.run_command, names)
        missing = [n for n in names if not snapshots[n].installed]
        results["packages"] = missing
        if not missing:
            return ModuleResult(msg="all packages already installed", results=results)
        if self.check_mode:
            return ModuleResult(changed=True, msg=f"would install {' '.join(missing)}", results=results)

        quoted = " ".join(shell_quote(n) for n in missing)
        result = await self._apt(f"install {self._install_flags()}{quoted}")
        return ModuleResult(
            changed=True,
            stdout=result.stdout,
            stderr=result.stderr,
            msg=f"installed {' '.join(missing)}",
            results=results,
        )

    async def _latest(self, names: List[str], results: dict) -> ModuleResult:
        quoted = " ".join(shell_quote(n) for n in names)
        simulated = await self.run_command(f"{APT_GET} -s install {self._install_flags()}{quoted}")
        if simulated.rc != 0:
            raise ModuleError(self.name, "apt-get -s install failed", rc=simulated.rc, stderr=simulated.stderr)
        pending = [line.split()[1] for line in simulated.stdout.splitlines() if line.startswith("Inst ")]
        results["packages"] = pending
        if not pending:
            return ModuleResult(msg="all packages are up to date", results=results)
        if self.check_mode:
            return ModuleResult(changed=True, msg=f"would upgrade {' '.join(pending)}", results=results)

        result = await self._apt(f"install {self._install_flags()}{quoted}")
        return ModuleResult(
            changed=True,
            stdout=result.stdout,
            stderr=result.stderr,
            msg=f"upgraded {' '.join(pending)}",
            results=results,
        )

    async def _remove(self, names: List[str], results: dict) -> ModuleResult:
        snapshots = await inspect_packages(self.run_command, names)
        installed = [n for n in names if snapshots[n].installed]
        results["packages"] = installed
        if not installed:
            return ModuleResult(msg="no packages to remove", results=results)
        if self.check_mode:
            return ModuleResult(changed=True, msg=f"would remove {' '.join(installed)}", results=results)

        verb = "purge" if self.get_bool("purge") else "remove"
        quoted = " ".join(shell_quote(n) for n in installed)
        result = await self._apt(f"{verb} {quoted}")
        return ModuleResult(
            changed=True,
            stdout=result.stdout,
            stderr=result.stderr,
            msg=f"removed {' '.join(installed)}",
            results=results,
        )

    async def _apt(self, arguments: str):
        result = await self.run_command(f"{APT_GET} {arguments}")
        if result.rc != 0:
            raise ModuleError(
                self.name,
                f"apt-get {arguments.split()[0]} failed",
                rc=result.rc,
                stdout=result.stdout,
                stderr=result.stderr,
            )
        return result
