# Copyright (c) 2024 Converge Contributors
# MIT License

"""
Converge Local Connection

Execute commands on the control node (no remote connection).
"""

import asyncio
import os
import shlex
import shutil
from pathlib import Path
from typing import Optional

from converge.connections.base import Connection, RunResult


class LocalConnection(Connection):
    """
    Local connection - execute commands on the control node.

    Used for localhost and delegate_to: localhost.
    """

    async def connect(self) -> None:
        """Local connection is always available."""

    async def close(self) -> None:
        """Nothing to close for local connection."""

    async def run(
        self,
        command: str,
        shell: bool = True,
        timeout: Optional[int] = None,
        cwd: Optional[str] = None,
        environment: Optional[dict] = None,
    ) -> RunResult:
        env = os.environ.copy()
        if environment:
            env.update({k: str(v) for k, v in environment.items()})

        try:
            if shell:
                process = await asyncio.create_subprocess_shell(
                    command,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=cwd,
                    env=env,
                )
            else:
                process = await asyncio.create_subprocess_exec(
                    *shlex.split(command),
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=cwd,
                    env=env,
                )
        except OSError as e:
            return RunResult(rc=127, stdout="", stderr=str(e))

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                process.communicate(),
                timeout=timeout
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return RunResult(rc=124, stdout="", stderr="Command timed out")

        return RunResult(
            rc=process.returncode or 0,
            stdout=stdout_bytes.decode('utf-8', errors='replace'),
            stderr=stderr_bytes.decode('utf-8', errors='replace'),
        )

    async def put(
        self,
        local_path: Path,
        remote_path: str,
        mode: Optional[str] = None,
    ) -> None:
        dest = Path(remote_path)
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(local_path, dest)
        if mode:
            os.chmod(dest, int(str(mode), 8))
