# Copyright (c) 2024 Converge Contributors
# MIT License

"""
Converge SSH Connection (asyncssh)

SSH connection using asyncssh for async operations.
"""

import asyncio
import getpass
from pathlib import Path
from typing import Any, Dict, Optional

import asyncssh

from converge.connections.base import Connection, RunResult, shell_quote
from converge.engine.errors import ConnectionError


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in ('false', 'no', '0', 'off', '')
    return bool(value)


class SSHConnection(Connection):
    """
    SSH connection using asyncssh.

    Supports:
    - Key-based authentication
    - Password authentication
    - SSH agent
    - Custom ports
    """

    def __init__(self, host, options=None):
        super().__init__(host, options)
        self._conn: Optional[asyncssh.SSHClientConnection] = None
        self._sftp: Optional[asyncssh.SFTPClient] = None

    def connect_kwargs(self) -> Dict[str, Any]:
        """asyncssh.connect() arguments for this host."""
        host = self.host
        user = host.user or self.options.remote_user or getpass.getuser()

        kwargs: Dict[str, Any] = {
            'host': host.address,
            'port': host.port,
            'username': user,
            'connect_timeout': int(host.get_variable('ansible_ssh_timeout', self.options.timeout)),
        }

        password = host.get_variable('ansible_password') or host.get_variable('ansible_ssh_pass')
        if password:
            kwargs['password'] = password

        private_key = host.get_variable('ansible_ssh_private_key_file') or self.options.private_key_file
        if private_key:
            kwargs['client_keys'] = [str(Path(private_key).expanduser())]

        checking = host.get_variable('ansible_host_key_checking', self.options.host_key_checking)
        if not _as_bool(checking):
            kwargs['known_hosts'] = None

        return kwargs

    async def connect(self) -> None:
        """Establish SSH connection."""
        try:
            self._conn = await asyncssh.connect(**self.connect_kwargs())
        except (OSError, asyncssh.Error, asyncio.TimeoutError) as e:
            raise ConnectionError(
                host=self.host.name,
                message=str(e) or type(e).__name__,
                connection_type='ssh'
            )

    async def close(self) -> None:
        """Close SSH connection."""
        if self._sftp:
            self._sftp.exit()
            self._sftp = None

        if self._conn:
            self._conn.close()
            await self._conn.wait_closed()
            self._conn = None

    async def run(
        self,
        command: str,
        shell: bool = True,
        timeout: Optional[int] = None,
        cwd: Optional[str] = None,
        environment: Optional[dict] = None,
    ) -> RunResult:
        if not self._conn:
            return RunResult(rc=1, stdout="", stderr="Not connected")

        full_command = command
        if cwd:
            full_command = f"cd {shell_quote(cwd)} && {command}"

        if shell:
            full_command = f"/bin/sh -c {shell_quote(full_command)}"

        if environment:
            env_prefix = " ".join(f"{k}={shell_quote(v)}" for k, v in environment.items())
            full_command = f"env {env_prefix} {full_command}"

        try:
            result = await asyncio.wait_for(
                self._conn.run(full_command, check=False),
                timeout=timeout
            )
        except asyncio.TimeoutError:
            return RunResult(rc=124, stdout="", stderr="Command timed out")
        except (OSError, asyncssh.Error) as e:
            return RunResult(rc=255, stdout="", stderr=str(e))

        return RunResult(
            rc=result.exit_status if result.exit_status is not None else 255,
            stdout=str(result.stdout or ""),
            stderr=str(result.stderr or ""),
        )

    async def _get_sftp(self) -> asyncssh.SFTPClient:
        if self._conn is None:
            raise ConnectionError(self.host.name, "not connected", 'ssh')
        if self._sftp is None:
            self._sftp = await self._conn.start_sftp_client()
        return self._sftp

    async def put(
        self,
        local_path: Path,
        remote_path: str,
        mode: Optional[str] = None,
    ) -> None:
        sftp = await self._get_sftp()
        remote_dir = str(Path(remote_path).parent)
        if not await sftp.exists(remote_dir):
            await sftp.makedirs(remote_dir, exist_ok=True)

        await sftp.put(str(local_path), remote_path)

        if mode:
            await sftp.chmod(remote_path, int(str(mode), 8))
