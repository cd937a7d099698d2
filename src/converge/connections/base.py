# Copyright (c) 2024 Converge Contributors
# MIT License

"""
Converge Connection Base Class

Abstract base class for all connection types.
"""

import asyncio
import logging
import shlex
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

from converge.engine.errors import ConnectionError
from converge.engine.inventory import Host


logger = logging.getLogger(__name__)


@dataclass
class RunResult:
    """Result of running a command on a host."""

    rc: int
    stdout: str
    stderr: str

    @property
    def success(self) -> bool:
        return self.rc == 0


@dataclass
class ConnectionOptions:
    """Run-wide connection defaults; host variables take precedence."""

    remote_user: Optional[str] = None
    private_key_file: Optional[str] = None
    host_key_checking: bool = True
    timeout: int = 30


class Connection(ABC):
    """
    Abstract base class for connections.

    All connection types (SSH, local) must implement this interface.
    """

    def __init__(self, host: Host, options: Optional[ConnectionOptions] = None):
        self.host = host
        self.options = options or ConnectionOptions()

    @abstractmethod
    async def connect(self) -> None:
        """Establish the connection."""

    @abstractmethod
    async def close(self) -> None:
        """Close the connection."""

    @abstractmethod
    async def run(
        self,
        command: str,
        shell: bool = True,
        timeout: Optional[int] = None,
        cwd: Optional[str] = None,
        environment: Optional[dict] = None,
    ) -> RunResult:
        """
        Run a command on the host.

        Args:
            command: Command to execute
            shell: If True, run through /bin/sh
            timeout: Optional timeout in seconds
            cwd: Working directory
            environment: Environment variables

        Returns:
            RunResult with rc, stdout, stderr
        """

    @abstractmethod
    async def put(
        self,
        local_path: Path,
        remote_path: str,
        mode: Optional[str] = None,
    ) -> None:
        """
        Upload a file to the host.

        Args:
            local_path: Local file path
            remote_path: Remote destination path
            mode: Optional file mode (e.g., '0644')
        """

    @property
    def connection_type(self) -> str:
        """Return the connection type name."""
        return self.__class__.__name__.replace('Connection', '').lower()


def shell_quote(value: str) -> str:
    """Quote a string for /bin/sh."""
    return shlex.quote(str(value))


async def create_connection(host: Host, options: Optional[ConnectionOptions] = None) -> Connection:
    """
    Create and open the connection a host asks for.

    Raises:
        ConnectionError: unknown transport or the host could not be reached
    """
    conn_type = host.connection_type

    if conn_type == 'local':
        from converge.connections.local import LocalConnection
        conn: Connection = LocalConnection(host, options)
    elif conn_type == 'ssh':
        from converge.connections.ssh_asyncssh import SSHConnection
        conn = SSHConnection(host, options)
    else:
        raise ConnectionError(host.name, f"unknown connection type: {conn_type}", conn_type)

    logger.debug("connecting to %s via %s", host.name, conn_type)
    await conn.connect()
    return conn


class ConnectionPool:
    """
    One open connection per host for the whole run.

    Connections stay open across plays and are closed by close_all() once
    detached jobs have been given their grace period.
    """

    def __init__(self, options: Optional[ConnectionOptions] = None, factory=None):
        self.options = options or ConnectionOptions()
        self._factory = factory or create_connection
        self._connections: Dict[str, Connection] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    async def get(self, host: Host) -> Connection:
        """Return the open connection of a host, connecting on first use."""
        lock = self._locks.setdefault(host.name, asyncio.Lock())
        async with lock:
            conn = self._connections.get(host.name)
            if conn is None:
                conn = await self._factory(host, self.options)
                self._connections[host.name] = conn
            return conn

    async def close_all(self) -> None:
        for name, conn in list(self._connections.items()):
            try:
                await conn.close()
            except (OSError, ConnectionError) as e:
                logger.warning("error closing connection to %s: %s", name, e)
        self._connections.clear()
