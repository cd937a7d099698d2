# Copyright (c) 2024 Converge Contributors
# MIT License

"""
Converge Connections

Transports for running commands on target hosts: SSH (asyncssh) and local.
"""

from converge.connections.base import (
    Connection,
    ConnectionOptions,
    ConnectionPool,
    RunResult,
    create_connection,
    shell_quote,
)
from converge.connections.local import LocalConnection

__all__ = [
    'Connection',
    'ConnectionOptions',
    'ConnectionPool',
    'RunResult',
    'LocalConnection',
    'create_connection',
    'shell_quote',
]
