# Copyright (c) 2024 Converge Contributors
# MIT License

"""
Converge: idempotent, ordered, host-scoped system reconciliation.

A small asyncio playbook engine that runs Ansible-style YAML playbooks against
Debian hosts over SSH (or locally), plus a typed provisioning plan for a
Debian 11 / PostgreSQL 16 server pair built on top of it.

Features:
    - Plays run in file order, tasks in declared order per host
    - Hosts of one play run in parallel (bounded by forks)
    - Idempotent modules that inspect state before mutating it
    - Fire-and-forget (detached) tasks for reboots and network restarts

This package exposes release metadata; the engine lives in converge.engine.
"""

from __future__ import annotations

from converge.release import __version__, __author__

__all__ = [
    "__version__",
    "__author__",
]
