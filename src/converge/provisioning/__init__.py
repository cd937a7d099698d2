# Copyright (c) 2024 Converge Contributors
# MIT License

"""
Converge Provisioning

Debian 11 / PostgreSQL 16 server plan built from typed settings.
"""

from converge.provisioning.plays import (
    LOCAL_GROUP,
    PRIMARY_GROUP,
    SECONDARY_GROUP,
    build_plays,
)
from converge.provisioning.settings import (
    ServerSettings,
    hardening_warnings,
    load_settings,
)

__all__ = [
    'LOCAL_GROUP',
    'PRIMARY_GROUP',
    'SECONDARY_GROUP',
    'ServerSettings',
    'build_plays',
    'hardening_warnings',
    'load_settings',
]
