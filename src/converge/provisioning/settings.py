# Copyright (c) 2024 Converge Contributors
# MIT License

"""
Converge Provisioning Settings

Typed settings for the Debian 11 / PostgreSQL 16 server plan. Every value
the plan needs is read and validated once, at load time; the plan itself
contains no templates.
"""

import ipaddress
import logging
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, List, Mapping, Optional, Tuple, Union

from converge.engine.errors import ConfigError
from converge.engine.variables import load_vars_file
from converge.engine.vault import VaultLib


logger = logging.getLogger(__name__)


SECRET_FIELDS = ("admin_password", "ssh_key_passphrase", "db_passwd")

OPTIONAL_FIELDS = ("interface", "ssh_key_passphrase")


@dataclass(frozen=True, repr=False)
class ServerSettings:
    """Values of vars.yml, one field per variable."""

    admin_user: str
    admin_password: str
    static_address: str
    gateway: str
    dns_servers: Tuple[str, ...]
    ssh_port: int
    ssh_listen_address: str
    ssh_key_passphrase: str
    db_host: str
    db_port: int
    db_user: str
    db_passwd: str
    interface: str = "enp2s0"

    def __repr__(self) -> str:
        shown = ", ".join(
            f"{f.name}={'********' if f.name in SECRET_FIELDS else repr(getattr(self, f.name))}"
            for f in fields(self)
        )
        return f"ServerSettings({shown})"

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], source: Optional[str] = None) -> "ServerSettings":
        """
        Build settings from a vars mapping.

        Raises:
            ConfigError: a variable is missing or has an invalid value
        """
        required = [f.name for f in fields(cls) if f.name not in OPTIONAL_FIELDS]
        missing = [name for name in required if data.get(name) in (None, "")]
        if missing:
            raise ConfigError(f"missing variables: {', '.join(missing)}", file_path=source)

        settings = cls(
            admin_user=_text(data, "admin_user", source),
            admin_password=_text(data, "admin_password", source),
            static_address=_address(data, "static_address", source),
            gateway=_address(data, "gateway", source),
            dns_servers=_servers(data, source),
            ssh_port=_port(data, "ssh_port", source),
            ssh_listen_address=_address(data, "ssh_listen_address", source),
            ssh_key_passphrase=str(data.get("ssh_key_passphrase") or ""),
            db_host=_text(data, "db_host", source),
            db_port=_port(data, "db_port", source),
            db_user=_text(data, "db_user", source),
            db_passwd=_text(data, "db_passwd", source),
            interface=_text(data, "interface", source) if data.get("interface") else "enp2s0",
        )
        if settings.ssh_port == settings.db_port:
            raise ConfigError(f"ssh_port and db_port must differ, both are {settings.ssh_port}", file_path=source)
        for name in ("admin_user", "db_user", "interface"):
            value = getattr(settings, name)
            if any(c.isspace() for c in value):
                raise ConfigError(f"{name} must not contain whitespace: {value!r}", file_path=source)
        return settings


def _text(data: Mapping[str, Any], key: str, source: Optional[str]) -> str:
    value = data[key]
    if isinstance(value, (dict, list)):
        raise ConfigError(f"{key} must be a string, got {type(value).__name__}", file_path=source)
    return str(value)


def _port(data: Mapping[str, Any], key: str, source: Optional[str]) -> int:
    value = data[key]
    try:
        port = int(str(value))
    except ValueError:
        raise ConfigError(f"{key} must be a port number, got {value!r}", file_path=source)
    if not 1 <= port <= 65535:
        raise ConfigError(f"{key} must be between 1 and 65535, got {port}", file_path=source)
    return port


def _address(data: Mapping[str, Any], key: str, source: Optional[str]) -> str:
    value = str(data[key]).strip()
    try:
        ipaddress.ip_address(value)
    except ValueError:
        raise ConfigError(f"{key} must be an IP address, got {value!r}", file_path=source)
    return value


def _servers(data: Mapping[str, Any], source: Optional[str]) -> Tuple[str, ...]:
    value = data["dns_servers"]
    items: List[Any] = value.replace(",", " ").split() if isinstance(value, str) else list(value)
    servers = []
    for item in items:
        try:
            ipaddress.ip_address(str(item).strip())
        except ValueError:
            raise ConfigError(f"dns_servers entry is not an IP address: {item!r}", file_path=source)
        servers.append(str(item).strip())
    if not servers:
        raise ConfigError("dns_servers must list at least one server", file_path=source)
    return tuple(servers)


def load_settings(path: Union[str, Path], vault: Optional[VaultLib] = None) -> ServerSettings:
    """Read and validate a vars.yml (vault-encrypted files are decrypted)."""
    data = load_vars_file(path, vault)
    settings = ServerSettings.from_mapping(data, source=str(path))
    logger.debug("loaded settings from %s: %r", path, settings)
    return settings


def hardening_warnings(settings: ServerSettings) -> List[str]:
    """
    Weak spots of the hardening the plan applies as written.

    These are reported, not corrected: the plan keeps doing exactly what
    it describes.
    """
    warnings = [
        "sshd keeps PasswordAuthentication yes while root login is disabled and "
        f"AllowUsers is limited to {settings.admin_user}; password logins remain "
        "possible for that account (AuthenticationMethods publickey,password).",
    ]
    if settings.db_host in ("*", "0.0.0.0"):
        warnings.append(
            f"PostgreSQL listens on all addresses and pg_hba.conf accepts md5 logins "
            f"from 0.0.0.0/0 on port {settings.db_port}."
        )
    if not settings.ssh_key_passphrase:
        warnings.append("the local SSH key is generated without a passphrase.")
    return warnings
