# Copyright (c) 2024 Converge Contributors
# MIT License

"""
Converge Configuration

Run settings, resolved in increasing precedence from:

    built-in defaults
    the first converge.cfg found ($CONVERGE_CONFIG, ./converge.cfg,
    ~/.converge.cfg), section [defaults]
    CONVERGE_<KEY> environment variables
    command line flags
"""

import configparser
import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from converge.connections.base import ConnectionOptions
from converge.engine.errors import ConfigError


logger = logging.getLogger(__name__)

CONFIG_ENV = "CONVERGE_CONFIG"
ENV_PREFIX = "CONVERGE_"
CONFIG_SECTION = "defaults"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_TRUE = ("1", "yes", "true", "on")
_FALSE = ("0", "no", "false", "off")


@dataclass
class RunConfig:
    """
    Settings of one run.

    Attributes:
        inventory: Inventory file or directory
        forks: Maximum number of hosts worked on at the same time
        remote_user: SSH user when the inventory does not set ansible_user
        private_key_file: SSH key when the inventory does not set one
        host_key_checking: Verify SSH host keys against known_hosts
        timeout: SSH connect timeout in seconds
        become_user: Default user for privilege escalation
        vault_password_file: File (or executable) providing the vault password
        detached_grace: Seconds detached jobs get to finish at the end of a run
        log_level: Level of the converge logger (WARNING, INFO, DEBUG)
    """

    inventory: Optional[str] = None
    forks: int = 5
    remote_user: Optional[str] = None
    private_key_file: Optional[str] = None
    host_key_checking: bool = True
    timeout: int = 30
    become_user: str = "root"
    vault_password_file: Optional[str] = None
    detached_grace: float = 5.0
    log_level: str = "WARNING"

    @classmethod
    def load(
        cls,
        overrides: Optional[Mapping[str, Any]] = None,
        environ: Optional[Mapping[str, str]] = None,
        search_paths: Optional[List[Path]] = None,
    ) -> "RunConfig":
        """
        Resolve the configuration.

        Args:
            overrides: Command line values; None entries are ignored
            environ: Environment to read (os.environ by default)
            search_paths: Config file candidates, first existing one wins

        Raises:
            ConfigError: unreadable file or a value of the wrong type
        """
        environ = os.environ if environ is None else environ
        config = cls()

        path = find_config_file(environ, search_paths)
        if path is not None:
            config.update(read_config_file(path), source=str(path))

        from_env = {
            f.name: environ[ENV_PREFIX + f.name.upper()]
            for f in fields(cls)
            if ENV_PREFIX + f.name.upper() in environ
        }
        config.update(from_env, source="environment")
        config.update({k: v for k, v in (overrides or {}).items() if v is not None}, source="command line")
        return config

    def update(self, values: Mapping[str, Any], source: str) -> None:
        """Set known keys from ``values``, converting to the field types."""
        known = {f.name: f for f in fields(self)}
        for key, value in values.items():
            name = key.replace("-", "_").lower()
            if name not in known:
                logger.warning("ignoring unknown setting %r from %s", key, source)
                continue
            setattr(self, name, _convert(name, value, getattr(type(self), name), source))

    def connection_options(self) -> ConnectionOptions:
        return ConnectionOptions(
            remote_user=self.remote_user,
            private_key_file=self.private_key_file,
            host_key_checking=self.host_key_checking,
            timeout=self.timeout,
        )


def _convert(name: str, value: Any, default: Any, source: str) -> Any:
    if value is None or not isinstance(value, str):
        return value
    text = value.strip()
    try:
        if isinstance(default, bool):
            lowered = text.lower()
            if lowered in _TRUE:
                return True
            if lowered in _FALSE:
                return False
            raise ValueError(text)
        if isinstance(default, int):
            return int(text)
        if isinstance(default, float):
            return float(text)
    except ValueError:
        raise ConfigError(f"invalid value for {name}: {value!r}", file_path=source)
    return text or None


def find_config_file(
    environ: Mapping[str, str],
    search_paths: Optional[List[Path]] = None,
) -> Optional[Path]:
    """Return the config file to use, or None."""
    if search_paths is None:
        search_paths = []
        if environ.get(CONFIG_ENV):
            search_paths.append(Path(environ[CONFIG_ENV]).expanduser())
        search_paths.append(Path.cwd() / "converge.cfg")
        search_paths.append(Path.home() / ".converge.cfg")
    for path in search_paths:
        if path.is_file():
            logger.debug("using config file %s", path)
            return path
    return None


def read_config_file(path: Path) -> Dict[str, str]:
    """Read the [defaults] section of an INI config file."""
    parser = configparser.ConfigParser(interpolation=None)
    try:
        with open(path, encoding="utf-8") as handle:
            parser.read_file(handle)
    except (OSError, configparser.Error) as e:
        raise ConfigError(f"cannot read config: {e}", file_path=str(path))
    if not parser.has_section(CONFIG_SECTION):
        return {}
    return dict(parser.items(CONFIG_SECTION))


def setup_logging(verbosity: int = 0, level: Optional[str] = None) -> None:
    """
    Configure the converge logger.

    WARNING by default, -v INFO, -vv and more DEBUG; an explicit level from
    the configuration is used when no -v is given.
    """
    if verbosity >= 2:
        resolved = logging.DEBUG
    elif verbosity == 1:
        resolved = logging.INFO
    else:
        resolved = getattr(logging, str(level or "WARNING").upper(), logging.WARNING)

    logger_root = logging.getLogger("converge")
    logger_root.setLevel(resolved)
    if not logger_root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger_root.addHandler(handler)
