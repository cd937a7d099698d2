# Copyright (c) 2024 Converge Contributors
# MIT License

"""
Converge Variable Set

Variables are loaded once per run and layered, lowest to highest precedence:

    inventory (group vars, then host vars)
    play vars
    play vars_files
    extra vars (-e)

The resulting VariableSet is read-only for the whole run. Per-host runtime
values (registered results, set_fact) live on the host context and are
overlaid on top of it when a task is rendered.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Union

import yaml

from converge.engine.errors import ParseError
from converge.engine.vault import VaultLib


logger = logging.getLogger(__name__)

# Keys whose values must never reach the log
SECRET_MARKERS = ('password', 'passphrase', 'passwd', 'secret', 'token')


class VariableSet(Mapping):
    """Immutable, layered variable mapping."""

    def __init__(self, *layers: Optional[Mapping[str, Any]], extra_vars: Optional[Mapping[str, Any]] = None):
        merged: Dict[str, Any] = {}
        for layer in layers:
            if layer:
                merged.update(layer)
        self._extra = dict(extra_vars or {})
        merged.update(self._extra)
        self._data = merged

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"VariableSet({sorted(self._data)})"

    def overlay(self, runtime: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Merge per-host runtime values over this set.

        Extra vars keep the highest precedence, as with ansible-playbook.
        """
        merged = dict(self._data)
        merged.update(runtime)
        merged.update(self._extra)
        return merged


def mask_secrets(data: Any) -> Any:
    """Return a copy of data with secret-looking values replaced."""
    if isinstance(data, Mapping):
        return {
            k: ('********' if any(m in str(k).lower() for m in SECRET_MARKERS) else mask_secrets(v))
            for k, v in data.items()
        }
    if isinstance(data, list):
        return [mask_secrets(v) for v in data]
    return data


def load_vars_file(path: Union[str, Path], vault: Optional[VaultLib] = None) -> Dict[str, Any]:
    """
    Load a YAML vars file, decrypting it first if vault encrypted.

    Raises:
        ParseError: file missing, not YAML, or not a mapping
        VaultError: encrypted and no usable vault secret
    """
    path = Path(path)
    if not path.is_file():
        raise ParseError(f"vars file not found: {path}", file_path=str(path))

    text = path.read_text(encoding='utf-8')
    vault = vault or VaultLib()
    if vault.is_encrypted(text):
        logger.debug("decrypting vault vars file %s", path)
        text = vault.decrypt(text).decode('utf-8')

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ParseError(f"YAML syntax error: {e}", file_path=str(path))

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ParseError(
            f"vars file must contain a mapping, got {type(data).__name__}",
            file_path=str(path),
        )
    return data


def load_vars_files(
    files: Iterable[Union[str, Path]],
    base_dir: Union[str, Path],
    vault: Optional[VaultLib] = None,
) -> Dict[str, Any]:
    """Load vars_files in order; relative paths resolve against base_dir."""
    merged: Dict[str, Any] = {}
    for entry in files:
        path = Path(entry).expanduser()
        if not path.is_absolute():
            path = Path(base_dir) / path
        merged.update(load_vars_file(path, vault))
    return merged


def parse_extra_vars(items: Optional[List[str]]) -> Dict[str, Any]:
    """
    Parse -e/--extra-vars arguments.

    Each item is one of:
        @file.yml           YAML/JSON file with a mapping
        {"k": "v"}          inline JSON or YAML mapping
        k=v k2=v2           whitespace separated assignments
    """
    result: Dict[str, Any] = {}
    for item in items or []:
        item = item.strip()
        if not item:
            continue
        if item.startswith('@'):
            result.update(load_vars_file(item[1:]))
            continue
        if item.startswith('{'):
            try:
                data = json.loads(item)
            except json.JSONDecodeError:
                try:
                    data = yaml.safe_load(item)
                except yaml.YAMLError as e:
                    raise ParseError(f"Invalid extra vars: {e}")
            if not isinstance(data, dict):
                raise ParseError(f"Extra vars must be a mapping: {item}")
            result.update(data)
            continue
        for pair in item.split():
            if '=' not in pair:
                raise ParseError(f"Invalid extra var (expected key=value): {pair}")
            key, value = pair.split('=', 1)
            result[key] = value
    return result
