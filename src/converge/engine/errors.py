# Copyright (c) 2024 Converge Contributors
# MIT License

"""
Converge Error Classes.

All custom exceptions for clear error handling and exit codes.
Exit codes follow ansible-playbook so wrappers can treat both tools alike.
"""

from __future__ import annotations

import enum


class ExitCode(enum.IntEnum):
    """Standard exit codes matching ansible-playbook behavior."""

    SUCCESS = 0
    GENERIC_ERROR = 1
    HOST_FAILED = 2
    PARSE_ERROR = 3
    UNSUPPORTED_FEATURE = 4
    KEYBOARD_INTERRUPT = 130


class ConvergeError(Exception):
    """Base exception for all Converge errors."""

    exit_code: int = ExitCode.GENERIC_ERROR

    def __init__(self, message: str, details: str | None = None) -> None:
        self.message = message
        self.details = details
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}\n  Details: {self.details}"
        return self.message


class ParseError(ConvergeError):
    """Error parsing inventory, playbook, or other input files."""

    exit_code: int = ExitCode.PARSE_ERROR

    def __init__(
        self,
        message: str,
        file_path: str | None = None,
        line: int | None = None,
        details: str | None = None,
    ) -> None:
        self.file_path = file_path
        self.line = line
        location = ""
        if file_path:
            location = f" in {file_path}"
            if line:
                location += f" at line {line}"
        super().__init__(f"Parse error{location}: {message}", details)


class InventoryError(ParseError):
    """Error in inventory file or host resolution."""

    def __init__(self, message: str, file_path: str | None = None) -> None:
        super().__init__(message, file_path=file_path)


class ConfigError(ParseError):
    """Invalid configuration file, environment override or settings value."""


class UnsupportedFeatureError(ConvergeError):
    """Error when a playbook uses a feature Converge does not implement."""

    exit_code: int = ExitCode.UNSUPPORTED_FEATURE

    def __init__(self, feature: str, suggestion: str | None = None) -> None:
        self.feature = feature
        msg = f"Unsupported feature: {feature}"
        if suggestion:
            msg += f"\n  Suggestion: {suggestion}"
        super().__init__(msg)


class TemplateError(ConvergeError):
    """A template could not be fully resolved."""

    exit_code: int = ExitCode.PARSE_ERROR

    def __init__(
        self,
        message: str,
        template: str | None = None,
        variable: str | None = None,
    ) -> None:
        self.template = template
        self.variable = variable

        details = None
        if template:
            truncated = template[:100] + "..." if len(template) > 100 else template
            details = f"Template: {truncated}"

        super().__init__(f"Template error: {message}", details)


class VaultError(ConvergeError):
    """Vault-encrypted content could not be decrypted."""

    exit_code: int = ExitCode.PARSE_ERROR


class ConnectionError(ConvergeError):
    """Error connecting to a remote host."""

    exit_code: int = ExitCode.HOST_FAILED

    def __init__(
        self,
        host: str,
        message: str,
        connection_type: str | None = None,
        details: str | None = None,
    ) -> None:
        self.host = host
        self.connection_type = connection_type
        conn_info = f" ({connection_type})" if connection_type else ""
        super().__init__(f"Connection to {host}{conn_info} failed: {message}", details)


class ModuleError(ConvergeError):
    """A module could not bring the host to the desired state."""

    exit_code: int = ExitCode.HOST_FAILED

    def __init__(
        self,
        module: str,
        message: str,
        rc: int | None = None,
        stdout: str | None = None,
        stderr: str | None = None,
    ) -> None:
        self.module = module
        self.rc = rc
        self.stdout = stdout
        self.stderr = stderr

        details_parts = []
        if rc is not None:
            details_parts.append(f"rc={rc}")
        if stderr:
            details_parts.append(f"stderr: {stderr[:200]}")

        super().__init__(
            f"Module '{module}' failed: {message}",
            "; ".join(details_parts) if details_parts else None,
        )


class ValidationError(ModuleError):
    """The validate command rejected a candidate file; nothing was written."""

    def __init__(self, module: str, path: str, command: str, rc: int, stderr: str = "") -> None:
        self.path = path
        self.command = command
        super().__init__(
            module,
            f"validation of {path} failed ({command})",
            rc=rc,
            stderr=stderr,
        )


class DelegatedCommandError(ModuleError):
    """An opaque shell command exited non-zero; only its exit code is known."""

    def __init__(self, module: str, command: str, rc: int, stdout: str = "", stderr: str = "") -> None:
        self.command = command
        super().__init__(
            module,
            f"non-zero return code: {rc}",
            rc=rc,
            stdout=stdout,
            stderr=stderr,
        )


class HostFailedError(ConvergeError):
    """A host has failed during playbook execution."""

    exit_code: int = ExitCode.HOST_FAILED

    def __init__(self, host: str, task: str, message: str) -> None:
        self.host = host
        self.task = task
        super().__init__(f"Host {host} failed at task '{task}': {message}")
