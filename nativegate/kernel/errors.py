"""Kernel error types."""

from __future__ import annotations


class NativeGateError(Exception):
    """Base error for nativegate."""


class ConfigError(NativeGateError):
    """Raised when configuration validation or loading fails."""


class AccessDenied(NativeGateError):
    """Raised inside unit code when a capability was not authorized."""

    def __init__(self, unit_id: str, resource_key: str, category_label: str, *, reason: str = "denied") -> None:
        self.unit_id = str(unit_id)
        self.resource_key = str(resource_key)
        self.category = str(category_label)
        self.reason = str(reason)
        super().__init__(
            f'Access Denied! "{self.unit_id}" may not use "{self.resource_key}" '
            f"({self.category}; {self.reason})"
        )


class PromptUnavailable(NativeGateError):
    """Raised by a consent collaborator that has no surface to ask on."""


class ExecutionTimeout(NativeGateError):
    """Raised when a unit does not finish loading inside its time budget."""

    def __init__(self, unit_id: str, timeout_s: float) -> None:
        self.unit_id = str(unit_id)
        self.timeout_s = float(timeout_s)
        super().__init__(f'"{self.unit_id}" did not finish loading within {self.timeout_s:g}s')


class PersistenceFailure(NativeGateError):
    """Raised when the trust store cannot be written."""


class ExportNotFound(NativeGateError):
    """Raised when a caller asks for an export the unit does not declare."""

    def __init__(self, unit_id: str, export_name: str) -> None:
        self.unit_id = str(unit_id)
        self.export_name = str(export_name)
        super().__init__(f'"{self.unit_id}" has no export named "{self.export_name}"')


class SandboxViolation(NativeGateError):
    """Raised when unit source is rejected before it runs."""


class LoadError(NativeGateError):
    """Raised when unit code throws while loading."""

    def __init__(self, unit_id: str, message: str) -> None:
        self.unit_id = str(unit_id)
        super().__init__(f'Failed to load "{self.unit_id}": {message}')


class ChannelNotFound(NativeGateError):
    """Raised when an invocation names a channel no unit is registered on."""

    def __init__(self, channel: str) -> None:
        self.channel = str(channel)
        super().__init__(f'No unit is registered on channel "{self.channel}"')
