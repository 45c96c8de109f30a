"""Core interfaces."""

from cloudbay.core.interfaces.driver import (
    CommandResult,
    Driver,
    DriverInfo,
    InstanceSpec,
    InstanceState,
    InstanceStats,
    ShellSession,
)

__all__ = [
    "CommandResult",
    "Driver",
    "DriverInfo",
    "InstanceSpec",
    "InstanceState",
    "InstanceStats",
    "ShellSession",
]
