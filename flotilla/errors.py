"""Exception hierarchy for flotilla.

Every error raised out of a launch carries enough context (nickname,
address, stage or provider operation) to tell which machine or call failed.
Cleanup never raises; its failures are logged instead.
"""

from __future__ import annotations


class FlotillaError(Exception):
    """Base class for all flotilla errors."""


class ConfigurationError(FlotillaError):
    """Invalid input detected before (or instead of) a provider call.

    Duplicate nicknames, empty batches, unsupported regions and descriptors
    missing an image all end up here.
    """


class ProviderError(FlotillaError):
    """A non-transient failure from the provider control plane."""

    def __init__(self, operation: str, cause: BaseException | str) -> None:
        self.operation = operation
        self.cause = cause
        super().__init__(f"{operation} failed: {cause}")


class LaunchTimeoutError(FlotillaError, TimeoutError):
    """The launch deadline expired while waiting on a provisioning stage."""

    def __init__(self, stage: str, waited: float | None = None) -> None:
        self.stage = stage
        self.waited = waited
        detail = f" after {waited:.1f}s" if waited is not None else ""
        super().__init__(f"timed out waiting for {stage}{detail}")


class ConnectivityError(FlotillaError):
    """SSH handshake to a machine failed."""

    def __init__(self, nickname: str, address: str, reason: str | None = None) -> None:
        self.nickname = nickname
        self.address = address
        msg = f"failed to ssh to machine {nickname} ({address})"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class SetupError(FlotillaError):
    """A user-supplied setup procedure failed."""

    def __init__(self, nickname: str, address: str | None = None) -> None:
        self.nickname = nickname
        self.address = address
        super().__init__(f"setup procedure for {nickname} machine failed")


class CommandError(FlotillaError):
    """A remote or local command exited with a non-zero status."""

    def __init__(self, command: str, exit_status: int | None, stderr: str = "") -> None:
        self.command = command
        self.exit_status = exit_status
        self.stderr = stderr
        super().__init__(f"{command} failed (exit {exit_status}): {stderr.strip()}")


__all__ = [
    "FlotillaError",
    "ConfigurationError",
    "ProviderError",
    "LaunchTimeoutError",
    "ConnectivityError",
    "SetupError",
    "CommandError",
]
