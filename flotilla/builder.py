"""Collect machine descriptors, then launch them all in one go.

Example:
    >>> fleet = FleetBuilder()
    >>> fleet.add("server", MachineSetup().with_instance_type("c5.xlarge"))
    >>> fleet.add("client", MachineSetup())
    >>> fleet.timeout(600).use_term_logger()
    >>> async with AWSLauncher() as aws:
    ...     await fleet.spawn(aws)
    ...     machines = await aws.connect_all()
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Self

from flotilla.errors import ConfigurationError
from flotilla.logging import LogConfig, LogLevel, root_logger, setup_logging

if TYPE_CHECKING:
    from loguru import Logger

    from flotilla.providers.base import Launcher, MachineSetup


class FleetBuilder[D: MachineSetup]:
    """Registers ``(nickname, descriptor)`` pairs for a later ``spawn``.

    Logging is silent unless ``set_logger`` or ``use_term_logger`` is called.
    """

    def __init__(self) -> None:
        self._descriptors: dict[str, D] = {}
        self._log: Logger = root_logger()
        self._max_wait: float | None = None
        self.handler_ids: list[int] = []

    def add(self, nickname: str, descriptor: D) -> Self:
        """Register a machine.

        Raises:
            ConfigurationError: If ``nickname`` is already registered; the
                first registration is kept.
        """
        if nickname in self._descriptors:
            raise ConfigurationError(f"Duplicate machine name {nickname}")
        self._descriptors[nickname] = descriptor
        return self

    def timeout(self, seconds: float) -> Self:
        """Give up on machines that are not ready ``seconds`` after ``spawn`` starts."""
        self._max_wait = seconds
        return self

    def set_logger(self, log: Logger) -> Self:
        self._log = log
        return self

    def use_term_logger(self, level: LogLevel = "DEBUG") -> Self:
        """Log to the terminal (stderr)."""
        self.handler_ids.extend(setup_logging(LogConfig(level=level)))
        self._log = root_logger()
        return self

    def logger(self) -> Logger:
        return self._log

    def __len__(self) -> int:
        return len(self._descriptors)

    async def spawn(self, launcher: Launcher[D], *, concurrent: bool = False) -> None:
        """Launch every registered machine on ``launcher``.

        The registrations are consumed, so the builder is empty afterwards
        even if the launch fails.
        """
        descriptors = list(self._descriptors.items())
        self._descriptors.clear()
        await launcher.spawn(descriptors, self._max_wait, self._log, concurrent=concurrent)


__all__ = ["FleetBuilder"]
