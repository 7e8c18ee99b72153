"""Wall-clock budgets shared across provisioning stages."""

from __future__ import annotations

import time
from dataclasses import dataclass, field


@dataclass(frozen=True, slots=True)
class Deadline:
    """A fixed point in (monotonic) time after which waiting must stop.

    One Deadline is created per spawn and handed to every region and every
    stage, so time spent waiting for spot requests is not available again
    when waiting for instances.

    Example:
        >>> d = Deadline.after(30)
        >>> d.remaining()  # doctest: +SKIP
        29.99
    """

    budget: float
    started: float = field(default_factory=time.monotonic)

    @classmethod
    def after(cls, seconds: float) -> Deadline:
        return cls(budget=seconds)

    @classmethod
    def optional(cls, seconds: float | None) -> Deadline | None:
        """Build a deadline, or None when there is no limit."""
        return None if seconds is None else cls(budget=seconds)

    def elapsed(self) -> float:
        return time.monotonic() - self.started

    def remaining(self) -> float:
        """Seconds left, never negative."""
        return max(0.0, self.budget - self.elapsed())

    def expired(self) -> bool:
        return self.elapsed() > self.budget


def remaining(deadline: Deadline | None, default: float | None = None) -> float | None:
    """Remaining budget of an optional deadline, falling back to ``default``."""
    if deadline is None:
        return default
    return deadline.remaining()
