"""Handles to running machines returned by ``connect_all``."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from flotilla.ssh import Session


@dataclass(slots=True)
class Machine:
    """A machine currently running as part of a fleet.

    Run commands on it through ``ssh``:

        stdout, _ = await machine.ssh.run("hostname")
    """

    nickname: str
    public_dns: str
    public_ip: str
    private_ip: str | None = None
    ssh: Session | None = None

    async def close(self) -> None:
        if self.ssh is not None:
            await self.ssh.close()
            self.ssh = None
