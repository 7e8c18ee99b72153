"""Use machines that already exist, reachable over SSH.

Nothing is allocated and nothing is released: ``launch`` only finds an
address that accepts SSH and runs the setup procedure there.

Example:
    >>> m = BareMetalSetup.new(["10.0.0.5:22", "my-box.local:2222"], username="ops")
    >>> async with BareMetalLauncher() as bare:
    ...     await bare.spawn([("box", m)])
    ...     machines = await bare.connect_all()
"""

from __future__ import annotations

import getpass
from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import TYPE_CHECKING

from flotilla.config import EngineConfig
from flotilla.errors import ConfigurationError, ConnectivityError
from flotilla.logging import root_logger
from flotilla.machine import Machine
from flotilla.providers.base import Launcher, LaunchDescriptor, connect_machine, run_setup
from flotilla.ssh import Session

if TYPE_CHECKING:
    from loguru import Logger

    from flotilla.deadline import Deadline
    from flotilla.providers.base import SetupFn
    from flotilla.ssh import Address, Connector

DEFAULT_SSH_PORT = 22


def parse_address(addr: str | Address, default_port: int = DEFAULT_SSH_PORT) -> Address:
    """``"host"``, ``"host:port"``, ``"[v6]:port"`` or ``(host, port)`` to ``(host, port)``."""
    if isinstance(addr, tuple):
        host, port = addr
        return host, int(port)
    if addr.startswith("["):
        host, _, rest = addr[1:].partition("]")
        return host, int(rest.lstrip(":") or default_port)
    if addr.count(":") == 1:
        host, port = addr.split(":")
        return host, int(port)
    return addr, default_port


@dataclass(frozen=True, slots=True)
class BareMetalSetup:
    """An existing machine, possibly reachable at several addresses.

    Addresses are tried in order; the first one that accepts SSH is used.
    """

    addresses: tuple[Address, ...]
    username: str = field(default_factory=getpass.getuser)
    key_path: Path | None = None
    setup: SetupFn | None = None

    def __post_init__(self) -> None:
        if not self.addresses:
            raise ConfigurationError("A bare metal machine needs at least one address")

    @classmethod
    def new(
        cls,
        addresses: str | Address | Iterable[str | Address],
        username: str | None = None,
    ) -> BareMetalSetup:
        if isinstance(addresses, str) or (
            isinstance(addresses, tuple) and len(addresses) == 2 and isinstance(addresses[1], int)
        ):
            addresses = [addresses]
        parsed = tuple(parse_address(a) for a in addresses)
        if username is None:
            return cls(addresses=parsed)
        return cls(addresses=parsed, username=username)

    def region(self) -> str:
        host, port = self.addresses[0]
        return f"bare:{host}:{port}"

    def with_key_path(self, path: str | Path) -> BareMetalSetup:
        return replace(self, key_path=Path(path).expanduser())

    def with_setup(self, setup: SetupFn) -> BareMetalSetup:
        return replace(self, setup=setup)


@dataclass(frozen=True, slots=True)
class BareMachine:
    nickname: str
    address: Address
    username: str
    key_path: Path | None


class BareMetalLauncher(Launcher[BareMetalSetup]):
    """Launcher for pre-existing machines, one per distinct first address."""

    def __init__(
        self,
        engine: EngineConfig | None = None,
        *,
        connect: Connector = Session.connect,
    ) -> None:
        self.engine = engine or EngineConfig()
        self._connect = connect
        self.machines: dict[str, BareMachine] = {}

    async def _first_reachable(
        self,
        log: Logger,
        nickname: str,
        setup: BareMetalSetup,
        deadline: Deadline | None,
    ) -> tuple[Address, Session]:
        errors: list[str] = []
        for addr in setup.addresses:
            host, port = addr
            try:
                session = await self._connect(
                    log,
                    setup.username,
                    addr,
                    setup.key_path,
                    deadline,
                    connect_wait=self.engine.connect_wait,
                )
            except Exception as e:
                log.trace(f"failed to ssh to address {host}:{port}: {e}")
                errors.append(f"{host}:{port}: {e}")
                continue
            return addr, session

        tried = ", ".join(f"{h}:{p}" for h, p in setup.addresses)
        log.error(f"failed to ssh to {nickname} at any of {tried}")
        raise ConnectivityError(nickname, tried, "no valid addresses found; " + "; ".join(errors))

    async def launch(self, desc: LaunchDescriptor[BareMetalSetup]) -> None:
        log = desc.log
        if not desc.machines:
            raise ConfigurationError("Cannot initialize zero machines")

        (nickname, setup), *discarded = desc.machines
        for other, other_setup in discarded:
            host, port = other_setup.addresses[0]
            log.warning(f"discarding duplicate connection {other} to same machine {host}:{port}")

        addr, session = await self._first_reachable(log, nickname, setup, desc.deadline)
        host, port = addr
        try:
            await run_setup(log, nickname, session, setup.setup, host)
        finally:
            await session.close()

        log.info(f"finished setting up instance {nickname} at {host}:{port}")
        self.machines[nickname] = BareMachine(nickname, addr, setup.username, setup.key_path)

    async def connect_all(self) -> dict[str, Machine]:
        machines: dict[str, Machine] = {}
        log = root_logger()
        try:
            for m in self.machines.values():
                host, _ = m.address
                session = await connect_machine(
                    self._connect,
                    log,
                    m.nickname,
                    m.username,
                    m.address,
                    m.key_path,
                    None,
                    self.engine.connect_wait,
                )
                machines[m.nickname] = Machine(
                    nickname=m.nickname,
                    public_dns=host,
                    public_ip=host,
                    ssh=session,
                )
        except BaseException:
            for machine in machines.values():
                await machine.close()
            raise
        return machines

    async def cleanup(self) -> None:
        """Nothing to release; the machines are not ours."""
        if self.machines:
            root_logger().debug(f"leaving {len(self.machines)} bare metal machine(s) running")
        self.machines.clear()


__all__ = ["BareMetalSetup", "BareMetalLauncher", "BareMachine", "parse_address"]
