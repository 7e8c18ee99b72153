"""Provider-independent launch machinery.

A provider is a ``Launcher``: something that can ``launch`` a batch of
machines into one region, later hand back SSH connections to everything it
launched (``connect_all``), and finally release whatever it allocated
(``cleanup``). ``Launcher.spawn`` sits on top and splits an arbitrary set of
machine descriptors into one batch per region.

Example:
    async with AWSLauncher() as aws:
        await aws.spawn([("web", MachineSetup()), ("db", MachineSetup())], max_wait=600)
        machines = await aws.connect_all()
        stdout, _ = await machines["web"].ssh.run("uptime")
"""

from __future__ import annotations

import asyncio
import inspect
import uuid
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Hashable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, Self, runtime_checkable

from flotilla.deadline import Deadline
from flotilla.errors import ConfigurationError, ConnectivityError, SetupError
from flotilla.logging import root_logger

if TYPE_CHECKING:
    from loguru import Logger

    from flotilla.machine import Machine
    from flotilla.ssh import Address, Connector, Session

type SetupFn = Callable[[Session, Logger], Awaitable[None] | None]
"""User setup procedure, called once per machine with a live session."""


# =============================================================================
# Descriptors
# =============================================================================


@runtime_checkable
class MachineSetup(Protocol):
    """What every provider's machine descriptor must offer.

    ``region()`` is the grouping key: machines sharing it are launched
    together through one provider connection.
    """

    @property
    def setup(self) -> SetupFn | None: ...

    def region(self) -> Hashable: ...


@dataclass(frozen=True, slots=True)
class LaunchDescriptor[D: MachineSetup]:
    """A set of machines to launch into a single region.

    Attributes:
        region: The region all ``machines`` belong to.
        log: Logger bound to this region.
        deadline: Shared launch budget, or None for no limit.
        machines: ``(nickname, descriptor)`` pairs, in submission order.
    """

    region: Hashable
    log: Logger
    deadline: Deadline | None
    machines: tuple[tuple[str, D], ...]


# =============================================================================
# Grouping
# =============================================================================


def check_unique_nicknames(machines: Iterable[tuple[str, object]]) -> None:
    """Raise ConfigurationError on the first repeated nickname."""
    seen: set[str] = set()
    for nickname, _ in machines:
        if nickname in seen:
            raise ConfigurationError(f"Duplicate machine name {nickname}")
        seen.add(nickname)


def group_by_region[D: MachineSetup](
    machines: Iterable[tuple[str, D]],
) -> dict[Hashable, list[tuple[str, D]]]:
    """Partition ``(nickname, descriptor)`` pairs by ``descriptor.region()``.

    Relative input order is preserved inside every group, and groups appear
    in the order their region was first seen.
    """
    groups: dict[Hashable, list[tuple[str, D]]] = {}
    for nickname, desc in machines:
        groups.setdefault(desc.region(), []).append((nickname, desc))
    return groups


def make_multiple[D](n: int, prefix: str, descriptor: D) -> list[tuple[str, D]]:
    """``n`` copies of ``descriptor`` nicknamed ``{prefix}-0`` .. ``{prefix}-{n-1}``."""
    return [(f"{prefix}-{i}", descriptor) for i in range(n)]


def merge_connections(mappings: Iterable[Mapping[str, Machine]]) -> dict[str, Machine]:
    """Fold per-region connection maps into one, refusing nickname collisions."""
    merged: dict[str, Machine] = {}
    for mapping in mappings:
        for nickname, machine in mapping.items():
            if nickname in merged:
                raise ConfigurationError(
                    f"Machine name {nickname} was produced by more than one region"
                )
            merged[nickname] = machine
    return merged


class RegionConnections(Protocol):
    async def connect_all(self) -> dict[str, Machine]: ...


async def connect_regions(regions: Iterable[RegionConnections]) -> dict[str, Machine]:
    """``connect_all`` on every region, merged.

    If any region fails (or two regions share a nickname), the sessions
    already opened for the other regions are closed before re-raising.
    """
    mappings: list[dict[str, Machine]] = []
    try:
        for region in regions:
            mappings.append(await region.connect_all())
        return merge_connections(mappings)
    except BaseException:
        for mapping in mappings:
            for machine in mapping.values():
                await machine.close()
        raise


def rand_name(prefix: str, sep: str = "_") -> str:
    """Random resource name such as ``flotilla_security_3f9a0c1b2d``."""
    return f"flotilla{sep}{prefix}{sep}{uuid.uuid4().hex[:10]}"


# =============================================================================
# Bring-up helpers
# =============================================================================


async def connect_machine(
    connect: Connector,
    log: Logger,
    nickname: str,
    username: str,
    addr: Address,
    key_path: str | Path | None,
    deadline: Deadline | None,
    connect_wait: float,
) -> Session:
    """Open an SSH session to a machine, mapping any failure to ConnectivityError."""
    host, port = addr
    try:
        return await connect(
            log, username, addr, key_path, deadline, connect_wait=connect_wait
        )
    except Exception as e:
        log.error(f"failed to ssh to {host}:{port} ({nickname}): {e}")
        raise ConnectivityError(nickname, f"{host}:{port}", str(e)) from e


async def run_setup(
    log: Logger,
    nickname: str,
    session: Session,
    setup: SetupFn | None,
    address: str,
) -> None:
    """Run a machine's setup procedure, if it has one."""
    if setup is None:
        return

    log.debug(f"setting up instance {nickname} at {address}")
    try:
        result = setup(session, log)
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        log.error(
            f"machine setup failed for {nickname}; "
            f"inspect with: ssh {session.username}@{address}"
        )
        raise SetupError(nickname, address) from e
    log.info(f"finished setting up {nickname} instance at {address}")


# =============================================================================
# Launcher
# =============================================================================


class Launcher[D: MachineSetup](ABC):
    """A provider backend. ``launch`` is called once per distinct region."""

    @abstractmethod
    async def launch(self, desc: LaunchDescriptor[D]) -> None:
        """Bring up every machine in ``desc``.

        May be called repeatedly; later calls add machines to those already
        launched, and ``connect_all`` returns all of them.
        """

    @abstractmethod
    async def connect_all(self) -> dict[str, Machine]:
        """Fresh SSH connections to every launched machine, keyed by nickname."""

    @abstractmethod
    async def cleanup(self) -> None:
        """Release everything this launcher allocated. Must not raise."""

    async def spawn(
        self,
        descriptors: Iterable[tuple[str, D]],
        max_wait: float | None = None,
        log: Logger | None = None,
        *,
        concurrent: bool = False,
    ) -> None:
        """Launch ``descriptors``, one ``launch`` call per region.

        A failing region does not roll back regions that already launched.
        Sequentially, the first failure stops the remaining regions from
        being attempted. With ``concurrent=True`` every region runs to
        completion and the first failure to complete is raised afterwards.

        Args:
            descriptors: ``(nickname, descriptor)`` pairs; nicknames must be unique.
            max_wait: Seconds to wait for all machines, None for no limit.
                The budget is shared by all regions, not reset per region.
            log: Parent logger; each region gets a child bound with ``region``.
            concurrent: Launch regions as concurrent tasks.

        Raises:
            ConfigurationError: On duplicate nicknames or an empty input.
        """
        machines: Sequence[tuple[str, D]] = list(descriptors)
        if not machines:
            raise ConfigurationError("Cannot launch zero machines")
        check_unique_nicknames(machines)

        log = log or root_logger()
        deadline = Deadline.optional(max_wait)
        log.info(f"spinning up {len(machines)} machine(s)")

        batches = [
            LaunchDescriptor(
                region=region,
                log=log.bind(region=str(region)),
                deadline=deadline,
                machines=tuple(group),
            )
            for region, group in group_by_region(machines).items()
        ]

        if not concurrent:
            for batch in batches:
                await self.launch(batch)
            return

        tasks = [
            asyncio.create_task(self.launch(batch), name=f"launch-{batch.region}")
            for batch in batches
        ]
        first_error: Exception | None = None
        for next_done in asyncio.as_completed(tasks):
            try:
                await next_done
            except Exception as e:
                if first_error is None:
                    first_error = e
                else:
                    log.error(f"additional region failed to launch: {e}")
        if first_error is not None:
            raise first_error

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.cleanup()


__all__ = [
    "SetupFn",
    "MachineSetup",
    "LaunchDescriptor",
    "Launcher",
    "check_unique_nicknames",
    "group_by_region",
    "make_multiple",
    "merge_connections",
    "connect_regions",
    "RegionConnections",
    "rand_name",
    "connect_machine",
    "run_setup",
]
