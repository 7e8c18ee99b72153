"""Provisioning engine for a single Azure location.

Everything is created inside one throwaway resource group, so teardown is a
single ``az group delete``. ``az vm create`` only returns once the VM is
running, which makes the spot-request and readiness polling of EC2
unnecessary here.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

from flotilla.config import AzureConfig, EngineConfig
from flotilla.errors import CommandError, ConfigurationError, LaunchTimeoutError, ProviderError
from flotilla.machine import Machine
from flotilla.providers.azure import cli
from flotilla.providers.azure.regions import parse_region
from flotilla.providers.base import connect_machine, rand_name, run_setup
from flotilla.ssh import Session

if TYPE_CHECKING:
    from loguru import Logger

    from flotilla.deadline import Deadline
    from flotilla.providers.azure.setup import AzureSetup
    from flotilla.ssh import Connector


@dataclass(frozen=True, slots=True)
class AzureVM:
    nickname: str
    vm_name: str
    public_ip: str


class AzureRegion:
    """The resource group and VMs flotilla created in one Azure location."""

    def __init__(
        self,
        region: str,
        resource_group: str,
        log: Logger,
        *,
        config: AzureConfig | None = None,
        engine: EngineConfig | None = None,
        connect: Connector = Session.connect,
    ) -> None:
        self.region = region
        self.resource_group: str | None = resource_group
        self.log = log
        self.config = config or AzureConfig()
        self.engine = engine or EngineConfig()
        self._connect = connect
        self.machines: list[AzureVM] = []

    @classmethod
    async def create(
        cls,
        region: str,
        log: Logger,
        *,
        config: AzureConfig | None = None,
        engine: EngineConfig | None = None,
        connect: Connector = Session.connect,
    ) -> AzureRegion:
        """Create the region's resource group.

        Raises:
            ConfigurationError: If ``region`` is not a known Azure location.
            ProviderError: If the resource group cannot be created.
        """
        region = parse_region(region)
        resource_group = rand_name("resourcegroup")
        log.debug(f"creating resource group {resource_group}")
        await _az("create resource group", "group", "create", "--name", resource_group, "--location", region)
        return cls(region, resource_group, log, config=config, engine=engine, connect=connect)

    # -------------------------------------------------------------------------
    # Launch
    # -------------------------------------------------------------------------

    async def available_sizes(self) -> set[str]:
        sizes = await _az_json("list vm sizes", "vm", "list-sizes", "--location", self.region)
        return {size["name"] for size in sizes}

    async def launch(
        self,
        machines: Iterable[tuple[str, AzureSetup]],
        deadline: Deadline | None = None,
    ) -> None:
        """Create, open up, connect to and set up every machine, one at a time.

        Raises:
            ConfigurationError: If an instance size is not offered in the
                region, or a nickname is already used here.
            ProviderError: If any ``az`` call fails.
            ConnectivityError / SetupError: As for EC2 instances.
            LaunchTimeoutError: If ``deadline`` expires between machines.
        """
        machines = list(machines)
        taken = {vm.nickname for vm in self.machines}
        for nickname, _ in machines:
            if nickname in taken:
                raise ConfigurationError(f"Duplicate machine name {nickname} in {self.region}")
            taken.add(nickname)

        if self.config.validate_sizes:
            sizes = await self.available_sizes()
            for nickname, desc in machines:
                if desc.instance_type not in sizes:
                    raise ConfigurationError(
                        f"{desc.instance_type} ({nickname}) is not a valid instance type in {self.region}"
                    )

        for nickname, desc in machines:
            if deadline is not None and deadline.expired():
                raise LaunchTimeoutError("vms", deadline.elapsed())
            await self._launch_one(nickname, desc, deadline)

    async def _launch_one(self, nickname: str, desc: AzureSetup, deadline: Deadline | None) -> None:
        vm_name = rand_name("vm", "-")
        self.log.debug(f"setting up azure instance {nickname} as {vm_name}")

        public_ip = await self._create_vm(vm_name, desc.instance_type)
        self.machines.append(AzureVM(nickname, vm_name, public_ip))
        await _az(
            "open ports",
            "vm", "open-port",
            "--port", "0-65535",
            "--resource-group", self._require_group(),
            "--name", vm_name,
        )

        session = await connect_machine(
            self._connect,
            self.log,
            nickname,
            self.config.username,
            (public_ip, self.engine.ssh_port),
            None,
            deadline,
            self.engine.connect_wait,
        )
        try:
            await run_setup(self.log, nickname, session, desc.setup, public_ip)
        finally:
            await session.close()

    async def _create_vm(self, vm_name: str, size: str) -> str:
        group = self._require_group()
        vm = await _az_json(
            f"create vm {vm_name}",
            "vm", "create",
            "--resource-group", group,
            "--name", vm_name,
            "--image", self.config.image,
            "--size", size,
            "--admin-username", self.config.username,
            "--ssh-key-values", str(Path(self.config.public_key_path).expanduser()),
        )
        if vm.get("powerState") != "VM running":
            raise ProviderError(f"create vm {vm_name}", f"VM power state incorrect: {vm.get('powerState')}")
        if str(vm.get("resourceGroup", "")).lower() != group.lower():
            raise ProviderError(f"create vm {vm_name}", f"VM resource group incorrect: {vm.get('resourceGroup')}")
        return vm["publicIpAddress"]

    def _require_group(self) -> str:
        if self.resource_group is None:
            raise ProviderError("azure", f"resource group for {self.region} already deleted")
        return self.resource_group

    # -------------------------------------------------------------------------
    # Connections
    # -------------------------------------------------------------------------

    async def connect_all(self) -> dict[str, Machine]:
        machines: dict[str, Machine] = {}
        try:
            for vm in self.machines:
                session = await connect_machine(
                    self._connect,
                    self.log,
                    vm.nickname,
                    self.config.username,
                    (vm.public_ip, self.engine.ssh_port),
                    None,
                    None,
                    self.engine.connect_wait,
                )
                machines[vm.nickname] = Machine(
                    nickname=vm.nickname,
                    public_dns=vm.public_ip,
                    public_ip=vm.public_ip,
                    ssh=session,
                )
        except BaseException:
            for machine in machines.values():
                await machine.close()
            raise
        return machines

    # -------------------------------------------------------------------------
    # Teardown
    # -------------------------------------------------------------------------

    async def cleanup(self) -> None:
        """Delete the resource group and everything in it. Never raises."""
        if self.resource_group is None:
            return
        group, self.resource_group = self.resource_group, None
        self.machines.clear()
        self.log.debug(f"deleting resource group {group}")
        try:
            await cli.run("group", "delete", "--name", group, "--yes")
        except Exception as e:
            self.log.warning(f"failed to delete resource group {group}: {e}")


async def _az(operation: str, *args: str) -> str:
    try:
        return await cli.run(*args)
    except (CommandError, OSError) as e:
        raise ProviderError(operation, e) from e


async def _az_json(operation: str, *args: str) -> Any:
    try:
        return await cli.run_json(*args)
    except (CommandError, OSError, json.JSONDecodeError) as e:
        raise ProviderError(operation, e) from e


__all__ = ["AzureRegion", "AzureVM"]
