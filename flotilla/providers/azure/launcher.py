"""Azure launcher: one resource group per location, driven through ``az``."""

from __future__ import annotations

from typing import TYPE_CHECKING

from flotilla.config import AzureConfig, EngineConfig
from flotilla.providers.azure.region import AzureRegion
from flotilla.providers.azure.setup import AzureSetup
from flotilla.providers.base import Launcher, LaunchDescriptor, connect_regions
from flotilla.ssh import Session

if TYPE_CHECKING:
    from flotilla.machine import Machine
    from flotilla.ssh import Connector


class AzureLauncher(Launcher[AzureSetup]):
    """Launches Azure VMs. Requires a logged-in ``az`` on the PATH."""

    def __init__(
        self,
        config: AzureConfig | None = None,
        engine: EngineConfig | None = None,
        *,
        connect: Connector = Session.connect,
    ) -> None:
        self.config = config or AzureConfig()
        self.engine = engine or EngineConfig()
        self._connect = connect
        self.regions: dict[str, AzureRegion] = {}

    async def launch(self, desc: LaunchDescriptor[AzureSetup]) -> None:
        region = str(desc.region)
        az = self.regions.get(region)
        if az is None:
            az = await AzureRegion.create(
                region,
                desc.log,
                config=self.config,
                engine=self.engine,
                connect=self._connect,
            )
            self.regions[region] = az
        await az.launch(desc.machines, desc.deadline)

    async def connect_all(self) -> dict[str, Machine]:
        return await connect_regions(self.regions.values())

    async def cleanup(self) -> None:
        regions = list(self.regions.values())
        self.regions.clear()
        for az in regions:
            await az.cleanup()


__all__ = ["AzureLauncher"]
