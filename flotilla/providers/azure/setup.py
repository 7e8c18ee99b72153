"""Machine descriptors for Azure VMs."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import TYPE_CHECKING

from flotilla.providers.azure.regions import DEFAULT_REGION, parse_region

if TYPE_CHECKING:
    from flotilla.providers.base import SetupFn


@dataclass(frozen=True, slots=True)
class AzureSetup:
    """One kind of Azure VM. Defaults to a ``Standard_DS1_v2`` in eastus.

    The instance size is checked against ``az vm list-sizes`` for the
    region when the machine is launched.
    """

    region_name: str = DEFAULT_REGION
    instance_type: str = "Standard_DS1_v2"
    setup: SetupFn | None = None

    def region(self) -> str:
        return self.region_name

    def with_region(self, region: str) -> AzureSetup:
        return replace(self, region_name=parse_region(region))

    def with_instance_type(self, instance_type: str) -> AzureSetup:
        return replace(self, instance_type=instance_type)

    def with_setup(self, setup: SetupFn) -> AzureSetup:
        return replace(self, setup=setup)
