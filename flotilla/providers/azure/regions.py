"""Azure locations flotilla can provision into."""

from __future__ import annotations

from flotilla.errors import ConfigurationError

DEFAULT_REGION = "eastus"

AZURE_REGIONS: frozenset[str] = frozenset({
    "eastus",
    "eastus2",
    "westus",
    "westus2",
    "centralus",
    "northcentralus",
    "southcentralus",
    "westcentralus",
    "northeurope",
    "westeurope",
    "eastasia",
    "southeastasia",
    "japaneast",
    "japanwest",
    "australiaeast",
    "australiasoutheast",
    "australiacentral",
    "brazilsouth",
    "southindia",
    "centralindia",
    "westindia",
    "canadacentral",
    "canadaeast",
    "uksouth",
    "ukwest",
    "koreacentral",
    "koreasouth",
    "francecentral",
    "southafricanorth",
    "uaenorth",
    "germanywestcentral",
})


def parse_region(name: str) -> str:
    """Normalize an Azure location name, rejecting unknown ones."""
    region = name.strip().lower()
    if region not in AZURE_REGIONS:
        raise ConfigurationError(f"Unknown azure region {name}")
    return region


__all__ = ["AZURE_REGIONS", "DEFAULT_REGION", "parse_region"]
