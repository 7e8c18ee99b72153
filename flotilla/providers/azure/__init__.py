"""Azure VM provider, driven through the ``az`` CLI."""

from flotilla.providers.azure.launcher import AzureLauncher
from flotilla.providers.azure.region import AzureRegion
from flotilla.providers.azure.regions import AZURE_REGIONS, parse_region
from flotilla.providers.azure.setup import AzureSetup

__all__ = [
    "AzureLauncher",
    "AzureRegion",
    "AzureSetup",
    "AZURE_REGIONS",
    "parse_region",
]
