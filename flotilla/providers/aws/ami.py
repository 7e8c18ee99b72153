"""Ubuntu 18.04 LTS AMIs for the regions flotilla knows about.

AMIs are region-specific, so a machine moved to another region needs the
matching image from this table (or an explicit ``ami``).
"""

from __future__ import annotations

from flotilla.errors import ConfigurationError

DEFAULT_REGION = "us-east-1"

UBUNTU_AMIS: dict[str, str] = {
    "ap-east-1": "ami-e0ff8491",  # Hong Kong
    "ap-northeast-1": "ami-0cb1c8cab7f5249b6",  # Tokyo
    "ap-northeast-2": "ami-081626bfb3fbc9f49",  # Seoul
    "ap-south-1": "ami-0cf8402efdb171312",  # Mumbai
    "ap-southeast-1": "ami-099d318f80eab7e94",  # Singapore
    "ap-southeast-2": "ami-08a648fb5cc86fb74",  # Sydney
    "ca-central-1": "ami-0bc1dd4eb012a451e",  # Canada
    "eu-central-1": "ami-0cdab515472ca0bac",  # Frankfurt
    "eu-north-1": "ami-c37bf0bd",  # Stockholm
    "eu-west-1": "ami-01cca82393e531118",  # Ireland
    "eu-west-2": "ami-0a7c91b6616d113b1",  # London
    "eu-west-3": "ami-033e0056c336ecff0",  # Paris
    "sa-east-1": "ami-094c359b4d8c6a8ca",  # Sao Paulo
    "us-east-1": "ami-064a0193585662d74",  # N Virginia
    "us-east-2": "ami-021b7b04f1ac696c2",  # Ohio
    "us-west-1": "ami-056d04da775d124d7",  # N California
    "us-west-2": "ami-09a3d8a7177216dcf",  # Oregon
}


def ubuntu_ami(region: str) -> str:
    """Return the Ubuntu AMI id for ``region``.

    Raises:
        ConfigurationError: If no Ubuntu AMI is known for the region.
    """
    try:
        return UBUNTU_AMIS[region]
    except KeyError:
        raise ConfigurationError(
            f"No Ubuntu AMI known for region {region}. "
            f"Supported: {', '.join(sorted(UBUNTU_AMIS))}. "
            "Pass an explicit AMI with MachineSetup.with_ami()."
        ) from None


__all__ = ["DEFAULT_REGION", "UBUNTU_AMIS", "ubuntu_ami"]
