"""AWS EC2 spot-instance provider."""

from flotilla.providers.aws.ami import UBUNTU_AMIS, ubuntu_ami
from flotilla.providers.aws.launcher import AWSLauncher
from flotilla.providers.aws.region import AWSRegion, InstanceRecord
from flotilla.providers.aws.setup import MachineSetup

__all__ = [
    "AWSLauncher",
    "AWSRegion",
    "InstanceRecord",
    "MachineSetup",
    "UBUNTU_AMIS",
    "ubuntu_ami",
]
