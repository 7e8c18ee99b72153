"""Machine descriptors for EC2 spot instances."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import TYPE_CHECKING

from flotilla.errors import ConfigurationError
from flotilla.providers.aws.ami import DEFAULT_REGION, ubuntu_ami

if TYPE_CHECKING:
    from flotilla.providers.base import SetupFn


@dataclass(frozen=True, slots=True)
class MachineSetup:
    """One kind of EC2 machine.

    The default is a ``t3.small`` running Ubuntu in us-east-1. Builder
    methods return modified copies:

        >>> m = MachineSetup().with_instance_type("c5.large").with_setup(install_deps)

    Moving to another region with ``with_region`` clears the AMI, since AMIs
    are region-specific. Follow it with ``with_ubuntu_ami()`` or
    ``with_ami(...)``; launching a descriptor without an AMI fails with
    ConfigurationError.

    Attributes:
        region_name: EC2 region, e.g. "eu-west-1".
        instance_type: Must be offered as a defined-duration spot instance.
        ami: Image the instance boots from.
        setup: Called once per spawned instance with an SSH session.
    """

    region_name: str = DEFAULT_REGION
    instance_type: str = "t3.small"
    ami: str | None = ubuntu_ami(DEFAULT_REGION)
    setup: SetupFn | None = None

    def region(self) -> str:
        return self.region_name

    def with_region(self, region: str) -> MachineSetup:
        return replace(self, region_name=region, ami=None)

    def with_ubuntu_ami(self, region: str | None = None) -> MachineSetup:
        """Use the Ubuntu AMI of ``region`` (default: the current region), moving there."""
        region = region or self.region_name
        return replace(self, region_name=region, ami=ubuntu_ami(region))

    def with_ami(self, ami: str) -> MachineSetup:
        return replace(self, ami=ami)

    def with_instance_type(self, instance_type: str) -> MachineSetup:
        return replace(self, instance_type=instance_type)

    def with_setup(self, setup: SetupFn) -> MachineSetup:
        return replace(self, setup=setup)

    def require_ami(self) -> str:
        if not self.ami:
            raise ConfigurationError(
                f"Machine setup for {self.region_name} has no AMI; "
                "call with_ubuntu_ami() or with_ami() after with_region()"
            )
        return self.ami
