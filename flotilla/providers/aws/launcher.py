"""EC2 spot-instance launcher: one ``AWSRegion`` per region."""

from __future__ import annotations

from typing import TYPE_CHECKING

from flotilla.config import AWSConfig, EngineConfig
from flotilla.providers.aws.clients import (
    default_session_factory,
    ec2_client_factory,
)
from flotilla.providers.aws.region import AWSRegion
from flotilla.providers.aws.setup import MachineSetup
from flotilla.providers.base import Launcher, LaunchDescriptor, connect_regions
from flotilla.ssh import Session

if TYPE_CHECKING:
    from flotilla.machine import Machine
    from flotilla.providers.aws.clients import EC2ClientFactory, SessionFactory
    from flotilla.ssh import Connector

MAX_INSTANCE_DURATION_HOURS = 6


class AWSLauncher(Launcher[MachineSetup]):
    """Launches EC2 defined-duration spot instances.

    Defined-duration instances declare their lifetime up front (1 to 6
    hours); they are reclaimed by EC2 at the end of it even if ``cleanup``
    never runs.

    Example:
        >>> async with AWSLauncher() as aws:
        ...     await aws.spawn(make_multiple(3, "worker", MachineSetup()), max_wait=600)
        ...     machines = await aws.connect_all()
    """

    def __init__(
        self,
        config: AWSConfig | None = None,
        engine: EngineConfig | None = None,
        *,
        session_factory: SessionFactory | None = None,
        client_factory: EC2ClientFactory | None = None,
        connect: Connector = Session.connect,
    ) -> None:
        self.config = config or AWSConfig()
        self.engine = engine or EngineConfig()
        self.max_instance_duration_hours = min(
            self.config.max_instance_duration_hours, MAX_INSTANCE_DURATION_HOURS
        )
        self._session_factory = session_factory or default_session_factory(self.config.profile)
        self._client_factory = client_factory
        self._connect = connect
        self.regions: dict[str, AWSRegion] = {}

    def set_max_instance_duration(self, hours: int) -> AWSLauncher:
        """Lifetime of launched instances; values above 6 hours are clamped to 6."""
        self.max_instance_duration_hours = min(hours, MAX_INSTANCE_DURATION_HOURS)
        return self

    def with_credentials(self, session_factory: SessionFactory) -> AWSLauncher:
        """Use the aioboto3 session (and credentials) returned by ``session_factory``."""
        self._session_factory = session_factory
        return self

    def _ec2_factory(self) -> EC2ClientFactory:
        return self._client_factory or ec2_client_factory(self._session_factory)

    async def launch(self, desc: LaunchDescriptor[MachineSetup]) -> None:
        region = str(desc.region)
        aws = self.regions.get(region)
        if aws is None:
            aws = await AWSRegion.create(
                region,
                self._ec2_factory(),
                desc.log,
                engine=self.engine,
                username=self.config.username,
                connect=self._connect,
            )
            # registered before provisioning so cleanup() reaches a failed region
            self.regions[region] = aws

        await aws.make_spot_instance_requests(
            self.max_instance_duration_hours * 60, desc.machines
        )
        await aws.wait_for_spot_instance_requests(desc.deadline)
        await aws.wait_for_instances(desc.deadline)

    async def connect_all(self) -> dict[str, Machine]:
        return await connect_regions(self.regions.values())

    async def cleanup(self) -> None:
        regions = list(self.regions.values())
        self.regions.clear()
        for aws in regions:
            await aws.cleanup()


__all__ = ["AWSLauncher", "MAX_INSTANCE_DURATION_HOURS"]
