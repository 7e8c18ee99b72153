"""Provisioning engine for a single EC2 region.

An ``AWSRegion`` owns everything flotilla allocates in one region: a
temporary security group, a temporary key pair (and the private key on
disk), the spot instance requests and the instances they turn into.

Lifecycle:

    region = await AWSRegion.create("us-east-1", ec2_factory, log)
    try:
        await region.make_spot_instance_requests(360, machines)
        await region.wait_for_spot_instance_requests(deadline)
        await region.wait_for_instances(deadline)
        machines = await region.connect_all()
    finally:
        await region.cleanup()

Every stage shares one ``Deadline``; time spent waiting for spot requests
is not available again when waiting for instances.
"""

from __future__ import annotations

import asyncio
import os
import tempfile
from collections.abc import Iterable
from contextlib import AsyncExitStack
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

from botocore.exceptions import BotoCoreError, ClientError
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_fixed,
)

from flotilla.config import EngineConfig
from flotilla.errors import ConfigurationError, ConnectivityError, LaunchTimeoutError, ProviderError
from flotilla.machine import Machine
from flotilla.providers.aws.clients import validate_region
from flotilla.providers.base import connect_machine, rand_name, run_setup
from flotilla.ssh import Session

if TYPE_CHECKING:
    from loguru import Logger

    from flotilla.deadline import Deadline
    from flotilla.providers.aws.clients import EC2ClientFactory
    from flotilla.providers.aws.setup import MachineSetup
    from flotilla.providers.base import SetupFn
    from flotilla.ssh import Connector

MAX_BLOCK_DURATION_MINUTES = 360
RUNNING = 16

TRANSIENT_TERMINATE_ERRORS = (
    "Pooled stream disconnected",
    "broken pipe",
    "Connection was closed",
    "Connection reset by peer",
)
"""Substrings of termination errors caused by a dropped connection, not by EC2."""


@dataclass(slots=True)
class InstanceRecord:
    """A fulfilled spot request. ``address`` is (public_ip, public_dns) once ready."""

    nickname: str
    setup: SetupFn | None
    address: tuple[str, str] | None = None
    private_ip: str | None = None


# =============================================================================
# Response helpers
# =============================================================================


def _error_code(e: ClientError) -> str:
    return e.response.get("Error", {}).get("Code", "")


def _request_not_visible(e: ClientError) -> bool:
    # New request ids take a moment to show up in describe calls.
    return (
        _error_code(e) == "InvalidSpotInstanceRequestID.NotFound"
        or "does not exist" in str(e)
    )


def _is_pending(request: dict[str, Any]) -> bool:
    state = request.get("State")
    return state == "open" or (state == "active" and not request.get("InstanceId"))


def _is_ready(instance: dict[str, Any]) -> bool:
    return (
        instance.get("State", {}).get("Code") == RUNNING
        and bool(instance.get("PublicIpAddress"))
        and bool(instance.get("PublicDnsName"))
    )


def _is_transient(e: BaseException) -> bool:
    msg = str(e)
    return any(signature in msg for signature in TRANSIENT_TERMINATE_ERRORS)


# =============================================================================
# AWSRegion
# =============================================================================


class AWSRegion:
    """Provisioning state for one EC2 region. Owned by a single task."""

    def __init__(
        self,
        region: str,
        client_factory: EC2ClientFactory,
        log: Logger,
        *,
        engine: EngineConfig | None = None,
        username: str = "ubuntu",
        connect: Connector = Session.connect,
    ) -> None:
        self.region = region
        self.log = log
        self.engine = engine or EngineConfig()
        self.username = username
        self._client_factory = client_factory
        self._connect = connect
        self._stack = AsyncExitStack()
        self._ec2: Any = None

        self.security_group_id: str | None = None
        self.key_name: str | None = None
        self.private_key_path: Path | None = None

        self._outstanding: dict[str, tuple[str, MachineSetup]] = {}
        self._instances: dict[str, InstanceRecord] = {}

    @classmethod
    async def create(
        cls,
        region: str,
        client_factory: EC2ClientFactory,
        log: Logger,
        *,
        engine: EngineConfig | None = None,
        username: str = "ubuntu",
        connect: Connector = Session.connect,
    ) -> AWSRegion:
        """Connect to ``region`` and allocate its security group and key pair.

        Anything allocated before a failure is released again.

        Raises:
            ConfigurationError: If ``region`` is not a known EC2 region.
            ProviderError: If EC2 rejects any of the setup calls.
        """
        validate_region(region)
        aws = cls(
            region,
            client_factory,
            log,
            engine=engine,
            username=username,
            connect=connect,
        )
        try:
            aws._ec2 = await aws._stack.enter_async_context(client_factory(region))
            await aws._make_security_group()
            await aws._make_ssh_key()
        except BaseException:
            await aws.cleanup()
            raise
        return aws

    @property
    def outstanding(self) -> dict[str, tuple[str, MachineSetup]]:
        return self._outstanding

    @property
    def instances(self) -> dict[str, InstanceRecord]:
        return self._instances

    async def _call(self, operation: str, **params: Any) -> dict[str, Any]:
        if self._ec2 is None:
            raise ProviderError(operation, "region client is closed")
        try:
            return await getattr(self._ec2, operation)(**params)
        except (ClientError, BotoCoreError) as e:
            raise ProviderError(operation, e) from e

    # -------------------------------------------------------------------------
    # Temporary resources
    # -------------------------------------------------------------------------

    async def _make_security_group(self) -> None:
        group_name = rand_name("security")
        self.log.trace(f"creating security group {group_name}")
        resp = await self._call(
            "create_security_group",
            GroupName=group_name,
            Description="temporary access group for flotilla VMs",
        )
        self.security_group_id = resp["GroupId"]
        self.log.trace(f"created security group {self.security_group_id}")

        # icmp, then all tcp and udp so fleet members can talk to each other
        for protocol, from_port, to_port in (("icmp", -1, -1), ("tcp", 0, 65535), ("udp", 0, 65535)):
            self.log.trace(f"adding {protocol} access to security group")
            await self._call(
                "authorize_security_group_ingress",
                GroupId=self.security_group_id,
                IpProtocol=protocol,
                FromPort=from_port,
                ToPort=to_port,
                CidrIp="0.0.0.0/0",
            )

    async def _make_ssh_key(self) -> None:
        key_name = rand_name("key")
        self.log.trace("creating keypair")
        resp = await self._call("create_key_pair", KeyName=key_name)
        self.key_name = key_name
        self.log.trace(f"created keypair {key_name} ({resp.get('KeyFingerprint')})")

        fd, path = tempfile.mkstemp(prefix="flotilla-", suffix=".pem")
        self.private_key_path = Path(path)
        try:
            with os.fdopen(fd, "w") as f:
                f.write(resp["KeyMaterial"])
        except OSError as e:
            raise ProviderError("write private key", e) from e
        self.log.trace(f"wrote keypair to {path}")

    # -------------------------------------------------------------------------
    # Spot requests
    # -------------------------------------------------------------------------

    async def make_spot_instance_requests(
        self,
        max_duration: int,
        machines: Iterable[tuple[str, MachineSetup]],
    ) -> None:
        """Issue one-time spot requests, one request call per (ami, instance_type).

        Does not wait for fulfillment; see ``wait_for_spot_instance_requests``.

        Args:
            max_duration: Instance lifetime in minutes, capped at 360.
            machines: ``(nickname, descriptor)`` pairs.

        Raises:
            ConfigurationError: If a descriptor has no AMI, or a nickname is
                already in use in this region. Nothing is requested then.
            ProviderError: If EC2 rejects a request or returns the wrong
                number of request ids.
        """
        taken = self._nicknames()
        groups: dict[tuple[str, str], list[tuple[str, MachineSetup]]] = {}
        for nickname, m in machines:
            if nickname in taken:
                raise ConfigurationError(f"Duplicate machine name {nickname} in {self.region}")
            taken.add(nickname)
            groups.setdefault((m.require_ami(), m.instance_type), []).append((nickname, m))

        duration = min(MAX_BLOCK_DURATION_MINUTES, max_duration)
        for (ami, instance_type), reqs in groups.items():
            self.log.trace(f"issuing spot request for {len(reqs)} x {instance_type} ({ami})")
            resp = await self._call(
                "request_spot_instances",
                InstanceCount=len(reqs),
                BlockDurationMinutes=duration,
                Type="one-time",
                LaunchSpecification={
                    "ImageId": ami,
                    "InstanceType": instance_type,
                    "SecurityGroupIds": [self.security_group_id],
                    "KeyName": self.key_name,
                },
            )
            request_ids = [
                r["SpotInstanceRequestId"]
                for r in resp.get("SpotInstanceRequests", [])
                if r.get("SpotInstanceRequestId")
            ]
            if len(request_ids) != len(reqs):
                if request_ids:
                    await self._cancel_requests(request_ids)
                raise ProviderError(
                    "request_spot_instances",
                    f"got {len(request_ids)} spot instance requests but expected {len(reqs)}",
                )

            for request_id, req in zip(request_ids, reqs, strict=True):
                self.log.trace(f"activated spot request {request_id}")
                self._outstanding[request_id] = req

    def _nicknames(self) -> set[str]:
        names = {record.nickname for record in self._instances.values()}
        names.update(nickname for nickname, _ in self._outstanding.values())
        return names

    async def _cancel_requests(self, request_ids: list[str]) -> bool:
        """Best-effort cancel; False (and a warning) if EC2 refused."""
        try:
            await self._call("cancel_spot_instance_requests", SpotInstanceRequestIds=request_ids)
        except ProviderError as e:
            self.log.warning(f"failed to cancel spot instance requests {request_ids}: {e}")
            return False
        return True

    async def _poll_sleep(self, deadline: Deadline | None) -> None:
        interval = self.engine.poll_interval
        if deadline is not None:
            interval = min(interval, deadline.remaining())
        await asyncio.sleep(interval)

    async def _describe_spot_requests(self, request_ids: list[str]) -> list[dict[str, Any]] | None:
        """Current state of ``request_ids``, or None if EC2 does not see them yet."""
        try:
            resp = await self._ec2.describe_spot_instance_requests(
                SpotInstanceRequestIds=request_ids
            )
        except ClientError as e:
            if _request_not_visible(e):
                self.log.trace("spot instance requests not yet ready")
                return None
            raise ProviderError("describe_spot_instance_requests", e) from e
        except BotoCoreError as e:
            raise ProviderError("describe_spot_instance_requests", e) from e
        return resp.get("SpotInstanceRequests", [])

    async def wait_for_spot_instance_requests(self, deadline: Deadline | None = None) -> None:
        """Poll until every outstanding spot request is resolved.

        Fulfilled requests become tracked instances; failed ones are logged
        and dropped. Returns once the requests are fulfilled, not once the
        instances are reachable.

        Raises:
            LaunchTimeoutError: If ``deadline`` expires first. Outstanding
                requests are cancelled before raising.
            ProviderError: On any describe failure other than a request not
                being visible yet.
        """
        if not self._outstanding:
            return

        request_ids = list(self._outstanding)
        self.log.debug("waiting for instances to spawn")

        while True:
            self.log.trace("checking spot request status")
            requests = await self._describe_spot_requests(request_ids)
            if requests is not None and not any(_is_pending(r) for r in requests):
                self._resolve(requests)
                return

            if deadline is not None and deadline.expired():
                self.log.warning("wait time exceeded -- cancelling run")
                await self._cancel_outstanding(request_ids, settle=self._settle_delay())
                raise LaunchTimeoutError("spot-requests", deadline.elapsed())

            await self._poll_sleep(deadline)

    def _resolve(self, requests: list[dict[str, Any]]) -> None:
        for request in requests:
            request_id = request.get("SpotInstanceRequestId")
            entry = self._outstanding.pop(request_id, None)
            if entry is None:
                continue
            nickname, m = entry
            if request.get("State") == "active":
                instance_id = request["InstanceId"]
                self.log.trace(f"spot request satisfied: {nickname} is {instance_id}")
                self._instances[instance_id] = InstanceRecord(nickname, m.setup)
            else:
                self.log.error(
                    f"spot request {request_id} for {nickname} failed "
                    f"({request.get('State')}): {request.get('Status')}"
                )

        for request_id, (nickname, _) in self._outstanding.items():
            self.log.error(f"spot request {request_id} for {nickname} vanished")
        self._outstanding.clear()

    def _settle_delay(self) -> float:
        # settling must fit in the final poll interval
        return min(self.engine.cancel_settle_delay, self.engine.poll_interval / 2)

    async def _cancel_outstanding(self, request_ids: list[str], *, settle: float = 0.0) -> None:
        """Cancel requests and track any instance they already launched.

        Instances found this way are never set up, only terminated by
        ``cleanup``. The outstanding map is empty afterwards.
        """
        await self._cancel_requests(request_ids)

        self.log.trace("spot instances cancelled -- gathering remaining instances")
        if settle > 0:
            # let requests fulfilled just before the cancel reach their instance
            await asyncio.sleep(settle)

        try:
            requests = await self._describe_spot_requests(request_ids) or []
        except ProviderError as e:
            self.log.warning(f"could not describe cancelled spot requests: {e}")
            requests = []

        for request in requests:
            request_id = request.get("SpotInstanceRequestId")
            instance_id = request.get("InstanceId")
            entry = self._outstanding.get(request_id)
            if instance_id and entry is not None:
                self.log.trace(f"spot request {request_id} cancelled after launching {instance_id}")
                self._instances[instance_id] = InstanceRecord(entry[0], entry[1].setup)
            else:
                self.log.error(f"spot request {request_id} failed: {request.get('Status')}")
        self._outstanding.clear()

    # -------------------------------------------------------------------------
    # Readiness
    # -------------------------------------------------------------------------

    async def wait_for_instances(self, deadline: Deadline | None = None) -> None:
        """Poll until every tracked instance is reachable and set up.

        Each instance that becomes ready is connected to over SSH and its
        setup procedure is run. The first SSH or setup failure aborts the
        wait; instances already set up stay up.

        Raises:
            ConnectivityError: If SSH to a ready instance fails.
            SetupError: If a setup procedure fails.
            LaunchTimeoutError: If ``deadline`` expires first.
            ProviderError: If describing instances fails.
        """
        self.log.debug("waiting for instances to become ready")
        while True:
            waiting = [iid for iid, rec in self._instances.items() if rec.address is None]
            if not waiting:
                return

            for instance in await self._describe_instances(waiting):
                record = self._instances.get(instance.get("InstanceId", ""))
                if record is None or record.address is not None or not _is_ready(instance):
                    continue
                await self._bring_up(record, instance, deadline)

            if all(rec.address is not None for rec in self._instances.values()):
                return
            if deadline is not None and deadline.expired():
                raise LaunchTimeoutError("instances", deadline.elapsed())

            await self._poll_sleep(deadline)

    async def _describe_instances(self, instance_ids: list[str]) -> list[dict[str, Any]]:
        try:
            resp = await self._ec2.describe_instances(InstanceIds=instance_ids)
        except ClientError as e:
            if _error_code(e) == "InvalidInstanceID.NotFound":
                self.log.trace("instances not visible yet")
                return []
            raise ProviderError("describe_instances", e) from e
        except BotoCoreError as e:
            raise ProviderError("describe_instances", e) from e
        return [
            instance
            for reservation in resp.get("Reservations", [])
            for instance in reservation.get("Instances", [])
        ]

    async def _bring_up(
        self,
        record: InstanceRecord,
        instance: dict[str, Any],
        deadline: Deadline | None,
    ) -> None:
        public_ip = instance["PublicIpAddress"]
        public_dns = instance["PublicDnsName"]
        self.log.trace(f"instance {instance['InstanceId']} ready at {public_ip}")

        session = await connect_machine(
            self._connect,
            self.log,
            record.nickname,
            self.username,
            (public_ip, self.engine.ssh_port),
            self.private_key_path,
            deadline,
            self.engine.connect_wait,
        )
        record.address = (public_ip, public_dns)
        record.private_ip = instance.get("PrivateIpAddress")
        try:
            await run_setup(self.log, record.nickname, session, record.setup, public_ip)
        finally:
            await session.close()

    # -------------------------------------------------------------------------
    # Connections
    # -------------------------------------------------------------------------

    async def _open(self, record: InstanceRecord) -> Machine:
        if record.address is None:
            raise ConnectivityError(record.nickname, "<no address>", "machine never became ready")
        public_ip, public_dns = record.address
        session = await connect_machine(
            self._connect,
            self.log,
            record.nickname,
            self.username,
            (public_ip, self.engine.ssh_port),
            self.private_key_path,
            None,
            self.engine.connect_wait,
        )
        return Machine(
            nickname=record.nickname,
            public_dns=public_dns,
            public_ip=public_ip,
            private_ip=record.private_ip,
            ssh=session,
        )

    async def connect_all(self) -> dict[str, Machine]:
        """Open a fresh session to every ready instance, keyed by nickname.

        Instances that never became ready are left out.
        """
        machines: dict[str, Machine] = {}
        try:
            for record in self._instances.values():
                if record.address is not None:
                    machines[record.nickname] = await self._open(record)
        except BaseException:
            for machine in machines.values():
                await machine.close()
            raise
        return machines

    async def connect(self, nickname: str) -> Machine:
        """Open a session to one machine.

        Raises:
            ConfigurationError: If no machine is called ``nickname``.
            ConnectivityError: If the machine never became ready, or SSH fails.
        """
        for record in self._instances.values():
            if record.nickname != nickname:
                continue
            if record.address is None:
                raise ConnectivityError(nickname, "<no address>", "machine never became ready")
            return await self._open(record)
        raise ConfigurationError(f"No machine named {nickname} in {self.region}")

    # -------------------------------------------------------------------------
    # Teardown
    # -------------------------------------------------------------------------

    async def cleanup(self) -> None:
        """Release everything allocated in this region. Never raises.

        Each step runs even if an earlier one failed, and each one forgets
        what it released, so calling this twice is harmless.
        """
        if self._ec2 is not None:
            if self._outstanding:
                # requests left open by a failed launch; may already own instances
                await self._cancel_outstanding(list(self._outstanding))
            await self._terminate_instances()
            self.log.debug("cleaning up temporary resources")
            await self._delete_security_group()
            await self._delete_key_pair()
        self._outstanding.clear()
        await self._close_client()
        self._remove_private_key()

    async def _terminate_instances(self) -> None:
        if not self._instances:
            return
        instance_ids = list(self._instances)
        self._instances.clear()
        self.log.info(f"terminating {len(instance_ids)} instance(s)")

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.engine.terminate_attempts),
            wait=wait_fixed(self.engine.terminate_wait),
            retry=retry_if_exception(_is_transient),
            before_sleep=lambda _: self.log.trace("retrying instance termination"),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    await self._ec2.terminate_instances(InstanceIds=instance_ids)
        except Exception as e:
            self.log.warning(f"failed to terminate flotilla instances {instance_ids}: {e}")

    async def _delete_security_group(self) -> None:
        if not self.security_group_id:
            return
        group_id, self.security_group_id = self.security_group_id, None
        self.log.trace(f"cleaning up temporary security group {group_id}")
        try:
            await self._ec2.delete_security_group(GroupId=group_id)
        except Exception as e:
            # EC2 refuses while the group's instances are still shutting down
            self.log.warning(f"failed to clean up temporary security group {group_id}: {e}")

    async def _delete_key_pair(self) -> None:
        if not self.key_name:
            return
        key_name, self.key_name = self.key_name, None
        self.log.trace(f"cleaning up temporary keypair {key_name}")
        try:
            await self._ec2.delete_key_pair(KeyName=key_name)
        except Exception as e:
            self.log.warning(f"failed to clean up temporary SSH key {key_name}: {e}")

    async def _close_client(self) -> None:
        self._ec2 = None
        try:
            await self._stack.aclose()
        except Exception as e:
            self.log.warning(f"failed to close EC2 client for {self.region}: {e}")

    def _remove_private_key(self) -> None:
        if self.private_key_path is None:
            return
        path, self.private_key_path = self.private_key_path, None
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            self.log.warning(f"failed to remove private key {path}: {e}")


__all__ = [
    "AWSRegion",
    "InstanceRecord",
    "TRANSIENT_TERMINATE_ERRORS",
    "MAX_BLOCK_DURATION_MINUTES",
]
