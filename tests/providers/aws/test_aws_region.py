from __future__ import annotations

import stat
import time
from unittest.mock import AsyncMock

import pytest
from fakes import FakeEC2, client_error, fake_factory, pending, running

from flotilla.config import EngineConfig
from flotilla.deadline import Deadline
from flotilla.errors import (
    ConfigurationError,
    ConnectivityError,
    LaunchTimeoutError,
    ProviderError,
    SetupError,
)
from flotilla.providers.aws.region import AWSRegion, InstanceRecord
from flotilla.providers.aws.setup import MachineSetup


async def make_region(ec2_clients, log, engine, connect, region: str = "us-east-1") -> AWSRegion:
    return await AWSRegion.create(
        region, fake_factory(ec2_clients), log, engine=engine, connect=connect
    )


async def launch(aws: AWSRegion, machines, deadline: Deadline | None = None) -> None:
    await aws.make_spot_instance_requests(360, machines)
    await aws.wait_for_spot_instance_requests(deadline)
    await aws.wait_for_instances(deadline)


# =============================================================================
# Temporary resources
# =============================================================================


class TestCreate:
    @pytest.mark.asyncio
    async def test_allocates_security_group_and_key(self, ec2_clients, log, engine, connect):
        aws = await make_region(ec2_clients, log, engine, connect)
        client = ec2_clients["us-east-1"]

        [group] = client.calls_to("create_security_group")
        assert group["GroupName"].startswith("flotilla_security_")
        rules = [
            (r["IpProtocol"], r["FromPort"], r["ToPort"], r["CidrIp"])
            for r in client.calls_to("authorize_security_group_ingress")
        ]
        assert rules == [
            ("icmp", -1, -1, "0.0.0.0/0"),
            ("tcp", 0, 65535, "0.0.0.0/0"),
            ("udp", 0, 65535, "0.0.0.0/0"),
        ]
        assert aws.security_group_id == "sg-0123"
        assert aws.key_name is not None and aws.key_name.startswith("flotilla_key_")

        assert aws.private_key_path is not None
        assert "BEGIN RSA PRIVATE KEY" in aws.private_key_path.read_text()
        assert stat.S_IMODE(aws.private_key_path.stat().st_mode) == 0o600

        await aws.cleanup()

    @pytest.mark.asyncio
    async def test_unknown_region_rejected_before_connecting(self, ec2_clients, log, engine, connect):
        with pytest.raises(ConfigurationError):
            await make_region(ec2_clients, log, engine, connect, region="mars-north-1")
        assert ec2_clients == {}

    @pytest.mark.asyncio
    async def test_failure_releases_what_was_created(self, ec2_clients, log, engine, connect):
        client = ec2_clients["us-east-1"] = FakeEC2()
        client.failures["create_key_pair"] = [client_error("KeyPairLimitExceeded")]

        with pytest.raises(ProviderError) as exc:
            await make_region(ec2_clients, log, engine, connect)

        assert exc.value.operation == "create_key_pair"
        assert client.calls_to("delete_security_group") == [{"GroupId": "sg-0123"}]
        assert client.calls_to("delete_key_pair") == []
        assert client.closed


# =============================================================================
# Spot requests
# =============================================================================


class TestSpotRequests:
    @pytest.mark.asyncio
    async def test_batches_by_ami_and_instance_type(self, ec2_clients, log, engine, connect):
        aws = await make_region(ec2_clients, log, engine, connect)
        small = MachineSetup()
        large = MachineSetup().with_instance_type("c5.large")

        await aws.make_spot_instance_requests(
            120, [("a0", small), ("b0", large), ("a1", small)]
        )

        requests = ec2_clients["us-east-1"].calls_to("request_spot_instances")
        assert [(r["InstanceCount"], r["LaunchSpecification"]["InstanceType"]) for r in requests] == [
            (2, "t3.small"),
            (1, "c5.large"),
        ]
        for r in requests:
            assert r["Type"] == "one-time"
            assert r["BlockDurationMinutes"] == 120
            assert r["LaunchSpecification"]["ImageId"] == "ami-064a0193585662d74"
            assert r["LaunchSpecification"]["SecurityGroupIds"] == ["sg-0123"]
            assert r["LaunchSpecification"]["KeyName"] == aws.key_name

        assert aws.outstanding == {
            "sir-0": ("a0", small),
            "sir-1": ("a1", small),
            "sir-2": ("b0", large),
        }
        await aws.cleanup()

    @pytest.mark.asyncio
    async def test_duration_capped_at_six_hours(self, ec2_clients, log, engine, connect):
        aws = await make_region(ec2_clients, log, engine, connect)
        await aws.make_spot_instance_requests(24 * 60, [("a", MachineSetup())])

        [request] = ec2_clients["us-east-1"].calls_to("request_spot_instances")
        assert request["BlockDurationMinutes"] == 360
        await aws.cleanup()

    @pytest.mark.asyncio
    async def test_count_mismatch_is_an_error(self, ec2_clients, log, engine, connect):
        aws = await make_region(ec2_clients, log, engine, connect)
        ec2_clients["us-east-1"].returned_request_count = 1

        with pytest.raises(ProviderError, match="got 1 spot instance requests but expected 2"):
            await aws.make_spot_instance_requests(60, [("a", MachineSetup()), ("b", MachineSetup())])

        assert len(ec2_clients["us-east-1"].calls_to("request_spot_instances")) == 1
        assert ec2_clients["us-east-1"].calls_to("cancel_spot_instance_requests") == [
            {"SpotInstanceRequestIds": ["sir-0"]}
        ]
        assert aws.outstanding == {}
        await aws.cleanup()

    @pytest.mark.asyncio
    async def test_nickname_already_launched_is_rejected(self, ec2_clients, log, engine, connect):
        aws = await make_region(ec2_clients, log, engine, connect)
        await launch(aws, [("web", MachineSetup())])

        with pytest.raises(ConfigurationError, match="Duplicate machine name web"):
            await aws.make_spot_instance_requests(60, [("db", MachineSetup()), ("web", MachineSetup())])

        assert len(ec2_clients["us-east-1"].calls_to("request_spot_instances")) == 1
        assert aws.outstanding == {}
        await aws.cleanup()

    @pytest.mark.asyncio
    async def test_nickname_still_outstanding_is_rejected(self, ec2_clients, log, engine, connect):
        aws = await make_region(ec2_clients, log, engine, connect)
        await aws.make_spot_instance_requests(60, [("web", MachineSetup())])

        with pytest.raises(ConfigurationError):
            await aws.make_spot_instance_requests(60, [("web", MachineSetup())])

        assert list(aws.outstanding) == ["sir-0"]
        await aws.cleanup()

    @pytest.mark.asyncio
    async def test_missing_ami_rejected_before_any_request(self, ec2_clients, log, engine, connect):
        aws = await make_region(ec2_clients, log, engine, connect)
        no_ami = MachineSetup().with_region("us-east-1")

        with pytest.raises(ConfigurationError, match="no AMI"):
            await aws.make_spot_instance_requests(60, [("ok", MachineSetup()), ("broken", no_ami)])

        assert ec2_clients["us-east-1"].calls_to("request_spot_instances") == []
        await aws.cleanup()


class TestFulfillment:
    @pytest.mark.asyncio
    async def test_polls_until_open_requests_become_active(self, ec2_clients, log, engine, connect):
        aws = await make_region(ec2_clients, log, engine, connect)
        client = ec2_clients["us-east-1"]
        client.spot_resolver = lambda rid, tick: (
            ("open", None) if tick < 2 else ("active", rid.replace("sir-", "i-"))
        )
        await aws.make_spot_instance_requests(60, [("a", MachineSetup()), ("b", MachineSetup())])

        await aws.wait_for_spot_instance_requests(Deadline.after(5))

        assert len(client.calls_to("describe_spot_instance_requests")) == 3
        assert {iid: rec.nickname for iid, rec in aws.instances.items()} == {"i-0": "a", "i-1": "b"}
        assert all(rec.address is None for rec in aws.instances.values())
        assert aws.outstanding == {}
        await aws.cleanup()

    @pytest.mark.asyncio
    async def test_active_without_instance_is_still_pending(self, ec2_clients, log, engine, connect):
        aws = await make_region(ec2_clients, log, engine, connect)
        client = ec2_clients["us-east-1"]
        client.spot_resolver = lambda rid, tick: ("active", None if tick == 0 else "i-7")
        await aws.make_spot_instance_requests(60, [("a", MachineSetup())])

        await aws.wait_for_spot_instance_requests()

        assert len(client.calls_to("describe_spot_instance_requests")) == 2
        assert list(aws.instances) == ["i-7"]
        await aws.cleanup()

    @pytest.mark.asyncio
    async def test_failed_request_is_logged_and_dropped(self, ec2_clients, log, engine, connect):
        aws = await make_region(ec2_clients, log, engine, connect)
        ec2_clients["us-east-1"].spot_resolver = lambda rid, _: (
            ("failed", None) if rid == "sir-1" else ("active", "i-0")
        )
        await aws.make_spot_instance_requests(60, [("ok", MachineSetup()), ("doomed", MachineSetup())])

        await aws.wait_for_spot_instance_requests()

        assert [rec.nickname for rec in aws.instances.values()] == ["ok"]
        assert aws.outstanding == {}
        assert any("doomed" in call.args[0] for call in log.error.call_args_list)
        await aws.cleanup()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [
            client_error("InvalidSpotInstanceRequestID.NotFound", "not found"),
            client_error("Unknown", "The spot instance request ID 'sir-0' does not exist"),
        ],
    )
    async def test_not_yet_visible_requests_are_retried(self, ec2_clients, log, engine, connect, error):
        aws = await make_region(ec2_clients, log, engine, connect)
        client = ec2_clients["us-east-1"]
        client.failures["describe_spot_instance_requests"] = [error]
        await aws.make_spot_instance_requests(60, [("a", MachineSetup())])

        await aws.wait_for_spot_instance_requests(Deadline.after(5))

        assert len(client.calls_to("describe_spot_instance_requests")) == 2
        assert list(aws.instances) == ["i-0"]
        await aws.cleanup()

    @pytest.mark.asyncio
    async def test_other_describe_errors_are_fatal(self, ec2_clients, log, engine, connect):
        aws = await make_region(ec2_clients, log, engine, connect)
        ec2_clients["us-east-1"].failures["describe_spot_instance_requests"] = [
            client_error("UnauthorizedOperation", "not allowed")
        ]
        await aws.make_spot_instance_requests(60, [("a", MachineSetup())])

        with pytest.raises(ProviderError) as exc:
            await aws.wait_for_spot_instance_requests(Deadline.after(5))

        assert exc.value.operation == "describe_spot_instance_requests"
        await aws.cleanup()

    @pytest.mark.asyncio
    async def test_nothing_outstanding_returns_immediately(self, ec2_clients, log, engine, connect):
        aws = await make_region(ec2_clients, log, engine, connect)
        await aws.wait_for_spot_instance_requests(Deadline.after(0))
        assert ec2_clients["us-east-1"].calls_to("describe_spot_instance_requests") == []
        await aws.cleanup()


class TestFulfillmentTimeout:
    @pytest.mark.asyncio
    async def test_cancels_every_outstanding_request(self, ec2_clients, log, engine, connect):
        aws = await make_region(ec2_clients, log, engine, connect)
        client = ec2_clients["us-east-1"]
        client.spot_resolver = lambda rid, _: ("open", None)
        await aws.make_spot_instance_requests(
            60, [("a", MachineSetup()), ("b", MachineSetup().with_instance_type("m5.large"))]
        )

        with pytest.raises(LaunchTimeoutError) as exc:
            await aws.wait_for_spot_instance_requests(Deadline.after(0.05))

        assert exc.value.stage == "spot-requests"
        assert isinstance(exc.value, TimeoutError)
        assert client.calls_to("cancel_spot_instance_requests") == [
            {"SpotInstanceRequestIds": ["sir-0", "sir-1"]}
        ]
        assert aws.outstanding == {}
        assert aws.instances == {}
        await aws.cleanup()

    @pytest.mark.asyncio
    async def test_instances_launched_during_cancel_are_terminated_later(
        self, ec2_clients, log, engine, connect
    ):
        aws = await make_region(ec2_clients, log, engine, connect)
        client = ec2_clients["us-east-1"]
        client.spot_resolver = lambda rid, _: (
            ("cancelled", "i-late")
            if client.calls_to("cancel_spot_instance_requests")
            else ("open", None)
        )
        await aws.make_spot_instance_requests(60, [("a", MachineSetup())])

        with pytest.raises(LaunchTimeoutError):
            await aws.wait_for_spot_instance_requests(Deadline.after(0.05))

        assert list(aws.instances) == ["i-late"]
        await aws.cleanup()
        assert client.calls_to("terminate_instances") == [{"InstanceIds": ["i-late"]}]

    @pytest.mark.asyncio
    async def test_times_out_within_one_poll_interval_of_the_deadline(
        self, ec2_clients, log, connect
    ):
        engine = EngineConfig()
        aws = await make_region(ec2_clients, log, engine, connect)
        client = ec2_clients["us-east-1"]
        client.spot_resolver = lambda rid, _: ("open", None)
        await aws.make_spot_instance_requests(
            60, [("a", MachineSetup()), ("b", MachineSetup().with_instance_type("c5.large"))]
        )

        started = time.monotonic()
        with pytest.raises(LaunchTimeoutError):
            await aws.wait_for_spot_instance_requests(Deadline.after(2))
        took = time.monotonic() - started

        assert 2 <= took <= 2 + engine.poll_interval
        assert client.calls_to("cancel_spot_instance_requests") == [
            {"SpotInstanceRequestIds": ["sir-0", "sir-1"]}
        ]
        await aws.cleanup()

    @pytest.mark.asyncio
    async def test_cancel_failure_still_times_out(self, ec2_clients, log, engine, connect):
        aws = await make_region(ec2_clients, log, engine, connect)
        client = ec2_clients["us-east-1"]
        client.spot_resolver = lambda rid, _: ("open", None)
        client.failures["cancel_spot_instance_requests"] = [client_error("InternalError")]
        await aws.make_spot_instance_requests(60, [("a", MachineSetup())])

        with pytest.raises(LaunchTimeoutError):
            await aws.wait_for_spot_instance_requests(Deadline.after(0.02))

        assert aws.outstanding == {}
        log.warning.assert_called()
        await aws.cleanup()


# =============================================================================
# Readiness and bring-up
# =============================================================================


class TestReadiness:
    @pytest.mark.asyncio
    async def test_connects_and_runs_setup_once_running(self, ec2_clients, log, engine, connect):
        aws = await make_region(ec2_clients, log, engine, connect)
        client = ec2_clients["us-east-1"]
        client.instance_resolver = lambda iid, tick: pending(iid) if tick == 0 else running(iid)
        setup = AsyncMock()
        deadline = Deadline.after(5)

        await launch(aws, [("web", MachineSetup().with_setup(setup))], deadline)

        assert len(client.calls_to("describe_instances")) == 2
        connect.assert_awaited_once()
        args = connect.await_args.args
        assert args[1:] == ("ubuntu", ("203.0.113.10", 22), aws.private_key_path, deadline)

        session = setup.await_args.args[0]
        assert setup.await_args.args[1] is log
        session.close.assert_awaited_once()

        record = aws.instances["i-0"]
        assert record.address == ("203.0.113.10", "ec2-203-0-113-10.compute.amazonaws.com")
        assert record.private_ip == "10.0.0.10"
        await aws.cleanup()

    @pytest.mark.asyncio
    async def test_plain_function_setup(self, ec2_clients, log, engine, connect):
        aws = await make_region(ec2_clients, log, engine, connect)
        seen: list[str] = []

        await launch(aws, [("web", MachineSetup().with_setup(lambda ssh, _: seen.append(ssh.host)))])

        assert seen == ["203.0.113.10"]
        await aws.cleanup()

    @pytest.mark.asyncio
    async def test_running_without_dns_is_not_ready(self, ec2_clients, log, engine, connect):
        aws = await make_region(ec2_clients, log, engine, connect)
        client = ec2_clients["us-east-1"]
        client.instance_resolver = lambda iid, tick: running(iid, dns="" if tick == 0 else "host.example")

        await launch(aws, [("web", MachineSetup())])

        assert len(client.calls_to("describe_instances")) == 2
        connect.assert_awaited_once()
        assert aws.instances["i-0"].address == ("203.0.113.10", "host.example")
        await aws.cleanup()

    @pytest.mark.asyncio
    async def test_only_unready_instances_are_described(self, ec2_clients, log, engine, connect):
        aws = await make_region(ec2_clients, log, engine, connect)
        client = ec2_clients["us-east-1"]
        client.instance_resolver = lambda iid, tick: (
            running(iid) if iid == "i-0" or tick > 0 else pending(iid)
        )

        await launch(aws, [("a", MachineSetup()), ("b", MachineSetup())])

        described = [c["InstanceIds"] for c in client.calls_to("describe_instances")]
        assert described == [["i-0", "i-1"], ["i-1"]]
        await aws.cleanup()

    @pytest.mark.asyncio
    async def test_ssh_failure_names_the_machine(self, ec2_clients, log, engine):
        connect = AsyncMock(side_effect=OSError("connection refused"))
        aws = await make_region(ec2_clients, log, engine, connect)

        with pytest.raises(ConnectivityError) as exc:
            await launch(aws, [("web", MachineSetup())])

        assert exc.value.nickname == "web"
        assert exc.value.address == "203.0.113.10:22"
        assert aws.instances["i-0"].address is None
        await aws.cleanup()

    @pytest.mark.asyncio
    async def test_setup_failure_aborts_the_batch(self, ec2_clients, log, engine, connect):
        aws = await make_region(ec2_clients, log, engine, connect)
        boom = RuntimeError("apt-get failed")
        setup = AsyncMock(side_effect=boom)

        with pytest.raises(SetupError, match="setup procedure for web machine failed") as exc:
            await launch(aws, [("web", MachineSetup().with_setup(setup))])

        assert exc.value.nickname == "web"
        assert exc.value.__cause__ is boom
        setup.await_args.args[0].close.assert_awaited_once()
        assert aws.instances["i-0"].address is not None
        await aws.cleanup()

    @pytest.mark.asyncio
    async def test_times_out_when_instances_never_run(self, ec2_clients, log, engine, connect):
        aws = await make_region(ec2_clients, log, engine, connect)
        ec2_clients["us-east-1"].instance_resolver = lambda iid, _: pending(iid)

        with pytest.raises(LaunchTimeoutError) as exc:
            await launch(aws, [("web", MachineSetup())], Deadline.after(0.05))

        assert exc.value.stage == "instances"
        connect.assert_not_awaited()
        await aws.cleanup()

    @pytest.mark.asyncio
    async def test_describe_failure_is_a_provider_error(self, ec2_clients, log, engine, connect):
        aws = await make_region(ec2_clients, log, engine, connect)
        ec2_clients["us-east-1"].failures["describe_instances"] = [client_error("RequestLimitExceeded")]

        with pytest.raises(ProviderError) as exc:
            await launch(aws, [("web", MachineSetup())])

        assert exc.value.operation == "describe_instances"
        await aws.cleanup()

    @pytest.mark.asyncio
    async def test_instance_not_visible_yet_is_retried(self, ec2_clients, log, engine, connect):
        aws = await make_region(ec2_clients, log, engine, connect)
        ec2_clients["us-east-1"].failures["describe_instances"] = [
            client_error("InvalidInstanceID.NotFound")
        ]

        await launch(aws, [("web", MachineSetup())], Deadline.after(5))

        assert aws.instances["i-0"].address is not None
        await aws.cleanup()


# =============================================================================
# Connections
# =============================================================================


class TestConnections:
    @pytest.mark.asyncio
    async def test_connect_all_skips_unready_instances(self, ec2_clients, log, engine, connect):
        aws = await make_region(ec2_clients, log, engine, connect)
        await launch(aws, [("web", MachineSetup()), ("db", MachineSetup())])
        aws.instances["i-99"] = InstanceRecord("straggler", None)

        machines = await aws.connect_all()

        assert set(machines) == {"web", "db"}
        web = machines["web"]
        assert web.public_ip == "203.0.113.10"
        assert web.public_dns == "ec2-203-0-113-10.compute.amazonaws.com"
        assert web.ssh is not None
        await aws.cleanup()

    @pytest.mark.asyncio
    async def test_connect_all_opens_fresh_sessions(self, ec2_clients, log, engine, connect):
        aws = await make_region(ec2_clients, log, engine, connect)
        await launch(aws, [("web", MachineSetup())])
        before = connect.await_count

        first = await aws.connect_all()
        second = await aws.connect_all()

        assert connect.await_count == before + 2
        assert first["web"].ssh is not second["web"].ssh
        assert ec2_clients["us-east-1"].calls_to("terminate_instances") == []
        await aws.cleanup()

    @pytest.mark.asyncio
    async def test_connect_single_machine(self, ec2_clients, log, engine, connect):
        aws = await make_region(ec2_clients, log, engine, connect)
        await launch(aws, [("web", MachineSetup())])
        aws.instances["i-99"] = InstanceRecord("straggler", None)

        machine = await aws.connect("web")
        assert machine.nickname == "web"

        with pytest.raises(ConnectivityError):
            await aws.connect("straggler")
        with pytest.raises(ConfigurationError):
            await aws.connect("nobody")
        await aws.cleanup()

    @pytest.mark.asyncio
    async def test_opening_an_unready_record_is_a_connectivity_error(
        self, ec2_clients, log, engine, connect
    ):
        aws = await make_region(ec2_clients, log, engine, connect)

        with pytest.raises(ConnectivityError, match="never became ready") as exc:
            await aws._open(InstanceRecord("straggler", None))

        assert exc.value.nickname == "straggler"
        connect.assert_not_awaited()
        await aws.cleanup()


# =============================================================================
# Teardown
# =============================================================================


class TestCleanup:
    @pytest.mark.asyncio
    async def test_releases_everything(self, ec2_clients, log, engine, connect):
        aws = await make_region(ec2_clients, log, engine, connect)
        await launch(aws, [("a", MachineSetup()), ("b", MachineSetup())])
        key_path = aws.private_key_path
        key_name = aws.key_name

        await aws.cleanup()

        client = ec2_clients["us-east-1"]
        assert client.calls_to("terminate_instances") == [{"InstanceIds": ["i-0", "i-1"]}]
        assert client.calls_to("delete_security_group") == [{"GroupId": "sg-0123"}]
        assert client.calls_to("delete_key_pair") == [{"KeyName": key_name}]
        assert client.closed
        assert key_path is not None and not key_path.exists()

    @pytest.mark.asyncio
    async def test_cancels_requests_left_by_a_failed_launch(self, ec2_clients, log, engine, connect):
        aws = await make_region(ec2_clients, log, engine, connect)
        client = ec2_clients["us-east-1"]
        client.failures["request_spot_instances"] = [
            None,
            client_error("InsufficientInstanceCapacity"),
        ]

        with pytest.raises(ProviderError):
            await aws.make_spot_instance_requests(
                60, [("a", MachineSetup()), ("b", MachineSetup().with_instance_type("c5.large"))]
            )
        assert list(aws.outstanding) == ["sir-0"]

        await aws.cleanup()

        assert client.calls_to("cancel_spot_instance_requests") == [
            {"SpotInstanceRequestIds": ["sir-0"]}
        ]
        # the request was already fulfilled, so its instance goes too
        assert client.calls_to("terminate_instances") == [{"InstanceIds": ["i-0"]}]
        assert aws.outstanding == {}
        assert aws.instances == {}

    @pytest.mark.asyncio
    async def test_cancel_failure_does_not_stop_cleanup(self, ec2_clients, log, engine, connect):
        aws = await make_region(ec2_clients, log, engine, connect)
        client = ec2_clients["us-east-1"]
        client.spot_resolver = lambda rid, _: ("open", None)
        client.failures["cancel_spot_instance_requests"] = [client_error("InternalError")]
        await aws.make_spot_instance_requests(60, [("a", MachineSetup())])

        await aws.cleanup()

        log.warning.assert_called()
        assert client.calls_to("delete_security_group") == [{"GroupId": "sg-0123"}]
        assert client.closed
        assert aws.outstanding == {}

    @pytest.mark.asyncio
    async def test_idempotent(self, ec2_clients, log, engine, connect):
        aws = await make_region(ec2_clients, log, engine, connect)
        await launch(aws, [("a", MachineSetup())])

        await aws.cleanup()
        await aws.cleanup()

        client = ec2_clients["us-east-1"]
        assert len(client.calls_to("terminate_instances")) == 1
        assert len(client.calls_to("delete_security_group")) == 1
        assert len(client.calls_to("delete_key_pair")) == 1

    @pytest.mark.asyncio
    async def test_nothing_allocated(self, log, engine, connect):
        aws = AWSRegion("us-east-1", fake_factory({}), log, engine=engine, connect=connect)
        await aws.cleanup()
        await aws.cleanup()

    @pytest.mark.asyncio
    async def test_failing_steps_do_not_stop_the_others(self, ec2_clients, log, engine, connect):
        aws = await make_region(ec2_clients, log, engine, connect)
        await launch(aws, [("a", MachineSetup())])
        client = ec2_clients["us-east-1"]
        client.failures["terminate_instances"] = [client_error("UnauthorizedOperation")]
        client.failures["delete_security_group"] = [client_error("DependencyViolation")]
        key_path = aws.private_key_path

        await aws.cleanup()

        assert len(client.calls_to("terminate_instances")) == 1
        assert len(client.calls_to("delete_security_group")) == 1
        assert len(client.calls_to("delete_key_pair")) == 1
        assert log.warning.call_count >= 2
        assert key_path is not None and not key_path.exists()

    @pytest.mark.asyncio
    async def test_termination_retried_on_dropped_connection(self, ec2_clients, log, engine, connect):
        aws = await make_region(ec2_clients, log, engine, connect)
        await launch(aws, [("a", MachineSetup())])
        client = ec2_clients["us-east-1"]
        client.failures["terminate_instances"] = [
            ConnectionError("Connection reset by peer"),
            client_error("RequestError", "broken pipe"),
        ]

        await aws.cleanup()

        assert len(client.calls_to("terminate_instances")) == 3
        log.warning.assert_not_called()

    @pytest.mark.asyncio
    async def test_termination_retries_are_bounded(self, ec2_clients, log, engine, connect):
        aws = await make_region(ec2_clients, log, engine, connect)
        await launch(aws, [("a", MachineSetup())])
        client = ec2_clients["us-east-1"]
        client.failures["terminate_instances"] = [
            ConnectionError("Connection was closed") for _ in range(20)
        ]

        await aws.cleanup()

        assert len(client.calls_to("terminate_instances")) == engine.terminate_attempts
        assert len(client.calls_to("delete_key_pair")) == 1
