"""Flotilla - short-lived cloud machines for experiments.

Example:

    from flotilla import FleetBuilder
    from flotilla.providers.aws import AWSLauncher, MachineSetup

    async def install(ssh, log):
        await ssh.run("sudo apt-get update && sudo apt-get install -y iperf3")

    fleet = FleetBuilder()
    fleet.add("server", MachineSetup().with_setup(install))
    fleet.add("client", MachineSetup().with_setup(install))
    fleet.timeout(600)

    async with AWSLauncher() as aws:
        await fleet.spawn(aws)
        machines = await aws.connect_all()
        await machines["server"].ssh.run("iperf3 -s -D")
        out, _ = await machines["client"].ssh.run(f"iperf3 -c {machines['server'].private_ip}")
"""

# Fleet assembly
from flotilla.builder import FleetBuilder

# Configuration
from flotilla.config import (
    AWSConfig,
    AzureConfig,
    Config,
    EngineConfig,
    create_launcher,
    load_config,
)
from flotilla.deadline import Deadline

# Errors
from flotilla.errors import (
    CommandError,
    ConfigurationError,
    ConnectivityError,
    FlotillaError,
    LaunchTimeoutError,
    ProviderError,
    SetupError,
)

# Logging
from flotilla.logging import LogConfig, setup_logging, teardown_logging

# Machines and sessions
from flotilla.machine import Machine

# Launcher interface
from flotilla.providers.base import (
    LaunchDescriptor,
    Launcher,
    MachineSetup,
    make_multiple,
    merge_connections,
)
from flotilla.ssh import Session

__version__ = "0.1.0"

__all__ = [
    "FleetBuilder",
    "AWSConfig",
    "AzureConfig",
    "Config",
    "EngineConfig",
    "create_launcher",
    "load_config",
    "Deadline",
    "CommandError",
    "ConfigurationError",
    "ConnectivityError",
    "FlotillaError",
    "LaunchTimeoutError",
    "ProviderError",
    "SetupError",
    "LogConfig",
    "setup_logging",
    "teardown_logging",
    "Machine",
    "LaunchDescriptor",
    "Launcher",
    "MachineSetup",
    "make_multiple",
    "merge_connections",
    "Session",
]
