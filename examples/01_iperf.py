"""Measure network throughput between two EC2 spot instances.

Spins up a server and a client in us-east-1, installs iperf3 on both,
runs a 10 second test over the private network and tears everything down.

    AWS credentials come from the default chain (env, ~/.aws, instance role).
"""

import asyncio

from flotilla import FleetBuilder
from flotilla.providers.aws import AWSLauncher, MachineSetup


async def install_iperf(ssh, log):
    log.info("installing iperf3")
    await ssh.run("sudo apt-get update -q && sudo apt-get install -y -q iperf3")


async def main() -> None:
    machine = MachineSetup().with_instance_type("c5.large").with_setup(install_iperf)

    fleet = FleetBuilder()
    fleet.add("server", machine).add("client", machine)
    fleet.timeout(600).use_term_logger()

    async with AWSLauncher().set_max_instance_duration(1) as aws:
        await fleet.spawn(aws)
        machines = await aws.connect_all()
        server, client = machines["server"], machines["client"]
        try:
            await server.ssh.run("iperf3 -s -D")
            out, _ = await client.ssh.run(f"iperf3 -c {server.private_ip} -t 10")
            print(out)
        finally:
            for m in machines.values():
                await m.close()


if __name__ == "__main__":
    asyncio.run(main())
