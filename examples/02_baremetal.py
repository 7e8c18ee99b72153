"""Run a command on a machine you already have.

Nothing is provisioned or torn down; flotilla only finds an address that
accepts SSH and runs the setup there.
"""

import asyncio
import sys

from flotilla import FleetBuilder
from flotilla.providers.baremetal import BareMetalLauncher, BareMetalSetup


async def main(addresses: list[str]) -> None:
    box = BareMetalSetup.new(addresses).with_key_path("~/.ssh/id_ed25519")

    fleet = FleetBuilder().add("box", box).timeout(60).use_term_logger()
    async with BareMetalLauncher() as bare:
        await fleet.spawn(bare)
        machines = await bare.connect_all()
        out, _ = await machines["box"].ssh.run("uname -a")
        print(out)
        await machines["box"].close()


if __name__ == "__main__":
    asyncio.run(main(sys.argv[1:] or ["localhost"]))
