"""Thin async wrapper around the Azure CLI (``az``).

Authentication is whatever ``az login`` left behind; nothing here handles
credentials.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any

from flotilla.errors import CommandError

AZ = "az"


async def run(*args: str, binary: str = AZ) -> str:
    """Run ``az <args>`` and return its stripped stdout.

    Raises:
        CommandError: If the command exits with a non-zero status.
    """
    proc = await asyncio.create_subprocess_exec(
        binary, *args,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    stdout, stderr = await proc.communicate()
    if proc.returncode != 0:
        cmd = f"{binary} {' '.join(args)}"
        raise CommandError(cmd, proc.returncode, stderr.decode(errors="replace"))
    return stdout.decode().strip()


async def run_json(*args: str, binary: str = AZ) -> Any:
    out = await run(*args, "--output", "json", binary=binary)
    return json.loads(out)


__all__ = ["AZ", "run", "run_json"]
