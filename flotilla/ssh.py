"""AsyncSSH-backed sessions to provisioned machines.

A freshly booted instance often refuses connections for a while (sshd not
up yet, key not yet injected), so ``Session.connect`` keeps retrying until
the launch deadline runs out.

Example:
    >>> session = await Session.connect(log, "ubuntu", ("10.0.0.1", 22), "/tmp/key", deadline)
    >>> stdout, stderr = await session.run("nproc")
    >>> await session.close()
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

import asyncssh
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_delay,
    wait_fixed,
)

from flotilla.deadline import Deadline, remaining
from flotilla.errors import CommandError

if TYPE_CHECKING:
    from loguru import Logger

type Address = tuple[str, int]

DEFAULT_CONNECT_WAIT = 120.0
"""Connect budget (seconds) when the caller has no deadline."""

_ATTEMPT_TIMEOUT = 10.0
_RETRY_DELAY = 1.0


@dataclass
class Session:
    """An established SSH connection to one machine."""

    host: str
    port: int
    username: str
    _conn: asyncssh.SSHClientConnection | None = field(default=None, repr=False)

    @classmethod
    async def connect(
        cls,
        log: Logger,
        username: str,
        addr: Address,
        key_path: str | Path | None = None,
        deadline: Deadline | None = None,
        *,
        connect_wait: float = DEFAULT_CONNECT_WAIT,
    ) -> Session:
        """Open a session, retrying until ``deadline`` (or ``connect_wait``) elapses.

        Raises:
            OSError / asyncssh.Error: the last connection error once the budget
                is spent.
        """
        host, port = addr
        budget = remaining(deadline, connect_wait)
        client_keys = [str(key_path)] if key_path is not None else ()

        @retry(
            stop=stop_after_delay(budget),
            wait=wait_fixed(_RETRY_DELAY),
            retry=retry_if_exception_type((OSError, asyncssh.Error, asyncio.TimeoutError)),
            reraise=True,
        )
        async def attempt() -> asyncssh.SSHClientConnection:
            log.trace(f"attempting ssh connection to {host}:{port}")
            return await asyncssh.connect(
                host,
                port=port,
                username=username,
                client_keys=client_keys or None,
                known_hosts=None,
                connect_timeout=min(_ATTEMPT_TIMEOUT, max(budget, 1.0)),
            )

        conn = await attempt()
        log.debug(f"ssh connected to {username}@{host}:{port}")
        return cls(host=host, port=port, username=username, _conn=conn)

    def _require_connection(self) -> asyncssh.SSHClientConnection:
        if self._conn is None:
            raise RuntimeError("Session is closed")
        return self._conn

    async def run(self, command: str, *, timeout: float | None = None) -> tuple[str, str]:
        """Run ``command`` and return ``(stdout, stderr)``.

        Raises:
            CommandError: If the command exits with a non-zero status.
        """
        conn = self._require_connection()
        result = await conn.run(command, check=False, timeout=timeout)
        stdout = _as_text(result.stdout)
        stderr = _as_text(result.stderr)
        if result.exit_status != 0:
            raise CommandError(command, result.exit_status, stderr)
        return stdout, stderr

    async def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._conn.wait_closed(), timeout=5.0)
            self._conn = None

    async def __aenter__(self) -> Session:
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.close()


def _as_text(data: str | bytes | None) -> str:
    match data:
        case None:
            return ""
        case bytes():
            return data.decode(errors="replace")
        case _:
            return data


class Connector(Protocol):
    """Signature of ``Session.connect``; engines accept any matching callable."""

    async def __call__(
        self,
        log: Logger,
        username: str,
        addr: Address,
        key_path: str | Path | None = None,
        deadline: Deadline | None = None,
        *,
        connect_wait: float = DEFAULT_CONNECT_WAIT,
    ) -> Session: ...


__all__ = ["Session", "Address", "Connector", "DEFAULT_CONNECT_WAIT"]
