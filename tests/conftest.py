from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from fakes import FakeEC2, fake_session

from flotilla.config import EngineConfig


@pytest.fixture
def engine() -> EngineConfig:
    return EngineConfig(
        poll_interval=0.01,
        cancel_settle_delay=0.0,
        connect_wait=1.0,
        terminate_attempts=4,
        terminate_wait=0.0,
    )


@pytest.fixture
def ec2_clients() -> dict[str, FakeEC2]:
    return {}


@pytest.fixture
def connect() -> AsyncMock:
    """Connector that always succeeds, returning a fresh mock session."""

    async def _connect(log, username, addr, key_path=None, deadline=None, *, connect_wait=120.0):
        return fake_session(addr, username)

    return AsyncMock(side_effect=_connect)


@pytest.fixture
def log() -> MagicMock:
    log = MagicMock()
    log.bind.return_value = log
    return log
