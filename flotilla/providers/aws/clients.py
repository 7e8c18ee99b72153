"""EC2 client factories.

Engines never construct clients themselves; they receive a factory, which
makes it trivial to hand them an in-memory fake in tests.
"""

from __future__ import annotations

from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from functools import cache
from typing import Any

import aioboto3
import botocore.session

from flotilla.errors import ConfigurationError

# =============================================================================
# Factory types
# =============================================================================

type SessionFactory = Callable[[], aioboto3.Session]
"""Returns the aioboto3 session (and so the credentials) to use."""

type EC2ClientFactory = Callable[[str], AbstractAsyncContextManager[Any]]
"""Given a region name, returns an async context manager yielding an EC2 client."""


def default_session_factory(profile: str | None = None) -> SessionFactory:
    """Credentials from the default AWS chain, or from a named profile."""

    def factory() -> aioboto3.Session:
        return aioboto3.Session(profile_name=profile) if profile else aioboto3.Session()

    return factory


def ec2_client_factory(session_factory: SessionFactory) -> EC2ClientFactory:
    def factory(region: str) -> AbstractAsyncContextManager[Any]:
        return session_factory().client("ec2", region_name=region)

    return factory


# =============================================================================
# Region validation
# =============================================================================


@cache
def known_ec2_regions() -> frozenset[str]:
    return frozenset(botocore.session.get_session().get_available_regions("ec2"))


def validate_region(region: str) -> None:
    """Raise ConfigurationError if botocore does not know ``region`` for EC2."""
    if region not in known_ec2_regions():
        raise ConfigurationError(f"Unknown EC2 region: {region}")


__all__ = [
    "SessionFactory",
    "EC2ClientFactory",
    "default_session_factory",
    "ec2_client_factory",
    "known_ec2_regions",
    "validate_region",
]
