"""Provider backends and the launcher interface they share."""

from flotilla.providers.base import (
    LaunchDescriptor,
    Launcher,
    MachineSetup,
    SetupFn,
    group_by_region,
    make_multiple,
    merge_connections,
)

__all__ = [
    "LaunchDescriptor",
    "Launcher",
    "MachineSetup",
    "SetupFn",
    "group_by_region",
    "make_multiple",
    "merge_connections",
]
