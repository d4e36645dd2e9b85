"""Combined per-cgroup statistics for cgroups v1 and v2."""

from __future__ import annotations

import enum
import os
from dataclasses import dataclass
from typing import Optional, Union

from cgmetrics.cgv1.blkio import BlockIOSubsystem
from cgmetrics.cgv1.cpu import CPUSubsystem as V1CPUSubsystem
from cgmetrics.cgv1.cpuacct import CPUAccountingSubsystem
from cgmetrics.cgv1.memory import MemorySubsystem as V1MemorySubsystem
from cgmetrics.cgv2.cpu import CPUSubsystem as V2CPUSubsystem
from cgmetrics.cgv2.io import IOSubsystem
from cgmetrics.cgv2.memory import MemorySubsystem as V2MemorySubsystem

PathLike = Union[str, os.PathLike]

BLKIO = "blkio"
CPUACCT = "cpuacct"
CPU = "cpu"
IO = "io"
MEMORY = "memory"


class CgroupsVersion(enum.IntEnum):
    """The cgroups version a process is attached to."""

    V1 = 1
    V2 = 2


@dataclass
class StatsV1:
    """Metrics and limits from each cgroups v1 controller of a process."""

    id: str = ""
    path: str = ""
    cpu: Optional[V1CPUSubsystem] = None
    cpu_accounting: Optional[CPUAccountingSubsystem] = None
    memory: Optional[V1MemorySubsystem] = None
    block_io: Optional[BlockIOSubsystem] = None
    version: CgroupsVersion = CgroupsVersion.V1

    def cg_version(self) -> CgroupsVersion:
        """The cgroups version these stats come from."""
        return CgroupsVersion.V1


@dataclass
class StatsV2:
    """Metrics and limits from each cgroups v2 controller of a process."""

    id: str = ""
    path: str = ""
    cpu: Optional[V2CPUSubsystem] = None
    memory: Optional[V2MemorySubsystem] = None
    io: Optional[IOSubsystem] = None
    version: CgroupsVersion = CgroupsVersion.V2

    def cg_version(self) -> CgroupsVersion:
        """The cgroups version these stats come from."""
        return CgroupsVersion.V2


def _path_base(path: str) -> str:
    if not path:
        return "."
    stripped = path.rstrip("/")
    if not stripped:
        return "/"
    return stripped.rsplit("/", 1)[-1]


def _fetch(subsystem, label: str, *args) -> None:
    try:
        subsystem.get(*args)
    except ValueError as exc:
        raise ValueError(f"error fetching {label} stats: {exc}") from exc


def collect_v1_controller(
    stats: StatsV1, name: str, full_path: PathLike, controller_path: str
) -> None:
    """Read the v1 controller ``name`` at ``full_path`` into ``stats``.

    Controllers without a reader are ignored.
    """
    cgroup_id = _path_base(controller_path)
    if name == BLKIO:
        subsystem = BlockIOSubsystem()
        _fetch(subsystem, "BlockIO", full_path)
        stats.block_io = subsystem
    elif name == CPU:
        subsystem = V1CPUSubsystem()
        _fetch(subsystem, "cpu", full_path)
        stats.cpu = subsystem
    elif name == CPUACCT:
        subsystem = CPUAccountingSubsystem()
        _fetch(subsystem, "cpuacct", full_path)
        stats.cpu_accounting = subsystem
    elif name == MEMORY:
        subsystem = V1MemorySubsystem()
        _fetch(subsystem, "memory", full_path)
        stats.memory = subsystem
    else:
        return
    subsystem.id = cgroup_id
    subsystem.path = controller_path


def collect_v2_controller(
    stats: StatsV2, name: str, full_path: PathLike, controller_path: str
) -> None:
    """Read the v2 controller ``name`` at ``full_path`` into ``stats``.

    Controllers without a reader are ignored.
    """
    cgroup_id = _path_base(controller_path)
    if name == CPU:
        subsystem = V2CPUSubsystem()
        _fetch(subsystem, "CPU", full_path)
        stats.cpu = subsystem
    elif name == MEMORY:
        subsystem = V2MemorySubsystem()
        _fetch(subsystem, "Memory", full_path)
        stats.memory = subsystem
    elif name == IO:
        subsystem = IOSubsystem()
        _fetch(subsystem, "IO", full_path, True)
        stats.io = subsystem
    else:
        return
    subsystem.id = cgroup_id
    subsystem.path = controller_path