"""Metrics of the cgroups v1 ``cpuacct`` controller."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Union

from cgmetrics.cgcommon import (
    CPUUsage,
    parse_cgroup_param_key_value,
    parse_uint,
    parse_uint_from_file,
)

PathLike = Union[str, os.PathLike]

_NANOS_PER_SECOND = 1_000_000_000


def _clock_ticks() -> int:
    try:
        ticks = os.sysconf("SC_CLK_TCK")
    except (AttributeError, ValueError, OSError):
        return 100
    return ticks if ticks > 0 else 100


CLOCK_TICKS = _clock_ticks()


@dataclass
class CPUAccountingStats:
    """User and system CPU time reported by ``cpuacct.stat``."""

    user: CPUUsage = field(default_factory=CPUUsage)
    system: CPUUsage = field(default_factory=CPUUsage)


@dataclass
class CPUAccountingSubsystem:
    """Data from the ``cpuacct`` controller of one cgroup.

    Percentages are not read from the cgroup; they are derived later.
    """

    id: str = ""
    path: str = ""
    total: CPUUsage = field(default_factory=CPUUsage)
    usage_per_cpu: dict[str, int] = field(default_factory=dict)
    stats: CPUAccountingStats = field(default_factory=CPUAccountingStats)

    def get(self, path: PathLike) -> None:
        """Read the controller files found in the cgroup directory ``path``."""
        self.usage_per_cpu = {}
        self.stats = read_stat(path)
        self.total.ns = read_usage(path)
        self.usage_per_cpu = read_usage_per_cpu(path)


def convert_jiffies_to_nanos(jiffies: int) -> int:
    """Convert clock ticks to nanoseconds."""
    return (jiffies * _NANOS_PER_SECOND) // CLOCK_TICKS


def read_stat(path: PathLike) -> CPUAccountingStats:
    """Read ``cpuacct.stat``; a missing file yields empty stats."""
    try:
        with open(os.path.join(path, "cpuacct.stat"), encoding="utf-8") as handle:
            content = handle.read()
    except FileNotFoundError:
        return CPUAccountingStats()

    stats = CPUAccountingStats()
    for line in content.splitlines():
        key, value = parse_cgroup_param_key_value(line)
        if key == "user":
            stats.user.ns = convert_jiffies_to_nanos(value)
        elif key == "system":
            stats.system.ns = convert_jiffies_to_nanos(value)
    return stats


def read_usage(path: PathLike) -> int:
    """Read the total CPU time in nanoseconds from ``cpuacct.usage``."""
    return parse_uint_from_file(path, "cpuacct.usage")


def read_usage_per_cpu(path: PathLike) -> dict[str, int]:
    """Read per-CPU usage, keyed by CPU number starting at "1"."""
    try:
        with open(os.path.join(path, "cpuacct.usage_percpu"), "rb") as handle:
            contents = handle.read()
    except FileNotFoundError:
        return {}

    return {
        str(number): parse_uint(usage)
        for number, usage in enumerate(contents.split(), start=1)
    }