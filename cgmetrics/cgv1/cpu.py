"""Metrics and limits of the cgroups v1 ``cpu`` controller."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Union

from cgmetrics.cgcommon import parse_cgroup_param_key_value, parse_uint_from_file

PathLike = Union[str, os.PathLike]


@dataclass
class RT:
    """Real-time scheduler tunables, in microseconds."""

    period: int = 0
    runtime: int = 0


@dataclass
class CFS:
    """Completely fair scheduler tunables."""

    period_micros: int = 0
    quota_micros: int = 0
    shares: int = 0


@dataclass
class ThrottledField:
    """Throttling time and the number of throttled periods."""

    us: int = 0
    periods: int = 0


@dataclass
class CPUStats:
    """How far the cgroup's CPU usage was throttled."""

    periods: int = 0
    throttled: ThrottledField = field(default_factory=ThrottledField)


@dataclass
class CPUSubsystem:
    """Data from the ``cpu`` controller of one cgroup."""

    id: str = ""
    path: str = ""
    cfs: CFS = field(default_factory=CFS)
    rt: RT = field(default_factory=RT)
    stats: CPUStats = field(default_factory=CPUStats)

    def get(self, path: PathLike) -> None:
        """Read the controller files found in the cgroup directory ``path``."""
        self.cfs = read_cfs(path)
        self.rt = read_rt(path)
        self.stats = read_stats(path)


def read_cfs(path: PathLike) -> CFS:
    """Read the CFS period, quota and shares."""
    return CFS(
        period_micros=parse_uint_from_file(path, "cpu.cfs_period_us"),
        quota_micros=parse_uint_from_file(path, "cpu.cfs_quota_us"),
        shares=parse_uint_from_file(path, "cpu.shares"),
    )


def read_rt(path: PathLike) -> RT:
    """Read the real-time scheduler period and runtime."""
    return RT(
        period=parse_uint_from_file(path, "cpu.rt_period_us"),
        runtime=parse_uint_from_file(path, "cpu.rt_runtime_us"),
    )


def read_stats(path: PathLike) -> CPUStats:
    """Read ``cpu.stat``; a missing file yields empty stats."""
    try:
        with open(os.path.join(path, "cpu.stat"), encoding="utf-8") as handle:
            content = handle.read()
    except FileNotFoundError:
        return CPUStats()

    stats = CPUStats()
    for line in content.splitlines():
        key, value = parse_cgroup_param_key_value(line)
        if key == "nr_periods":
            stats.periods = value
        elif key == "nr_throttled":
            stats.throttled.periods = value
        elif key == "throttled_time":
            stats.throttled.us = value
    return stats