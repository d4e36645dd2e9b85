"""Metrics of the cgroups v2 ``cpu`` controller, which also covers cpuacct."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional, Union

from cgmetrics.cgcommon import (
    CPUUsage,
    Pressure,
    get_pressure,
    parse_cgroup_param_key_value,
)

PathLike = Union[str, os.PathLike]


@dataclass
class ThrottledField:
    """Throttled time and periods; absent unless the controller is enabled."""

    us: Optional[int] = None
    periods: Optional[int] = None

    def is_zero(self) -> bool:
        """True when neither throttling value was read."""
        return self.us is None and self.periods is None


@dataclass
class CPUStats:
    """Counters from ``cpu.stat``."""

    throttled: ThrottledField = field(default_factory=ThrottledField)
    periods: Optional[int] = None
    usage: CPUUsage = field(default_factory=CPUUsage)
    user: CPUUsage = field(default_factory=CPUUsage)
    system: CPUUsage = field(default_factory=CPUUsage)


@dataclass
class CPUSubsystem:
    """Data from the ``cpu`` controller of one cgroup."""

    id: str = ""
    path: str = ""
    pressure: dict[str, Pressure] = field(default_factory=dict)
    stats: CPUStats = field(default_factory=CPUStats)

    def get(self, path: PathLike) -> None:
        """Read pressure and stats from the cgroup directory ``path``.

        Without a ``cpu.pressure`` file nothing further is read.
        """
        try:
            self.pressure = get_pressure(os.path.join(path, "cpu.pressure"))
        except FileNotFoundError:
            self.pressure = {}
            return
        except ValueError as exc:
            raise ValueError(f"error fetching Pressure data: {exc}") from exc

        try:
            self.stats = read_stats(path)
        except ValueError as exc:
            raise ValueError(f"error fetching CPU stat data: {exc}") from exc


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
        if key == "usage_usec":
            stats.usage.ns = value
        elif key == "user_usec":
            stats.user.ns = value
        elif key == "system_usec":
            stats.system.ns = value
        elif key == "nr_periods":
            stats.periods = value
        elif key == "nr_throttled":
            stats.throttled.periods = value
        elif key == "throttled_usec":
            stats.throttled.us = value
    return stats