"""Metrics and limits of the cgroups v1 ``memory`` controller."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Union

from cgmetrics.cgcommon import parse_cgroup_param_key_value, parse_uint_from_file

PathLike = Union[str, os.PathLike]

# Keys of ``memory.stat`` and the MemoryStat attribute each one fills.
_STAT_KEYS = {
    "cache": "cache",
    "rss": "rss",
    "rss_huge": "rss_huge",
    "mapped_file": "mapped_file",
    "pgpgin": "pages_in",
    "pgpgout": "pages_out",
    "pgfault": "page_faults",
    "pgmajfault": "major_page_faults",
    "swap": "swap",
    "active_anon": "active_anon",
    "inactive_anon": "inactive_anon",
    "active_file": "active_file",
    "inactive_file": "inactive_file",
    "unevictable": "unevictable",
    "hierarchical_memory_limit": "hierarchical_memory_limit",
    "hierarchical_memsw_limit": "hierarchical_memsw_limit",
}


@dataclass
class MemSubsystemUsage:
    """Current and peak usage in bytes."""

    bytes: int = 0
    max: int = 0


@dataclass
class MemoryData:
    """Usage, limit and failure count of one memory counter family."""

    usage: MemSubsystemUsage = field(default_factory=MemSubsystemUsage)
    limit: int = 0
    failures: int = 0


@dataclass
class MemoryStat:
    """Statistics from ``memory.stat``; sizes are in bytes."""

    cache: int = 0
    rss: int = 0
    rss_huge: int = 0
    mapped_file: int = 0
    pages_in: int = 0
    pages_out: int = 0
    page_faults: int = 0
    major_page_faults: int = 0
    swap: int = 0
    active_anon: int = 0
    inactive_anon: int = 0
    active_file: int = 0
    inactive_file: int = 0
    unevictable: int = 0
    hierarchical_memory_limit: int = 0
    hierarchical_memsw_limit: int = 0


@dataclass
class MemorySubsystem:
    """Data from the ``memory`` controller of one cgroup."""

    id: str = ""
    path: str = ""
    mem: MemoryData = field(default_factory=MemoryData)
    mem_swap: MemoryData = field(default_factory=MemoryData)
    kernel: MemoryData = field(default_factory=MemoryData)
    kernel_tcp: MemoryData = field(default_factory=MemoryData)
    stats: MemoryStat = field(default_factory=MemoryStat)

    def get(self, path: PathLike) -> None:
        """Read the controller files found in the cgroup directory ``path``."""
        for attr, prefix, label in (
            ("mem", "memory", "memory"),
            ("mem_swap", "memory.memsw", "memsw"),
            ("kernel", "memory.kmem", "kmem"),
            ("kernel_tcp", "memory.kmem.tcp", "kmem.tcp"),
        ):
            try:
                setattr(self, attr, read_memory_data(path, prefix))
            except ValueError as exc:
                raise ValueError(f"error fetching {label} stats: {exc}") from exc

        try:
            self.stats = read_memory_stats(path)
        except ValueError as exc:
            raise ValueError(f"error fetching memory.stat metrics: {exc}") from exc


def _read_counter(path: PathLike, name: str) -> int:
    try:
        return parse_uint_from_file(path, name)
    except ValueError as exc:
        raise ValueError(f"error fetching {name.rsplit('.', 1)[-1]}: {exc}") from exc


def read_memory_data(path: PathLike, prefix: str) -> MemoryData:
    """Read the ``<prefix>.*`` usage, limit and failure counters."""
    return MemoryData(
        usage=MemSubsystemUsage(
            bytes=_read_counter(path, prefix + ".usage_in_bytes"),
            max=_read_counter(path, prefix + ".max_usage_in_bytes"),
        ),
        limit=_read_counter(path, prefix + ".limit_in_bytes"),
        failures=_read_counter(path, prefix + ".failcnt"),
    )


def read_memory_stats(path: PathLike) -> MemoryStat:
    """Read ``memory.stat``; a missing file yields empty stats."""
    try:
        with open(os.path.join(path, "memory.stat"), encoding="utf-8") as handle:
            content = handle.read()
    except FileNotFoundError:
        return MemoryStat()

    stats = MemoryStat()
    for line in content.splitlines():
        key, value = parse_cgroup_param_key_value(line)
        attr = _STAT_KEYS.get(key)
        if attr is not None:
            setattr(stats, attr, value)
    return stats