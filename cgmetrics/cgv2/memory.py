"""Metrics and limits of the cgroups v2 ``memory`` controller."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from typing import Optional, Union

from cgmetrics.cgcommon import (
    parse_cgroup_param_key_value,
    parse_uint,
    parse_uint_from_file,
)

PathLike = Union[str, os.PathLike]


def _stat(orig: str):
    """A MemoryStat counter read from the ``memory.stat`` key ``orig``."""
    return field(default=0, metadata={"orig": orig})


@dataclass
class Events:
    """Counters from a ``*.events`` file of the memory controller."""

    low: Optional[int] = None
    high: int = 0
    max: int = 0
    oom: Optional[int] = None
    oom_kill: Optional[int] = None
    fail: Optional[int] = None


@dataclass
class MemoryData:
    """Usage and limits of one memory counter family.

    ``high`` and ``max`` are None when unset or set to "max".
    """

    events: Events = field(default_factory=Events)
    usage: int = 0
    low: int = 0
    high: Optional[int] = None
    max: Optional[int] = None


@dataclass
class MemoryStat:
    """Detailed statistics from ``memory.stat``; sizes are in bytes."""

    anon: int = _stat("anon")
    file: int = _stat("file")
    kernel_stack: int = _stat("kernel_stack")
    page_tables: int = _stat("pagetables")
    per_cpu: int = _stat("percpu")
    sock: int = _stat("sock")
    shmem: int = _stat("shmem")
    file_mapped: int = _stat("file_mapped")
    file_dirty: int = _stat("file_dirty")
    file_writeback: int = _stat("file_writeback")
    swap_cached: int = _stat("swapcached")
    anon_thp: int = _stat("anon_thp")
    file_thp: int = _stat("file_thp")
    shmem_thp: int = _stat("shmem_thp")
    inactive_anon: int = _stat("inactive_anon")
    active_anon: int = _stat("active_anon")
    inactive_file: int = _stat("inactive_file")
    active_file: int = _stat("active_file")
    unevictable: int = _stat("unevictable")
    slab_reclaimable: int = _stat("slab_reclaimable")
    slab_unreclaimable: int = _stat("slab_unreclaimable")
    slab: int = _stat("slab")
    workingset_refault_anon: int = _stat("workingset_refault_anon")
    workingset_refault_file: int = _stat("workingset_refault_file")
    workingset_activate_anon: int = _stat("workingset_activate_anon")
    workingset_activate_file: int = _stat("workingset_activate_file")
    workingset_restore_anon: int = _stat("workingset_restore_anon")
    workingset_restore_file: int = _stat("workingset_restore_file")
    workingset_node_reclaim: int = _stat("workingset_nodereclaim")
    page_faults: int = _stat("pgfault")
    major_page_faults: int = _stat("pgmajfault")
    page_refill: int = _stat("pgrefill")
    page_scan: int = _stat("pgscan")
    page_steal: int = _stat("pgsteal")
    page_activate: int = _stat("pgactivate")
    page_deactivate: int = _stat("pgdeactivate")
    page_lazy_free: int = _stat("pglazyfree")
    page_lazy_freed: int = _stat("pglazyfreed")
    thp_fault_alloc: int = _stat("thp_fault_alloc")
    thp_collapse_alloc: int = _stat("thp_collapse_alloc")


_STAT_FIELDS = {f.metadata["orig"]: f.name for f in fields(MemoryStat)}


@dataclass
class MemorySubsystem:
    """Data from the ``memory`` controller of one cgroup."""

    id: str = ""
    path: str = ""
    mem: MemoryData = field(default_factory=MemoryData)
    mem_swap: MemoryData = field(default_factory=MemoryData)
    stats: MemoryStat = field(default_factory=MemoryStat)

    def get(self, path: PathLike) -> None:
        """Read the controller files found in the cgroup directory ``path``."""
        try:
            self.mem = read_memory_data(path, "memory")
        except ValueError as exc:
            raise ValueError(f"error reading memory stats: {exc}") from exc

        try:
            self.mem_swap = read_memory_data(path, "memory.swap")
        except ValueError as exc:
            raise ValueError(f"error reading memory.swap stats: {exc}") from exc

        try:
            self.stats = read_memory_stat(path)
        except ValueError as exc:
            raise ValueError(f"error fetching memory.stat: {exc}") from exc


def read_memory_data(path: PathLike, file: str) -> MemoryData:
    """Read the ``<file>.low/.high/.max/.current/.events`` files.

    Root cgroups lack these files; without ``<file>.high`` nothing is read.
    """
    try:
        os.stat(os.path.join(path, file + ".high"))
    except FileNotFoundError:
        return MemoryData()
    except OSError:
        pass

    try:
        low = parse_uint_from_file(path, file + ".low")
    except ValueError as exc:
        raise ValueError(f"error reading {file}.low file: {exc}") from exc

    try:
        high = max_or_value(path, file + ".high")
    except ValueError as exc:
        raise ValueError(f"error parsing {file}.high file: {exc}") from exc

    try:
        maximum = max_or_value(path, file + ".max")
    except ValueError as exc:
        raise ValueError(f"error parsing {file}.max file: {exc}") from exc

    try:
        current = parse_uint_from_file(path, file + ".current")
    except ValueError as exc:
        raise ValueError(f"error reading {file}.current file: {exc}") from exc

    try:
        events = read_events_file(path, file + ".events")
    except ValueError as exc:
        raise ValueError(f"error fetching events file for {file}: {exc}") from exc

    return MemoryData(events=events, usage=current, low=low, high=high, max=maximum)


def read_events_file(path: PathLike, file: str) -> Events:
    """Read a ``*.events`` file of ``key value`` lines."""
    with open(os.path.join(path, file), encoding="utf-8") as handle:
        content = handle.read()

    events = Events()
    for line in content.splitlines():
        try:
            key, value = parse_cgroup_param_key_value(line)
        except ValueError as exc:
            raise ValueError(f"error parsing key from events: {exc}") from exc
        if key == "low":
            events.low = value
        elif key == "high":
            events.high = value
        elif key == "max":
            events.max = value
        elif key == "oom":
            events.oom = value
        elif key == "oom_kill":
            events.oom_kill = value
        elif key == "fail":
            events.fail = value
    return events


def max_or_value(path: PathLike, file: str) -> Optional[int]:
    """Read a limit file; the literal "max" (no limit) yields None."""
    with open(os.path.join(path, file), "rb") as handle:
        raw = handle.read()

    if raw.strip() == b"max":
        return None
    try:
        return parse_uint(raw)
    except ValueError as exc:
        raise ValueError(f"error parsing raw value {raw!r}: {exc}") from exc


def read_memory_stat(path: PathLike) -> MemoryStat:
    """Read ``memory.stat`` into a MemoryStat; unknown keys are ignored."""
    with open(os.path.join(path, "memory.stat"), encoding="utf-8") as handle:
        content = handle.read()

    stats = MemoryStat()
    for line in content.splitlines():
        parts = line.split(" ", 1)
        if len(parts) != 2:
            continue
        key, raw = parts
        try:
            value = parse_uint(raw)
        except ValueError as exc:
            raise ValueError(f"error parsing value {raw!r}: {exc}") from exc
        attr = _STAT_FIELDS.get(key)
        if attr is not None:
            setattr(stats, attr, value)
    return stats