"""Metrics of the cgroups v2 ``io`` controller, the successor of blkio."""

from __future__ import annotations

import logging
import os
import re
import stat
import sys
from dataclasses import dataclass, field
from typing import Optional, Union

from cgmetrics.cgcommon import Pressure, get_pressure

PathLike = Union[str, os.PathLike]

_log = logging.getLogger(__name__)

_DEVICE_ID = re.compile(r"([0-9]+):([0-9]+)")
_DIGITS = re.compile(r"[0-9]+")
_UINT64_MAX = 2**64 - 1
_DEV_DIR = "/dev/"

_COUNTERS = {
    "rbytes": ("read", "bytes"),
    "wbytes": ("write", "bytes"),
    "rios": ("read", "ios"),
    "wios": ("write", "ios"),
    "dbytes": ("discarded", "bytes"),
    "dios": ("discarded", "ios"),
}


@dataclass
class IOMetric:
    """Byte and operation counts."""

    bytes: int = 0
    ios: int = 0


@dataclass
class IOStat:
    """Per-device read, write and discard counters from ``io.stat``."""

    read: IOMetric = field(default_factory=IOMetric)
    write: IOMetric = field(default_factory=IOMetric)
    discarded: IOMetric = field(default_factory=IOMetric)


@dataclass
class IOSubsystem:
    """Data from the ``io`` controller of one cgroup."""

    id: str = ""
    path: str = ""
    stats: dict[str, IOStat] = field(default_factory=dict)
    pressure: dict[str, Pressure] = field(default_factory=dict)

    def get(self, path: PathLike, resolve_dev_ids: bool) -> None:
        """Read ``io.stat`` and, where present, ``io.pressure``.

        With ``resolve_dev_ids`` device numbers are replaced by device names
        where a name can be found.
        """
        try:
            self.stats = read_io_stats(path, resolve_dev_ids)
        except ValueError as exc:
            raise ValueError(f"error getting io.stats for path {path}: {exc}") from exc

        pressure_file = os.path.join(path, "io.pressure")
        if not os.path.exists(pressure_file):
            _log.debug("io.pressure does not exist. Skipping.")
            return

        try:
            self.pressure = get_pressure(pressure_file)
        except ValueError as exc:
            raise ValueError(
                f"error fetching io.pressure for path {path}: {exc}"
            ) from exc


def read_io_stats(path: PathLike, resolve_dev_ids: bool) -> dict[str, IOStat]:
    """Read ``io.stat`` into a mapping of device to counters."""
    with open(os.path.join(path, "io.stat"), encoding="utf-8") as handle:
        content = handle.read()

    stats: dict[str, IOStat] = {}
    for line in content.splitlines():
        try:
            devices, metrics, found = parse_stat_line(line, resolve_dev_ids)
        except ValueError as exc:
            raise ValueError(f"error parsing line in file: {exc}") from exc
        if not found:
            continue
        for device in devices:
            stats[device] = metrics
    return stats


def parse_stat_line(line: str, resolve_dev_ids: bool) -> tuple[list[str], IOStat, bool]:
    """Parse one ``io.stat`` line.

    Several devices may share a line, and a line may carry no metrics at all.
    Returns the device names, the counters and whether any counter was found.
    """
    devices: list[str] = []
    metrics = IOStat()
    found_metrics = False

    for component in line.split(" "):
        if ":" in component:
            match = _DEVICE_ID.match(component)
            if match is None:
                raise ValueError(f"could not read device ID: {component}")
            name = None
            if resolve_dev_ids:
                try:
                    name = fetch_device_name(int(match.group(1)), int(match.group(2)))
                except OSError:
                    name = None
            devices.append(name if name is not None else component)
        elif "=" in component:
            found_metrics = True
            parts = component.split("=")
            counter_name, raw = parts[0], parts[1]
            if not _DIGITS.fullmatch(raw) or int(raw) > _UINT64_MAX:
                raise ValueError(f"error parsing counter '{raw}' in stat")
            target = _COUNTERS.get(counter_name)
            if target is not None:
                group, attr = target
                setattr(getattr(metrics, group), attr, int(raw))

    return devices, metrics, found_metrics


def _split_device_number(dev: int) -> tuple[int, int]:
    major = ((dev & 0xFFFFF00000000000) >> 32) | ((dev & 0x00000000000FFF00) >> 8)
    minor = (dev & 0x00000000000000FF) | ((dev & 0x00000FFFFFF00000) >> 12)
    return major, minor


def fetch_device_name(major: int, minor: int) -> Optional[str]:
    """Find the name of the block device in /dev with the given numbers.

    Returns None if no device matches; raises OSError if /dev cannot be read.
    """
    if not sys.platform.startswith("linux"):
        raise OSError("device name lookup is linux-only")

    found: Optional[str] = None
    with os.scandir(_DEV_DIR) as entries:
        for entry in sorted(entries, key=lambda e: e.name):
            try:
                info = entry.stat(follow_symlinks=False)
            except OSError:
                continue
            if not stat.S_ISBLK(info.st_mode):
                continue
            if _split_device_number(info.st_rdev) == (major, minor):
                found = entry.name
    return found