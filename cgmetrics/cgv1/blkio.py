"""Metrics and limits of the cgroups v1 ``blkio`` controller."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from typing import Union

from cgmetrics.cgcommon import InvalidFormatError, parse_uint

PathLike = Union[str, os.PathLike]

_FIELD_SEPARATORS = re.compile(r"[\s:]+")
_DIGITS = re.compile(r"[0-9]+")
_UINT64_MAX = 2**64 - 1

_BYTES_FILE = "blkio.throttle.io_service_bytes"
_IOS_FILE = "blkio.throttle.io_serviced"
_READ_BPS_FILE = "blkio.throttle.read_bps_device"
_WRITE_BPS_FILE = "blkio.throttle.write_bps_device"
_READ_IOPS_FILE = "blkio.throttle.read_iops_device"
_WRITE_IOPS_FILE = "blkio.throttle.write_iops_device"


@dataclass(frozen=True)
class DeviceID:
    """Major and minor number of a Linux block device."""

    major: int
    minor: int


@dataclass
class OperationValues:
    """I/O values split by read, write, async and sync operations."""

    read: int = 0
    write: int = 0
    async_: int = 0
    sync: int = 0


@dataclass
class TotalIOs:
    """Summed bytes and operation counts."""

    bytes: int = 0
    ios: int = 0


@dataclass
class ThrottleDevice:
    """Throttle limits and metrics of a single device."""

    device_id: DeviceID
    read_limit_bps: int = 0
    write_limit_bps: int = 0
    read_limit_iops: int = 0
    write_limit_iops: int = 0
    bytes: OperationValues = field(default_factory=OperationValues)
    ios: OperationValues = field(default_factory=OperationValues)


@dataclass
class BlkioValue:
    """One value from a blkio file, tied to a device and maybe an operation."""

    device_id: DeviceID
    operation: str
    value: int


@dataclass
class BlockIOSubsystem:
    """Data from the ``blkio`` controller of one cgroup."""

    id: str = ""
    path: str = ""
    total: TotalIOs = field(default_factory=TotalIOs)
    reads: TotalIOs = field(default_factory=TotalIOs)
    writes: TotalIOs = field(default_factory=TotalIOs)

    def get(self, path: PathLike) -> None:
        """Read the throttle files in the cgroup directory ``path`` and sum them."""
        try:
            devices = read_throttle(path)
        except ValueError as exc:
            raise ValueError(
                f"error reading throttle data from {path}: {exc}"
            ) from exc

        self.total = TotalIOs()
        self.reads = TotalIOs()
        self.writes = TotalIOs()
        for dev in devices.values():
            self.total.bytes += dev.bytes.read + dev.bytes.write
            self.total.ios += dev.ios.read + dev.ios.write
            self.reads.bytes += dev.bytes.read
            self.reads.ios += dev.ios.read
            self.writes.bytes += dev.bytes.write
            self.writes.ios += dev.ios.write


def _read(path: PathLike, name: str) -> list[BlkioValue]:
    try:
        return read_blkio_values(path, name)
    except ValueError as exc:
        raise ValueError(f"error reading {name}: {exc}") from exc


def read_throttle(path: PathLike) -> dict[DeviceID, ThrottleDevice]:
    """Read every blkio throttle file, returning per-device limits and metrics."""
    devices: dict[DeviceID, ThrottleDevice] = {}

    def device(device_id: DeviceID) -> ThrottleDevice:
        if device_id not in devices:
            devices[device_id] = ThrottleDevice(device_id=device_id)
        return devices[device_id]

    for device_id, op_values in collect_op_values(_read(path, _BYTES_FILE)).items():
        device(device_id).bytes = op_values
    for device_id, op_values in collect_op_values(_read(path, _IOS_FILE)).items():
        device(device_id).ios = op_values

    for value in _read(path, _READ_BPS_FILE):
        device(value.device_id).read_limit_bps = value.value
    for value in _read(path, _WRITE_BPS_FILE):
        device(value.device_id).write_limit_bps = value.value
    for value in _read(path, _READ_IOPS_FILE):
        device(value.device_id).read_limit_iops = value.value
    for value in _read(path, _WRITE_IOPS_FILE):
        device(value.device_id).write_limit_iops = value.value

    return devices


def collect_op_values(values: list[BlkioValue]) -> dict[DeviceID, OperationValues]:
    """Group read, write, async and sync values by device."""
    grouped: dict[DeviceID, OperationValues] = {}
    for value in values:
        op_values = grouped.setdefault(value.device_id, OperationValues())
        if value.operation == "read":
            op_values.read = value.value
        elif value.operation == "write":
            op_values.write = value.value
        elif value.operation == "async":
            op_values.async_ = value.value
        elif value.operation == "sync":
            op_values.sync = value.value
    return grouped


def read_blkio_values(*args: PathLike) -> list[BlkioValue]:
    """Read the valid device lines of a blkio file; a missing file yields []."""
    try:
        with open(os.path.join(*args), encoding="utf-8") as handle:
            content = handle.read()
    except FileNotFoundError:
        return []

    values = []
    for line in content.splitlines():
        stripped = line.strip()
        if not stripped or not stripped[0].isnumeric():
            continue
        values.append(parse_blkio_value(line))
    return values


def _parse_device_number(text: str) -> int:
    if not _DIGITS.fullmatch(text):
        raise ValueError(f"invalid device number: {text!r}")
    number = int(text)
    if number > _UINT64_MAX:
        raise ValueError(f"device number out of range: {text!r}")
    return number


def parse_blkio_value(line: str) -> BlkioValue:
    """Parse lines such as ``245:1 read 18880`` or ``254:1 1909``."""
    fields = [part for part in _FIELD_SEPARATORS.split(line) if part]
    if len(fields) not in (3, 4):
        raise InvalidFormatError()

    major = _parse_device_number(fields[0])
    minor = _parse_device_number(fields[1])
    if len(fields) == 3:
        operation = ""
        value = parse_uint(fields[2])
    else:
        operation = fields[2].lower()
        value = parse_uint(fields[3])

    return BlkioValue(device_id=DeviceID(major, minor), operation=operation, value=value)