"""Shared helpers and data types for reading cgroup controller files."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from typing import Optional, Union

_UNSIGNED = re.compile(r"[0-9]+")
_SIGNED = re.compile(r"[+-][0-9]+")
_UINT64_MAX = 2**64 - 1

_PRESSURE_LINE = re.compile(
    r"^\s*(\S+)\s+avg10=(\S+)\s+avg60=(\S+)\s+avg300=(\S+)\s+total=([0-9]+)"
)


class InvalidFormatError(ValueError):
    """A line does not hold a well-formed key/value pair."""

    def __init__(self, message: str = "error invalid key/value format") -> None:
        super().__init__(message)


@dataclass
class CPUUsage:
    """CPU time of a controller in nanoseconds, with derived percentages."""

    ns: int = 0
    pct: Optional[float] = None
    norm_pct: Optional[float] = None


@dataclass
class Pressure:
    """Pressure stall averages over 10, 60 and 300 seconds plus the total time."""

    ten: float = 0.0
    sixty: float = 0.0
    three_hundred: float = 0.0
    total: Optional[int] = None

    def is_zero(self) -> bool:
        """Pressure metrics are absent when no total was read."""
        return self.total is None


def get_pressure(path: Union[str, os.PathLike]) -> dict[str, Pressure]:
    """Read a ``*.pressure`` file into a mapping of stall kind to Pressure.

    Errors opening the file propagate unchanged.
    """
    with open(path, encoding="utf-8") as handle:
        content = handle.read()

    pressure: dict[str, Pressure] = {}
    for line in content.splitlines():
        match = _PRESSURE_LINE.match(line)
        if match is None:
            raise ValueError(f"error scanning file: {path}: malformed line {line!r}")
        kind, ten, sixty, three_hundred, total = match.groups()
        try:
            pressure[kind] = Pressure(
                ten=float(ten),
                sixty=float(sixty),
                three_hundred=float(three_hundred),
                total=int(total),
            )
        except ValueError as exc:
            raise ValueError(f"error scanning file: {path}: {exc}") from exc
    return pressure


def parse_uint(value: Union[bytes, str]) -> int:
    """Parse an unsigned integer, ignoring surrounding whitespace.

    Negative values are reported as 0.
    """
    text = value.decode() if isinstance(value, (bytes, bytearray)) else value
    text = text.strip()
    if _UNSIGNED.fullmatch(text):
        number = int(text)
        if number > _UINT64_MAX:
            raise ValueError(f"value out of range: {text!r}")
        return number
    if _SIGNED.fullmatch(text) and int(text) < 0:
        return 0
    raise ValueError(f"invalid unsigned integer: {text!r}")


def parse_uint_from_file(*args: Union[str, os.PathLike]) -> int:
    """Read a single unsigned integer from the file at the joined path.

    A missing file yields 0, since not every kernel provides every feature.
    """
    try:
        with open(os.path.join(*args), "rb") as handle:
            raw = handle.read()
    except FileNotFoundError:
        return 0
    return parse_uint(raw)


def parse_cgroup_param_key_value(line: str) -> tuple[str, int]:
    """Split a ``key value`` line into its name and unsigned value."""
    parts = line.split()
    if len(parts) != 2:
        raise InvalidFormatError()
    try:
        value = parse_uint(parts[1])
    except ValueError as exc:
        raise ValueError(
            f"unable to convert param value ({parts[1]!r}) to uint64: {exc}"
        ) from exc
    return parts[0], value