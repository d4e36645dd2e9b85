"""Discovery of cgroup subsystems, their mountpoints and container cgroup paths."""

from __future__ import annotations

import logging
import os
import posixpath
import re
import threading
from dataclasses import dataclass, field
from typing import Collection, Iterator, Optional, Union

PathLike = Union[str, os.PathLike]

_log = logging.getLogger(__name__)

_PID = re.compile(r"[+-]?[0-9]+")


class CgroupsMissingError(FileNotFoundError):
    """/proc/cgroups was not found: cgroups are unsupported or the rootfs is wrong."""

    def __init__(self, message: str = "cgroups not found or unsupported by OS") -> None:
        super().__init__(message)


def _join(*parts: PathLike) -> str:
    """Join path elements, skipping empty ones, and clean the result."""
    joined = "/".join(str(part) for part in parts if str(part))
    if not joined:
        return ""
    cleaned = posixpath.normpath(joined)
    if cleaned.startswith("//"):
        cleaned = "/" + cleaned.lstrip("/")
    return cleaned


@dataclass(frozen=True)
class HostFS:
    """Mountpoint of the host's root filesystem, e.g. ``/hostfs`` in a container."""

    root: str = ""

    def resolve(self, path: PathLike) -> str:
        """Return ``path`` as seen below the host root."""
        return _join(self.root, path)

    def is_set(self) -> bool:
        """True when a root other than the real ``/`` was given."""
        return str(self.root) not in ("", "/")


@dataclass
class Mountinfo:
    """The fields of a ``/proc/[pid]/mountinfo`` line that matter here."""

    mountpoint: str
    filesystem_type: str
    super_options: list[str]


@dataclass
class Mountpoints:
    """Where the v1 controllers and the unified v2 hierarchy are mounted."""

    v1_mounts: dict[str, str] = field(default_factory=dict)
    v2_loc: str = ""
    containerized_root_mount: str = ""


@dataclass(frozen=True)
class ControllerPath:
    """A controller's cgroup path and its full path on the filesystem."""

    controller_path: str
    full_path: str
    is_v2: bool = False


@dataclass
class PathList:
    """The v1 and v2 controller paths of a process, kept apart."""

    v1: dict[str, ControllerPath] = field(default_factory=dict)
    v2: dict[str, ControllerPath] = field(default_factory=dict)

    def flatten(self) -> list[ControllerPath]:
        """All controller paths, v1 first, without their names."""
        return [*self.v1.values(), *self.v2.values()]


class ContainerCgroupCache:
    """Thread-safe holder of the cgroup path found for the running container."""

    def __init__(self, path: str = "") -> None:
        self._lock = threading.Lock()
        self._path = path

    def get(self) -> str:
        """The cached path, or "" if none."""
        with self._lock:
            return self._path

    def set(self, path: str) -> None:
        """Replace the cached path."""
        with self._lock:
            self._path = path


container_cgroup_cache = ContainerCgroupCache()


def parse_mountinfo_line(line: str) -> Mountinfo:
    """Parse one line of a mountinfo file."""
    fields_ = line.split()
    if len(fields_) < 10:
        raise ValueError(
            "invalid mountinfo line, expected at least 10 fields but got "
            f"{len(fields_)} from line='{line}'"
        )

    mountpoint = fields_[4]
    try:
        separator = fields_.index("-")
    except ValueError:
        raise ValueError(
            f"invalid mountinfo line, separator ('-') not found in line='{line}'"
        ) from None

    remaining = len(fields_) - separator - 1
    if remaining < 3:
        raise ValueError(
            "invalid mountinfo line, expected at least 3 fields after separator "
            f"but got {remaining} from line='{line}'"
        )

    after = fields_[separator + 1:]
    return Mountinfo(
        mountpoint=mountpoint,
        filesystem_type=after[0],
        super_options=after[2].split(","),
    )


def supported_subsystems(rootfs: HostFS) -> set[str]:
    """Names of the cgroup subsystems the kernel has enabled."""
    try:
        with open(rootfs.resolve("/proc/cgroups"), encoding="utf-8") as handle:
            content = handle.read()
    except FileNotFoundError:
        raise CgroupsMissingError() from None

    subsystems: set[str] = set()
    for line in content.splitlines():
        if line.startswith("#"):
            continue
        # Format: subsys_name hierarchy num_cgroups enabled
        parts = line.split()
        if not parts:
            continue
        if len(parts) > 3 and parts[3] == "0":
            continue
        subsystems.add(parts[0])
    return subsystems


def subsystem_mountpoints(
    rootfs: HostFS,
    subsystems: Collection[str],
    cgroup_ns_private: Optional[bool] = None,
) -> Mountpoints:
    """Find the mountpoints of the given v1 subsystems and of the v2 hierarchy.

    ``cgroup_ns_private`` tells whether we run in a private cgroup namespace;
    when None it is detected, and only if it is needed.
    """
    with open(rootfs.resolve("/proc/self/mountinfo"), encoding="utf-8") as handle:
        content = handle.read()

    root = rootfs.resolve("")
    mounts: dict[str, str] = {}
    possible_v2_paths: list[str] = []
    for raw in content.splitlines():
        line = raw.strip()
        if not line:
            continue
        mount = parse_mountinfo_line(line)

        # A mountpoint outside our root belongs to something else.
        if not mount.mountpoint.startswith(root):
            continue

        if mount.filesystem_type == "cgroup":
            for option in mount.super_options:
                # Sometimes the subsystem name is written like "name=blkio".
                name = option.split("=", 1)[-1]
                if name in subsystems and name not in mounts:
                    mounts[name] = mount.mountpoint

        if mount.filesystem_type == "cgroup2":
            possible_v2_paths.append(mount.mountpoint)

    result = Mountpoints(v1_mounts=mounts, v2_loc=proper_v2_path(rootfs, possible_v2_paths))

    if result.v2_loc and rootfs.is_set():
        private = is_cgroup_ns_private() if cgroup_ns_private is None else cgroup_ns_private
        if private:
            try:
                result.containerized_root_mount = guess_container_cgroup_path(
                    result.v2_loc, os.getpid()
                )
            except OSError as exc:
                _log.debug("could not fetch cgroup path inside container: %s", exc)

    return result


def is_cgroup_ns_private() -> bool:
    """True when this process runs in a private cgroup namespace.

    Only meaningful inside a container; read errors yield False.
    """
    try:
        with open("/proc/self/cgroup", encoding="utf-8") as handle:
            raw = handle.read()
    except OSError as exc:
        _log.debug("error reading /proc/self/cgroup to detect namespace settings: %s", exc)
        return False
    return raw.strip().split(":")[-1] == "/"


def _walk_files(root: str) -> Iterator[tuple[str, str]]:
    """Yield (path, name) of every non-directory below ``root``, in lexical order."""
    with os.scandir(root) as entries:
        ordered = sorted(entries, key=lambda entry: entry.name)
    for entry in ordered:
        path = _join(root, entry.name)
        if entry.is_dir(follow_symlinks=False):
            yield from _walk_files(path)
        else:
            yield path, entry.name


def guess_container_cgroup_path(v2_loc: str, pid: int) -> str:
    """Find the cgroup, relative to ``v2_loc``, whose procs file lists ``pid``.

    Returns "" if none does. A found path is cached and checked on later calls.
    """
    cached = container_cgroup_cache.get()
    if cached:
        try:
            with open(_join(v2_loc, cached, "cgroup.procs"), encoding="utf-8") as handle:
                if found_matching_pid_in_procs_file(pid, handle.read()):
                    return cached
        except OSError:
            pass

    found = ""
    try:
        for path, name in _walk_files(v2_loc):
            if "procs" not in name:
                continue
            try:
                with open(path, encoding="utf-8") as handle:
                    data = handle.read()
            except (OSError, UnicodeDecodeError):
                continue
            if found_matching_pid_in_procs_file(pid, data):
                found = path
    except OSError as exc:
        raise OSError(f"error traversing paths to find cgroup: {exc}") from exc

    if not found:
        return ""

    cgroup_dir = posixpath.dirname(found)
    relative = cgroup_dir[len(v2_loc):] if cgroup_dir.startswith(v2_loc) else cgroup_dir
    container_cgroup_cache.set(relative)
    return relative


def found_matching_pid_in_procs_file(pid: int, data: str) -> bool:
    """True if ``pid`` is listed in the contents of a ``cgroup.procs`` file.

    A line that is not a number ends the search with False.
    """
    for raw in data.split("\n"):
        if not raw:
            continue
        text = raw.strip()
        if not _PID.fullmatch(text):
            return False
        if int(text) == pid:
            return True
    return False


def proper_v2_path(rootfs: HostFS, possible_paths: list[str]) -> str:
    """Choose the usable cgroup2 mountpoint among several candidates.

    Overlay filesystem mounts are skipped; with a host root set, mountpoints
    below it are preferred. Among equals the last one wins.
    """
    if not possible_paths:
        return ""
    if len(possible_paths) == 1:
        return possible_paths[0]

    filtered = [path for path in possible_paths if "overlay2" not in path]
    if not filtered:
        chosen = possible_paths[-1]
        _log.debug("could not find correct cgroupv2 path, using %s", chosen)
        return chosen

    if not rootfs.is_set():
        return filtered[-1]

    root = rootfs.resolve("")
    host_paths = [path for path in filtered if root in path]
    if host_paths:
        return host_paths[-1]
    chosen = filtered[-1]
    _log.debug("no cgroup mountpoint contains the host root; using %s", chosen)
    return chosen