"""Reading cgroup metrics and limits for processes, for cgroups v1 and v2."""

from __future__ import annotations

import logging
import os
import posixpath
import threading
import time
from dataclasses import dataclass
from typing import Mapping, Optional, Union

from cgmetrics.mounts import (
    ControllerPath,
    HostFS,
    Mountpoints,
    PathList,
    is_cgroup_ns_private,
    subsystem_mountpoints,
    supported_subsystems,
)
from cgmetrics.stats import (
    CgroupsVersion,
    StatsV1,
    StatsV2,
    collect_v1_controller,
    collect_v2_controller,
)

_log = logging.getLogger(__name__)

# Cached v2 controller listings are trusted for five minutes.
_CACHE_TTL_SECONDS = 300.0


def _join(*parts: str) -> str:
    """Join path elements, skipping empty ones, and clean the result."""
    joined = "/".join(str(part) for part in parts if str(part))
    if not joined:
        return ""
    cleaned = posixpath.normpath(joined)
    if cleaned.startswith("//"):
        cleaned = "/" + cleaned.lstrip("/")
    return cleaned


def _base(path: str) -> str:
    if not path:
        return "."
    stripped = path.rstrip("/")
    if not stripped:
        return "/"
    return stripped.rsplit("/", 1)[-1]


def _wrap(exc: Exception, message: str) -> Exception:
    """A new exception of the same family as ``exc`` carrying ``message``."""
    if isinstance(exc, OSError):
        if exc.errno is not None:
            return OSError(exc.errno, message)
        return OSError(message)
    return ValueError(message)


@dataclass
class ReaderOptions:
    """Settings for a Reader.

    ``rootfs`` is the mountpoint of the host root filesystem (``/`` if None).
    ``cgroups_hierarchy_override`` replaces the cgroup paths read from
    ``/proc/<pid>/cgroup`` when non-empty; inside a Docker container it should
    be ``/``. ``cgroup_ns_private`` says whether we run in a private cgroup
    namespace; None means detect it.
    """

    rootfs: Optional[HostFS] = None
    ignore_root_cgroups: bool = False
    cgroups_hierarchy_override: str = ""
    cgroup_ns_private: Optional[bool] = None


class Reader:
    """Reads cgroup metrics and limits of processes."""

    def __init__(self, options: Optional[ReaderOptions] = None) -> None:
        options = options if options is not None else ReaderOptions()
        self.rootfs: HostFS = options.rootfs if options.rootfs is not None else HostFS("/")
        self.ignore_root_cgroups = options.ignore_root_cgroups
        self.cgroups_hierarchy_override = options.cgroups_hierarchy_override
        self._ns_private_option = options.cgroup_ns_private

        # CgroupsMissingError propagates unchanged.
        subsystems = supported_subsystems(self.rootfs)
        try:
            self.mountpoints: Mountpoints = subsystem_mountpoints(
                self.rootfs, subsystems, options.cgroup_ns_private
            )
        except (OSError, ValueError) as exc:
            raise _wrap(exc, f"error finding mountpoints: {exc}") from exc

        self._v2_cache: dict[str, tuple[float, dict[str, ControllerPath]]] = {}
        self._v2_cache_lock = threading.Lock()

    def _ns_private(self) -> bool:
        if self._ns_private_option is not None:
            return self._ns_private_option
        return is_cgroup_ns_private()

    def cgroups_version(self, pid: int) -> CgroupsVersion:
        """Tell whether ``pid`` is attached to a v1 or a v2 hierarchy."""
        cg_path = self.rootfs.resolve(_join("/proc/", str(pid), "cgroup"))
        try:
            with open(cg_path, encoding="utf-8") as handle:
                content = handle.read()
        except OSError as exc:
            raise _wrap(exc, f"error reading {cg_path}: {exc}") from exc

        # v2 entries always begin with 0::/, but some distributions add an
        # unused v2 entry next to v1 controllers.
        if "0::/" not in content:
            return CgroupsVersion.V1
        if len(content.strip().split("\n")) == 1:
            return CgroupsVersion.V2
        try:
            controllers = self._read_controller_list(content)
        except (OSError, ValueError) as exc:
            raise _wrap(
                exc, f"error fetching cgroup controller list for pid {pid}: {exc}"
            ) from exc
        if controllers:
            _log.debug("fetching V2 controller: %r for pid %d", controllers, pid)
            return CgroupsVersion.V2
        return CgroupsVersion.V1

    def _read_controller_list(self, cgroups_file: str) -> list[str]:
        """Read ``cgroup.controllers`` of the v2 cgroup named in a cgroup file."""
        if not self.mountpoints.v2_loc:
            return []
        cgpath = ""
        for line in cgroups_file.split("\n"):
            if "0::/" in line:
                cgpath = line.split(":")[2]
        if not cgpath:
            return []

        file_path = _join(self.mountpoints.v2_loc, cgpath, "cgroup.controllers")
        if self._ns_private() and self.rootfs.is_set():
            file_path = _join(
                self.mountpoints.v2_loc,
                self.mountpoints.containerized_root_mount,
                cgpath,
                "cgroup.controllers",
            )
        try:
            with open(file_path, encoding="utf-8") as handle:
                raw = handle.read()
        except OSError as exc:
            raise _wrap(
                exc, f"error reading cgroup '{cgpath}': file {file_path}: {exc}"
            ) from exc
        if not raw:
            return []
        return raw.split(" ")

    def get_stats_for_pid(self, pid: int) -> Union[StatsV1, StatsV2]:
        """Stats of ``pid`` from whichever cgroups version it is attached to."""
        try:
            version = self.cgroups_version(pid)
        except (OSError, ValueError) as exc:
            raise _wrap(
                exc, f"error finding cgroup version for pid {pid}: {exc}"
            ) from exc
        if version == CgroupsVersion.V1:
            return self.get_v1_stats_for_process(pid)
        return self.get_v2_stats_for_process(pid)

    def _skip_root(self, controller: ControllerPath) -> bool:
        return (
            self.ignore_root_cgroups
            and controller.controller_path == "/"
            and self.cgroups_hierarchy_override != controller.controller_path
        )

    def get_v1_stats_for_process(self, pid: int) -> StatsV1:
        """cgroups v1 metrics and limits of a process."""
        paths = self.process_cgroup_paths(pid)
        stats = StatsV1()
        stats.path, stats.id = common_cgroup_metadata(paths.v1, self.ignore_root_cgroups)
        stats.version = CgroupsVersion.V1
        for name, controller in paths.v1.items():
            if self._skip_root(controller):
                continue
            try:
                collect_v1_controller(
                    stats, name, controller.full_path, controller.controller_path
                )
            except (OSError, ValueError) as exc:
                raise _wrap(
                    exc, f"error fetching stats for controller {name}: {exc}"
                ) from exc
        return stats

    def get_v2_stats_for_process(self, pid: int) -> StatsV2:
        """cgroups v2 metrics and limits of a process."""
        paths = self.process_cgroup_paths(pid)
        stats = StatsV2()
        stats.path, stats.id = common_cgroup_metadata(paths.v2, self.ignore_root_cgroups)
        stats.version = CgroupsVersion.V2
        for name, controller in paths.v2.items():
            if self._skip_root(controller):
                continue
            try:
                collect_v2_controller(
                    stats, name, controller.full_path, controller.controller_path
                )
            except (OSError, ValueError) as exc:
                raise _wrap(
                    exc, f"error fetching stats for controller {name}: {exc}"
                ) from exc
        return stats

    def process_cgroup_paths(self, pid: int) -> PathList:
        """The cgroups of a process and their paths relative to the mountpoints."""
        cgroup_file = self.rootfs.resolve(_join("proc", str(pid), "cgroup"))
        # Errors opening the file propagate unchanged.
        with open(cgroup_file, encoding="utf-8") as handle:
            content = handle.read()

        try:
            version = self.cgroups_version(pid)
        except (OSError, ValueError) as exc:
            raise _wrap(
                exc, f"error finding cgroup version for pid {pid}: {exc}"
            ) from exc

        paths = PathList()
        v2_loc = self.mountpoints.v2_loc
        for line in content.splitlines():
            # Format: hierarchy-ID:subsystem-list:cgroup-path
            fields = line.split(":")
            if len(fields) != 3:
                continue

            path = fields[2]
            if self.cgroups_hierarchy_override:
                path = self.cgroups_hierarchy_override

            # In a private cgroup namespace the path is relative to our own
            # cgroup, so anchor it at the container's root cgroup.
            if self._ns_private() and self.rootfs.is_set():
                root_mount = self.mountpoints.containerized_root_mount
                if not root_mount:
                    _log.debug(
                        "cgroup for process %d contains a relative cgroup path (%s), "
                        "but no root cgroup was found; monitoring may be incomplete",
                        pid,
                        path,
                    )
                else:
                    _log.debug("using root mount %s and path %s", root_mount, path)
                    path = _join(root_mount, path)

            if not line.startswith("0::/"):
                for subsystem in fields[1].split(","):
                    full_path = _join(self.mountpoints.v1_mounts.get(subsystem, ""), path)
                    paths.v1[subsystem] = ControllerPath(
                        controller_path=path, full_path=full_path, is_v2=False
                    )
                continue

            # A hybrid system with an unused v2 root and no v2 mount: keep v1 working.
            if version == CgroupsVersion.V1 and line == "0::/" and not v2_loc:
                continue

            controller_path = _join(v2_loc, path)
            if not v2_loc:
                if not self.rootfs.is_set():
                    _log.debug(
                        "PID %d contains a cgroups V2 path (%s) but no V2 mountpoint "
                        "was found; mount the unified hierarchy as "
                        "/sys/fs/cgroup/unified and set the host root",
                        pid,
                        line,
                    )
                    continue
                controller_path = self.rootfs.resolve(
                    _join("/sys/fs/cgroup/unified", path)
                )

            with self._v2_cache_lock:
                entry = self._v2_cache.get(controller_path)
                if entry is not None:
                    added, cached = entry
                    if time.monotonic() - added < _CACHE_TTL_SECONDS:
                        paths.v2 = dict(cached)
                        continue
                    del self._v2_cache[controller_path]

            try:
                names = sorted(os.listdir(controller_path))
            except OSError as exc:
                raise _wrap(
                    exc,
                    "error fetching cgroupV2 controllers for cgroup location "
                    f"'{v2_loc}' and path line '{line}': {exc}",
                ) from exc

            # The unified hierarchy does not list controllers per process,
            # so derive them from the *.stat files of the cgroup.
            for name in names:
                if "stat" in name:
                    controller = name[: -len(".stat")] if name.endswith(".stat") else name
                    paths.v2[controller] = ControllerPath(
                        controller_path=path, full_path=controller_path, is_v2=True
                    )

            with self._v2_cache_lock:
                self._v2_cache[controller_path] = (time.monotonic(), dict(paths.v2))

        return paths


def new_reader(rootfs: Optional[HostFS], ignore_root_cgroups: bool) -> Reader:
    """A Reader for the given host root, optionally ignoring root cgroups."""
    return Reader(ReaderOptions(rootfs=rootfs, ignore_root_cgroups=ignore_root_cgroups))


def process_cgroup_paths(hostfs: Optional[HostFS], pid: int) -> PathList:
    """The cgroup paths of ``pid``, using a fresh Reader for ``hostfs``."""
    try:
        reader = new_reader(hostfs, False)
    except (OSError, ValueError) as exc:
        raise _wrap(exc, f"error creating cgroups reader: {exc}") from exc
    return reader.process_cgroup_paths(pid)


def common_cgroup_metadata(
    mounts: Mapping[str, ControllerPath], ignore_root: bool
) -> tuple[str, str]:
    """The path and ID shared by all controllers, or ("", "") if they differ.

    With ``ignore_root`` v1 controllers at "/" are left out of the comparison.
    """
    path = ""
    for mount in mounts.values():
        if not mount.is_v2 and ignore_root and mount.controller_path == "/":
            continue
        if not path:
            path = mount.controller_path
        elif path != mount.controller_path:
            return "", ""
    return path, _base(path)