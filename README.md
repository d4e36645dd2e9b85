# cgmetrics

`cgmetrics` reads metrics and limits from Linux control groups for a given
process. It handles both the cgroups v1 hierarchies and the unified cgroups v2
hierarchy. It reads only files under `/proc` and the cgroup filesystem and has
no dependencies outside the standard library.

## Installation

```
pip install cgmetrics
```

To run the test suite, install the test extra:

```
pip install "cgmetrics[test]"
pytest
```

## Usage

Create a reader and ask it for the stats of a process. The reader works out
whether the process is attached to cgroups v1 or v2 and returns a
`cgmetrics.stats.StatsV1` or `cgmetrics.stats.StatsV2`:

```python
from cgmetrics.reader import Reader, ReaderOptions
from cgmetrics.stats import CgroupsVersion

reader = Reader(ReaderOptions())
stats = reader.get_stats_for_pid(1234)

if stats.cg_version() is CgroupsVersion.V2:
    if stats.cpu is not None:
        print(stats.path, stats.cpu.stats.usage.ns)
else:
    if stats.cpu_accounting is not None:
        print(stats.path, stats.cpu_accounting.total.ns)
```

Controllers that were not found for the process are left as `None` on the
stats object.

To monitor a host from inside a container, mount the host root filesystem
(for example at `/hostfs`) and pass it as the root:

```python
from cgmetrics.mounts import HostFS
from cgmetrics.reader import new_reader

reader = new_reader(HostFS("/hostfs"), ignore_root_cgroups=True)
v1 = reader.get_v1_stats_for_process(1234)
v2 = reader.get_v2_stats_for_process(1234)
```

`ReaderOptions` takes:

- `rootfs`: a `HostFS` for the host root filesystem; `/` when `None`.
- `ignore_root_cgroups`: skip controllers whose cgroup path is `/`.
- `cgroups_hierarchy_override`: when non-empty, used instead of the paths
  listed in `/proc/<pid>/cgroup`. Use `"/"` inside Docker containers, where
  those paths do not exist under `/sys/fs/cgroup`.
- `cgroup_ns_private`: whether the process runs in a private cgroup
  namespace; `None` detects it from `/proc/self/cgroup`.

If only the controller paths of a process are needed, use
`cgmetrics.reader.process_cgroup_paths(hostfs, pid)` or
`Reader.process_cgroup_paths(pid)`. Both return a `PathList` with separate
`v1` and `v2` mappings of controller name to `ControllerPath`;
`PathList.flatten()` gives all of them as one list.

Cached v2 controller listings are reused for five minutes per reader.

### Reading single controllers

Each controller can also be read on its own from a cgroup directory:

- `cgmetrics.cgv1.cpu.CPUSubsystem`, `cgmetrics.cgv1.cpuacct.CPUAccountingSubsystem`,
  `cgmetrics.cgv1.memory.MemorySubsystem`, `cgmetrics.cgv1.blkio.BlockIOSubsystem`
- `cgmetrics.cgv2.cpu.CPUSubsystem`, `cgmetrics.cgv2.memory.MemorySubsystem`,
  `cgmetrics.cgv2.io.IOSubsystem`

```python
from cgmetrics.cgv2.io import IOSubsystem

io = IOSubsystem()
io.get("/sys/fs/cgroup/system.slice/example.service", resolve_dev_ids=False)
print(io.stats, io.pressure)
```

With `resolve_dev_ids=True`, device numbers in `io.stat` are replaced by the
matching block device name from `/dev` where one is found.

Lower-level helpers live in `cgmetrics.mounts` (`supported_subsystems`,
`subsystem_mountpoints`, `parse_mountinfo_line`, `proper_v2_path`,
`guess_container_cgroup_path`) and `cgmetrics.cgcommon` (`parse_uint`,
`parse_uint_from_file`, `parse_cgroup_param_key_value`, `get_pressure`).

### Errors

- `cgmetrics.mounts.CgroupsMissingError` (a `FileNotFoundError`) is raised
  when `/proc/cgroups` does not exist, either because the kernel has no cgroup
  support or because the root path is wrong.
- `cgmetrics.cgcommon.InvalidFormatError` (a `ValueError`) is raised for a
  malformed key/value line in a cgroup file; other malformed contents raise
  `ValueError`.
- Operating-system errors such as a missing `/proc/<pid>/cgroup` come through
  as `OSError`.

## What it does not do

- There is no command-line tool; the package is a library only.
- CPU percentages are not computed. The `pct` and `norm_pct` fields of
  `cgmetrics.cgcommon.CPUUsage` are never filled in and stay `None`.
- Stats are returned as dataclasses; there is no conversion to another
  output format.