import os

import pytest

from cgmetrics.mounts import (
    CgroupsMissingError,
    ControllerPath,
    HostFS,
    container_cgroup_cache,
)
from cgmetrics.reader import (
    Reader,
    ReaderOptions,
    common_cgroup_metadata,
    new_reader,
    process_cgroup_paths,
)
from cgmetrics.stats import CgroupsVersion, StatsV1, StatsV2

DOCKER_ID = "b29faf21b7eff959f64b4192c34d5d67a707fe8561e9eaa608cb27693fba4242"
DOCKER_PATH = "/docker/" + DOCKER_ID

HYBRID_ID = "cri-containerd-1d3d308a7d48a27814a68bf33a44acf4441c9c02463ca0bc1cdfdc8c0b4a8496.scope"
HYBRID_PATH = (
    "/kubepods.slice/kubepods-burstable.slice/"
    "kubepods-burstable-pod7a96c459_d529_44ae_9f99_90d3798d6426.slice/" + HYBRID_ID
)

V2_ID = "docker-1c8fa019edd4b9d4b2856f4932c55929c5c118c808ed5faee9a135ca6e84b039.scope"
V2_PATH = "/system.slice/" + V2_ID

UBUNTU_PATH = "/system.slice/networkd-dispatcher.service"

MOUNTED = [
    "cpuset", "cpu", "cpuacct", "blkio", "memory", "devices",
    "freezer", "net_cls", "net_prio", "perf_event", "pids",
]
HYBRID_SUBSYSTEMS = [
    "cpuset", "cpu", "cpuacct", "blkio", "memory", "devices",
    "freezer", "net_cls", "net_prio", "perf_event", "hugetlb", "pids",
]


def _write(root, rel, content):
    target = root / rel
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(content)


def _build_host(root, with_v2=True):
    cgroups = "#subsys_name\thierarchy\tnum_cgroups\tenabled\n"
    for index, name in enumerate(MOUNTED, start=1):
        cgroups += f"{name}\t{index}\t1\t1\n"
    cgroups += "hugetlb\t20\t1\t0\n"
    _write(root, "proc/cgroups", cgroups)

    mountinfo = "20 1 8:1 / / rw,relatime - ext4 /dev/sda1 rw\n"
    for index, name in enumerate(MOUNTED, start=30):
        mountinfo += (
            f"{index} 24 0:{index} / {root}/sys/fs/cgroup/{name} "
            f"rw,nosuid - cgroup cgroup rw,{name}\n"
        )
    if with_v2:
        mountinfo += f"60 24 0:60 / {root}/sys/fs/cgroup rw,nosuid - cgroup2 cgroup2 rw\n"
    _write(root, "proc/self/mountinfo", mountinfo)


@pytest.fixture
def docker_host(tmp_path):
    root = tmp_path / "docker"
    _build_host(root)

    _write(
        root,
        "proc/985/cgroup",
        f"12:cpuset:{DOCKER_PATH}\n11:cpu,cpuacct:{DOCKER_PATH}\n"
        f"10:blkio:{DOCKER_PATH}\n9:memory:{DOCKER_PATH}\n"
        f"8:devices:{DOCKER_PATH}\n7:freezer:{DOCKER_PATH}\n"
        f"6:net_cls,net_prio:{DOCKER_PATH}\n5:perf_event:{DOCKER_PATH}\n",
    )
    cpu_dir = f"sys/fs/cgroup/cpu{DOCKER_PATH}"
    _write(root, f"{cpu_dir}/cpu.cfs_period_us", "100000\n")
    _write(root, f"{cpu_dir}/cpu.cfs_quota_us", "-1\n")
    _write(root, f"{cpu_dir}/cpu.shares", "1024\n")
    _write(root, f"{cpu_dir}/cpu.stat", "nr_periods 769021\nnr_throttled 1046\n")
    acct_dir = f"sys/fs/cgroup/cpuacct{DOCKER_PATH}"
    _write(root, f"{acct_dir}/cpuacct.usage", "95996653175\n")
    _write(root, f"{acct_dir}/cpuacct.usage_percpu", "1 2 3 4\n")
    _write(root, f"sys/fs/cgroup/memory{DOCKER_PATH}/memory.usage_in_bytes", "295997440\n")
    blkio_dir = f"sys/fs/cgroup/blkio{DOCKER_PATH}"
    _write(
        root,
        f"{blkio_dir}/blkio.throttle.io_service_bytes",
        "8:0 Read 1648128\n8:0 Write 0\n8:0 Sync 0\n8:0 Async 1648128\n"
        "8:0 Total 1648128\nTotal 1648128\n",
    )
    _write(
        root,
        f"{blkio_dir}/blkio.throttle.io_serviced",
        "8:0 Read 46\n8:0 Write 0\n8:0 Sync 0\n8:0 Async 46\n8:0 Total 46\nTotal 46\n",
    )

    _write(root, "proc/312/cgroup", f"0::{V2_PATH}\n")
    v2_dir = f"sys/fs/cgroup{V2_PATH}"
    _write(root, f"{v2_dir}/cgroup.stat", "nr_descendants 0\n")
    _write(root, f"{v2_dir}/cpu.pressure", "some avg10=0.00 avg60=0.00 avg300=0.00 total=100\n")
    _write(
        root,
        f"{v2_dir}/cpu.stat",
        "usage_usec 26772130245\nuser_usec 20979069929\nsystem_usec 5793060316\n",
    )
    _write(root, f"{v2_dir}/io.stat", "9999:9999 rbytes=1024 wbytes=4096 rios=1 wios=1 dbytes=6 dios=8\n")
    _write(
        root,
        f"{v2_dir}/io.pressure",
        "some avg10=3.00 avg60=2.10 avg300=4.00 total=1154482\n"
        "full avg10=10.00 avg60=30.00 avg300=0.50 total=1154482\n",
    )
    _write(root, f"{v2_dir}/memory.stat", "anon 100\nslab_reclaimable 17756400\n")
    _write(root, f"{v2_dir}/memory.low", "4\n")
    _write(root, f"{v2_dir}/memory.high", "max\n")
    _write(root, f"{v2_dir}/memory.max", "max\n")
    _write(root, f"{v2_dir}/memory.current", "9125888\n")
    _write(root, f"{v2_dir}/memory.events", "low 0\nhigh 3\nmax 0\noom 0\noom_kill 0\n")

    _write(root, "sys/fs/cgroup/system.slice/cpu.pressure",
           "some avg10=0.00 avg60=0.00 avg300=0.00 total=5\n")
    _write(root, "sys/fs/cgroup/system.slice/cpu.stat", "usage_usec 5000\n")

    _write(root, "proc/1/cgroup", "11:cpu:/init.scope\n")
    _write(root, "sys/fs/cgroup/cpu/cpu.shares", "2048\n")

    _write(
        root,
        "proc/3757/cgroup",
        f"12:cpuset:/\n11:memory:{UBUNTU_PATH}\n10:cpu,cpuacct:{UBUNTU_PATH}\n"
        f"1:name=systemd:{UBUNTU_PATH}\n",
    )

    _write(root, "proc/700/cgroup", "1:cpu:/mixed\n0::/mixed\n")
    _write(root, "sys/fs/cgroup/mixed/cgroup.controllers", "cpu io memory\n")
    _write(root, "proc/701/cgroup", "1:cpu:/empty\n0::/empty\n")
    _write(root, "sys/fs/cgroup/empty/cgroup.controllers", "")
    return root


@pytest.fixture
def hybrid_host(tmp_path):
    root = tmp_path / "amzn2"
    _build_host(root, with_v2=False)
    lines = "".join(
        f"{index}:{name}:{HYBRID_PATH}\n"
        for index, name in enumerate(HYBRID_SUBSYSTEMS, start=1)
    )
    _write(root, "proc/493239/cgroup", lines + "0::/\n")
    return root


def _reader(root, ignore_root=False, override=""):
    return Reader(
        ReaderOptions(
            rootfs=HostFS(str(root)),
            ignore_root_cgroups=ignore_root,
            cgroups_hierarchy_override=override,
            cgroup_ns_private=False,
        )
    )


def test_missing_cgroups_file(tmp_path):
    with pytest.raises(CgroupsMissingError):
        Reader(ReaderOptions(rootfs=HostFS(str(tmp_path / "doesnotexist"))))


def test_cgroups_version_unknown_pid(docker_host):
    reader = _reader(docker_host)
    with pytest.raises(FileNotFoundError):
        reader.cgroups_version(345)


def test_cgroups_version(docker_host):
    reader = _reader(docker_host)
    assert reader.cgroups_version(985) == CgroupsVersion.V1
    assert reader.cgroups_version(312) == CgroupsVersion.V2
    assert reader.cgroups_version(700) == CgroupsVersion.V2
    assert reader.cgroups_version(701) == CgroupsVersion.V1


def test_v1_event_different_paths(docker_host):
    stats = _reader(docker_host, ignore_root=True).get_v1_stats_for_process(3757)
    assert stats.path == UBUNTU_PATH
    assert stats.id == "networkd-dispatcher.service"


def test_reader_get_stats_v1(docker_host):
    stats = _reader(docker_host, ignore_root=True).get_v1_stats_for_process(985)

    assert stats.id == DOCKER_ID
    assert stats.block_io.id == DOCKER_ID
    assert stats.cpu.id == DOCKER_ID
    assert stats.cpu_accounting.id == DOCKER_ID
    assert stats.memory.id == DOCKER_ID

    assert stats.cpu.cfs.period_micros == 100000
    assert stats.cpu_accounting.total.ns == 95996653175
    assert stats.memory.mem.usage.bytes == 295997440
    assert stats.block_io.total.bytes == 1648128

    assert stats.path == DOCKER_PATH
    assert stats.block_io.path == DOCKER_PATH
    assert stats.cpu.path == DOCKER_PATH
    assert stats.cpu_accounting.path == DOCKER_PATH
    assert stats.memory.path == DOCKER_PATH
    assert stats.version == CgroupsVersion.V1


def test_reader_get_stats_v1_malformed_hybrid(hybrid_host):
    stats = _reader(hybrid_host, ignore_root=True).get_v1_stats_for_process(493239)
    assert stats.id == HYBRID_ID
    assert stats.path == HYBRID_PATH
    assert stats.block_io.id == HYBRID_ID
    assert stats.cpu.path == HYBRID_PATH
    assert stats.cpu_accounting.id == HYBRID_ID
    assert stats.memory.path == HYBRID_PATH


def test_reader_get_stats_v2(docker_host):
    stats = _reader(docker_host, ignore_root=True).get_v2_stats_for_process(312)
    assert stats.path == V2_PATH
    assert stats.id == V2_ID
    assert stats.cpu.stats.usage.ns == 26772130245
    assert stats.memory.mem.usage == 9125888
    assert stats.io.pressure["some"].sixty == pytest.approx(2.10)
    assert stats.io.stats["9999:9999"].read.bytes == 1024
    assert stats.version == CgroupsVersion.V2


def test_reader_get_stats_hierarchy_override(docker_host):
    stats = _reader(docker_host, override="/").get_v1_stats_for_process(1)
    assert stats.cpu.cfs.shares == 2048

    reader2 = _reader(docker_host, ignore_root=True, override="/system.slice/")
    stats2 = reader2.get_v2_stats_for_process(312)
    assert stats2.cpu.stats.usage.ns == 5000


def test_get_stats_for_pid_dispatches(docker_host):
    reader = _reader(docker_host, ignore_root=True)
    assert isinstance(reader.get_stats_for_pid(985), StatsV1)
    v2 = reader.get_stats_for_pid(312)
    assert isinstance(v2, StatsV2)
    assert v2.id == V2_ID


def test_process_cgroup_paths(docker_host):
    paths = _reader(docker_host).process_cgroup_paths(985)
    for name in ("blkio", "cpu", "cpuacct", "cpuset", "devices", "freezer",
                 "memory", "net_cls", "net_prio", "perf_event"):
        assert paths.v1[name].controller_path == DOCKER_PATH
    assert paths.v1["cpu"].full_path == f"{docker_host}/sys/fs/cgroup/cpu{DOCKER_PATH}"
    assert len(paths.flatten()) == 10


def test_process_cgroup_hybrid_paths(hybrid_host):
    paths = _reader(hybrid_host).process_cgroup_paths(493239)
    for name in HYBRID_SUBSYSTEMS:
        assert paths.v1[name].controller_path == HYBRID_PATH
    assert paths.v2 == {}
    assert len(paths.flatten()) == len(HYBRID_SUBSYSTEMS)


def test_process_cgroup_paths_v2(docker_host):
    paths = _reader(docker_host).process_cgroup_paths(312)
    expected = f"{docker_host}/sys/fs/cgroup{V2_PATH}"
    for name in ("cgroup", "cpu", "io", "memory"):
        assert paths.v2[name].full_path == expected
        assert paths.v2[name].is_v2 is True
    assert "io.pressure" not in paths.v2


def test_v2_paths_are_cached(docker_host):
    reader = _reader(docker_host)
    first = reader.process_cgroup_paths(312)
    os.remove(docker_host / f"sys/fs/cgroup{V2_PATH}/io.stat")
    second = reader.process_cgroup_paths(312)
    assert second.v2 == first.v2
    fresh = _reader(docker_host).process_cgroup_paths(312)
    assert "io" not in fresh.v2
    assert "cpu" in fresh.v2


def test_module_process_cgroup_paths(hybrid_host):
    paths = process_cgroup_paths(HostFS(str(hybrid_host)), 493239)
    assert paths.v1["memory"].controller_path == HYBRID_PATH


def test_new_reader_sets_options(hybrid_host):
    reader = new_reader(HostFS(str(hybrid_host)), True)
    assert reader.ignore_root_cgroups is True
    assert reader.mountpoints.v2_loc == ""
    assert reader.mountpoints.v1_mounts["cpu"] == f"{hybrid_host}/sys/fs/cgroup/cpu"


def test_mountpoints_v2_private_namespace(tmp_path):
    root = tmp_path / "docker2"
    _write(root, "proc/cgroups", "#subsys_name\thierarchy\tnum_cgroups\tenabled\ncpu\t0\t1\t1\n")
    _write(
        root,
        "proc/self/mountinfo",
        f"60 24 0:60 / {root}/sys/fs/cgroup rw,nosuid - cgroup2 cgroup2 rw\n",
    )
    session = "sys/fs/cgroup/user.slice/user-1000.slice/session-520.scope"
    _write(root, f"{session}/cgroup.procs", f"{os.getpid()}\n")
    _write(root, f"{session}/cpu.stat", "usage_usec 10\n")
    _write(root, f"{session}/memory.stat", "anon 1\n")
    _write(root, f"{session}/io.stat", "9999:9998 rbytes=1 wbytes=2 rios=3 wios=4\n")
    _write(root, "proc/2233801/cgroup", "0::/\n")
    container_cgroup_cache.set("")

    reader = Reader(ReaderOptions(rootfs=HostFS(str(root)), cgroup_ns_private=True))
    stats = reader.get_stats_for_pid(2233801)
    assert isinstance(stats, StatsV2)
    assert stats.id == "session-520.scope"
    assert stats.path == "/user.slice/user-1000.slice/session-520.scope"


def test_common_metadata_shared_path():
    mounts = {
        "cpu": ControllerPath("/a/b", "/x/cpu/a/b"),
        "memory": ControllerPath("/a/b", "/x/memory/a/b"),
    }
    assert common_cgroup_metadata(mounts, False) == ("/a/b", "b")


def test_common_metadata_differing_paths():
    mounts = {
        "cpu": ControllerPath("/a/b", "/x/cpu/a/b"),
        "memory": ControllerPath("/a/c", "/x/memory/a/c"),
    }
    assert common_cgroup_metadata(mounts, False) == ("", "")


def test_common_metadata_ignores_root():
    mounts = {
        "cpuset": ControllerPath("/", "/x/cpuset"),
        "cpu": ControllerPath("/a/b", "/x/cpu/a/b"),
    }
    assert common_cgroup_metadata(mounts, True) == ("/a/b", "b")
    assert common_cgroup_metadata(mounts, False) == ("", "")