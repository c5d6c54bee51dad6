"""Host statistics for the ``system:0`` service, read through psutil, procfs and sysfs."""

from __future__ import annotations

import glob
import logging
import os
import re
import time
from collections import Counter
from collections.abc import Callable

import psutil

logger = logging.getLogger("pgscv.system")

PROCFS = "/proc"
SYSFS = "/sys"

# Raw block devices, including device-mapper and md stacks, but not partitions.
BLOCK_DEVICE_RE = re.compile(r"^((s|xv|v)d[a-z]+|nvme[0-9]+n[0-9]+|dm-[0-9]+|md[0-9]+)$")

SYSCTL_LIST = (
    "kernel.sched_migration_cost_ns",
    "kernel.sched_autogroup_enabled",
    "vm.dirty_background_bytes",
    "vm.dirty_bytes",
    "vm.overcommit_memory",
    "vm.overcommit_ratio",
    "vm.swappiness",
    "vm.min_free_kbytes",
    "vm.zone_reclaim_mode",
    "kernel.numa_balancing",
    "vm.nr_hugepages",
    "vm.nr_overcommit_hugepages",
)

CPU_MODES = (
    "user", "nice", "system", "idle", "iowait", "irq", "softirq", "steal", "guest", "guest_nice",
)

SECTOR_SIZE = 512

# emit(metric_name, value, label_values)
Emit = Callable[[str, float, tuple[str, ...]], None]


def collect_cpu(emit: Emit) -> int:
    times = psutil.cpu_times()
    total = 0.0
    cnt = 0
    for mode in CPU_MODES:
        value = float(getattr(times, mode, 0.0))
        # guest time is already accounted in user/nice
        if mode not in ("guest", "guest_nice"):
            total += value
        emit("node_cpu_usage_time", value, (mode,))
        cnt += 1
    emit("node_cpu_usage_time", total, ("total",))
    return cnt + 1


def collect_diskstats(emit: Emit) -> int:
    counters = psutil.disk_io_counters(perdisk=True) or {}
    uptime = _uptime()
    cnt = 0
    for device, s in counters.items():
        if s.read_count == 0 and s.write_count == 0:
            continue
        values = {
            "rcompleted": s.read_count,
            "rmerged": getattr(s, "read_merged_count", 0),
            "rsectors": s.read_bytes / SECTOR_SIZE,
            "rspent": s.read_time,
            "wcompleted": s.write_count,
            "wmerged": getattr(s, "write_merged_count", 0),
            "wsectors": s.write_bytes / SECTOR_SIZE,
            "wspent": s.write_time,
            "tspent": getattr(s, "busy_time", 0),
            "uptime": uptime,
        }
        for name, value in values.items():
            emit(f"node_diskstats_{name}", float(value), (device,))
            cnt += 1
    return cnt


def collect_netdev(emit: Emit) -> int:
    counters = psutil.net_io_counters(pernic=True) or {}
    stats = psutil.net_if_stats()
    uptime = _uptime()
    cnt = 0
    for ifname, s in counters.items():
        if s.packets_recv == 0 and s.packets_sent == 0:
            continue
        values = {
            "rbytes": s.bytes_recv,
            "rpackets": s.packets_recv,
            "rerrs": s.errin,
            "rdrop": s.dropin,
            "tbytes": s.bytes_sent,
            "tpackets": s.packets_sent,
            "terrs": s.errout,
            "tdrop": s.dropout,
            "uptime": uptime,
        }
        ifstat = stats.get(ifname)
        if ifstat is not None and ifstat.speed > 0:
            values["speed"] = ifstat.speed
            values["duplex"] = int(ifstat.duplex)
        for name, value in values.items():
            emit(f"node_netdev_{name}", float(value), (ifname,))
            cnt += 1
    return cnt


def read_meminfo(path: str | None = None) -> dict[str, int]:
    """Parse /proc/meminfo into bytes (hugepage counts stay as counts)."""
    path = path or os.path.join(PROCFS, "meminfo")
    result: dict[str, int] = {}
    try:
        with open(path, encoding="utf-8") as f:
            for line in f:
                key, _, rest = line.partition(":")
                fields = rest.split()
                if not fields:
                    continue
                value = int(fields[0])
                if len(fields) > 1 and fields[1] == "kB":
                    value *= 1024
                result[key.strip()] = value
    except OSError as exc:
        logger.warning("failed to read %s: %s", path, exc)
    return result


def collect_memory(emit: Emit) -> int:
    vm = psutil.virtual_memory()
    swap = psutil.swap_memory()
    meminfo = read_meminfo()
    usages = {
        "mem_total": vm.total,
        "mem_free": vm.free,
        "mem_used": vm.used,
        "mem_available": vm.available,
        "mem_cached": getattr(vm, "cached", 0),
        "mem_buffers": getattr(vm, "buffers", 0),
        "mem_slab": getattr(vm, "slab", meminfo.get("Slab", 0)),
        "mem_dirty": meminfo.get("Dirty", 0),
        "mem_writeback": meminfo.get("Writeback", 0),
        "swap_total": swap.total,
        "swap_free": swap.free,
        "swap_used": swap.used,
        "hp_total": meminfo.get("HugePages_Total", 0),
        "hp_free": meminfo.get("HugePages_Free", 0),
        "hp_rsvd": meminfo.get("HugePages_Rsvd", 0),
        "hp_surp": meminfo.get("HugePages_Surp", 0),
        "hp_pagesize": meminfo.get("Hugepagesize", 0),
    }
    for usage, value in usages.items():
        emit("node_memory_usage_bytes", float(value), (usage,))
    return len(usages)


def collect_filesystem(emit: Emit) -> int:
    cnt = 0
    for part in psutil.disk_partitions(all=False):
        try:
            st = os.statvfs(part.mountpoint)
        except OSError as exc:
            logger.debug("skip filesystem %s: %s", part.mountpoint, exc)
            continue
        total = st.f_blocks * st.f_frsize
        free = st.f_bfree * st.f_frsize
        avail = st.f_bavail * st.f_frsize
        reserved = free - avail
        labels = (part.device, part.mountpoint, part.opts)
        byte_usages = {
            "total_bytes": total,
            "free_bytes": free,
            "available_bytes": avail,
            "used_bytes": total - free,
            "reserved_bytes": reserved,
            "reserved_pct": reserved * 100 / total if total else 0,
        }
        inode_usages = {
            "total_inodes": st.f_files,
            "free_inodes": st.f_ffree,
            "used_inodes": st.f_files - st.f_ffree,
        }
        for usage, value in byte_usages.items():
            emit("node_filesystem_bytes", float(value), (usage, *labels))
        for usage, value in inode_usages.items():
            emit("node_filesystem_inodes", float(value), (usage, *labels))
        cnt += len(byte_usages) + len(inode_usages)
    return cnt


def read_sysctl(name: str) -> float:
    path = os.path.join(PROCFS, "sys", *name.split("."))
    with open(path, encoding="utf-8") as f:
        return float(f.read().split()[0])


def collect_sysctl(emit: Emit) -> int:
    cnt = 0
    for name in SYSCTL_LIST:
        try:
            value = read_sysctl(name)
        except (OSError, ValueError, IndexError) as exc:
            logger.debug("failed to obtain sysctl %s: %s", name, exc)
            continue
        emit("node_settings_sysctl", value, (name,))
        cnt += 1
    return cnt


def count_cpu_list(cpulist: str) -> int:
    """Count CPUs in a sysfs list such as ``0-3,8,10-11``."""
    total = 0
    for chunk in cpulist.strip().split(","):
        if not chunk:
            continue
        start, _, end = chunk.partition("-")
        total += int(end) - int(start) + 1 if end else 1
    return total


def _read_cpu_list(name: str) -> int:
    path = os.path.join(SYSFS, "devices", "system", "cpu", name)
    try:
        with open(path, encoding="utf-8") as f:
            return count_cpu_list(f.read())
    except FileNotFoundError:
        return 0


def collect_cpu_cores(emit: Emit) -> int:
    try:
        online = _read_cpu_list("online")
        offline = _read_cpu_list("offline")
    except (OSError, ValueError) as exc:
        logger.warning("failed counting CPUs: %s", exc)
        return 0
    if online == 0:
        online = psutil.cpu_count(logical=True) or 0
    for state, value in (("all", online + offline), ("online", online), ("offline", offline)):
        emit("node_hardware_cores_total", float(value), (state,))
    return 3


def collect_scaling_governors(emit: Emit) -> int:
    pattern = os.path.join(SYSFS, "devices", "system", "cpu", "cpu*", "cpufreq", "scaling_governor")
    governors: Counter[str] = Counter()
    for path in glob.glob(pattern):
        try:
            with open(path, encoding="utf-8") as f:
                governors[f.read().strip()] += 1
        except OSError as exc:
            logger.debug("skip %s: %s", path, exc)
    if not governors:
        emit("node_hardware_scaling_governors_total", 0.0, ("disabled",))
        return 1
    for governor, count in governors.items():
        emit("node_hardware_scaling_governors_total", float(count), (governor,))
    return len(governors)


def collect_numa_nodes(emit: Emit) -> int:
    nodes = glob.glob(os.path.join(SYSFS, "devices", "system", "node", "node[0-9]*"))
    emit("node_hardware_numa_nodes", float(len(nodes)), ())
    return 1


def _device_scheduler(devpath: str) -> str:
    with open(os.path.join(devpath, "queue", "scheduler"), encoding="utf-8") as f:
        content = f.read()
    match = re.search(r"\[(.+?)\]", content)
    return match.group(1) if match else content.strip()


def collect_storage_rotational(emit: Emit) -> int:
    cnt = 0
    for devpath in sorted(glob.glob(os.path.join(SYSFS, "block", "*"))):
        devname = os.path.basename(devpath)
        if not BLOCK_DEVICE_RE.match(devname):
            continue
        try:
            with open(os.path.join(devpath, "queue", "rotational"), encoding="utf-8") as f:
                rotational = float(f.read().strip())
            scheduler = _device_scheduler(devpath)
        except (OSError, ValueError) as exc:
            logger.warning("skip collecting io scheduler for %s: %s", devname, exc)
            continue
        emit("node_hardware_storage_rotational", rotational, (f"/dev/{devname}", scheduler))
        cnt += 1
    return cnt


def _uptime() -> float:
    return time.time() - psutil.boot_time()


def collect_uptime(emit: Emit) -> int:
    emit("node_uptime_seconds", _uptime(), ())
    return 1


SYSTEM_COLLECTORS: dict[str, Callable[[Emit], int]] = {
    "node_cpu_usage": collect_cpu,
    "node_diskstats": collect_diskstats,
    "node_netdev": collect_netdev,
    "node_memory": collect_memory,
    "node_filesystem": collect_filesystem,
    "node_settings": collect_sysctl,
    "node_hardware_cores": collect_cpu_cores,
    "node_hardware_scaling_governors": collect_scaling_governors,
    "node_hardware_numa": collect_numa_nodes,
    "node_hardware_storage_rotational": collect_storage_rotational,
    "node_uptime_seconds": collect_uptime,
}
