import contextlib
import os
import platform
import socket
import subprocess
from pathlib import Path

import psutil

from sweepfarm.models.compute import CPUSpec


def _darwin_cpu_name() -> str | None:
    result = subprocess.run(
        ["sysctl", "-n", "machdep.cpu.brand_string"], capture_output=True, text=True, timeout=1
    )
    return result.stdout.strip() if result.returncode == 0 else None


def _linux_cpu_name() -> str | None:
    for line in Path("/proc/cpuinfo").read_text().splitlines():
        key, _, value = line.partition(":")
        if key.strip() == "model name":
            return value.strip()
    return None


_NAME_PROBES = {"Darwin": _darwin_cpu_name, "Linux": _linux_cpu_name}


def _cpu_name() -> str:
    name = None
    probe = _NAME_PROBES.get(platform.system())
    if probe is not None:
        with contextlib.suppress(OSError, subprocess.SubprocessError):
            name = probe()
    return name or platform.processor() or platform.machine()


def cpu_count() -> int:
    """Logical CPUs available to this process, never less than one."""
    with contextlib.suppress(AttributeError, OSError):
        return len(os.sched_getaffinity(0)) or 1
    return psutil.cpu_count(logical=True) or 1


def detect_cpu(sample_interval: float = 0.1) -> CPUSpec:
    mem = psutil.virtual_memory()
    return CPUSpec(
        cores=cpu_count(),
        memory_gb=mem.total // (1024**3),
        name=_cpu_name(),
        utilization_percent=psutil.cpu_percent(interval=sample_interval),
        memory_used_mib=int(mem.used // (1024**2)),
    )


def detect_host() -> dict:
    return {"node_id": socket.gethostname(), "cpu": detect_cpu().to_dict()}
