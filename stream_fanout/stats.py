"""Process and host resource statistics (psutil)."""

import logging
from typing import Dict, Iterable, Optional

import psutil

logger = logging.getLogger(__name__)


def get_process_stats(pids: Iterable[Optional[int]]) -> Dict[int, Dict[str, float]]:
    """
    Get CPU and memory usage for child processes.

    CPU is sampled without blocking, so the first reading for a process is 0.

    Args:
        pids: Process IDs (None entries are skipped)

    Returns:
        Mapping of PID to {"cpu_percent", "memory_mb"}; processes that are
        gone or inaccessible are left out
    """
    stats: Dict[int, Dict[str, float]] = {}
    for pid in pids:
        if pid is None:
            continue
        try:
            process = psutil.Process(pid)
            with process.oneshot():
                cpu_percent = process.cpu_percent(interval=None)
                memory_mb = process.memory_info().rss / 1024 / 1024
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess) as e:
            logger.debug(f"No stats for PID {pid}: {e}")
            continue
        stats[pid] = {
            "cpu_percent": round(cpu_percent, 1),
            "memory_mb": round(memory_mb, 1),
        }
    return stats


def get_system_stats() -> Dict[str, float]:
    """Host-wide CPU and memory usage."""
    memory = psutil.virtual_memory()
    return {
        "cpu_percent": psutil.cpu_percent(interval=None),
        "cpu_count": psutil.cpu_count() or 0,
        "memory_percent": memory.percent,
        "memory_used_mb": round(memory.used / 1024 / 1024, 1),
        "memory_total_mb": round(memory.total / 1024 / 1024, 1),
    }
