"""Resource usage of worker processes."""

from typing import Any, Dict

import psutil


def get_process_stats(pid: int) -> Dict[str, Any]:
    """Get resource usage statistics for a process."""
    try:
        process = psutil.Process(pid)

        with process.oneshot():
            memory_info = process.memory_info()
            memory_percent = process.memory_percent()
            cpu_times = process.cpu_times()
            num_threads = process.num_threads()
            status = process.status()

        return {
            "pid": pid,
            "status": status,
            "memory": {
                "rss_bytes": memory_info.rss,
                "vms_bytes": memory_info.vms,
                "percent": round(memory_percent, 2),
            },
            "cpu": {
                "percent": process.cpu_percent(interval=None),
                "user_time": cpu_times.user,
                "system_time": cpu_times.system,
            },
            "num_threads": num_threads,
        }

    except psutil.NoSuchProcess:
        return {"error": "Process not found"}
    except psutil.Error as e:
        return {"error": str(e)}
