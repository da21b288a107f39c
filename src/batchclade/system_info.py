from __future__ import annotations

import os
import platform
from datetime import datetime, timezone


def now_utc_iso() -> str:
    fixed = os.environ.get("BATCHCLADE_FIXED_TIMESTAMP_UTC")
    if fixed:
        return fixed
    return datetime.now(tz=timezone.utc).isoformat()


def available_processors() -> int:
    """Processors this process may run on (affinity-aware where supported)."""
    if hasattr(os, "sched_getaffinity"):
        try:
            return max(1, len(os.sched_getaffinity(0)))
        except OSError:
            pass
    return max(1, os.cpu_count() or 1)


def get_system_metadata() -> dict[str, object]:
    return {
        "timestamp_utc": now_utc_iso(),
        "platform": platform.platform(),
        "machine": platform.machine(),
        "python_version": platform.python_version(),
        "cpu_count": os.cpu_count(),
        "usable_processors": available_processors(),
        "hostname": platform.node(),
    }
