import os
import platform
import socket
import time
from typing import Any, Dict, List, Optional

import psutil

from shellmux.models import ExecResult
from shellmux.utils import clean_output

PROBE_TIMEOUT_MS = 10000

REMOTE_PROBES = {
    "cpu": "top -bn1 | grep 'Cpu(s)' | awk '{print $2}' | cut -d'%' -f1",
    "memory": "free -b | awk 'NR==2{printf \"%d %d %.1f\", $2, $3, $3*100/$2}'",
    "network": "cat /proc/net/dev | awk 'NR>2{rx+=$2;tx+=$10}END{print rx,tx}'",
    "uptime": "uptime -p 2>/dev/null || uptime | awk -F'up ' '{print $2}' | awk -F',' '{print $1}'",
    "hostname": "hostname",
}


def local_system_info() -> Dict[str, Any]:
    memory = psutil.virtual_memory()
    try:
        loadavg: List[float] = list(os.getloadavg())
    except (AttributeError, OSError):
        loadavg = [0.0, 0.0, 0.0]
    return {
        "hostname": socket.gethostname(),
        "platform": platform.system().lower(),
        "arch": platform.machine(),
        "cpuUsage": round(psutil.cpu_percent(interval=None)),
        "cpuCores": psutil.cpu_count() or 0,
        "memTotal": memory.total,
        "memUsed": memory.total - memory.available,
        "memPercent": round(memory.percent),
        "uptime": int(time.time() - psutil.boot_time()),
        "loadavg": loadavg,
    }


def _float(text: str, default: float = 0.0) -> float:
    try:
        return float(text)
    except (TypeError, ValueError):
        return default


def _int(text: str, default: int = 0) -> int:
    try:
        return int(float(text))
    except (TypeError, ValueError):
        return default


def _field(parts: List[str], index: int) -> str:
    return parts[index] if index < len(parts) else ""


def parse_remote_probes(outputs: Dict[str, str], fallback_host: str = "") -> Dict[str, Any]:
    """Turn the raw probe outputs into numbers; anything unparsable becomes 0 / "-"."""
    memory = (outputs.get("memory") or "").split()
    network = (outputs.get("network") or "").split()
    return {
        "hostname": outputs.get("hostname") or fallback_host,
        "cpuUsage": _float(outputs.get("cpu", "")),
        "memTotal": _int(_field(memory, 0)),
        "memUsed": _int(_field(memory, 1)),
        "memPercent": _float(_field(memory, 2)),
        "netRx": _int(_field(network, 0)),
        "netTx": _int(_field(network, 1)),
        "uptime": outputs.get("uptime") or "-",
    }


def remote_system_info(registry, session_id: str, timeout_ms: int = PROBE_TIMEOUT_MS) -> Dict[str, Any]:
    """Run every probe concurrently on its own exec channel and parse the results."""
    futures = {name: registry.exec(session_id, command, timeout_ms) for name, command in REMOTE_PROBES.items()}
    outputs: Dict[str, str] = {}
    for name, future in futures.items():
        result: ExecResult = future.result()
        outputs[name] = clean_output(result.output) if result.success else ""

    record = registry.get(session_id)
    fallback: Optional[str] = record.config.host if record is not None and record.config else ""
    return parse_remote_probes(outputs, fallback or "")
