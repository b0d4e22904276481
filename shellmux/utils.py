import os
import re
import sys
import json
import hashlib
import threading
from concurrent.futures import Future
from datetime import datetime
from typing import Any, Callable, Dict, Optional
from shellmux.config import ANSI_ESCAPE, CONTROL_CHARS


def log_error(message: str) -> None:
    print(f"[shellmux] {message}", file=sys.stderr, flush=True)


def clamp_int(value: Any, default: int, min_value: int, max_value: int) -> int:
    try:
        numeric = int(value)
    except Exception:
        numeric = default
    if numeric < min_value:
        return min_value
    if numeric > max_value:
        return max_value
    return numeric


def iso_now() -> str:
    return datetime.now().isoformat(timespec="milliseconds")


def safe_name(text: str) -> str:
    cleaned = re.sub(r"[^a-zA-Z0-9._-]+", "_", text.strip())
    return cleaned[:80] if cleaned else "unnamed"


def clean_output(text: str) -> str:
    """Strip terminal escapes and normalise line endings of pty-captured text."""
    if not text:
        return ""
    text = ANSI_ESCAPE.sub("", text)
    text = CONTROL_CHARS.sub("", text)
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    return text.strip()


def json_line(path: str, payload: Dict[str, Any]) -> None:
    if not path:
        return
    try:
        with open(path, "a", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, ensure_ascii=False, default=str) + "\n")
    except Exception as exc:
        log_error(f"log write failed ({path}): {exc}")


def make_cache_dirs(cache_root: str) -> Dict[str, str]:
    sessions_dir = os.path.join(cache_root, "sessions")
    runs_dir = os.path.join(cache_root, "runs")
    os.makedirs(sessions_dir, exist_ok=True)
    os.makedirs(runs_dir, exist_ok=True)
    return {
        "cache_root": cache_root,
        "sessions_dir": sessions_dir,
        "runs_dir": runs_dir,
    }


def resolve_runtime_paths(
    project_root_arg: Optional[str],
    cache_dir_arg: Optional[str],
) -> Dict[str, str]:
    project_root = os.path.abspath(project_root_arg or os.getcwd())
    project_tag = safe_name(os.path.basename(project_root))
    project_hash = hashlib.sha1(project_root.encode("utf-8")).hexdigest()[:8]
    project_ns = f"{project_tag}-{project_hash}"
    cache_override = cache_dir_arg or os.environ.get("SHELLMUX_CACHE_DIR")
    if cache_override:
        cache_root = os.path.join(os.path.abspath(cache_override), project_ns)
    else:
        cache_root = os.path.join(project_root, ".shellmux-cache")
    return {
        "project_root": project_root,
        "project_tag": project_tag,
        "cache_root": cache_root,
    }


def log_path_for(cache_dirs: Dict[str, str], kind: str, *parts: str) -> str:
    """Build a timestamped log file path under one of the cache dirs, or "" if logging is off."""
    directory = cache_dirs.get(f"{kind}_dir") if cache_dirs else None
    if not directory:
        return ""
    stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    name = "__".join(safe_name(part) for part in parts if part)
    return os.path.join(directory, f"{name}__{stamp}.log")


def submit_in_thread(fn: Callable[..., Any], *args: Any, name: str = "", **kwargs: Any) -> Future:
    """Run fn on a dedicated daemon thread and expose its outcome as a Future."""
    future: Future = Future()

    def worker() -> None:
        if not future.set_running_or_notify_cancel():
            return
        try:
            result = fn(*args, **kwargs)
        except BaseException as exc:
            future.set_exception(exc)
        else:
            future.set_result(result)

    thread = threading.Thread(target=worker, name=name or None, daemon=True)
    thread.start()
    return future
