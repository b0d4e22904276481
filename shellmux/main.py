import sys
import io
import json
import argparse
import threading
from typing import Any, Dict
from shellmux.config import ServerConfig
from shellmux.events import EventMultiplexer, Subscription
from shellmux.executor import CommandExecutor
from shellmux.local import PTY_AVAILABLE, PTY_IMPORT_ERROR
from shellmux.registry import SessionRegistry
from shellmux.server import handle_request, make_error, INTERNAL_ERROR
from shellmux.utils import log_error, make_cache_dirs, resolve_runtime_paths

# Force UTF-8 I/O regardless of the platform's console code page
_stdin = io.TextIOWrapper(sys.stdin.buffer, encoding="utf-8", errors="replace")
_stdout = io.TextIOWrapper(sys.stdout.buffer, encoding="utf-8", line_buffering=True)
_write_lock = threading.Lock()


def _write_response(response: Dict[str, Any]) -> None:
    """Write one JSON-RPC message to stdout as UTF-8; safe from any thread."""
    with _write_lock:
        try:
            _stdout.write(json.dumps(response, ensure_ascii=False) + "\n")
            _stdout.flush()
        except Exception as exc:
            log_error(f"response write error: {exc}")
            # Fallback: escape all non-ASCII to guarantee safe output
            try:
                _stdout.write(json.dumps(response, ensure_ascii=True) + "\n")
                _stdout.flush()
            except Exception as exc2:
                log_error(f"response write fallback error: {exc2}")


def _pump_events(subscription: Subscription) -> None:
    for event in subscription:
        _write_response({"jsonrpc": "2.0", "method": "session_event", "params": event.to_dict()})


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Session manager for one local shell and many SSH shells (JSON-RPC over stdio)"
    )
    parser.add_argument("--shell", help="Local shell path (overrides SHELL env)")
    parser.add_argument("--port", type=int, help="Default SSH port (overrides SHELLMUX_SSH_PORT env)")
    parser.add_argument("--ready-timeout", type=float, help="SSH handshake timeout in seconds")
    parser.add_argument("--keepalive-interval", type=float, help="Seconds between SSH keep-alive probes")
    parser.add_argument("--keepalive-max-missed", type=int, help="Missed keep-alive replies before giving up")
    parser.add_argument("--verify-host", action="store_true", help="Verify SSH host keys against known_hosts")
    parser.add_argument("--no-verify-host", action="store_true", help="Disable SSH host key verification")
    parser.add_argument("--known-hosts", help="known_hosts file used with --verify-host")
    parser.add_argument("--max-sessions", type=int, help="Maximum number of sessions (0 = unlimited)")
    parser.add_argument("--cwd", help="Working directory for local shells")
    parser.add_argument("--project-root", help="Project root for local state")
    parser.add_argument("--cache-dir", help="Optional cache root override")
    parser.add_argument("--no-logs", action="store_true", help="Do not write session/run logs")
    return parser


def load_config(argv=None) -> ServerConfig:
    config = ServerConfig()
    # Pre-load from environment
    config.load_from_env()

    parser = build_parser()
    args = parser.parse_args(argv)

    # Apply args over env vars
    if args.shell: config.SHELL_PATH = args.shell
    if args.port: config.SSH_PORT = args.port
    if args.ready_timeout: config.READY_TIMEOUT = args.ready_timeout
    if args.keepalive_interval: config.KEEPALIVE_INTERVAL = args.keepalive_interval
    if args.keepalive_max_missed: config.KEEPALIVE_MAX_MISSED = args.keepalive_max_missed
    if args.known_hosts: config.SSH_KNOWN_HOSTS = args.known_hosts
    if args.max_sessions is not None: config.MAX_SESSIONS = args.max_sessions
    if args.cwd: config.LOCAL_CWD = args.cwd

    if args.no_verify_host:
        config.SSH_VERIFY_HOST_KEY = False
    elif args.verify_host:
        config.SSH_VERIFY_HOST_KEY = True

    if config.READY_TIMEOUT <= 0:
        parser.error("ready timeout must be positive")
    if config.KEEPALIVE_INTERVAL <= 0 or config.KEEPALIVE_MAX_MISSED <= 0:
        parser.error("keep-alive interval and max missed must be positive")

    runtime_paths = resolve_runtime_paths(project_root_arg=args.project_root, cache_dir_arg=args.cache_dir)
    config.PROJECT_ROOT = runtime_paths["project_root"]
    config.PROJECT_TAG = runtime_paths["project_tag"]
    if not args.no_logs:
        config.CACHE_DIRS = make_cache_dirs(runtime_paths["cache_root"])
    return config


def main(argv=None) -> None:
    config = load_config(argv)

    events = EventMultiplexer()
    registry = SessionRegistry(config, events)
    executor = CommandExecutor(registry, events, config)

    pump = threading.Thread(target=_pump_events, args=(events.subscribe(),), name="event-pump", daemon=True)
    pump.start()

    if not PTY_AVAILABLE:
        log_error(f"local shell disabled: {PTY_IMPORT_ERROR}")
    log_error(
        f"shellmux started. shell={config.SHELL_PATH} "
        f"cache={config.CACHE_DIRS.get('cache_root', '-')} verify_host={config.SSH_VERIFY_HOST_KEY}"
    )

    try:
        for line in _stdin:
            line = line.strip()
            if not line:
                continue
            try:
                request = json.loads(line)
            except json.JSONDecodeError as exc:
                log_error(f"invalid json: {exc}")
                continue
            if not isinstance(request, dict):
                log_error("invalid request: expected a JSON object")
                continue
            try:
                response = handle_request(request, executor, _write_response)
            except Exception as exc:
                log_error(f"unexpected error: {exc}")
                # Send an error response back so the client doesn't hang
                response = make_error(request.get("id"), INTERNAL_ERROR, f"Internal error: {exc}")
            if response is not None:
                _write_response(response)
    finally:
        log_error("shutting down...")
        registry.close_all()
        events.close()
        pump.join(timeout=2.0)


if __name__ == "__main__":
    main()
