from concurrent.futures import Future
from typing import Callable, Optional

from shellmux.config import ServerConfig
from shellmux.events import EventMultiplexer
from shellmux.local import run_local_once
from shellmux.models import LOCAL_TARGET, EventKind, ExecResult
from shellmux.registry import SessionRegistry
from shellmux.utils import iso_now, json_line, log_path_for, submit_in_thread


class CommandExecutor:
    """Runs one-off commands against the local machine or a connected session.

    Output chunks are streamed as exec_output events tagged with the target
    while the full combined output is buffered for the returned ExecResult.
    Runs are independent of one another and of the interactive shells.
    """

    def __init__(self, registry: SessionRegistry, events: EventMultiplexer, settings: ServerConfig):
        self.registry = registry
        self.events = events
        self.settings = settings

    def _streamer(self, target: str) -> Callable[[bytes], None]:
        def stream(chunk: bytes) -> None:
            self.events.publish(target, EventKind.EXEC_OUTPUT, data=chunk)
        return stream

    def run(self, target: str, command: str, timeout_ms: Optional[int] = None) -> "Future[ExecResult]":
        """Start command on target ("local" or a session id); raises NoActiveSession for an unbound session."""
        target = target or LOCAL_TARGET
        log_path = log_path_for(self.settings.CACHE_DIRS, "runs", self.settings.PROJECT_TAG, target)
        json_line(log_path, {"ts": iso_now(), "dir": "IN", "event": "run_start", "target": target,
                             "command": command, "timeout_ms": timeout_ms})

        if target == LOCAL_TARGET:
            timeout = SessionRegistry.timeout_seconds(timeout_ms, self.settings.LOCAL_EXEC_TIMEOUT_MS)
            future = submit_in_thread(
                run_local_once, command, self.settings, timeout, self._streamer(target), log_path,
                name="local-run",
            )
        else:
            future = self.registry.exec(
                target, command, timeout_ms, on_output=self._streamer(target), run_log_path=log_path
            )

        if log_path:
            future.add_done_callback(lambda done: self._log_finished(log_path, done))
        return future

    def run_sync(self, target: str, command: str, timeout_ms: Optional[int] = None) -> ExecResult:
        return self.run(target, command, timeout_ms).result()

    @staticmethod
    def _log_finished(log_path: str, future: "Future[ExecResult]") -> None:
        error = future.exception()
        if error is not None:
            json_line(log_path, {"ts": iso_now(), "dir": "SYS", "event": "run_failed", "error": str(error)})
            return
        result = future.result()
        json_line(
            log_path,
            {
                "ts": iso_now(),
                "dir": "SYS",
                "event": "run_finished",
                "exit_code": result.exit_code,
                "success": result.success,
                "timed_out": result.timed_out,
            },
        )
