import codecs
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from shellmux.config import MAX_BUFFER_CHARS, TIMEOUT_MARKER
from shellmux.models import ExecResult
from shellmux.utils import iso_now, json_line


@dataclass
class RunState:
    """Shared state of one one-off execution.

    The producing thread appends output and marks completion; the waiting
    thread marks a timeout. Whichever calls mark_done first wins.
    """

    command: str
    timeout: float
    on_output: Optional[Callable[[bytes], None]] = None
    max_buffer_chars: int = MAX_BUFFER_CHARS
    run_log_path: str = ""

    lock: threading.Lock = field(default_factory=threading.Lock)
    done_event: threading.Event = field(default_factory=threading.Event)
    started_at: float = field(default_factory=time.time)
    status: str = "running"
    error: str = ""
    exit_code: Optional[int] = None
    finished_at: Optional[float] = None
    output_buffer: str = ""
    dropped_chars: int = 0
    total_received_bytes: int = 0
    _decoder: Any = field(default_factory=lambda: codecs.getincrementaldecoder("utf-8")(errors="replace"))

    def append_output(self, chunk: bytes) -> None:
        if not chunk:
            return
        with self.lock:
            if self.done_event.is_set():
                return
            self.output_buffer += self._decoder.decode(chunk)
            self.total_received_bytes += len(chunk)

            overflow = len(self.output_buffer) - self.max_buffer_chars
            if overflow > 0:
                self.output_buffer = self.output_buffer[overflow:]
                self.dropped_chars += overflow
        if self.run_log_path:
            json_line(self.run_log_path, {"ts": iso_now(), "dir": "OUT", "chunk": chunk.decode("utf-8", errors="replace")})
        if self.on_output is not None:
            self.on_output(chunk)

    def mark_done(self, status: str, exit_code: Optional[int] = None, error: str = "") -> bool:
        with self.lock:
            if self.done_event.is_set():
                return False
            self.output_buffer += self._decoder.decode(b"", final=True)
            self.status = status
            self.exit_code = exit_code
            self.error = error
            self.finished_at = time.time()
            self.done_event.set()
        if self.run_log_path:
            json_line(self.run_log_path, {"ts": iso_now(), "dir": "SYS", "event": "run_done", **self.summary()})
        return True

    def summary(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "exit_code": self.exit_code,
            "error": self.error,
            "total_received_bytes": self.total_received_bytes,
            "dropped_chars": self.dropped_chars,
            "elapsed": round((self.finished_at or time.time()) - self.started_at, 3),
        }

    def wait(self) -> bool:
        """Block until done or the deadline passes; returns False on timeout."""
        remaining = max(0.0, self.started_at + self.timeout - time.time())
        if self.done_event.wait(remaining):
            return True
        return not self.mark_done("timed_out")

    @property
    def timed_out(self) -> bool:
        return self.status == "timed_out"

    def to_result(self) -> ExecResult:
        with self.lock:
            output = self.output_buffer
            status = self.status
            exit_code = self.exit_code
            error = self.error

        if status == "timed_out":
            return ExecResult(self.command, output + TIMEOUT_MARKER, -1, False, True)
        if status == "failed":
            return ExecResult(self.command, output or error, -1, False)
        code = exit_code if exit_code is not None else -1
        return ExecResult(self.command, output, code, code == 0)
