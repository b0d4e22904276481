"""
Local shell adapter: one OS process attached to its own pseudo-terminal.

The pty machinery is POSIX-only; availability is probed once at import and
reported through PTY_AVAILABLE / PTY_IMPORT_ERROR instead of failing per call.
"""

import os
import signal
import struct
import subprocess
import threading
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from shellmux.config import BUFFER_SIZE, EXEC_GEOMETRY, ServerConfig
from shellmux.errors import AdapterUnavailable, SpawnFailed
from shellmux.models import EventKind, ExecResult
from shellmux.runstate import RunState
from shellmux.utils import log_error

try:
    import fcntl
    import pty
    import termios
    PTY_AVAILABLE = True
    PTY_IMPORT_ERROR = ""
except ImportError as exc:  # Windows
    PTY_AVAILABLE = False
    PTY_IMPORT_ERROR = f"pseudo-terminal support unavailable: {exc}"

Emit = Callable[[Any, EventKind, Dict[str, Any]], None]


def _set_winsize(fd: int, cols: int, rows: int) -> None:
    winsize = struct.pack("HHHH", rows, cols, 0, 0)
    fcntl.ioctl(fd, termios.TIOCSWINSZ, winsize)


def _become_session_leader() -> None:
    # runs in the child: new session, with the pty slave on fd 0 as controlling terminal
    os.setsid()
    try:
        fcntl.ioctl(0, termios.TIOCSCTTY, 0)
    except OSError:
        pass


class ShellProcessAdapter:
    def __init__(self, process: subprocess.Popen, master_fd: int, emit: Emit):
        self.process = process
        self.master_fd = master_fd
        self._emit = emit
        self._lock = threading.Lock()
        self._killed = False
        self._fd_closed = False
        self.exit_code: Optional[int] = None
        self._reader = threading.Thread(target=self._reader_loop, name=f"pty-{process.pid}", daemon=True)

    @classmethod
    def spawn(
        cls,
        argv: Sequence[str],
        cwd: Optional[str],
        env: Optional[Dict[str, str]],
        cols: int,
        rows: int,
        emit: Emit,
    ) -> "ShellProcessAdapter":
        if not PTY_AVAILABLE:
            raise AdapterUnavailable(PTY_IMPORT_ERROR)

        try:
            master_fd, slave_fd = pty.openpty()
        except OSError as exc:
            raise SpawnFailed(f"could not allocate a pseudo-terminal: {exc}") from exc

        try:
            _set_winsize(slave_fd, cols, rows)
            process = subprocess.Popen(
                list(argv),
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                cwd=cwd if cwd and os.path.isdir(cwd) else None,
                env=env,
                preexec_fn=_become_session_leader,
                close_fds=True,
            )
        except (OSError, ValueError) as exc:
            os.close(master_fd)
            raise SpawnFailed(f"could not start {argv[0] if argv else 'process'}: {exc}") from exc
        finally:
            os.close(slave_fd)

        adapter = cls(process, master_fd, emit)
        adapter._reader.start()
        return adapter

    @property
    def pid(self) -> int:
        return self.process.pid

    def is_alive(self) -> bool:
        return self.process.poll() is None

    def _reader_loop(self) -> None:
        try:
            while True:
                try:
                    chunk = os.read(self.master_fd, BUFFER_SIZE)
                except OSError:
                    # EIO once every slave handle is closed
                    break
                if not chunk:
                    break
                self._emit(self, EventKind.DATA, {"data": chunk})
        finally:
            code = self.process.wait()
            self.exit_code = code
            self._close_fd()
            self._emit(self, EventKind.EXIT, {"code": code})

    def _close_fd(self) -> None:
        with self._lock:
            if self._fd_closed:
                return
            self._fd_closed = True
        try:
            os.close(self.master_fd)
        except OSError:
            pass

    def write(self, data: Union[bytes, str]) -> None:
        if isinstance(data, str):
            data = data.encode("utf-8")
        if not data:
            return
        # a closed fd number can be handed to another pty
        with self._lock:
            if self._fd_closed:
                return
            try:
                os.write(self.master_fd, data)
            except OSError as exc:
                log_error(f"pty write failed (pid={self.pid}): {exc}")

    def resize(self, cols: int, rows: int) -> None:
        if cols <= 0 or rows <= 0:
            return
        with self._lock:
            if self._fd_closed:
                return
            try:
                _set_winsize(self.master_fd, cols, rows)
            except OSError:
                pass

    def kill(self) -> None:
        with self._lock:
            if self._killed:
                return
            self._killed = True
        if self.process.poll() is not None:
            return
        try:
            os.killpg(os.getpgid(self.process.pid), signal.SIGHUP)
        except (OSError, ProcessLookupError):
            pass
        threading.Thread(target=self._reap, daemon=True).start()

    def _reap(self, grace: float = 2.0) -> None:
        try:
            self.process.wait(timeout=grace)
        except subprocess.TimeoutExpired:
            try:
                os.killpg(os.getpgid(self.process.pid), signal.SIGKILL)
            except (OSError, ProcessLookupError):
                pass

    close = kill


def shell_argv(settings: ServerConfig, command: Optional[str] = None) -> List[str]:
    if command is None:
        return [settings.SHELL_PATH]
    return [settings.SHELL_PATH, "-c", command]


def run_local_once(
    command: str,
    settings: ServerConfig,
    timeout: float,
    on_output: Optional[Callable[[bytes], None]] = None,
    run_log_path: str = "",
) -> ExecResult:
    """Run one command to completion in a dedicated pty-backed process."""
    run = RunState(command=command, timeout=timeout, on_output=on_output, run_log_path=run_log_path)

    def sink(_adapter: Any, kind: EventKind, payload: Dict[str, Any]) -> None:
        if kind == EventKind.DATA:
            run.append_output(payload["data"])
        elif kind == EventKind.EXIT:
            run.mark_done("completed", exit_code=payload["code"])

    cols, rows = EXEC_GEOMETRY
    try:
        adapter = ShellProcessAdapter.spawn(
            shell_argv(settings, command),
            cwd=settings.local_cwd(),
            env=settings.local_env(),
            cols=cols,
            rows=rows,
            emit=sink,
        )
    except SpawnFailed as exc:
        run.mark_done("failed", error=str(exc))
        return run.to_result()

    if not run.wait():
        adapter.kill()
    return run.to_result()
