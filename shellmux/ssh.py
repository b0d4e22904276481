import os
import socket
import threading
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

import paramiko

from shellmux.config import (
    BUFFER_SIZE, CIPHERS, HOST_KEY_ALGORITHMS, INTERACTIVE_GEOMETRY, KEX_ALGORITHMS,
    MAC_ALGORITHMS, ServerConfig,
)
from shellmux.errors import (
    NoActiveSession, TransportError, TransportErrorKind, classify_transport_error,
)
from shellmux.models import EventKind, ExecResult, PasswordAuth, RemoteConfig
from shellmux.runstate import RunState
from shellmux.utils import log_error

Emit = Callable[[Any, EventKind, Dict[str, Any]], None]

KEEPALIVE_REQUEST = "keepalive@openssh.com"


class AdapterState(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSED = "closed"
    ERROR = "error"


def _allowed(preferred: Sequence[str], supported: Sequence[str]) -> tuple:
    return tuple(name for name in preferred if name in supported)


def apply_algorithm_policy(options: paramiko.SecurityOptions) -> None:
    """Restrict negotiation to the allow-lists, keeping their strongest-first order.

    Names this paramiko build does not offer are skipped; the defaults are
    kept for a category whose allow-list has no overlap at all.
    """
    for attr, preferred in (
        ("kex", KEX_ALGORITHMS),
        ("ciphers", CIPHERS),
        ("key_types", HOST_KEY_ALGORITHMS),
        ("digests", MAC_ALGORITHMS),
    ):
        allowed = _allowed(preferred, getattr(options, attr))
        if allowed:
            setattr(options, attr, allowed)


def load_private_key(path: str, passphrase: Optional[str] = None) -> paramiko.PKey:
    expanded = os.path.expanduser(path)
    if not os.path.isfile(expanded):
        raise TransportError(TransportErrorKind.MALFORMED_KEY, f"file not found: {path}")

    last_error: Optional[Exception] = None
    for key_class in (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey):
        try:
            return key_class.from_private_key_file(expanded, password=passphrase or None)
        except paramiko.PasswordRequiredException:
            raise
        except (paramiko.SSHException, ValueError) as exc:
            last_error = exc
    raise TransportError(TransportErrorKind.MALFORMED_KEY, str(last_error) if last_error else path)


class RemoteConnectionAdapter:
    def __init__(self, config: RemoteConfig, settings: ServerConfig, emit: Emit):
        self.config = config
        self.settings = settings
        self._emit = emit

        self.state = AdapterState.CONNECTING
        self.transport: Optional[paramiko.Transport] = None
        self.channel: Optional[paramiko.Channel] = None
        self._sock: Optional[socket.socket] = None

        self.lock = threading.Lock()
        self._closing = False
        self._final_emitted: Optional[AdapterState] = None
        self._failure: Optional[TransportError] = None
        self._stop = threading.Event()
        self._ready_watchdog: Optional[threading.Timer] = None
        self._deadline = time.time() + settings.READY_TIMEOUT
        self._thread = threading.Thread(
            target=self._run, name=f"ssh-{config.host}:{config.port}", daemon=True
        )

    # ========= lifecycle =========

    def start(self) -> "RemoteConnectionAdapter":
        self._deadline = time.time() + self.settings.READY_TIMEOUT
        self._ready_watchdog = threading.Timer(self.settings.READY_TIMEOUT, self._on_ready_timeout)
        self._ready_watchdog.daemon = True
        self._ready_watchdog.start()
        self._thread.start()
        return self

    def _on_ready_timeout(self) -> None:
        with self.lock:
            if self.state != AdapterState.CONNECTING or self._closing:
                return
            self._failure = TransportError(
                TransportErrorKind.TIMEOUT,
                f"handshake did not complete within {self.settings.READY_TIMEOUT:g}s",
            )
        self._fail(self._failure)

    def _remaining(self) -> float:
        return max(0.1, self._deadline - time.time())

    def _run(self) -> None:
        try:
            self._open_transport()
            with self.lock:
                if self._closing:
                    return
                if self._failure is not None:
                    raise self._failure
                self.state = AdapterState.CONNECTED
            if self._ready_watchdog is not None:
                self._ready_watchdog.cancel()
            self._emit(self, EventKind.STATUS, {"status": "connected", "message": "connected"})
            self._open_shell()
        except Exception as exc:
            self._fail(exc)
            return

        threading.Thread(target=self._keepalive_loop, name=f"{self._thread.name}-keepalive", daemon=True).start()
        self._pump_shell()

    def _open_transport(self) -> None:
        config = self.config
        self._sock = socket.create_connection((config.host, config.port), timeout=self._remaining())
        timeout = self._remaining()
        transport = paramiko.Transport(self._sock)
        # the watchdog, not paramiko, reports a stalled handshake
        transport.banner_timeout = timeout + 1.0
        transport.auth_timeout = timeout + 1.0
        apply_algorithm_policy(transport.get_security_options())
        with self.lock:
            self.transport = transport
            if self._closing or self._failure is not None:
                raise self._failure or TransportError(TransportErrorKind.OTHER, "closed while connecting")

        transport.start_client(timeout=self._remaining())
        self._check_host_key(transport)
        self._authenticate(transport)

    def _check_host_key(self, transport: paramiko.Transport) -> None:
        if not self.settings.SSH_VERIFY_HOST_KEY:
            return
        host_keys = paramiko.HostKeys()
        known_hosts = os.path.expanduser(self.settings.SSH_KNOWN_HOSTS)
        if os.path.isfile(known_hosts):
            host_keys.load(known_hosts)

        server_key = transport.get_remote_server_key()
        port = self.config.port
        lookup = self.config.host if port == 22 else f"[{self.config.host}]:{port}"
        known = host_keys.lookup(lookup)
        if known is None or server_key.get_name() not in known:
            raise paramiko.SSHException(f"host key for {lookup} not found in {known_hosts}")
        expected = known[server_key.get_name()]
        if expected != server_key:
            raise paramiko.BadHostKeyException(lookup, server_key, expected)

    def _authenticate(self, transport: paramiko.Transport) -> None:
        config = self.config
        auth = config.auth
        if isinstance(auth, PasswordAuth):
            try:
                transport.auth_password(config.username, auth.password)
            except paramiko.BadAuthenticationType as exc:
                if "keyboard-interactive" not in exc.allowed_types:
                    raise
                transport.auth_interactive(config.username, self.answer_interactive)
        else:
            key = load_private_key(auth.key_path, auth.passphrase)
            remaining = transport.auth_publickey(config.username, key)
            if not transport.is_authenticated() and "keyboard-interactive" in (remaining or []):
                transport.auth_interactive(config.username, self.answer_interactive)

        if not transport.is_authenticated():
            raise paramiko.AuthenticationException("Authentication failed.")

    def answer_interactive(self, title: str, instructions: str, prompts: List[Any]) -> List[str]:
        password = self.config.password
        if prompts and password:
            return [password for _ in prompts]
        return []

    def _open_shell(self) -> None:
        transport = self.transport
        if transport is None:
            raise TransportError(TransportErrorKind.OTHER, "transport not available")
        cols, rows = INTERACTIVE_GEOMETRY
        channel = transport.open_session(timeout=self.settings.READY_TIMEOUT)
        channel.get_pty(term=self.settings.TERM_NAME, width=cols, height=rows)
        channel.invoke_shell()
        channel.set_combine_stderr(True)
        with self.lock:
            self.channel = channel

    def _pump_shell(self) -> None:
        channel = self.channel
        try:
            while True:
                chunk = channel.recv(BUFFER_SIZE)
                if not chunk:
                    break
                self._emit(self, EventKind.DATA, {"data": chunk})
        except Exception as exc:
            self._fail(exc)
            return

        transport = self.transport
        error = self._failure
        if error is None and transport is not None and not self._closing:
            saved = transport.get_exception()
            if saved is not None:
                error = classify_transport_error(saved)
        if error is not None and not self._closing:
            self._fail(error)
        else:
            self.close()

    def _fail(self, exc: BaseException) -> None:
        with self.lock:
            if self._closing:
                return
            error = self._failure or classify_transport_error(exc)
            self._failure = error
            self.state = AdapterState.ERROR
        if self._ready_watchdog is not None:
            self._ready_watchdog.cancel()
        log_error(f"ssh {self.config.host}:{self.config.port} failed ({error.kind.value}): {exc}")
        self._stop.set()
        self._drop_transport()
        self._emit_final(AdapterState.ERROR, f"Connection failed: {error.message}", error.kind.value)

    def _emit_final(self, state: AdapterState, message: str, error_kind: str = "") -> None:
        with self.lock:
            # one terminal status per adapter
            if self._final_emitted is not None:
                return
            self._final_emitted = state
        if state == AdapterState.ERROR:
            self._emit(self, EventKind.STATUS, {"status": "error", "message": message, "error": error_kind})
        else:
            self._emit(self, EventKind.STATUS, {"status": "disconnected", "message": message})

    # ========= keep-alive =========

    def _keepalive_loop(self) -> None:
        interval = self.settings.KEEPALIVE_INTERVAL
        max_missed = self.settings.KEEPALIVE_MAX_MISSED
        missed = 0
        while not self._stop.wait(interval):
            transport = self.transport
            if transport is None or not transport.is_active():
                return
            if self._probe(transport, interval):
                missed = 0
                continue
            missed += 1
            log_error(f"ssh {self.config.host}: keep-alive missed ({missed}/{max_missed})")
            if missed >= max_missed:
                with self.lock:
                    if self._failure is None:
                        self._failure = TransportError(
                            TransportErrorKind.TIMEOUT, f"no keep-alive reply after {missed} probes"
                        )
                self._drop_transport()
                return

    def _probe(self, transport: paramiko.Transport, wait: float) -> bool:
        answered = threading.Event()

        def send() -> None:
            try:
                transport.global_request(KEEPALIVE_REQUEST, wait=True)
            except Exception:
                return
            # success and failure replies both prove the peer is alive
            if transport.is_active():
                answered.set()

        threading.Thread(target=send, daemon=True).start()
        return answered.wait(wait)

    # ========= interactive channel =========

    def write(self, data: Union[bytes, str]) -> None:
        channel = self.channel
        if channel is None or channel.closed or not data:
            return
        try:
            channel.sendall(data)
        except Exception as exc:
            log_error(f"ssh {self.config.host}: write failed: {exc}")

    def resize(self, cols: int, rows: int) -> None:
        channel = self.channel
        if channel is None or channel.closed or cols <= 0 or rows <= 0:
            return
        try:
            channel.resize_pty(width=cols, height=rows)
        except Exception:
            pass

    # ========= one-off execution =========

    def exec_once(
        self,
        command: str,
        timeout: float,
        on_output: Optional[Callable[[bytes], None]] = None,
        run_log_path: str = "",
    ) -> ExecResult:
        transport = self.transport
        if self.state != AdapterState.CONNECTED or transport is None or not transport.is_active():
            raise NoActiveSession(f"no live connection to {self.config.host}")

        run = RunState(command=command, timeout=timeout, on_output=on_output, run_log_path=run_log_path)
        holder: Dict[str, paramiko.Channel] = {}
        worker = threading.Thread(
            target=self._exec_worker, args=(transport, run, holder), name="ssh-exec", daemon=True
        )
        worker.start()

        if not run.wait():
            # abandoned: close best-effort without waiting for the peer
            channel = holder.get("channel")
            if channel is not None:
                threading.Thread(target=_close_quietly, args=(channel,), daemon=True).start()
        return run.to_result()

    def _exec_worker(self, transport: paramiko.Transport, run: RunState, holder: Dict[str, Any]) -> None:
        try:
            channel = transport.open_session(timeout=run.timeout)
            holder["channel"] = channel
            if run.done_event.is_set():
                _close_quietly(channel)
                return
            channel.set_combine_stderr(True)
            channel.exec_command(run.command)
            channel.settimeout(0.5)
            while not run.done_event.is_set():
                try:
                    chunk = channel.recv(BUFFER_SIZE)
                except socket.timeout:
                    continue
                if not chunk:
                    break
                run.append_output(chunk)
            remaining = max(0.0, run.started_at + run.timeout - time.time())
            if channel.status_event.wait(remaining):
                run.mark_done("completed", exit_code=channel.exit_status)
            else:
                run.mark_done("timed_out")
            _close_quietly(channel)
        except Exception as exc:
            run.mark_done("failed", error=str(exc))

    # ========= teardown =========

    def _drop_transport(self) -> None:
        with self.lock:
            channel, self.channel = self.channel, None
            transport = self.transport
            sock = self._sock
        if channel is not None:
            _close_quietly(channel)
        if transport is not None:
            _close_quietly(transport)
        elif sock is not None:
            _close_quietly(sock)

    def close(self) -> None:
        with self.lock:
            already = self._closing
            self._closing = True
            if self.state != AdapterState.ERROR:
                self.state = AdapterState.CLOSED
        if not already:
            self._stop.set()
            if self._ready_watchdog is not None:
                self._ready_watchdog.cancel()
            threading.Thread(target=self._drop_transport, name="ssh-teardown", daemon=True).start()
        self._emit_final(AdapterState.CLOSED, "connection closed")

    def is_alive(self) -> bool:
        transport = self.transport
        return self.state == AdapterState.CONNECTED and bool(transport and transport.is_active())


def _close_quietly(resource: Any) -> None:
    try:
        resource.close()
    except Exception:
        pass
