import threading
import uuid
from concurrent.futures import Future
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from shellmux.config import INTERACTIVE_GEOMETRY, MAX_EXEC_TIMEOUT_MS, ServerConfig
from shellmux.errors import AdapterUnavailable, NoActiveSession, SessionLimitReached, SpawnFailed
from shellmux.events import EventMultiplexer
from shellmux.local import PTY_AVAILABLE, PTY_IMPORT_ERROR, ShellProcessAdapter, run_local_once, shell_argv
from shellmux.models import (
    ConnectionProfile, EventKind, ExecResult, RemoteConfig, SessionKind, SessionRecord, SessionStatus,
)
from shellmux.ssh import RemoteConnectionAdapter
from shellmux.utils import clamp_int, iso_now, json_line, log_error, log_path_for, submit_in_thread

_ADAPTER_STATUS = {
    "connected": SessionStatus.CONNECTED,
    "disconnected": SessionStatus.DISCONNECTED,
    "error": SessionStatus.ERROR,
}


class SessionRegistry:
    """Owns every session record and is the only place lifecycle transitions happen.

    Adapters never see the session map: each one reports through the sink
    built in _sink_for, which ignores events from adapters no longer bound to
    their session (e.g. after a reconnect replaced them).
    """

    def __init__(
        self,
        settings: ServerConfig,
        events: EventMultiplexer,
        local_factory: Optional[Callable[..., Any]] = None,
        remote_factory: Optional[Callable[..., Any]] = None,
        pty_available: Optional[bool] = None,
    ):
        self.settings = settings
        self.events = events
        self._local_factory = local_factory or ShellProcessAdapter.spawn
        self._remote_factory = remote_factory or RemoteConnectionAdapter
        self._pty_available = PTY_AVAILABLE if pty_available is None else pty_available

        self.sessions: Dict[str, SessionRecord] = {}
        self.profile_sessions: Dict[str, str] = {}
        self.lock = threading.RLock()

    # ========= records =========

    def _log_session(self, record: SessionRecord, direction: str, payload: Dict[str, Any]) -> None:
        if not record.log_path:
            return
        data = {"ts": iso_now(), "dir": direction, "session_id": record.id}
        data.update(payload)
        json_line(record.log_path, data)

    def _ensure_record(self, session_id: Optional[str], kind: SessionKind) -> SessionRecord:
        with self.lock:
            sid = session_id or uuid.uuid4().hex
            record = self.sessions.get(sid)
            if record is not None:
                record.kind = kind
                return record
            limit = self.settings.MAX_SESSIONS
            if limit > 0 and len(self.sessions) >= limit:
                raise SessionLimitReached(f"session limit reached ({limit})")
            record = SessionRecord(id=sid, kind=kind)
            record.log_path = log_path_for(self.settings.CACHE_DIRS, "sessions", self.settings.PROJECT_TAG, sid)
            self.sessions[sid] = record
            self._log_session(record, "SYS", {"event": "session_created", "kind": kind.value})
            return record

    def _set_status(self, record: SessionRecord, status: SessionStatus, message: str = "", **extra: Any) -> None:
        record.status = status
        record.status_message = message
        self._log_session(record, "SYS", {"event": "status", "status": status.value, "message": message})
        self.events.publish(record.id, EventKind.STATUS, status=status.value, message=message, **extra)

    def _unbind(self, record: SessionRecord) -> Any:
        adapter, record.adapter = record.adapter, None
        return adapter

    def _sink_for(self, session_id: str) -> Callable[[Any, EventKind, Dict[str, Any]], None]:
        def sink(adapter: Any, kind: EventKind, payload: Dict[str, Any]) -> None:
            self._on_adapter_event(session_id, adapter, kind, payload)
        return sink

    def _on_adapter_event(self, session_id: str, adapter: Any, kind: EventKind, payload: Dict[str, Any]) -> None:
        with self.lock:
            record = self.sessions.get(session_id)
            if record is None or record.adapter is not adapter:
                return

            if kind == EventKind.DATA:
                self.events.publish(session_id, EventKind.DATA, **payload)
            elif kind == EventKind.EXIT:
                self._unbind(record)
                self.events.publish(session_id, EventKind.EXIT, **payload)
                self._set_status(record, SessionStatus.DISCONNECTED, f"shell exited with code {payload.get('code')}")
            elif kind == EventKind.STATUS:
                status = _ADAPTER_STATUS.get(payload.get("status", ""))
                if status is None:
                    return
                if status in (SessionStatus.DISCONNECTED, SessionStatus.ERROR):
                    self._unbind(record)
                extra = {"error": payload["error"]} if payload.get("error") else {}
                self._set_status(record, status, payload.get("message", ""), **extra)

    def _close_adapter(self, record: SessionRecord) -> None:
        adapter = self._unbind(record)
        if adapter is None:
            return
        try:
            adapter.close()
        except Exception as exc:
            log_error(f"session {record.id}: adapter close failed: {exc}")

    # ========= intents =========

    def create_local(self, session_id: Optional[str] = None) -> str:
        if not self._pty_available:
            raise AdapterUnavailable(PTY_IMPORT_ERROR or "pseudo-terminal support unavailable")

        with self.lock:
            record = self._ensure_record(session_id, SessionKind.LOCAL)
            record.config = None
            self._close_adapter(record)
            cols, rows = INTERACTIVE_GEOMETRY
            try:
                adapter = self._local_factory(
                    shell_argv(self.settings),
                    cwd=self.settings.local_cwd(),
                    env=self.settings.local_env(),
                    cols=cols,
                    rows=rows,
                    emit=self._sink_for(record.id),
                )
            except SpawnFailed as exc:
                self._set_status(record, SessionStatus.ERROR, str(exc))
                raise
            record.adapter = adapter
            self._set_status(record, SessionStatus.CONNECTED, "local shell ready")
            return record.id

    def connect_remote(
        self,
        session_id: Optional[str],
        config: Union[RemoteConfig, Mapping[str, Any]],
        profile_id: Optional[str] = None,
    ) -> str:
        if not isinstance(config, RemoteConfig):
            config = RemoteConfig.from_dict(config, default_port=self.settings.SSH_PORT)

        with self.lock:
            record = self._ensure_record(session_id, SessionKind.REMOTE)
            # the old transport's teardown starts before the new handshake
            self._close_adapter(record)
            record.config = config
            if profile_id:
                record.profile_id = profile_id
                self.profile_sessions[profile_id] = record.id
            self._log_session(record, "IN", {"event": "connect_start", **config.describe()})
            self._set_status(record, SessionStatus.CONNECTING, f"connecting to {config.host}:{config.port}")

            adapter = self._remote_factory(config, self.settings, self._sink_for(record.id))
            record.adapter = adapter
            adapter.start()
            return record.id

    def get_or_create_session(self, profile_id: str) -> str:
        with self.lock:
            sid = self.profile_sessions.get(profile_id)
            if sid is not None and sid in self.sessions:
                return sid
            record = self._ensure_record(None, SessionKind.REMOTE)
            record.profile_id = profile_id
            self.profile_sessions[profile_id] = record.id
            return record.id

    def connect_profile(self, profile: ConnectionProfile) -> str:
        config = profile.to_remote_config()
        sid = self.get_or_create_session(profile.id)
        return self.connect_remote(sid, config, profile_id=profile.id)

    def write(self, session_id: str, data: Union[bytes, str]) -> None:
        with self.lock:
            record = self.sessions.get(session_id)
            adapter = record.adapter if record else None
        if adapter is not None:
            adapter.write(data)

    def resize(self, session_id: str, cols: int, rows: int) -> None:
        with self.lock:
            record = self.sessions.get(session_id)
            adapter = record.adapter if record else None
        if adapter is not None:
            adapter.resize(cols, rows)

    def disconnect(self, session_id: str) -> None:
        with self.lock:
            record = self.sessions.get(session_id)
            if record is None:
                return
            self._log_session(record, "IN", {"event": "disconnect"})
            had_adapter = record.adapter is not None
            self._close_adapter(record)
            if had_adapter or record.status != SessionStatus.DISCONNECTED:
                self._set_status(record, SessionStatus.DISCONNECTED, "disconnected")

    def destroy(self, session_id: str) -> None:
        with self.lock:
            record = self.sessions.get(session_id)
            if record is None:
                return
            self._close_adapter(record)
            self._log_session(record, "SYS", {"event": "destroyed"})
            del self.sessions[session_id]
            if record.profile_id and self.profile_sessions.get(record.profile_id) == session_id:
                del self.profile_sessions[record.profile_id]

    def exec(
        self,
        session_id: str,
        command: str,
        timeout_ms: Optional[int] = None,
        on_output: Optional[Callable[[bytes], None]] = None,
        run_log_path: str = "",
    ) -> "Future[ExecResult]":
        with self.lock:
            record = self.sessions.get(session_id)
            adapter = record.adapter if record else None
            if adapter is None:
                raise NoActiveSession(f"session {session_id} has no active connection")
            kind = record.kind

        if kind == SessionKind.LOCAL:
            timeout = self.timeout_seconds(timeout_ms, self.settings.LOCAL_EXEC_TIMEOUT_MS)
            return submit_in_thread(
                run_local_once, command, self.settings, timeout, on_output, run_log_path, name="local-exec"
            )
        timeout = self.timeout_seconds(timeout_ms, self.settings.REMOTE_EXEC_TIMEOUT_MS)
        return submit_in_thread(adapter.exec_once, command, timeout, on_output, run_log_path, name="ssh-exec")

    @staticmethod
    def timeout_seconds(timeout_ms: Optional[int], default_ms: int) -> float:
        return clamp_int(timeout_ms if timeout_ms is not None else default_ms, default_ms, 1, MAX_EXEC_TIMEOUT_MS) / 1000.0

    # ========= queries =========

    def get(self, session_id: str) -> Optional[SessionRecord]:
        with self.lock:
            return self.sessions.get(session_id)

    def list_sessions(self) -> List[Dict[str, Any]]:
        with self.lock:
            return [record.info() for record in self.sessions.values()]

    def close_all(self) -> None:
        with self.lock:
            records = list(self.sessions.values())
            self.sessions.clear()
            self.profile_sessions.clear()
        for record in records:
            self._close_adapter(record)
