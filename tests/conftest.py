import threading
import time

import pytest

from shellmux.config import ServerConfig
from shellmux.events import EventMultiplexer
from shellmux.models import EventKind, ExecResult
from shellmux.registry import SessionRegistry


class FakeRemoteAdapter:
    instances = []

    def __init__(self, config, settings, emit):
        self.config = config
        self.settings = settings
        self._emit = emit
        self.started = False
        self.close_calls = 0
        self.writes = []
        self.resizes = []
        self.exec_calls = []
        self.exec_delay = 0.0
        FakeRemoteAdapter.instances.append(self)

    def start(self):
        self.started = True
        return self

    def connect(self):
        self._emit(self, EventKind.STATUS, {"status": "connected", "message": "connected"})

    def fail(self, kind="auth_failed", message="Connection failed: authentication failed"):
        self._emit(self, EventKind.STATUS, {"status": "error", "message": message, "error": kind})

    def send(self, data):
        self._emit(self, EventKind.DATA, {"data": data})

    def write(self, data):
        self.writes.append(data)

    def resize(self, cols, rows):
        self.resizes.append((cols, rows))

    def exec_once(self, command, timeout, on_output=None, run_log_path=""):
        self.exec_calls.append((command, timeout))
        if on_output is not None:
            on_output(b"out:" + command.encode())
        if self.exec_delay:
            time.sleep(self.exec_delay)
        return ExecResult(command, "out:" + command, 0, True)

    def close(self):
        self.close_calls += 1
        self._emit(self, EventKind.STATUS, {"status": "disconnected", "message": "connection closed"})


class FakeLocalAdapter:
    def __init__(self, argv, emit, cols, rows):
        self.argv = argv
        self._emit = emit
        self.geometry = (cols, rows)
        self.writes = []
        self.resizes = []
        self.killed = 0

    def write(self, data):
        self.writes.append(data)

    def resize(self, cols, rows):
        self.resizes.append((cols, rows))

    def exit(self, code=0):
        self._emit(self, EventKind.EXIT, {"code": code})

    def close(self):
        self.killed += 1


class LocalFactory:
    def __init__(self):
        self.created = []

    def __call__(self, argv, cwd, env, cols, rows, emit):
        adapter = FakeLocalAdapter(argv, emit, cols, rows)
        self.created.append(adapter)
        return adapter


@pytest.fixture
def settings():
    config = ServerConfig()
    config.SHELL_PATH = "/bin/sh"
    config.READY_TIMEOUT = 2.0
    return config


@pytest.fixture
def events():
    mux = EventMultiplexer()
    yield mux
    mux.close()


@pytest.fixture
def local_factory():
    return LocalFactory()


@pytest.fixture
def registry(settings, events, local_factory):
    FakeRemoteAdapter.instances = []
    reg = SessionRegistry(
        settings,
        events,
        local_factory=local_factory,
        remote_factory=FakeRemoteAdapter,
        pty_available=True,
    )
    yield reg
    reg.close_all()


@pytest.fixture
def password_config():
    return {"host": "10.0.0.5", "port": 22, "username": "root", "authType": "password", "password": "secret"}


def wait_for(predicate, timeout=3.0, interval=0.02):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class EventCollector:
    """Thread-safe emit sink for adapters under test."""

    def __init__(self):
        self.lock = threading.Lock()
        self.events = []

    def __call__(self, adapter, kind, payload):
        with self.lock:
            self.events.append((kind, payload))

    def of_kind(self, kind):
        with self.lock:
            return [payload for event_kind, payload in self.events if event_kind == kind]

    def statuses(self):
        return [payload["status"] for payload in self.of_kind(EventKind.STATUS)]

    def data(self):
        return b"".join(payload["data"] for payload in self.of_kind(EventKind.DATA))
