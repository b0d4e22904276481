import socket
import threading
import time

import paramiko
import pytest

from conftest import EventCollector, wait_for
from shellmux.models import EventKind, RemoteConfig
from shellmux.ssh import RemoteConnectionAdapter

PASSWORD = "pw"


@pytest.fixture(scope="module")
def host_key():
    return paramiko.RSAKey.generate(2048)


class ShellServer(paramiko.ServerInterface):
    """Password-only server: the shell echoes lines back, exec runs a few canned commands."""

    def __init__(self, stop, ignore_keepalive=False):
        self.stop = stop
        self.ignore_keepalive = ignore_keepalive
        self.exec_commands = []

    def get_allowed_auths(self, username):
        return "password"

    def check_auth_password(self, username, password):
        return paramiko.AUTH_SUCCESSFUL if password == PASSWORD else paramiko.AUTH_FAILED

    def check_channel_request(self, kind, chanid):
        if kind == "session":
            return paramiko.OPEN_SUCCEEDED
        return paramiko.OPEN_FAILED_ADMINISTRATIVELY_PROHIBITED

    def check_channel_pty_request(self, channel, term, width, height, pixelwidth, pixelheight, modes):
        return True

    def check_channel_window_change_request(self, channel, width, height, pixelwidth, pixelheight):
        return True

    def check_channel_shell_request(self, channel):
        threading.Thread(target=self._shell, args=(channel,), daemon=True).start()
        return True

    def check_channel_exec_request(self, channel, command):
        command = command.decode("utf-8")
        self.exec_commands.append(command)
        threading.Thread(target=self._exec, args=(channel, command), daemon=True).start()
        return True

    def check_global_request(self, kind, msg):
        if self.ignore_keepalive:
            # stalls this transport's thread: the peer looks dead
            self.stop.wait(10)
        return False

    def _shell(self, channel):
        channel.sendall(b"welcome\r\n")
        pending = b""
        while not self.stop.is_set():
            data = channel.recv(1024)
            if not data:
                return
            pending += data
            while b"\n" in pending:
                line, pending = pending.split(b"\n", 1)
                if line.strip() == b"exit":
                    channel.send_exit_status(0)
                    channel.close()
                    return
                channel.sendall(b"echo:" + line + b"\r\n")

    def _exec(self, channel, command):
        # let the exec request be acknowledged before the channel closes
        time.sleep(0.1)
        if command == "hang":
            self.stop.wait(10)
            channel.close()
            return
        if command == "fail":
            channel.sendall(b"out\n")
            channel.sendall_stderr(b"err\n")
            channel.send_exit_status(3)
        else:
            channel.sendall(f"ran:{command}".encode("utf-8"))
            channel.send_exit_status(0)
        channel.close()


class ServerHarness:
    def __init__(self, host_key, ignore_keepalive=False):
        self.stop = threading.Event()
        self.interface = ShellServer(self.stop, ignore_keepalive=ignore_keepalive)
        self.host_key = host_key
        self.transports = []
        self.listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self.listener.bind(("127.0.0.1", 0))
        self.listener.listen(5)
        self.port = self.listener.getsockname()[1]
        threading.Thread(target=self._accept_loop, daemon=True).start()

    def _accept_loop(self):
        while not self.stop.is_set():
            try:
                conn, _ = self.listener.accept()
            except OSError:
                return
            transport = paramiko.Transport(conn)
            transport.add_server_key(self.host_key)
            self.transports.append(transport)
            try:
                transport.start_server(server=self.interface)
            except paramiko.SSHException:
                transport.close()

    def close(self):
        self.stop.set()
        self.listener.close()
        for transport in self.transports:
            transport.close()


@pytest.fixture
def server(host_key):
    harness = ServerHarness(host_key)
    yield harness
    harness.close()


@pytest.fixture
def deaf_server(host_key):
    harness = ServerHarness(host_key, ignore_keepalive=True)
    yield harness
    harness.close()


def connect(harness, settings, password=PASSWORD):
    settings.READY_TIMEOUT = 10.0
    config = RemoteConfig.from_dict(
        {"host": "127.0.0.1", "port": harness.port, "username": "tester", "password": password}
    )
    sink = EventCollector()
    adapter = RemoteConnectionAdapter(config, settings, sink).start()
    return adapter, sink


@pytest.fixture
def session(server, settings):
    adapter, sink = connect(server, settings)
    assert wait_for(lambda: "connected" in sink.statuses(), timeout=10)
    yield adapter, sink
    adapter.close()


def test_shell_output_is_forwarded(session):
    adapter, sink = session
    assert wait_for(lambda: b"welcome" in sink.data())
    adapter.write("hello\n")
    assert wait_for(lambda: b"echo:hello" in sink.data())
    adapter.resize(120, 40)
    assert adapter.is_alive()


def test_wrong_password_is_auth_failed(server, settings):
    adapter, sink = connect(server, settings, password="nope")
    assert wait_for(lambda: sink.statuses(), timeout=10)
    (status,) = sink.of_kind(EventKind.STATUS)
    assert status["status"] == "error"
    assert status["error"] == "auth_failed"
    adapter.close()


def test_exec_merges_stderr_and_reports_exit_status(session):
    adapter, _ = session
    chunks = []
    result = adapter.exec_once("fail", 5.0, on_output=chunks.append)
    assert result.output == "out\nerr\n"
    assert result.exit_code == 3
    assert not result.success
    assert b"".join(chunks) == b"out\nerr\n"


def test_exec_success(session):
    adapter, _ = session
    result = adapter.exec_once("uname -a", 5.0)
    assert (result.output, result.exit_code, result.success) == ("ran:uname -a", 0, True)


def test_hanging_exec_times_out(session):
    adapter, _ = session
    started = time.time()
    result = adapter.exec_once("hang", 0.5)
    assert time.time() - started < 1.5
    assert result.timed_out
    assert result.exit_code == -1
    assert result.output.endswith("[command timed out]")


def test_concurrent_execs_are_independent(session):
    adapter, sink = session
    results = {}

    def run(i):
        results[i] = adapter.exec_once(f"job-{i}", 5.0)

    threads = [threading.Thread(target=run, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(10)

    assert {i: r.output for i, r in results.items()} == {i: f"ran:job-{i}" for i in range(8)}
    assert all(r.success for r in results.values())
    assert b"ran:job" not in sink.data()


def test_shell_exit_ends_with_single_disconnect(session):
    adapter, sink = session
    adapter.write("exit\n")
    assert wait_for(lambda: "disconnected" in sink.statuses(), timeout=5)
    adapter.close()
    assert sink.statuses() == ["connected", "disconnected"]


def test_unanswered_keepalives_abandon_the_connection(deaf_server, settings):
    settings.KEEPALIVE_INTERVAL = 0.2
    settings.KEEPALIVE_MAX_MISSED = 2
    adapter, sink = connect(deaf_server, settings)
    assert wait_for(lambda: "connected" in sink.statuses(), timeout=10)

    assert wait_for(lambda: len(sink.statuses()) > 1, timeout=5)
    assert sink.statuses() == ["connected", "error"]
    assert sink.of_kind(EventKind.STATUS)[-1]["error"] == "timeout"
    assert not adapter.is_alive()
