import threading
from concurrent.futures import Future
from unittest.mock import MagicMock

from shellmux.errors import MissingCredential, NoActiveSession
from shellmux.models import ExecResult
from shellmux.server import (
    APPLICATION_ERROR, INTERNAL_ERROR, INVALID_PARAMS, METHOD_NOT_FOUND, handle_request,
)


class Responder:
    def __init__(self):
        self.messages = []
        self.event = threading.Event()

    def __call__(self, message):
        self.messages.append(message)
        self.event.set()


def make_executor():
    executor = MagicMock()
    executor.registry.connect_remote.return_value = "sid-1"
    executor.registry.list_sessions.return_value = []
    return executor


def call(method, params=None, req_id=1, executor=None, respond=None):
    request = {"jsonrpc": "2.0", "id": req_id, "method": method, "params": params or {}}
    return handle_request(request, executor or make_executor(), respond or Responder())


def test_initialize():
    response = call("initialize")
    assert response["result"]["serverInfo"]["name"] == "shellmux"


def test_unknown_method():
    assert call("nope")["error"]["code"] == METHOD_NOT_FOUND


def test_connect_returns_session_id():
    executor = make_executor()
    response = call("connect_session", {"config": {"host": "h"}}, executor=executor)
    assert response["result"] == {"session_id": "sid-1", "status": "connecting"}
    executor.registry.connect_remote.assert_called_once_with(None, {"host": "h"}, profile_id=None)


def test_missing_credential_is_invalid_params():
    executor = make_executor()
    executor.registry.connect_remote.side_effect = MissingCredential("password is required for password auth")
    response = call("connect_session", {"config": {"host": "h"}}, executor=executor)
    assert response["error"]["code"] == INVALID_PARAMS
    assert response["error"]["data"]["type"] == "MissingCredential"


def test_missing_config_object():
    assert call("connect_session", {})["error"]["code"] == INVALID_PARAMS


def test_domain_errors_are_application_errors():
    executor = make_executor()
    executor.run.side_effect = NoActiveSession("session x has no active connection")
    response = call("exec_on_session", {"session_id": "x", "command": "ls"}, executor=executor)
    assert response["error"]["code"] == APPLICATION_ERROR
    assert response["error"]["data"]["type"] == "NoActiveSession"


def test_unexpected_errors_are_internal():
    executor = make_executor()
    executor.registry.list_sessions.side_effect = RuntimeError("boom")
    assert call("list_sessions", executor=executor)["error"]["code"] == INTERNAL_ERROR


def test_write_accepts_base64():
    executor = make_executor()
    response = call("write_session", {"session_id": "s", "data_b64": "bHMK"}, executor=executor)
    assert response["result"] == {"ok": True}
    executor.registry.write.assert_called_once_with("s", b"ls\n")


def test_write_rejects_bad_base64():
    assert call("write_session", {"session_id": "s", "data_b64": "***"})["error"]["code"] == INVALID_PARAMS


def test_resize_clamps_geometry():
    executor = make_executor()
    call("resize_session", {"session_id": "s", "cols": 0, "rows": "40"}, executor=executor)
    executor.registry.resize.assert_called_once_with("s", 1, 40)


def test_exec_is_answered_through_respond():
    executor = make_executor()
    future = Future()
    executor.run.return_value = future
    respond = Responder()

    immediate = call("exec_on_session", {"command": "uptime", "timeoutMs": 500}, req_id=7,
                     executor=executor, respond=respond)
    assert immediate is None
    executor.run.assert_called_once_with("local", "uptime", 500)

    future.set_result(ExecResult("uptime", "up 1 day", 0, True))
    assert respond.event.wait(1)
    (message,) = respond.messages
    assert message["id"] == 7
    assert message["result"]["output"] == "up 1 day"
    assert message["result"]["exitCode"] == 0


def test_failed_future_is_answered_with_error():
    executor = make_executor()
    future = Future()
    executor.run.return_value = future
    respond = Responder()
    call("exec_on_session", {"session_id": "s", "command": "ls"}, executor=executor, respond=respond)
    future.set_exception(NoActiveSession("gone"))
    assert respond.event.wait(1)
    assert respond.messages[0]["error"]["code"] == APPLICATION_ERROR


def test_notifications_get_no_answer():
    executor = make_executor()
    request = {"jsonrpc": "2.0", "method": "write_session", "params": {"session_id": "s", "data": "x"}}
    assert handle_request(request, executor, Responder()) is None
    executor.registry.write.assert_called_once_with("s", b"x")


def test_malformed_timeout_is_invalid_params():
    for bad in ("soon", 0, -5, True):
        executor = make_executor()
        response = call("exec_on_session", {"command": "ls", "timeout_ms": bad}, executor=executor)
        assert response["error"]["code"] == INVALID_PARAMS
        executor.run.assert_not_called()


def test_camel_case_timeout_is_validated_too():
    executor = make_executor()
    response = call("exec_on_session", {"command": "ls", "timeoutMs": "1s"}, executor=executor)
    assert response["error"]["code"] == INVALID_PARAMS
    executor.run.assert_not_called()
