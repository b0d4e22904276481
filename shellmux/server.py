import base64
from concurrent.futures import Future
from typing import Any, Callable, Dict, Optional

from shellmux.agent import run_command_blocks
from shellmux.errors import MissingCredential, ShellMuxError
from shellmux.executor import CommandExecutor
from shellmux.models import LOCAL_TARGET, ConnectionProfile, ExecResult
from shellmux.sysinfo import local_system_info, remote_system_info
from shellmux.utils import clamp_int, log_error, submit_in_thread

SERVER_INFO = {"name": "shellmux", "version": "0.3.0"}

INVALID_PARAMS = -32602
METHOD_NOT_FOUND = -32601
INTERNAL_ERROR = -32603
APPLICATION_ERROR = -32000

Respond = Callable[[Dict[str, Any]], None]


class InvalidParams(ValueError):
    pass


class UnknownMethod(LookupError):
    pass


def make_response(req_id: Any, result: Any) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": req_id, "result": result}


def make_error(req_id: Any, code: int, message: str, error_type: str = "") -> Dict[str, Any]:
    error: Dict[str, Any] = {"code": code, "message": message}
    if error_type:
        error["data"] = {"type": error_type}
    return {"jsonrpc": "2.0", "id": req_id, "error": error}


def error_response(req_id: Any, exc: BaseException) -> Dict[str, Any]:
    if isinstance(exc, (InvalidParams, MissingCredential)):
        return make_error(req_id, INVALID_PARAMS, str(exc), exc.__class__.__name__)
    if isinstance(exc, ShellMuxError):
        return make_error(req_id, APPLICATION_ERROR, str(exc), exc.__class__.__name__)
    log_error(f"unexpected error: {exc!r}")
    return make_error(req_id, INTERNAL_ERROR, f"Internal error: {exc}")


def _require(params: Dict[str, Any], name: str) -> str:
    value = params.get(name)
    if value is None or str(value).strip() == "":
        raise InvalidParams(f"{name} is required")
    return str(value)


def _payload_bytes(params: Dict[str, Any]) -> bytes:
    if params.get("data_b64") is not None:
        try:
            return base64.b64decode(params["data_b64"], validate=True)
        except ValueError as exc:
            raise InvalidParams(f"data_b64 is not valid base64: {exc}")
    data = params.get("data")
    if data is None:
        raise InvalidParams("data or data_b64 is required")
    return str(data).encode("utf-8")


def _timeout_ms(params: Dict[str, Any]) -> Optional[int]:
    value = params.get("timeout_ms", params.get("timeoutMs"))
    if value is None:
        return None
    if isinstance(value, bool):
        raise InvalidParams(f"timeout_ms must be a number of milliseconds, got {value!r}")
    try:
        timeout_ms = int(value)
    except (TypeError, ValueError):
        raise InvalidParams(f"timeout_ms must be a number of milliseconds, got {value!r}")
    if timeout_ms <= 0:
        raise InvalidParams("timeout_ms must be positive")
    return timeout_ms


def _answer_later(req_id: Any, future: Future, respond: Respond, project: Callable[[Any], Any]) -> None:
    def done(completed: Future) -> None:
        exc = completed.exception()
        if exc is not None:
            respond(error_response(req_id, exc))
            return
        try:
            respond(make_response(req_id, project(completed.result())))
        except Exception as project_exc:
            respond(error_response(req_id, project_exc))

    future.add_done_callback(done)


def _results(results) -> Dict[str, Any]:
    return {"results": [result.to_dict() for result in results]}


def dispatch(method: str, params: Dict[str, Any], executor: CommandExecutor) -> Any:
    """Synchronous intents. Returns the JSON result, or a Future for slow ones."""
    registry = executor.registry

    if method == "create_local_session":
        sid = registry.create_local(params.get("session_id"))
        return {"session_id": sid}
    if method == "connect_session":
        config = params.get("config")
        if not isinstance(config, dict):
            raise InvalidParams("config object is required")
        sid = registry.connect_remote(params.get("session_id"), config, profile_id=params.get("profile_id"))
        return {"session_id": sid, "status": "connecting"}
    if method == "connect_profile":
        profile = params.get("profile")
        if not isinstance(profile, dict):
            raise InvalidParams("profile object is required")
        sid = registry.connect_profile(ConnectionProfile.from_dict(profile))
        return {"session_id": sid, "status": "connecting"}
    if method == "get_or_create_session":
        return {"session_id": registry.get_or_create_session(_require(params, "profile_id"))}
    if method == "disconnect_session":
        registry.disconnect(_require(params, "session_id"))
        return {"ok": True}
    if method == "destroy_session":
        registry.destroy(_require(params, "session_id"))
        return {"ok": True}
    if method == "write_session":
        registry.write(_require(params, "session_id"), _payload_bytes(params))
        return None
    if method == "resize_session":
        cols = clamp_int(params.get("cols"), 80, 1, 10000)
        rows = clamp_int(params.get("rows"), 24, 1, 10000)
        registry.resize(_require(params, "session_id"), cols, rows)
        return None
    if method == "list_sessions":
        return {"sessions": registry.list_sessions()}
    if method == "exec_on_session":
        target = params.get("session_id") or LOCAL_TARGET
        return executor.run(str(target), _require(params, "command"), _timeout_ms(params))
    if method == "run_command_blocks":
        target = str(params.get("session_id") or LOCAL_TARGET)
        text = _require(params, "text")
        return submit_in_thread(run_command_blocks, text, executor, target, _timeout_ms(params), name="agent-blocks")
    if method == "local_system_info":
        return local_system_info()
    if method == "remote_system_info":
        sid = _require(params, "session_id")
        return submit_in_thread(remote_system_info, registry, sid, name="remote-info")
    raise UnknownMethod(method)


def handle_request(request: Dict[str, Any], executor: CommandExecutor, respond: Respond) -> Optional[Dict[str, Any]]:
    """Answer one JSON-RPC request.

    Immediate answers are returned; answers that wait on a one-off run are
    delivered later through respond and None is returned. Notifications (no
    id) never get an answer.
    """
    method = request.get("method")
    params = request.get("params") or {}
    req_id = request.get("id")
    is_notification = "id" not in request

    if method == "initialize":
        return make_response(req_id, {"serverInfo": SERVER_INFO, "capabilities": {"events": True}})

    if not isinstance(params, dict):
        return None if is_notification else make_error(req_id, INVALID_PARAMS, "params must be an object")

    try:
        result = dispatch(str(method), params, executor)
    except UnknownMethod:
        if is_notification:
            return None
        return make_error(req_id, METHOD_NOT_FOUND, f"Unknown method: {method}")
    except Exception as exc:
        if is_notification:
            log_error(f"{method} failed: {exc}")
            return None
        return error_response(req_id, exc)

    if isinstance(result, Future):
        if is_notification:
            return None
        _answer_later(req_id, result, respond, _project_future_result)
        return None
    if is_notification:
        return None
    return make_response(req_id, result if result is not None else {"ok": True})


def _project_future_result(value: Any) -> Any:
    if isinstance(value, ExecResult):
        return value.to_dict()
    if isinstance(value, list):
        return _results(value)
    return value
