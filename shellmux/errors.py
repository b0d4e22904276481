import errno
import socket
from enum import Enum
from typing import Optional

import paramiko


class ShellMuxError(Exception):
    """Base class for errors surfaced at the intent boundary."""


class SpawnFailed(ShellMuxError):
    pass


class AdapterUnavailable(SpawnFailed):
    pass


class MissingCredential(ShellMuxError):
    pass


class NoActiveSession(ShellMuxError):
    pass


class SessionLimitReached(ShellMuxError):
    pass


class TransportErrorKind(str, Enum):
    TIMEOUT = "timeout"
    AUTH_FAILED = "auth_failed"
    CONNECTION_REFUSED = "connection_refused"
    CONNECTION_RESET = "connection_reset"
    HOST_UNREACHABLE = "host_unreachable"
    MALFORMED_KEY = "malformed_key"
    OTHER = "other"


_MESSAGES = {
    TransportErrorKind.TIMEOUT: "connection timed out, check the network or server address",
    TransportErrorKind.AUTH_FAILED: "authentication failed, check the username and credentials",
    TransportErrorKind.CONNECTION_REFUSED: "connection refused, check the server address and port",
    TransportErrorKind.CONNECTION_RESET: "connection reset, the server may have dropped the connection",
    TransportErrorKind.HOST_UNREACHABLE: "host unreachable, check the network connection",
}

_REFUSED_ERRNOS = {errno.ECONNREFUSED}
_RESET_ERRNOS = {errno.ECONNRESET, errno.ECONNABORTED, errno.EPIPE}
_UNREACHABLE_ERRNOS = {errno.EHOSTUNREACH, errno.ENETUNREACH, errno.EHOSTDOWN, errno.ENETDOWN}


class TransportError(ShellMuxError):
    def __init__(self, kind: TransportErrorKind, detail: str = ""):
        self.kind = kind
        self.detail = detail
        super().__init__(self.message)

    @property
    def message(self) -> str:
        base = _MESSAGES.get(self.kind)
        if self.kind == TransportErrorKind.MALFORMED_KEY:
            return f"private key could not be loaded: {self.detail}" if self.detail else "private key could not be loaded"
        if base is None:
            return self.detail or "unknown transport error"
        return base


def _kind_from_errno(code: Optional[int]) -> Optional[TransportErrorKind]:
    if code is None:
        return None
    if code in _REFUSED_ERRNOS:
        return TransportErrorKind.CONNECTION_REFUSED
    if code in _RESET_ERRNOS:
        return TransportErrorKind.CONNECTION_RESET
    if code in _UNREACHABLE_ERRNOS:
        return TransportErrorKind.HOST_UNREACHABLE
    if code == errno.ETIMEDOUT:
        return TransportErrorKind.TIMEOUT
    return None


def _kind_from_text(text: str) -> TransportErrorKind:
    lowered = text.lower()
    if "timed out" in lowered or "timeout" in lowered:
        return TransportErrorKind.TIMEOUT
    if "authentication" in lowered:
        return TransportErrorKind.AUTH_FAILED
    if "econnrefused" in lowered or "connection refused" in lowered:
        return TransportErrorKind.CONNECTION_REFUSED
    if "econnreset" in lowered or "connection reset" in lowered:
        return TransportErrorKind.CONNECTION_RESET
    if "ehostunreach" in lowered or "unreachable" in lowered:
        return TransportErrorKind.HOST_UNREACHABLE
    if "private key" in lowered or "not a valid" in lowered:
        return TransportErrorKind.MALFORMED_KEY
    return TransportErrorKind.OTHER


def classify_transport_error(exc: BaseException) -> TransportError:
    if isinstance(exc, TransportError):
        return exc
    detail = str(exc) or exc.__class__.__name__

    if isinstance(exc, paramiko.PasswordRequiredException):
        return TransportError(TransportErrorKind.MALFORMED_KEY, "key is encrypted and no passphrase was given")
    if isinstance(exc, paramiko.AuthenticationException):
        return TransportError(TransportErrorKind.AUTH_FAILED, detail)
    if isinstance(exc, (socket.timeout, TimeoutError)):
        return TransportError(TransportErrorKind.TIMEOUT, detail)
    if isinstance(exc, socket.gaierror):
        return TransportError(TransportErrorKind.HOST_UNREACHABLE, detail)
    if isinstance(exc, ConnectionRefusedError):
        return TransportError(TransportErrorKind.CONNECTION_REFUSED, detail)
    if isinstance(exc, ConnectionResetError):
        return TransportError(TransportErrorKind.CONNECTION_RESET, detail)
    if isinstance(exc, paramiko.ssh_exception.NoValidConnectionsError):
        # one entry per resolved address; any refusal wins
        for inner in exc.errors.values():
            kind = _kind_from_errno(getattr(inner, "errno", None))
            if kind is not None:
                return TransportError(kind, detail)
    if isinstance(exc, OSError):
        kind = _kind_from_errno(exc.errno)
        if kind is not None:
            return TransportError(kind, detail)

    return TransportError(_kind_from_text(detail), detail)
