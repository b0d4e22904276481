import base64
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Union

from shellmux.config import DEFAULT_SSH_PORT
from shellmux.errors import MissingCredential
from shellmux.utils import clamp_int

LOCAL_TARGET = "local"


class SessionKind(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"


class SessionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class EventKind(str, Enum):
    DATA = "data"
    STATUS = "status"
    EXIT = "exit"
    EXEC_OUTPUT = "exec_output"


class AuthType(str, Enum):
    PASSWORD = "password"
    PRIVATE_KEY = "privateKey"


@dataclass(frozen=True)
class PasswordAuth:
    password: str

    @property
    def auth_type(self) -> AuthType:
        return AuthType.PASSWORD


@dataclass(frozen=True)
class PrivateKeyAuth:
    key_path: str
    passphrase: Optional[str] = None

    @property
    def auth_type(self) -> AuthType:
        return AuthType.PRIVATE_KEY


AuthConfig = Union[PasswordAuth, PrivateKeyAuth]


def _pick(data: Mapping[str, Any], *names: str) -> Any:
    for name in names:
        value = data.get(name)
        if value is not None:
            return value
    return None


def _text(value: Any) -> str:
    return str(value).strip() if value is not None else ""


@dataclass(frozen=True)
class RemoteConfig:
    host: str
    username: str
    auth: AuthConfig
    port: int = DEFAULT_SSH_PORT

    @property
    def password(self) -> Optional[str]:
        return self.auth.password if isinstance(self.auth, PasswordAuth) else None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], default_port: int = DEFAULT_SSH_PORT) -> "RemoteConfig":
        """Build a validated config from a loose mapping (wire or profile shape).

        Raises MissingCredential when host, username or the credential demanded
        by the auth type is absent.
        """
        host = _text(data.get("host"))
        username = _text(data.get("username"))
        if not host:
            raise MissingCredential("host is required")
        if not username:
            raise MissingCredential("username is required")

        port = clamp_int(data.get("port") or default_port, default_port, 1, 65535)
        raw_type = _text(_pick(data, "authType", "auth_type")) or AuthType.PASSWORD.value
        if raw_type in ("privateKey", "private_key", "key"):
            key_path = _text(_pick(data, "privateKeyPath", "private_key_path", "key_path"))
            if not key_path:
                raise MissingCredential("private key path is required for privateKey auth")
            passphrase = _pick(data, "passphrase")
            auth: AuthConfig = PrivateKeyAuth(key_path=key_path, passphrase=passphrase or None)
        elif raw_type == "password":
            password = data.get("password")
            if not password:
                raise MissingCredential("password is required for password auth")
            auth = PasswordAuth(password=str(password))
        else:
            raise MissingCredential(f"unsupported authType: {raw_type}")
        return cls(host=host, username=username, auth=auth, port=port)

    def describe(self) -> Dict[str, Any]:
        # never includes secrets
        return {
            "host": self.host,
            "port": self.port,
            "username": self.username,
            "authType": self.auth.auth_type.value,
        }


@dataclass
class ConnectionProfile:
    id: str
    name: str
    host: str
    username: str
    port: int = DEFAULT_SSH_PORT
    auth_type: str = AuthType.PASSWORD.value
    password: Optional[str] = None
    private_key_path: Optional[str] = None
    passphrase: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ConnectionProfile":
        return cls(
            id=_text(data.get("id")),
            name=_text(data.get("name")),
            host=_text(data.get("host")),
            username=_text(data.get("username")),
            port=clamp_int(data.get("port") or DEFAULT_SSH_PORT, DEFAULT_SSH_PORT, 1, 65535),
            auth_type=_text(_pick(data, "authType", "auth_type")) or AuthType.PASSWORD.value,
            password=data.get("password"),
            private_key_path=_pick(data, "privateKeyPath", "private_key_path"),
            passphrase=data.get("passphrase"),
        )

    def to_remote_config(self) -> RemoteConfig:
        return RemoteConfig.from_dict(
            {
                "host": self.host,
                "port": self.port,
                "username": self.username,
                "authType": self.auth_type,
                "password": self.password,
                "privateKeyPath": self.private_key_path,
                "passphrase": self.passphrase,
            }
        )


@dataclass(frozen=True)
class ExecResult:
    command: str
    output: str
    exit_code: int
    success: bool
    timed_out: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "command": self.command,
            "success": self.success,
            "output": self.output,
            "exitCode": self.exit_code,
            "timedOut": self.timed_out,
        }


@dataclass(frozen=True)
class SessionEvent:
    session_id: str
    kind: EventKind
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        payload = {}
        for key, value in self.payload.items():
            if isinstance(value, (bytes, bytearray)):
                value = base64.b64encode(bytes(value)).decode("ascii")
            elif isinstance(value, Enum):
                value = value.value
            payload[key] = value
        return {"sessionId": self.session_id, "kind": self.kind.value, "payload": payload}


@dataclass
class SessionRecord:
    id: str
    kind: SessionKind
    config: Optional[RemoteConfig] = None
    status: SessionStatus = SessionStatus.DISCONNECTED
    status_message: str = ""
    adapter: Any = None
    profile_id: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)
    log_path: str = ""

    def info(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "status": self.status.value,
            "statusMessage": self.status_message,
            "profileId": self.profile_id,
            "connected": self.adapter is not None,
            "config": self.config.describe() if self.config else None,
            "createdAt": self.created_at.isoformat(),
            "sessionLogPath": self.log_path,
        }
