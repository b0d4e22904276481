import pytest

from shellmux.errors import MissingCredential
from shellmux.models import (
    AuthType, ConnectionProfile, EventKind, ExecResult, PasswordAuth, PrivateKeyAuth, RemoteConfig, SessionEvent,
)


def test_password_config_from_wire_shape():
    config = RemoteConfig.from_dict({"host": " example.org ", "username": "me", "password": "pw"})
    assert config.host == "example.org"
    assert config.port == 22
    assert config.auth == PasswordAuth("pw")
    assert config.password == "pw"


def test_private_key_config():
    config = RemoteConfig.from_dict(
        {"host": "h", "port": "2222", "username": "u", "authType": "privateKey",
         "privateKeyPath": "~/.ssh/id_ed25519", "passphrase": "pp"}
    )
    assert config.port == 2222
    assert config.auth == PrivateKeyAuth("~/.ssh/id_ed25519", "pp")
    assert config.password is None
    assert config.describe()["authType"] == AuthType.PRIVATE_KEY.value


@pytest.mark.parametrize(
    "data",
    [
        {"host": "h", "username": "u", "authType": "password", "password": ""},
        {"host": "h", "username": "u", "authType": "password"},
        {"host": "h", "username": "u", "authType": "privateKey", "privateKeyPath": ""},
        {"host": "h", "username": "u", "authType": "privateKey"},
        {"host": "", "username": "u", "password": "pw"},
        {"host": "h", "username": " ", "password": "pw"},
        {"host": "h", "username": "u", "authType": "kerberos", "password": "pw"},
    ],
)
def test_missing_credentials_are_rejected(data):
    with pytest.raises(MissingCredential):
        RemoteConfig.from_dict(data)


def test_describe_never_leaks_secrets():
    config = RemoteConfig.from_dict({"host": "h", "username": "u", "password": "hunter2"})
    assert "hunter2" not in repr(config.describe())


def test_profile_instantiates_config():
    profile = ConnectionProfile.from_dict(
        {"id": "p1", "name": "web", "host": "web.local", "port": 2200, "username": "deploy",
         "authType": "password", "password": "x"}
    )
    config = profile.to_remote_config()
    assert (config.host, config.port, config.username) == ("web.local", 2200, "deploy")


def test_exec_result_wire_shape():
    result = ExecResult("ls", "a\nb", 0, True)
    assert result.to_dict() == {"command": "ls", "success": True, "output": "a\nb", "exitCode": 0, "timedOut": False}


def test_event_encodes_bytes_as_base64():
    event = SessionEvent("s1", EventKind.DATA, {"data": b"hi\xff"})
    assert event.to_dict() == {"sessionId": "s1", "kind": "data", "payload": {"data": "aGn/"}}
