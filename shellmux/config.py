import os
import re
from typing import Optional, Dict

# ========= Static config =========
BUFFER_SIZE = 4096
MAX_BUFFER_CHARS = 2_000_000

DEFAULT_SHELL = "/bin/sh"
DEFAULT_TERM = "xterm-256color"
DEFAULT_SSH_PORT = 22

READY_TIMEOUT = 30.0
KEEPALIVE_INTERVAL = 10.0
KEEPALIVE_MAX_MISSED = 3

REMOTE_EXEC_TIMEOUT_MS = 30000
LOCAL_EXEC_TIMEOUT_MS = 60000
MAX_EXEC_TIMEOUT_MS = 3_600_000

# (cols, rows)
INTERACTIVE_GEOMETRY = (80, 24)
EXEC_GEOMETRY = (120, 30)

TIMEOUT_MARKER = "\n[command timed out]"

# ========= Output cleanup =========
ANSI_ESCAPE = re.compile(r"\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])")
CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f]")

# ========= Algorithm allow-lists (strongest first) =========
KEX_ALGORITHMS = (
    "ecdh-sha2-nistp521",
    "ecdh-sha2-nistp384",
    "ecdh-sha2-nistp256",
    "diffie-hellman-group-exchange-sha256",
    "diffie-hellman-group14-sha256",
    "diffie-hellman-group14-sha1",
    "diffie-hellman-group1-sha1",
)
CIPHERS = (
    "aes256-gcm@openssh.com",
    "aes128-gcm@openssh.com",
    "aes256-ctr",
    "aes192-ctr",
    "aes128-ctr",
)
HOST_KEY_ALGORITHMS = (
    "ssh-ed25519",
    "ecdsa-sha2-nistp521",
    "ecdsa-sha2-nistp384",
    "ecdsa-sha2-nistp256",
    "rsa-sha2-512",
    "rsa-sha2-256",
    "ssh-rsa",
)
MAC_ALGORITHMS = (
    "hmac-sha2-512",
    "hmac-sha2-256",
    "hmac-sha1",
)


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    return float(value)


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    return int(value)


# ========= Runtime Configuration =========
class ServerConfig:
    def __init__(self):
        self.SHELL_PATH: str = DEFAULT_SHELL
        self.TERM_NAME: str = DEFAULT_TERM
        self.SSH_PORT: int = DEFAULT_SSH_PORT
        self.READY_TIMEOUT: float = READY_TIMEOUT
        self.KEEPALIVE_INTERVAL: float = KEEPALIVE_INTERVAL
        self.KEEPALIVE_MAX_MISSED: int = KEEPALIVE_MAX_MISSED
        self.REMOTE_EXEC_TIMEOUT_MS: int = REMOTE_EXEC_TIMEOUT_MS
        self.LOCAL_EXEC_TIMEOUT_MS: int = LOCAL_EXEC_TIMEOUT_MS
        self.SSH_VERIFY_HOST_KEY: bool = False
        self.SSH_KNOWN_HOSTS: str = os.path.join("~", ".ssh", "known_hosts")
        self.MAX_SESSIONS: int = 0  # 0 means unlimited
        self.LOCAL_CWD: Optional[str] = None
        self.PROJECT_ROOT: str = ""
        self.PROJECT_TAG: str = ""
        self.CACHE_DIRS: Dict[str, str] = {}

    def load_from_env(self):
        self.SHELL_PATH = os.environ.get("SHELL") or self.SHELL_PATH
        self.TERM_NAME = os.environ.get("SHELLMUX_TERM", self.TERM_NAME)
        self.SSH_PORT = _env_int("SHELLMUX_SSH_PORT", self.SSH_PORT)
        self.READY_TIMEOUT = _env_float("SHELLMUX_READY_TIMEOUT", self.READY_TIMEOUT)
        self.KEEPALIVE_INTERVAL = _env_float("SHELLMUX_KEEPALIVE_INTERVAL", self.KEEPALIVE_INTERVAL)
        self.KEEPALIVE_MAX_MISSED = _env_int("SHELLMUX_KEEPALIVE_MAX_MISSED", self.KEEPALIVE_MAX_MISSED)
        self.REMOTE_EXEC_TIMEOUT_MS = _env_int("SHELLMUX_REMOTE_EXEC_TIMEOUT_MS", self.REMOTE_EXEC_TIMEOUT_MS)
        self.LOCAL_EXEC_TIMEOUT_MS = _env_int("SHELLMUX_LOCAL_EXEC_TIMEOUT_MS", self.LOCAL_EXEC_TIMEOUT_MS)
        self.SSH_KNOWN_HOSTS = os.environ.get("SSH_KNOWN_HOSTS", self.SSH_KNOWN_HOSTS)
        self.MAX_SESSIONS = _env_int("SHELLMUX_MAX_SESSIONS", self.MAX_SESSIONS)

        verify_host_env = os.environ.get("SSH_VERIFY_HOST_KEY")
        if verify_host_env is not None:
            self.SSH_VERIFY_HOST_KEY = verify_host_env.lower() in ("true", "1", "yes")

    def local_env(self) -> Dict[str, str]:
        env = dict(os.environ)
        env["TERM"] = self.TERM_NAME
        return env

    def local_cwd(self) -> str:
        return os.path.expanduser(self.LOCAL_CWD or "~")
