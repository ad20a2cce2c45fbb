"""
Configuration for octunnel

Settings are plain KEY=value strings resolved from, lowest priority first:
built-in DEFAULTS, the global YAML config, the process environment, the
nearest .env file, and explicit CLI overrides. The resolved strings are then
frozen into a TunnelConfig (or VaultConfig) for the current invocation.
"""
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

import yaml
from dotenv import dotenv_values

from .exceptions import ConfigurationError
from .utils.logging import warn

# ══════════════════════════════════════════════════════════════════════════════
#  DEFAULTS
# ══════════════════════════════════════════════════════════════════════════════

ENV_FILE_NAME = ".env"
STATE_DIR_NAME = ".oc-tunnel"
PID_FILE_NAME = "tunnel.pid"
LOG_FILE_NAME = "tunnel.log"
LOCK_FILE_NAME = "tunnel.lock"

DEFAULTS = {
    "PORT_LOCAL": "8080",
    "PORT_REMOTE": "3000",
    "GATEWAY_PORT": "18789",
    "HOST_BIND": "127.0.0.1",
    "BROWSER_APP": "Google Chrome",
    "VAULT_LOCAL_DIR": "~/Library/Mobile Documents/iCloud~md~obsidian/Documents/Vault",
}

# Every key the tool understands; anything else in the sources is ignored.
KNOWN_KEYS = (
    "KEY_PATH", "HOST", "TOKEN",
    "PORT_LOCAL", "PORT_REMOTE", "GATEWAY_PORT", "HOST_BIND", "BROWSER_APP",
    "OCTUNNEL_STATE_DIR",
    "VAULT_REMOTE_PATH", "VAULT_STAGING_DIR", "VAULT_LOCAL_DIR",
)

# Values of GATEWAY_PORT that switch the second forward off.
_DISABLED = ("", "0", "off", "none", "false", "no")


# ══════════════════════════════════════════════════════════════════════════════
#  GLOBAL CONFIG FILE  ── $XDG_CONFIG_HOME/octunnel/config.yaml
# ══════════════════════════════════════════════════════════════════════════════

def get_global_config_dir() -> Path:
    """Return the global config directory for octunnel."""
    xdg = os.environ.get("XDG_CONFIG_HOME", "")
    if xdg:
        return Path(xdg) / "octunnel"
    return Path.home() / ".config" / "octunnel"


def load_global_config() -> dict:
    """
    Load the `defaults:` mapping from the global config.yaml.
    A missing or unreadable file yields an empty dict.
    """
    cfg_path = get_global_config_dir() / "config.yaml"
    if not cfg_path.is_file():
        return {}
    try:
        with cfg_path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError):
        return {}
    defaults = data.get("defaults", {}) if isinstance(data, dict) else {}
    if not isinstance(defaults, dict):
        return {}
    return {str(k).upper(): str(v) for k, v in defaults.items() if v is not None}


# ══════════════════════════════════════════════════════════════════════════════
#  .env FILE  ── searched upward from the cwd
# ══════════════════════════════════════════════════════════════════════════════

def find_env_file(start: Optional[Path] = None) -> Optional[Path]:
    """
    Search upward from *start* (default: cwd) for a .env file.
    Returns the Path if found, or None if no parent has one.
    """
    current = (start or Path.cwd()).resolve()
    while True:
        candidate = current / ENV_FILE_NAME
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            return None
        current = parent


def load_env_file(path: Path) -> dict:
    """
    Parse a KEY=value file. Blank lines and `#` comments are skipped and
    surrounding quotes are stripped from values. Keys without a value are
    dropped.
    """
    values = dotenv_values(path, encoding="utf-8")
    return {k: v for k, v in values.items() if v is not None}


def resolve_settings(env_file: Optional[Path] = None,
                     environ: Optional[Mapping[str, str]] = None,
                     overrides: Optional[Mapping[str, str]] = None,
                     search: bool = True) -> dict:
    """
    Merge every configuration source into a flat {KEY: value} dict.

    *env_file* wins over discovery; with search=False and no env_file the
    .env layer is skipped. The path of the .env that was used, if any, is
    stored under the private key "_ENV_FILE".
    """
    environ = os.environ if environ is None else environ
    settings = dict(DEFAULTS)
    settings.update(load_global_config())
    settings.update({k: environ[k] for k in KNOWN_KEYS if k in environ})

    if env_file is None and search:
        env_file = find_env_file()
    if env_file is not None:
        env_file = Path(env_file).expanduser()
        if not env_file.is_file():
            raise ConfigurationError(f"env file not found: {env_file}")
        settings.update(load_env_file(env_file))
        settings["_ENV_FILE"] = str(env_file.resolve())

    for key, value in (overrides or {}).items():
        if value is not None:
            settings[key] = str(value)
    return settings


# ══════════════════════════════════════════════════════════════════════════════
#  RESOLVED CONFIG OBJECTS
# ══════════════════════════════════════════════════════════════════════════════

def _port(settings: Mapping[str, str], key: str) -> int:
    raw = str(settings.get(key, "")).strip()
    try:
        port = int(raw)
    except ValueError:
        raise ConfigurationError(f"{key} must be a port number, got {raw!r}")
    if not 0 < port < 65536:
        raise ConfigurationError(f"{key} must be between 1 and 65535, got {port}")
    return port


def _port_or_default(settings: Mapping[str, str], key: str) -> int:
    try:
        return _port(settings, key)
    except ConfigurationError as exc:
        warn(f"{exc}; using {DEFAULTS[key]}")
        return int(DEFAULTS[key])


def _optional(settings: Mapping[str, str], key: str) -> Optional[str]:
    value = str(settings.get(key, "") or "").strip()
    return value or None


def default_state_dir(settings: Mapping[str, str]) -> Path:
    """State lives beside the .env that configured us, else under $HOME."""
    explicit = _optional(settings, "OCTUNNEL_STATE_DIR")
    if explicit:
        return Path(explicit).expanduser()
    env_file = settings.get("_ENV_FILE")
    if env_file:
        return Path(env_file).parent / STATE_DIR_NAME
    return Path.home() / STATE_DIR_NAME


@dataclass(frozen=True)
class TunnelConfig:
    """Resolved parameters for one tunnel invocation."""
    local_port: int
    remote_port: int
    bind_host: str
    state_dir: Path
    ssh_target: Optional[str] = None
    key_path: Optional[str] = None
    gateway_port: Optional[int] = None
    token: Optional[str] = None
    browser_app: str = DEFAULTS["BROWSER_APP"]

    @classmethod
    def from_settings(cls, settings: Mapping[str, str],
                      strict: bool = True) -> "TunnelConfig":
        """
        With strict=False a malformed port is replaced by its default and
        reported with a warning, so stop and status can still find the
        state directory after a typo in the configuration.
        """
        port = _port if strict else _port_or_default
        gateway_raw = str(settings.get("GATEWAY_PORT", "") or "").strip().lower()
        gateway_port = None if gateway_raw in _DISABLED else port(settings, "GATEWAY_PORT")
        key_path = _optional(settings, "KEY_PATH")
        return cls(
            local_port=port(settings, "PORT_LOCAL"),
            remote_port=port(settings, "PORT_REMOTE"),
            bind_host=_optional(settings, "HOST_BIND") or DEFAULTS["HOST_BIND"],
            state_dir=default_state_dir(settings),
            ssh_target=_optional(settings, "HOST"),
            key_path=os.path.expanduser(key_path) if key_path else None,
            gateway_port=gateway_port,
            token=_optional(settings, "TOKEN"),
            browser_app=_optional(settings, "BROWSER_APP") or DEFAULTS["BROWSER_APP"],
        )

    def missing_required(self) -> list:
        missing = []
        if not self.key_path:
            missing.append("KEY_PATH")
        if not self.ssh_target:
            missing.append("HOST")
        return missing

    def require(self):
        """Raise ConfigurationError unless the SSH target and key are set."""
        missing = self.missing_required()
        if missing:
            raise ConfigurationError.for_missing(missing)

    # ── derived paths / strings ─────────────────────────────────────────────

    @property
    def pid_file(self) -> Path:
        return self.state_dir / PID_FILE_NAME

    @property
    def log_file(self) -> Path:
        return self.state_dir / LOG_FILE_NAME

    @property
    def lock_file(self) -> Path:
        return self.state_dir / LOCK_FILE_NAME

    @property
    def url(self) -> str:
        base = f"http://localhost:{self.local_port}/"
        if self.token:
            return f"{base}#token={self.token}"
        return base

    @property
    def forward_summary(self) -> str:
        return (f"localhost:{self.local_port} -> {self.bind_host}:{self.remote_port} "
                f"via {self.ssh_target or '?'}")


@dataclass(frozen=True)
class VaultConfig:
    """Resolved parameters for one vault sync."""
    ssh_target: Optional[str]
    key_path: Optional[str]
    remote_path: Optional[str]
    staging_dir: Optional[Path]
    local_dir: Path

    @classmethod
    def from_settings(cls, settings: Mapping[str, str]) -> "VaultConfig":
        key_path = _optional(settings, "KEY_PATH")
        staging = _optional(settings, "VAULT_STAGING_DIR")
        local = _optional(settings, "VAULT_LOCAL_DIR") or DEFAULTS["VAULT_LOCAL_DIR"]
        return cls(
            ssh_target=_optional(settings, "HOST"),
            key_path=os.path.expanduser(key_path) if key_path else None,
            remote_path=_optional(settings, "VAULT_REMOTE_PATH"),
            staging_dir=Path(staging).expanduser() if staging else None,
            local_dir=Path(local).expanduser(),
        )

    def require(self):
        missing = []
        if not self.key_path:
            missing.append("KEY_PATH")
        if not self.ssh_target:
            missing.append("HOST")
        if not self.remote_path:
            missing.append("VAULT_REMOTE_PATH")
        if self.staging_dir is None:
            missing.append("VAULT_STAGING_DIR")
        if missing:
            raise ConfigurationError.for_missing(missing)

    @property
    def remote_spec(self) -> str:
        return f"{self.ssh_target}:{self.remote_path}"
