"""Configuration management for agent-browser.

Settings are layered, lowest to highest priority:
    built-in defaults -> ~/.config/agentbrowser/config.cfg -> ./.env
    -> process environment (AGENT_BROWSER_*) -> CLI flags

Keys in config.cfg and .env use the environment names; config.cfg may drop
the AGENT_BROWSER_ prefix (``headed = true`` is AGENT_BROWSER_HEADED).

Provides StartupConfig (daemon launch parameters) and ClientSettings
(session and timeouts used by each CLI invocation).
"""

import configparser
import os
import shlex
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from dotenv import dotenv_values

# Default location for user configuration
CONFIG_PATH = Path.home() / ".config" / "agentbrowser" / "config.cfg"

ENV_PREFIX = "AGENT_BROWSER_"

_TRUE_VALUES = {"1", "true", "yes", "y", "on"}


def _startup_field(default: Any, env: str, flag: str) -> Any:
    return field(default=default, metadata={"env": ENV_PREFIX + env, "flag": flag})


@dataclass(frozen=True)
class StartupConfig:
    """
    Immutable launch parameters for a new daemon.

    Only meaningful when a daemon is actually spawned. Each field carries the
    environment variable that delivers it to the daemon process and the CLI
    flag that sets it, so warnings can name the flag the user typed.
    """
    headless: bool = _startup_field(True, "HEADED", "--headed")
    executable_path: Optional[str] = _startup_field(None, "EXECUTABLE_PATH", "--executable-path")
    extensions: Tuple[str, ...] = _startup_field((), "EXTENSIONS", "--extension")
    state: Optional[str] = _startup_field(None, "STATE", "--state")
    persist: bool = _startup_field(False, "PERSIST", "--persist")
    stealth: bool = _startup_field(False, "STEALTH", "--stealth")
    profile: Optional[str] = _startup_field(None, "PROFILE", "--profile")
    ignore_https_errors: bool = _startup_field(False, "IGNORE_HTTPS_ERRORS", "--ignore-https-errors")
    args: Tuple[str, ...] = _startup_field((), "ARGS", "--args")
    user_agent: Optional[str] = _startup_field(None, "USER_AGENT", "--user-agent")
    backend: Optional[str] = _startup_field(None, "BACKEND", "--backend")
    proxy: Optional[str] = _startup_field(None, "PROXY", "--proxy")
    cdp: Optional[str] = _startup_field(None, "CDP", "--cdp")

    def non_default_fields(self) -> List[str]:
        """Names of fields whose value differs from the built-in default."""
        return [f.name for f in fields(self) if getattr(self, f.name) != f.default]

    def with_overrides(self, **overrides: Any) -> "StartupConfig":
        """Copy with the given fields replaced; None values are skipped."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        for key in ("extensions", "args"):
            if key in changes:
                changes[key] = tuple(changes[key])
        return replace(self, **changes)

    def to_env(self) -> Dict[str, str]:
        """
        Render as environment variables for the daemon process.

        Unset values are omitted; the caller removes inherited variables
        listed in STARTUP_ENV_VARS first.
        """
        env: Dict[str, str] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            name = f.metadata["env"]
            if f.name == "headless":
                if not value:
                    env[name] = "1"
            elif isinstance(value, bool):
                if value:
                    env[name] = "1"
            elif isinstance(value, tuple):
                if value:
                    env[name] = ",".join(value)
            elif value is not None:
                env[name] = str(value)
        return env

    @classmethod
    def from_env(cls, env: Mapping[str, str]) -> "StartupConfig":
        """Build from AGENT_BROWSER_* variables (inverse of to_env)."""
        values: Dict[str, Any] = {}
        for f in fields(cls):
            raw = env.get(f.metadata["env"])
            if raw is None or str(raw).strip() == "":
                continue
            if f.name == "headless":
                values["headless"] = not _is_true(raw)
            elif isinstance(f.default, bool):
                values[f.name] = _is_true(raw)
            elif isinstance(f.default, tuple):
                values[f.name] = _split_list(raw)
            else:
                values[f.name] = str(raw).strip()
        return cls(**values)

    @staticmethod
    def flag_for(field_name: str) -> str:
        for f in fields(StartupConfig):
            if f.name == field_name:
                return f.metadata["flag"]
        raise KeyError(field_name)


STARTUP_ENV_VARS = tuple(f.metadata["env"] for f in fields(StartupConfig))


@dataclass
class ClientSettings:
    """Per-invocation settings for the CLI side."""
    session: str = "default"
    connect_timeout: float = 1.0
    read_timeout: float = 30.0
    ready_timeout: float = 5.0
    daemon_command: Optional[List[str]] = None


def _is_true(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUE_VALUES


def _split_list(value: str) -> Tuple[str, ...]:
    return tuple(p.strip() for p in str(value).split(",") if p.strip())


def _get_float(raw: Mapping[str, str], key: str, default: float) -> float:
    value = raw.get(key)
    if value is None or str(value).strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{key} must be a number of seconds, got {value!r}")


def load_raw_config(path: Path = CONFIG_PATH) -> Dict[str, str]:
    """
    Load configuration values from the standard config path.

    Keys are returned as environment names (upper-case, AGENT_BROWSER_
    prefix added when missing).
    """
    cfg = configparser.ConfigParser()
    data: Dict[str, str] = {}

    if path.exists():
        cfg.read(path)
        if "DEFAULT" in cfg:
            for key, value in cfg["DEFAULT"].items():
                data[_env_name(key)] = value

    return data


def _env_name(key: str) -> str:
    key = key.strip().upper()
    return key if key.startswith(ENV_PREFIX) else ENV_PREFIX + key


def load_environment(
    config_path: Path = CONFIG_PATH,
    dotenv_path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    """
    Merge config.cfg, .env and the process environment.

    Args:
        config_path: Path to config.cfg
        dotenv_path: Path to a .env file (default: ./.env)
        environ: Process environment (default: os.environ)

    Returns:
        Dict of AGENT_BROWSER_* variables, highest-priority value winning
    """
    merged = load_raw_config(config_path)

    dotenv_path = dotenv_path or Path.cwd() / ".env"
    if dotenv_path.exists():
        for key, value in dotenv_values(dotenv_path).items():
            if value is not None and key.upper().startswith(ENV_PREFIX):
                merged[key.upper()] = value

    environ = os.environ if environ is None else environ
    merged.update({k: v for k, v in environ.items() if k.startswith(ENV_PREFIX)})
    return merged


def get_startup_config(raw: Optional[Mapping[str, str]] = None) -> StartupConfig:
    """StartupConfig from merged settings (before CLI flags)."""
    raw = load_environment() if raw is None else raw
    return StartupConfig.from_env(raw)


def get_client_settings(raw: Optional[Mapping[str, str]] = None) -> ClientSettings:
    """
    Build ClientSettings from merged settings.

    Raises ValueError if a timeout is not a number.
    """
    raw = load_environment() if raw is None else raw

    command = raw.get(ENV_PREFIX + "DAEMON_COMMAND", "").strip()
    return ClientSettings(
        session=raw.get(ENV_PREFIX + "SESSION", "").strip() or "default",
        connect_timeout=_get_float(raw, ENV_PREFIX + "CONNECT_TIMEOUT_S", 1.0),
        read_timeout=_get_float(raw, ENV_PREFIX + "READ_TIMEOUT_S", 30.0),
        ready_timeout=_get_float(raw, ENV_PREFIX + "READY_TIMEOUT_S", 5.0),
        daemon_command=shlex.split(command) if command else None,
    )


def parse_proxy(proxy: str) -> Dict[str, str]:
    """
    Split a proxy URL into the server and optional credentials.

    ``http://user:p@ss@host:8080`` -> server ``http://host:8080``, username
    ``user``, password ``p@ss``. Credentials end at the last '@'; the
    username ends at the first ':'.
    """
    scheme_end = proxy.find("://")
    if scheme_end < 0:
        return {"server": proxy}

    scheme = proxy[: scheme_end + 3]
    rest = proxy[scheme_end + 3:]
    at = rest.rfind("@")
    if at < 0:
        return {"server": proxy}

    creds, host = rest[:at], rest[at + 1:]
    server = scheme + host
    if ":" not in creds:
        return {"server": server, "username": creds, "password": ""}

    username, password = creds.split(":", 1)
    return {"server": server, "username": username, "password": password}


def parse_cdp_endpoint(value: Any) -> Union[int, str]:
    """
    Validate a --cdp value: a DevTools port or a WebSocket URL.

    Returns the port as an int, or the ws:// / wss:// URL unchanged.

    Raises ValueError with a message fit for the user.
    """
    text = str(value).strip()
    if text.startswith(("ws://", "wss://")):
        return text
    if not text.isdigit():
        raise ValueError(
            f"Invalid CDP endpoint: '{value}'. "
            "Use a port number (1-65535) or WebSocket URL (ws://...)"
        )
    port = int(text)
    if port == 0:
        raise ValueError("Invalid CDP port: port must be greater than 0")
    if port > 65535:
        raise ValueError(f"Invalid CDP port: {port} is out of range (valid range: 1-65535)")
    return port
