"""Server configuration management.

Configuration is resolved in layers, later layers winning:
1. Built-in defaults
2. Optional YAML file (--config)
3. Environment variables (PORT, ENABLE_TLS, TLS_CERT_FILE, TLS_KEY_FILE, ...)
4. CLI flags (applied by the caller via ServerConfig.with_overrides)

The result is a frozen ServerConfig that is handed to the provisioner and
the server at startup and never mutated afterwards.
"""

import dataclasses
import logging
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Mapping, Optional

import yaml

logger = logging.getLogger(__name__)

DEFAULT_PORT = 8080
DEFAULT_TLS_PORT = 8443
DEFAULT_BIND = "0.0.0.0"
DEFAULT_CERT_FILE = Path("server.crt")
DEFAULT_KEY_FILE = Path("server.key")
DEFAULT_ACME_TIMEOUT = 300.0

TRUTHY_VALUES = ("true", "1", "yes")


class ConfigError(Exception):
    """Configuration error."""


class TLSMode(str, Enum):
    """How the listener obtains its TLS material."""

    NONE = "none"
    PROVIDED = "provided"
    SELF_SIGNED = "self-signed"
    AUTO = "auto"

    @classmethod
    def parse(cls, value: str) -> "TLSMode":
        try:
            return cls(value.strip().lower())
        except ValueError:
            choices = ", ".join(m.value for m in cls)
            raise ConfigError(f"Unknown TLS mode '{value}' (expected one of: {choices})")


@dataclass(frozen=True)
class ServerConfig:
    """Immutable process configuration, resolved once at startup."""

    bind: str = DEFAULT_BIND
    port: Optional[int] = None
    tls_mode: TLSMode = TLSMode.NONE
    cert_file: Optional[Path] = None
    key_file: Optional[Path] = None
    cert_dir: Optional[Path] = None
    domain: Optional[str] = None
    acme_email: Optional[str] = None
    acme_timeout: float = DEFAULT_ACME_TIMEOUT
    acme_staging: bool = False
    tls_required: bool = True
    reclaim_port: bool = False

    @property
    def listen_port(self) -> int:
        """Port to listen on, defaulting by TLS mode when unset."""
        if self.port is not None:
            return self.port
        if self.tls_mode in (TLSMode.SELF_SIGNED, TLSMode.AUTO):
            return DEFAULT_TLS_PORT
        return DEFAULT_PORT

    def with_overrides(self, **changes) -> "ServerConfig":
        """Return a copy with every non-None change applied."""
        applied = {k: v for k, v in changes.items() if v is not None}
        config = dataclasses.replace(self, **applied)
        config.validate()
        return config

    def validate(self) -> None:
        """Check cross-field constraints.

        Raises:
            ConfigError: If the combination of settings is unusable
        """
        if self.port is not None and not 1 <= self.port <= 65535:
            raise ConfigError(f"Invalid port: {self.port}")
        if self.tls_mode == TLSMode.PROVIDED and not (self.cert_file and self.key_file):
            raise ConfigError("TLS mode 'provided' requires both a certificate and a key file")
        if self.acme_timeout <= 0:
            raise ConfigError(f"ACME timeout must be positive, got {self.acme_timeout}")


def _is_truthy(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in TRUTHY_VALUES


def _parse_port(value) -> int:
    try:
        port = int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"Invalid port: {value}")
    if not 1 <= port <= 65535:
        raise ConfigError(f"Invalid port: {value}")
    return port


def _parse_timeout(value) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"Invalid ACME timeout: {value}")


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file, returning an empty dict for empty files."""
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        raise ConfigError(f"Config file not found: {path}")
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    return data


def _file_values(path: Path) -> dict:
    """Flatten a YAML config file into ServerConfig field values."""
    data = _parse_yaml(path)
    tls = data.get("tls") or {}
    if not isinstance(tls, dict):
        raise ConfigError(f"'tls' in {path} must be a mapping")

    values: dict = {}
    if "bind" in data:
        values["bind"] = str(data["bind"])
    if "port" in data:
        values["port"] = _parse_port(data["port"])
    if "reclaim_port" in data:
        values["reclaim_port"] = _is_truthy(data["reclaim_port"])
    if "mode" in tls:
        values["tls_mode"] = TLSMode.parse(str(tls["mode"]))
    for key in ("cert_file", "key_file", "cert_dir"):
        if tls.get(key):
            values[key] = Path(tls[key])
    if tls.get("domain"):
        values["domain"] = str(tls["domain"])
    if tls.get("email"):
        values["acme_email"] = str(tls["email"])
    if "acme_timeout" in tls:
        values["acme_timeout"] = _parse_timeout(tls["acme_timeout"])
    if "acme_staging" in tls:
        values["acme_staging"] = _is_truthy(tls["acme_staging"])
    if "required" in tls:
        values["tls_required"] = _is_truthy(tls["required"])
    return values


def _env_tls_values(env: Mapping[str, str], current: dict) -> dict:
    """Resolve TLS settings from ENABLE_TLS / TLS_CERT_FILE / TLS_KEY_FILE.

    - Both files set and present: TLS is enabled with those files.
    - ENABLE_TLS truthy without files: fall back to server.crt/server.key,
      and disable TLS with a warning if the defaults are missing.
    """
    values: dict = {}
    cert = env.get("TLS_CERT_FILE", "")
    key = env.get("TLS_KEY_FILE", "")
    enabled = _is_truthy(env.get("ENABLE_TLS", ""))

    if cert and key:
        cert_path, key_path = Path(cert), Path(key)
        if cert_path.exists() and key_path.exists():
            return {"tls_mode": TLSMode.PROVIDED, "cert_file": cert_path, "key_file": key_path}
        if enabled:
            # Explicit files that are missing still select them; the
            # provisioner logs the failure and falls back.
            return {"tls_mode": TLSMode.PROVIDED, "cert_file": cert_path, "key_file": key_path}

    if not enabled:
        return values

    if current.get("tls_mode") not in (None, TLSMode.NONE):
        # A config file already chose a mode; ENABLE_TLS only confirms it.
        return values

    missing = [p for p in (DEFAULT_CERT_FILE, DEFAULT_KEY_FILE) if not p.exists()]
    for path in missing:
        logger.warning("Warning: TLS requested but file '%s' not found", path)
    if missing:
        values["tls_mode"] = TLSMode.NONE
        return values

    values.update(
        tls_mode=TLSMode.PROVIDED,
        cert_file=DEFAULT_CERT_FILE,
        key_file=DEFAULT_KEY_FILE,
    )
    return values


def load_config(
    env: Optional[Mapping[str, str]] = None,
    config_file: Optional[Path] = None,
) -> ServerConfig:
    """Load configuration from an optional YAML file and the environment.

    Args:
        env: Environment mapping (default: os.environ)
        config_file: Optional YAML config file

    Returns:
        Validated ServerConfig

    Raises:
        ConfigError: On invalid values or unreadable config file
    """
    env = os.environ if env is None else env
    values: dict = {}

    if config_file is not None:
        values.update(_file_values(Path(config_file)))

    if env.get("BIND"):
        values["bind"] = env["BIND"]
    if env.get("PORT"):
        values["port"] = _parse_port(env["PORT"])

    values.update(_env_tls_values(env, values))

    if env.get("TLS_MODE"):
        values["tls_mode"] = TLSMode.parse(env["TLS_MODE"])
    if env.get("TLS_DOMAIN"):
        values["domain"] = env["TLS_DOMAIN"]
    if env.get("ACME_EMAIL"):
        values["acme_email"] = env["ACME_EMAIL"]
    if env.get("ACME_TIMEOUT"):
        values["acme_timeout"] = _parse_timeout(env["ACME_TIMEOUT"])
    if env.get("ACME_STAGING"):
        values["acme_staging"] = _is_truthy(env["ACME_STAGING"])

    config = ServerConfig(**values)
    config.validate()
    return config
