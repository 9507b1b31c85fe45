"""Configuration loader for the edge chat gateway.

Settings come from the environment, optionally layered over a YAML file
named by GATEWAY_CONFIG_FILE that uses the same variable names as keys.
They are read once at startup into a GatewayConfig, which is then handed to
each component's constructor. Nothing reads the environment while a request
is in flight.
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Mapping, Optional, Union

import yaml

DEFAULT_UPSTREAM_URL = "https://api.openai.com/v1/chat/completions"
DEFAULT_TOKEN_URI = "https://oauth2.googleapis.com/token"
DEFAULT_LEDGER_BASE_URL = "https://firestore.googleapis.com/v1"
DEFAULT_LEDGER_SCOPE = "https://www.googleapis.com/auth/datastore"


class AuthMode(str, Enum):
    """How callers are authorized."""

    SHARED_SECRET = "shared_secret"
    QUOTA = "quota"


@dataclass
class AuthConfig:
    """Access control settings."""

    mode: AuthMode = AuthMode.SHARED_SECRET
    shared_secret: Optional[str] = None


@dataclass
class RateLimitConfig:
    """Fixed-window rate-limit parameters (per caller identity)."""

    window_seconds: float = 60.0
    max_requests: int = 10


@dataclass
class UpstreamConfig:
    """The completion API the gateway forwards to."""

    url: str = DEFAULT_UPSTREAM_URL
    api_key: Optional[str] = None
    default_model: str = "gpt-3.5-turbo"
    default_max_tokens: int = 500
    temperature: Optional[float] = None
    timeout: float = 60.0


@dataclass
class LedgerConfig:
    """Quota ledger store and the service account used to reach it."""

    project_id: Optional[str] = None
    collection: str = "users"
    client_email: Optional[str] = None
    private_key: Optional[str] = None
    private_key_id: Optional[str] = None
    base_url: str = DEFAULT_LEDGER_BASE_URL
    token_uri: str = DEFAULT_TOKEN_URI
    scope: str = DEFAULT_LEDGER_SCOPE


@dataclass
class GatewayConfig:
    """Top-level gateway configuration."""

    auth: AuthConfig = field(default_factory=AuthConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    upstream: UpstreamConfig = field(default_factory=UpstreamConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    log_file: Optional[str] = None


def _get(env: Mapping[str, str], name: str) -> Optional[str]:
    value = env.get(name)
    if value is None or not value.strip():
        return None
    return value


def _get_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = _get(env, name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {value}")
    return value


def _get_float(
    env: Mapping[str, str], name: str, default: Optional[float]
) -> Optional[float]:
    raw = _get(env, name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


def load_config_file(path: Union[str, Path]) -> Dict[str, str]:
    """Read settings from a YAML file.

    The file is a flat mapping keyed by the environment variable names.
    Scalar values are converted to strings so they parse exactly like the
    environment.

    Args:
        path: Path to the YAML config file.

    Returns:
        The settings as a name-to-string mapping. Null values are dropped.

    Raises:
        FileNotFoundError: If the config file does not exist.
        ValueError: If the file is not a mapping of scalar values.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError("Config file not found: {}".format(path))

    with open(config_path, "r") as f:
        raw = yaml.safe_load(f)

    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ValueError("Config file must contain a YAML mapping at the top level")

    settings: Dict[str, str] = {}
    for key, value in raw.items():
        if value is None:
            continue
        if isinstance(value, (dict, list)):
            raise ValueError("Config value for {} must be a scalar".format(key))
        if isinstance(value, bool):
            value = str(value).lower()
        settings[str(key)] = str(value)
    return settings


def load_config(environ: Optional[Mapping[str, str]] = None) -> GatewayConfig:
    """Build the gateway configuration from environment variables.

    When GATEWAY_CONFIG_FILE is set, the YAML file it names supplies values
    for any variable the environment leaves unset or blank.

    Args:
        environ: Mapping to read from. Defaults to ``os.environ``.

    Returns:
        A fully resolved GatewayConfig instance.

    Raises:
        FileNotFoundError: If GATEWAY_CONFIG_FILE names a missing file.
        ValueError: If a variable holds an invalid value.
    """
    env: Mapping[str, str] = os.environ if environ is None else environ

    config_file = _get(env, "GATEWAY_CONFIG_FILE")
    if config_file:
        layered = load_config_file(config_file)
        layered.update({k: v for k, v in env.items() if v is not None and v.strip()})
        env = layered

    mode_raw = (_get(env, "GATEWAY_AUTH_MODE") or AuthMode.SHARED_SECRET.value).lower()
    try:
        mode = AuthMode(mode_raw)
    except ValueError:
        allowed = ", ".join(m.value for m in AuthMode)
        raise ValueError(
            f"GATEWAY_AUTH_MODE must be one of {allowed}, got {mode_raw!r}"
        )

    auth = AuthConfig(mode=mode, shared_secret=_get(env, "GATEWAY_SHARED_SECRET"))

    window = _get_float(env, "RATE_LIMIT_WINDOW_SECONDS", 60.0)
    if window is None or window <= 0:
        raise ValueError("RATE_LIMIT_WINDOW_SECONDS must be positive")
    rate_limit = RateLimitConfig(
        window_seconds=window,
        max_requests=_get_int(env, "RATE_LIMIT_MAX_REQUESTS", 10),
    )

    upstream = UpstreamConfig(
        url=_get(env, "UPSTREAM_URL") or DEFAULT_UPSTREAM_URL,
        api_key=_get(env, "OPENAI_API_KEY"),
        default_model=_get(env, "DEFAULT_MODEL") or "gpt-3.5-turbo",
        default_max_tokens=_get_int(env, "DEFAULT_MAX_TOKENS", 500),
        temperature=_get_float(env, "UPSTREAM_TEMPERATURE", None),
    )

    ledger = LedgerConfig(
        project_id=_get(env, "LEDGER_PROJECT_ID"),
        collection=_get(env, "LEDGER_COLLECTION") or "users",
        client_email=_get(env, "LEDGER_CLIENT_EMAIL"),
        private_key=_get(env, "LEDGER_PRIVATE_KEY"),
        private_key_id=_get(env, "LEDGER_PRIVATE_KEY_ID"),
    )

    return GatewayConfig(
        auth=auth,
        rate_limit=rate_limit,
        upstream=upstream,
        ledger=ledger,
        log_file=_get(env, "GATEWAY_LOG_FILE"),
    )
