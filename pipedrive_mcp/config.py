from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from .credentials import CredentialSet
from .errors import ConfigError
from .security import AuthConfig, load_auth_config

TRANSPORTS = ("stdio", "sse", "http")
RESERVED_PATHS = ("/sse", "/health")

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent / "config" / "server.yaml"


def load_config(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(f"MCP server config not found at {path}")
    with path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        raise ValueError("Config root must be a mapping")
    return data


def load_config_from_env(environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """Read the YAML file named by MCP_SERVER_CONFIG, or the bundled default if present."""
    env = os.environ if environ is None else environ
    explicit = env.get("MCP_SERVER_CONFIG", "").strip()
    if explicit:
        return load_config(Path(explicit))
    if DEFAULT_CONFIG_PATH.exists():
        return load_config(DEFAULT_CONFIG_PATH)
    return {}


@dataclass(frozen=True)
class Settings:
    transport: str = "stdio"
    host: str = "127.0.0.1"
    port: int = 3000
    endpoint: str = "/message"
    log_level: str = "INFO"
    reply_timeout: float = 30.0
    api_token: Optional[str] = None
    domain: Optional[str] = None
    upstream_timeout: float = 30.0
    rate_limit_min_time_ms: float = 250
    rate_limit_max_concurrent: int = 2
    http_limits: Dict[str, Any] = field(default_factory=dict)
    auth: AuthConfig = field(default_factory=AuthConfig)
    name: str = "pipedrive-mcp-server"

    @property
    def default_credentials(self) -> Optional[CredentialSet]:
        """Fallback credentials, only used by the stdio transport."""
        if self.api_token and self.domain:
            return CredentialSet(api_token=self.api_token, domain=self.domain)
        return None


def _pick(env: Mapping[str, str], name: str, fallback: Any) -> Any:
    value = env.get(name)
    if value is None or not str(value).strip():
        return fallback
    return str(value).strip()


def _as_int(name: str, value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be an integer, got {value!r}") from None


def _as_float(name: str, value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be a number, got {value!r}") from None


def load_settings(
    config: Optional[Dict[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    """Merge defaults, YAML config and environment (env wins) into validated Settings."""
    env = os.environ if environ is None else environ
    cfg = config if config is not None else load_config_from_env(env)
    server_cfg = cfg.get("server", {}) or {}
    pipedrive_cfg = cfg.get("pipedrive", {}) or {}
    limits_cfg = cfg.get("rate_limits", {}) or {}
    auth_file = load_auth_config(cfg)

    transport = str(_pick(env, "MCP_TRANSPORT", server_cfg.get("transport", "stdio"))).lower()
    if transport not in TRANSPORTS:
        raise ConfigError(f"Unknown transport {transport!r}, expected one of {', '.join(TRANSPORTS)}")

    endpoint = str(_pick(env, "MCP_ENDPOINT", server_cfg.get("endpoint", "/message")))
    if not endpoint.startswith("/"):
        raise ConfigError(f"Message endpoint must start with '/', got {endpoint!r}")
    if endpoint.rstrip("/") in RESERVED_PATHS:
        raise ConfigError(f"Message endpoint {endpoint!r} collides with a reserved path")

    max_concurrent = _as_int(
        "rate_limits.max_concurrent",
        _pick(env, "PIPEDRIVE_RATE_LIMIT_MAX_CONCURRENT", limits_cfg.get("max_concurrent", 2)),
    )
    if max_concurrent < 1:
        raise ConfigError("rate_limits.max_concurrent must be >= 1")
    min_time_ms = _as_float(
        "rate_limits.min_time_ms",
        _pick(env, "PIPEDRIVE_RATE_LIMIT_MIN_TIME_MS", limits_cfg.get("min_time_ms", 250)),
    )
    if min_time_ms < 0:
        raise ConfigError("rate_limits.min_time_ms must be >= 0")

    auth = AuthConfig(
        secret=_pick(env, "MCP_JWT_SECRET", auth_file.secret),
        token=_pick(env, "MCP_JWT_TOKEN", auth_file.token),
        algorithm=_pick(env, "MCP_JWT_ALGORITHM", auth_file.algorithm),
        audience=_pick(env, "MCP_JWT_AUDIENCE", auth_file.audience),
        issuer=_pick(env, "MCP_JWT_ISSUER", auth_file.issuer),
        header=_pick(env, "MCP_JWT_HEADER", auth_file.header),
    )

    return Settings(
        transport=transport,
        host=str(_pick(env, "MCP_HOST", server_cfg.get("host", "127.0.0.1"))),
        port=_as_int("server.port", _pick(env, "MCP_PORT", server_cfg.get("port", 3000))),
        endpoint=endpoint,
        log_level=str(_pick(env, "MCP_LOG_LEVEL", server_cfg.get("log_level", "INFO"))).upper(),
        reply_timeout=_as_float(
            "server.reply_timeout_seconds",
            _pick(env, "MCP_REPLY_TIMEOUT_SECONDS", server_cfg.get("reply_timeout_seconds", 30.0)),
        ),
        api_token=_pick(env, "PIPEDRIVE_API_TOKEN", pipedrive_cfg.get("api_token")),
        domain=_pick(env, "PIPEDRIVE_DOMAIN", pipedrive_cfg.get("domain")),
        upstream_timeout=_as_float(
            "pipedrive.timeout_seconds",
            _pick(env, "PIPEDRIVE_TIMEOUT_SECONDS", pipedrive_cfg.get("timeout_seconds", 30.0)),
        ),
        rate_limit_min_time_ms=min_time_ms,
        rate_limit_max_concurrent=max_concurrent,
        http_limits=dict(server_cfg.get("http_limits", {}) or {}),
        auth=auth,
        name=str(server_cfg.get("name", "pipedrive-mcp-server")),
    )
