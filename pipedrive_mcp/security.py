"""
Optionaler JWT-Gate vor jeder Session-/Credential-Logik.

Ist ein Signing-Secret konfiguriert, muss jeder Request auf /sse und dem
Message-Endpoint einen gültigen signierten Token tragen:

    X-MCP-Authorization: Bearer <JWT>

Der Gate entscheidet nur, ob ein Caller überhaupt mit dem Server sprechen darf.
Welcher Pipedrive-Tenant benutzt wird, entscheidet danach der Authorization-Header.

Boot-Check: Secret ohne gültigen Referenz-Token ist ein fataler Konfigurationsfehler.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

import jwt

from .credentials import bearer_value, header_value
from .errors import AuthRejected, ConfigError

logger = logging.getLogger("pipedrive_mcp.security")

DEFAULT_GATE_HEADER = "X-MCP-Authorization"


@dataclass(frozen=True)
class AuthConfig:
    secret: Optional[str] = None
    token: Optional[str] = None
    algorithm: str = "HS256"
    audience: Optional[str] = None
    issuer: Optional[str] = None
    header: str = DEFAULT_GATE_HEADER

    @property
    def enabled(self) -> bool:
        return bool(self.secret)


def load_auth_config(config: Dict[str, Any]) -> AuthConfig:
    security_cfg = config.get("security", {}) or {}
    auth_cfg = security_cfg.get("auth", {}) or {}
    return AuthConfig(
        secret=auth_cfg.get("secret") or None,
        token=auth_cfg.get("token") or None,
        algorithm=str(auth_cfg.get("algorithm") or "HS256"),
        audience=auth_cfg.get("audience") or None,
        issuer=auth_cfg.get("issuer") or None,
        header=str(auth_cfg.get("header") or DEFAULT_GATE_HEADER),
    )


@dataclass(frozen=True)
class GateResult:
    ok: bool
    status: int = 200
    message: str = ""


GATE_OK = GateResult(ok=True)


class AuthGate:
    def __init__(self, config: AuthConfig) -> None:
        self._config = config

    @property
    def config(self) -> AuthConfig:
        return self._config

    @property
    def enabled(self) -> bool:
        return self._config.enabled

    def verify(self, token: str) -> Dict[str, Any]:
        """Decode and verify a signed token; raises AuthRejected with a short reason."""
        cfg = self._config
        options = {"verify_aud": cfg.audience is not None}
        kwargs: Dict[str, Any] = {}
        if cfg.audience is not None:
            kwargs["audience"] = cfg.audience
        if cfg.issuer is not None:
            kwargs["issuer"] = cfg.issuer
        try:
            return jwt.decode(
                token,
                cfg.secret,
                algorithms=[cfg.algorithm],
                options=options,
                **kwargs,
            )
        except jwt.ExpiredSignatureError as exc:
            raise AuthRejected("Token expired") from exc
        except jwt.InvalidAudienceError as exc:
            raise AuthRejected("Invalid token audience") from exc
        except jwt.InvalidIssuerError as exc:
            raise AuthRejected("Invalid token issuer") from exc
        except jwt.InvalidTokenError as exc:
            raise AuthRejected(f"Invalid token: {exc}") from exc

    def check(self, headers: Mapping[str, Any]) -> GateResult:
        if not self.enabled:
            return GATE_OK
        header = header_value(headers, self._config.header)
        if not header:
            return GateResult(ok=False, status=401, message=f"Missing {self._config.header} header")
        token = bearer_value(header)
        if token is None:
            return GateResult(ok=False, status=401, message="Invalid authorization scheme, expected Bearer")
        try:
            self.verify(token)
        except AuthRejected as exc:
            logger.warning(f"[Auth] Rejected signed token: {exc}")
            return GateResult(ok=False, status=exc.status_code, message=str(exc))
        return GATE_OK


def build_auth_gate(config: AuthConfig) -> AuthGate:
    """Create the gate and run the boot-time check against the reference token."""
    gate = AuthGate(config)
    if not config.enabled:
        logger.info("[Auth] Signed-token gate disabled (no secret configured)")
        return gate
    if not config.token:
        raise ConfigError("MCP_JWT_SECRET is set but no reference token (MCP_JWT_TOKEN) is configured")
    try:
        gate.verify(config.token)
    except AuthRejected as exc:
        raise ConfigError(f"Reference token failed verification: {exc}") from exc
    logger.info(f"[Auth] Signed-token gate enabled on header {config.header}")
    return gate
