"""
Credential parsing for inbound requests.

Clients identify the Pipedrive tenant they act as with a single header:

    Authorization: Bearer <api_token>:<domain>

The value is split on the first colon only, everything after it belongs to the
domain. Parsing never raises; malformed input yields empty credentials and the
caller decides whether that is fatal.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional

AUTHORIZATION_HEADER = "authorization"
BEARER_PREFIX = "bearer "


@dataclass(frozen=True)
class CredentialSet:
    """Immutable (api_token, domain) pair a session acts as."""

    api_token: str
    domain: str

    @property
    def base_url(self) -> str:
        return f"https://{self.domain}/api/v1"

    def masked_token(self) -> str:
        if len(self.api_token) <= 4:
            return "***"
        return f"{self.api_token[:4]}***"

    def __repr__(self) -> str:
        # never expose the token in logs or tracebacks
        return f"CredentialSet(api_token='{self.masked_token()}', domain='{self.domain}')"

    __str__ = __repr__


@dataclass(frozen=True)
class ExtractedCredentials:
    api_token: Optional[str] = None
    domain: Optional[str] = None

    @property
    def complete(self) -> bool:
        return bool(self.api_token) and bool(self.domain)

    def to_credential_set(self) -> Optional[CredentialSet]:
        """Both parts or nothing: partial credentials count as absent."""
        if not self.complete:
            return None
        return CredentialSet(api_token=str(self.api_token), domain=str(self.domain))


NO_CREDENTIALS = ExtractedCredentials()


def header_value(headers: Mapping[str, Any], name: str) -> Optional[str]:
    """Case-insensitive header lookup that works for plain dicts and Starlette Headers."""
    try:
        items = headers.items()
    except AttributeError:
        return None
    wanted = name.lower()
    for key, value in items:
        if isinstance(key, bytes):
            key = key.decode("latin-1")
        if str(key).lower() == wanted:
            if isinstance(value, bytes):
                value = value.decode("latin-1")
            return str(value)
    return None


def bearer_value(header: Optional[str]) -> Optional[str]:
    """Return the value after a `Bearer` scheme keyword, or None if the header has another shape."""
    if not header or not isinstance(header, str):
        return None
    stripped = header.strip()
    if stripped[: len(BEARER_PREFIX)].lower() != BEARER_PREFIX:
        return None
    value = stripped[len(BEARER_PREFIX):].strip()
    return value or None


def parse_token_value(value: Optional[str]) -> ExtractedCredentials:
    """Split `<api_token>:<domain>` on the first colon."""
    if not value:
        return NO_CREDENTIALS
    token, sep, domain = value.partition(":")
    token = token.strip()
    if not sep:
        return ExtractedCredentials(api_token=token or None, domain=None)
    return ExtractedCredentials(api_token=token or None, domain=domain.strip() or None)


def extract_credentials(headers: Mapping[str, Any]) -> ExtractedCredentials:
    return parse_token_value(bearer_value(header_value(headers, AUTHORIZATION_HEADER)))
