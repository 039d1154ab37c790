"""Service-account credentials and OAuth access tokens for Vertex AI.

``TokenManager`` signs a JWT assertion with the service-account key (RS256),
exchanges it for an access token and caches the result until it is within
five minutes of expiry. The cache lock is held across the exchange, so
concurrent callers share a single refresh.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import json
import logging
from pathlib import Path
import time
from typing import TYPE_CHECKING, Any

import httpx
import jwt

from switchboard._http import DEFAULT_TIMEOUT_S, build_timeout
from switchboard.errors import AuthError, ConfigurationError

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"
JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"
ASSERTION_LIFETIME_S = 3600
REFRESH_SKEW_S = 300


@dataclass(frozen=True)
class ServiceAccount:
    """The two service-account fields needed to mint tokens."""

    client_email: str
    private_key: str = field(repr=False)
    token_uri: str = GOOGLE_TOKEN_URL

    @classmethod
    def from_info(cls, info: dict[str, Any]) -> ServiceAccount:
        """Build from a parsed service-account JSON document."""
        missing = [k for k in ("client_email", "private_key") if not info.get(k)]
        if missing:
            raise ConfigurationError(
                f"Service account is missing {', '.join(missing)}",
                hint="Download a JSON key for the service account from the cloud console.",
            )
        return cls(
            client_email=info["client_email"],
            private_key=info["private_key"],
            token_uri=info.get("token_uri") or GOOGLE_TOKEN_URL,
        )

    @classmethod
    def from_file(cls, path: str | Path) -> ServiceAccount:
        try:
            info = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise ConfigurationError(
                f"Cannot read service account file {str(path)!r}: {exc}"
            ) from exc
        if not isinstance(info, dict):
            raise ConfigurationError(f"Service account file {str(path)!r} is not a JSON object")
        return cls.from_info(info)


@dataclass(frozen=True)
class AccessToken:
    access_token: str = field(repr=False)
    token_type: str
    #: Absolute expiry, seconds since the epoch.
    expires_at: float

    def is_fresh(self, now: float, *, skew_s: float = REFRESH_SKEW_S) -> bool:
        return bool(self.access_token) and now + skew_s < self.expires_at


class TokenManager:
    """Cache and refresh access tokens for one service account."""

    def __init__(
        self,
        service_account: ServiceAccount,
        *,
        token: AccessToken | None = None,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.service_account = service_account
        self._token = token
        self._timeout_s = timeout_s
        self._clock = clock
        self._lock = asyncio.Lock()

    @property
    def token(self) -> AccessToken | None:
        return self._token

    async def get_token(self) -> str:
        """Return a valid access token, refreshing it when near expiry."""
        async with self._lock:
            token = self._token
            if token is None or not token.is_fresh(self._clock()):
                token = await self.fetch_new_token()
                self._token = token
            return token.access_token

    def build_assertion(self, now: int) -> str:
        """Sign the JWT-bearer assertion for *now* (seconds since the epoch)."""
        claims = {
            "iss": self.service_account.client_email,
            "scope": CLOUD_PLATFORM_SCOPE,
            "aud": self.service_account.token_uri,
            "iat": now,
            "exp": now + ASSERTION_LIFETIME_S,
        }
        try:
            return jwt.encode(claims, self.service_account.private_key, algorithm="RS256")
        except (jwt.PyJWTError, ValueError, TypeError) as exc:
            raise AuthError(
                f"Failed to sign service account assertion: {exc}",
                hint="Check that private_key is the PEM key from the service account file.",
            ) from exc

    async def fetch_new_token(self) -> AccessToken:
        """Exchange a freshly signed assertion for an access token."""
        now = int(self._clock())
        assertion = self.build_assertion(now)
        logger.debug("Requesting access token for %s", self.service_account.client_email)
        try:
            async with httpx.AsyncClient(timeout=build_timeout(self._timeout_s)) as client:
                response = await client.post(
                    self.service_account.token_uri,
                    data={"grant_type": JWT_BEARER_GRANT, "assertion": assertion},
                )
        except httpx.HTTPError as exc:
            raise AuthError(f"Token exchange failed: {exc}") from exc

        if not response.is_success:
            raise AuthError(
                f"Token exchange returned HTTP {response.status_code}: {response.text}",
                hint="Check that the service account exists and is enabled.",
            )
        try:
            payload = response.json()
            access_token = payload["access_token"]
        except (ValueError, KeyError, TypeError) as exc:
            raise AuthError(f"Token exchange returned an unexpected body: {response.text}") from exc

        expires_in = payload.get("expires_in") or ASSERTION_LIFETIME_S
        return AccessToken(
            access_token=access_token,
            token_type=payload.get("token_type") or "Bearer",
            expires_at=now + float(expires_in),
        )
