"""Process-wide bearer token providers.

Two tokens are needed by the pipeline:

1. A Vonage application JWT (RS256, signed locally with the application's
   private key) for downloading call artifacts and calling the Vonage REST APIs.
2. A Microsoft Graph access token (OAuth2 client credentials) for OneDrive.

Each provider caches its token and refreshes it shortly before expiry. The
refresh is single-flight: concurrent pipeline runs that find the token expired
wait on one asyncio.Lock and reuse the token fetched by whichever run got there
first.

Providers are module-level and created lazily on first use. They are shared
by every pipeline run; nothing request-scoped is stored on them.
"""
import os
import time
import uuid
import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

import httpx
import jwt

logger = logging.getLogger(__name__)

# Refresh this many seconds before the token actually expires
REFRESH_MARGIN_SECONDS = 60

VONAGE_JWT_TTL_SECONDS = 900
GRAPH_TOKEN_URL = "https://login.microsoftonline.com/{tenant_id}/oauth2/v2.0/token"
GRAPH_SCOPE = "https://graph.microsoft.com/.default"


class CredentialError(Exception):
    """Raised when a bearer token cannot be obtained."""
    pass


@dataclass(frozen=True)
class AccessToken:
    """A bearer token and its absolute expiry (unix seconds)."""
    token: str
    expires_at: float

    def is_expiring(self, margin: float = REFRESH_MARGIN_SECONDS) -> bool:
        return time.time() >= self.expires_at - margin


class CachedTokenProvider:
    """Token cache with single-flight refresh.

    Subclasses implement _fetch_token(). Readers never block while the cached
    token is fresh; only an expired token sends callers through the lock.
    """

    name = "token"

    def __init__(self):
        self._token: Optional[AccessToken] = None
        self._lock = asyncio.Lock()
        self.refresh_count = 0

    async def get_token(self) -> str:
        """Return a valid bearer token, refreshing it if needed.

        Raises:
            CredentialError: If the token cannot be obtained
        """
        cached = self._token
        if cached is not None and not cached.is_expiring():
            return cached.token

        async with self._lock:
            # Another caller may have refreshed while we waited
            cached = self._token
            if cached is not None and not cached.is_expiring():
                return cached.token

            try:
                fresh = await self._fetch_token()
            except CredentialError:
                raise
            except Exception as e:
                logger.error(f"Failed to obtain {self.name} token: {type(e).__name__}: {e}")
                raise CredentialError(f"Failed to obtain {self.name} token: {e}") from e

            self._token = fresh
            self.refresh_count += 1
            logger.info(
                f"{self.name} token refreshed: refresh_count={self.refresh_count}, "
                f"expires_in={int(fresh.expires_at - time.time())}s"
            )
            return fresh.token

    def invalidate(self) -> None:
        """Drop the cached token so the next caller refreshes."""
        self._token = None

    async def _fetch_token(self) -> AccessToken:
        raise NotImplementedError


def _load_private_key(value: str) -> str:
    """Accept either a path to a PEM file or the PEM content itself."""
    if os.path.isfile(value):
        with open(value, "r") as f:
            return f.read()
    return value.replace("\\n", "\n")


class VonageJwtProvider(CachedTokenProvider):
    """Vonage application JWT, signed locally with RS256."""

    name = "vonage"

    def __init__(
        self,
        application_id: Optional[str] = None,
        private_key: Optional[str] = None,
        ttl_seconds: int = VONAGE_JWT_TTL_SECONDS,
    ):
        super().__init__()
        self.application_id = application_id or os.getenv("VONAGE_APPLICATION_ID")
        key_setting = private_key or os.getenv("VONAGE_PRIVATE_KEY")
        self.ttl_seconds = ttl_seconds

        if not self.application_id or not key_setting:
            raise ValueError("VONAGE_APPLICATION_ID and VONAGE_PRIVATE_KEY are required")

        self._private_key = _load_private_key(key_setting)
        logger.info(f"VonageJwtProvider initialized: application_id={self.application_id[:8]}...")

    async def _fetch_token(self) -> AccessToken:
        now = int(time.time())
        claims = {
            "application_id": self.application_id,
            "iat": now,
            "exp": now + self.ttl_seconds,
            "jti": str(uuid.uuid4()),
        }
        try:
            token = jwt.encode(claims, self._private_key, algorithm="RS256")
        except (jwt.PyJWTError, ValueError, TypeError) as e:
            raise CredentialError(f"Failed to sign Vonage JWT: {e}") from e
        return AccessToken(token=token, expires_at=float(now + self.ttl_seconds))


class GraphTokenProvider(CachedTokenProvider):
    """Microsoft Graph app-only token via the OAuth2 client credentials grant."""

    name = "graph"

    def __init__(
        self,
        tenant_id: Optional[str] = None,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout_seconds: Optional[float] = None,
    ):
        super().__init__()
        self.tenant_id = tenant_id or os.getenv("GRAPH_TENANT_ID")
        self.client_id = client_id or os.getenv("GRAPH_CLIENT_ID")
        self._client_secret = client_secret or os.getenv("GRAPH_CLIENT_SECRET")
        self._transport = transport
        self.timeout_seconds = timeout_seconds or float(os.getenv("HTTP_TIMEOUT_SECONDS", "30"))

        if not (self.tenant_id and self.client_id and self._client_secret):
            raise ValueError("GRAPH_TENANT_ID, GRAPH_CLIENT_ID and GRAPH_CLIENT_SECRET are required")

        logger.info(f"GraphTokenProvider initialized: tenant_id={self.tenant_id[:8]}...")

    async def _fetch_token(self) -> AccessToken:
        url = GRAPH_TOKEN_URL.format(tenant_id=self.tenant_id)
        form = {
            "grant_type": "client_credentials",
            "client_id": self.client_id,
            "client_secret": self._client_secret,
            "scope": GRAPH_SCOPE,
        }
        # Short-lived client: the provider outlives any single event loop user
        async with httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout_seconds),
            transport=self._transport,
        ) as client:
            try:
                response = await client.post(url, data=form)
            except httpx.HTTPError as e:
                raise CredentialError(f"Graph token request failed: {e}") from e

        if response.status_code != 200:
            raise CredentialError(
                f"Graph token request rejected: status={response.status_code}, body={response.text[:200]}"
            )

        try:
            payload = response.json()
            token = payload["access_token"]
            expires_in = int(payload.get("expires_in", 3600))
        except (ValueError, KeyError) as e:
            raise CredentialError(f"Malformed Graph token response: {e}") from e

        return AccessToken(token=token, expires_at=time.time() + expires_in)


# Global provider instances (initialized lazily)
_vonage_credentials: Optional[VonageJwtProvider] = None
_graph_credentials: Optional[GraphTokenProvider] = None


def get_vonage_credentials() -> VonageJwtProvider:
    """Get or create the process-wide Vonage JWT provider."""
    global _vonage_credentials

    if _vonage_credentials is None:
        _vonage_credentials = VonageJwtProvider()

    return _vonage_credentials


def get_graph_credentials() -> GraphTokenProvider:
    """Get or create the process-wide Microsoft Graph token provider."""
    global _graph_credentials

    if _graph_credentials is None:
        _graph_credentials = GraphTokenProvider()

    return _graph_credentials


def reset_credential_providers() -> None:
    """Drop the process-wide providers. Used at shutdown and in tests."""
    global _vonage_credentials, _graph_credentials

    _vonage_credentials = None
    _graph_credentials = None
