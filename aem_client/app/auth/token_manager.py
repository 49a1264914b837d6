"""
Token manager for AEM authentication.

Basic credentials are turned into a header locally. OAuth client
credentials and service-account JWTs are exchanged with Adobe IMS for a
bearer token which is cached until shortly before it expires.
"""

import asyncio
import base64
import math
import time
from dataclasses import dataclass
from typing import Dict, Any, Optional, Callable

import httpx
from jose import jwt
from jose.exceptions import JOSEError

from aem_shared.config import AEMCredentials, CredentialType
from aem_shared.errors import AuthenticationError
from aem_shared.logging import get_logger

OAUTH_TOKEN_PATH = "/ims/token/v3"
JWT_EXCHANGE_PATH = "/ims/exchange/jwt"
JWT_LIFETIME = 3600
DEFAULT_TOKEN_LIFETIME = 3600.0


@dataclass
class Token:
    """Credential material handed to the transport. ``expires_at`` is epoch seconds."""

    credential_type: CredentialType
    access_token: str
    expires_at: float

    def is_usable(self, now: float, safety_margin: float = 0.0) -> bool:
        return now < self.expires_at - safety_margin

    def header_value(self) -> str:
        if self.credential_type == CredentialType.BASIC:
            return f"Basic {self.access_token}"
        return f"Bearer {self.access_token}"


class AuthTokenManager:
    """Keeps one valid token per credential set, refreshing on demand.

    Concurrent callers that find the token stale share a single in-flight
    refresh.
    """

    def __init__(
        self,
        credentials: AEMCredentials,
        http_client: Optional[httpx.AsyncClient] = None,
        safety_margin: float = 60.0,
        clock: Callable[[], float] = time.time,
        timeout: float = 30.0,
    ):
        self.credentials = credentials
        self.safety_margin = safety_margin
        self.timeout = timeout
        self.logger = get_logger("aem.auth.token_manager")
        self._clock = clock
        self._http_client = http_client
        self._owns_http_client = http_client is None
        self._token: Optional[Token] = None
        self._refresh_task: Optional[asyncio.Task] = None
        self.refresh_count = 0

    @property
    def token(self) -> Optional[Token]:
        return self._token

    async def get_auth_headers(self) -> Dict[str, str]:
        """Authorization header for the next request."""
        token = await self.get_token()
        return {"Authorization": token.header_value()}

    async def get_token(self) -> Token:
        if self.credentials.type == CredentialType.BASIC:
            if self._token is None:
                self._token = self._basic_token()
            return self._token

        if self._token is not None and self._token.is_usable(self._clock(), self.safety_margin):
            return self._token

        return await self._refresh()

    def invalidate(self):
        """Drop the cached token so the next call refreshes."""
        if self._token is not None:
            self.logger.info("Cached token invalidated", credential_type=self.credentials.type.value)
        self._token = None

    async def _refresh(self) -> Token:
        if self._refresh_task is None:
            task = asyncio.create_task(self._perform_refresh())
            task.add_done_callback(self._release_refresh)
            self._refresh_task = task

        return await asyncio.shield(self._refresh_task)

    def _release_refresh(self, task: asyncio.Task):
        # Runs even when every waiter was cancelled
        if self._refresh_task is task:
            self._refresh_task = None
        if not task.cancelled() and task.exception() is not None:
            self.logger.debug("Token refresh finished with error", error=str(task.exception()))

    async def _perform_refresh(self) -> Token:
        credential_type = self.credentials.type
        self.logger.debug("Refreshing token", credential_type=credential_type.value)

        if credential_type == CredentialType.OAUTH:
            url = f"{self.credentials.ims_host}{OAUTH_TOKEN_PATH}"
            form = {
                "grant_type": "client_credentials",
                "client_id": self.credentials.client_id,
                "client_secret": self.credentials.client_secret,
                "scope": self.credentials.scope,
            }
        else:
            url = f"{self.credentials.ims_host}{JWT_EXCHANGE_PATH}"
            form = {
                "client_id": self.credentials.client_id,
                "client_secret": self.credentials.client_secret,
                "jwt_token": self._service_account_jwt(),
            }

        try:
            response = await self._client().post(url, data=form, timeout=self.timeout)
        except httpx.HTTPError as e:
            self.logger.error("Token endpoint unreachable", credential_type=credential_type.value, error=str(e))
            raise AuthenticationError(
                f"{credential_type.value} token refresh failed",
                details={"error": str(e), "url": url},
            ) from e

        if response.status_code != 200:
            self.logger.error(
                "Token endpoint rejected credentials",
                credential_type=credential_type.value,
                status_code=response.status_code,
            )
            raise AuthenticationError(
                f"{credential_type.value} token refresh failed",
                details={"status_code": response.status_code, "url": url},
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise AuthenticationError("Token endpoint returned invalid JSON", details={"url": url}) from e

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not access_token:
            raise AuthenticationError("Token response is missing access_token", details={"url": url})

        expires_in = float(payload.get("expires_in") or DEFAULT_TOKEN_LIFETIME)
        token = Token(
            credential_type=credential_type,
            access_token=access_token,
            expires_at=self._clock() + expires_in,
        )
        self._token = token
        self.refresh_count += 1

        self.logger.info(
            "Token refreshed",
            credential_type=credential_type.value,
            expires_in=expires_in,
            token_type=payload.get("token_type"),
        )
        return token

    def _basic_token(self) -> Token:
        raw = f"{self.credentials.username}:{self.credentials.password}".encode("utf-8")
        return Token(
            credential_type=CredentialType.BASIC,
            access_token=base64.b64encode(raw).decode("ascii"),
            expires_at=math.inf,
        )

    def _service_account_jwt(self) -> str:
        now = int(self._clock())
        client_id = self.credentials.client_id
        claims: Dict[str, Any] = {
            "iss": client_id,
            "sub": client_id,
            "aud": f"{self.credentials.ims_host}/c/{client_id}",
            "exp": now + JWT_LIFETIME,
            "iat": now,
            "scope": self.credentials.scope,
        }
        try:
            return jwt.encode(claims, self.credentials.private_key, algorithm="RS256")
        except JOSEError as e:
            self.logger.error("Failed to sign service account JWT", error=str(e))
            raise AuthenticationError("Invalid service account private key", details={"error": str(e)}) from e

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    async def close(self):
        if self._refresh_task is not None and not self._refresh_task.done():
            self._refresh_task.cancel()
        if self._owns_http_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
