"""
OAuth2 protocol client for Fortnox — authorization URL, code exchange,
and refresh-token grant.

Fortnox is a confidential-client provider: the token endpoint is called with
HTTP Basic authentication (``client_id:client_secret``), and access tokens are
short-lived (1 hour) while refresh tokens rotate on every use.

This module only speaks the protocol. Persistence and the single-use
state/code rules live in :mod:`dealerledger.auth.handshake`.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from urllib.parse import urlencode

import httpx

from dealerledger.config import FortnoxConfig

logger = logging.getLogger("dealerledger.auth.oauth2")


class OAuthProtocolError(Exception):
    """Token endpoint rejected a grant or could not be reached."""

    def __init__(self, message: str, *, error: str | None = None, status: int = 0) -> None:
        super().__init__(message)
        self.error = error
        self.status = status


@dataclass
class TokenData:
    """Holds OAuth2 token data with expiry tracking."""

    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int = 3600
    expires_at: float = 0.0
    scope: str = ""
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def expires_at_datetime(self) -> datetime:
        """Expiry as naive UTC, the form stored in the credential table."""
        return datetime.fromtimestamp(self.expires_at, tz=timezone.utc).replace(tzinfo=None)

    @classmethod
    def from_oauth_response(cls, data: dict[str, Any]) -> TokenData:
        """Parse a standard OAuth2 token response."""
        expires_in = int(data.get("expires_in", 3600))
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token", ""),
            token_type=data.get("token_type", "Bearer"),
            expires_in=expires_in,
            expires_at=time.time() + expires_in,
            scope=data.get("scope", ""),
            extra={k: v for k, v in data.items() if k not in {
                "access_token", "refresh_token", "token_type", "expires_in", "scope",
            }},
        )


class FortnoxOAuthClient:
    """Talks to the Fortnox OAuth2 endpoints.

    Usage::

        oauth = FortnoxOAuthClient(config.fortnox)
        url = oauth.get_authorization_url(state="...")
        token = await oauth.exchange_code(code)
        token = await oauth.refresh(token.refresh_token)
    """

    def __init__(self, config: FortnoxConfig, *, http_client: httpx.AsyncClient | None = None) -> None:
        self.config = config
        self._http_client = http_client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create a reusable httpx client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=self.config.timeout)
        return self._http_client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    def get_authorization_url(self, state: str) -> str:
        """Build the URL the user is redirected to for consent."""
        client_id, _ = self.config.require_client_credentials()
        params = {
            "client_id": client_id,
            "redirect_uri": self.config.redirect_uri,
            "scope": " ".join(self.config.scopes),
            "state": state,
            "response_type": "code",
            "access_type": "offline",
        }
        return f"{self.config.auth_url}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> TokenData:
        """Exchange an authorization code for tokens."""
        return await self._token_request({
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.config.redirect_uri,
        })

    async def refresh(self, refresh_token: str) -> TokenData:
        """Exchange a refresh token for a new access/refresh pair.

        Fortnox rotates the refresh token; if a response omits it, the one
        sent is kept.
        """
        if not refresh_token:
            raise OAuthProtocolError("No refresh token available", error="invalid_grant")
        token = await self._token_request({
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        })
        if not token.refresh_token:
            token.refresh_token = refresh_token
        return token

    async def _token_request(self, payload: dict[str, str]) -> TokenData:
        client_id, client_secret = self.config.require_client_credentials()
        client = await self._get_client()
        grant = payload["grant_type"]

        logger.debug("Requesting Fortnox token (grant_type=%s)", grant)
        try:
            resp = await client.post(
                self.config.token_url,
                data=payload,
                auth=(client_id, client_secret),
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            raise OAuthProtocolError(f"Token endpoint unreachable: {e}") from e

        if resp.status_code >= 400:
            error, description = _parse_oauth_error(resp)
            logger.warning(
                "Fortnox token request failed (grant_type=%s, status=%d, error=%s)",
                grant, resp.status_code, error,
            )
            raise OAuthProtocolError(
                f"Token request failed ({resp.status_code}): {description or error or resp.text[:200]}",
                error=error,
                status=resp.status_code,
            )

        try:
            data = resp.json()
            token = TokenData.from_oauth_response(data)
        except (ValueError, KeyError) as e:
            raise OAuthProtocolError(f"Malformed token response: {e}", status=resp.status_code) from e

        logger.info("Obtained Fortnox tokens via %s (expires in %ds)", grant, token.expires_in)
        return token


def _parse_oauth_error(resp: httpx.Response) -> tuple[str | None, str | None]:
    """Extract ``(error, error_description)`` from an OAuth2 error body."""
    try:
        data = resp.json()
    except ValueError:
        return None, None
    if not isinstance(data, dict):
        return None, None
    return data.get("error"), data.get("error_description")
