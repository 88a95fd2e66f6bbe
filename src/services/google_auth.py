"""Google service-account access tokens (JWT bearer grant).

Signs an RS256 assertion with the service account's private key, exchanges
it at the token endpoint and caches the access token until shortly before
it expires.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any

import httpx
import jwt

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_URI = "https://oauth2.googleapis.com/token"
SHEETS_SCOPE = "https://www.googleapis.com/auth/spreadsheets"
ASSERTION_LIFETIME_SECONDS = 3600
EXPIRY_SKEW_SECONDS = 60


class GoogleAuthError(Exception):
    """Raised when credentials are unusable or the token exchange fails."""


def parse_service_account(raw: str | None) -> dict[str, Any]:
    """Parse the ``GOOGLE_SERVICE_ACCOUNT_CREDENTIALS`` JSON blob."""
    if not raw:
        raise GoogleAuthError("Service account credentials are not set")
    try:
        creds = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise GoogleAuthError("Service account credentials are not valid JSON") from exc
    if not isinstance(creds, dict) or not creds.get("client_email") or not creds.get("private_key"):
        raise GoogleAuthError("Service account credentials JSON is incomplete")
    # Keys pasted into env vars often carry literal "\n"
    creds["private_key"] = creds["private_key"].replace("\\n", "\n")
    return creds


class ServiceAccountTokenProvider:
    def __init__(
        self,
        credentials: dict[str, Any],
        *,
        scopes: tuple[str, ...] = (SHEETS_SCOPE,),
        http: httpx.AsyncClient,
        clock=time.time,
    ):
        self._creds = credentials
        self._scopes = scopes
        self._http = http
        self._clock = clock
        self._token: str | None = None
        self._expires_at = 0.0

    def _assertion(self) -> str:
        now = int(self._clock())
        claims = {
            "iss": self._creds["client_email"],
            "scope": " ".join(self._scopes),
            "aud": self._creds.get("token_uri", DEFAULT_TOKEN_URI),
            "iat": now,
            "exp": now + ASSERTION_LIFETIME_SECONDS,
        }
        headers = {"kid": self._creds["private_key_id"]} if self._creds.get("private_key_id") else None
        return jwt.encode(claims, self._creds["private_key"], algorithm="RS256", headers=headers)

    async def get_token(self) -> str:
        if self._token and self._expires_at > self._clock() + EXPIRY_SKEW_SECONDS:
            return self._token

        try:
            assertion = self._assertion()
        except (ValueError, TypeError, jwt.PyJWTError) as exc:
            raise GoogleAuthError(f"Could not sign service account assertion: {exc}") from exc

        response = await self._http.post(
            self._creds.get("token_uri", DEFAULT_TOKEN_URI),
            data={
                "grant_type": "urn:ietf:params:oauth:grant-type:jwt-bearer",
                "assertion": assertion,
            },
        )
        if response.status_code >= 400:
            raise GoogleAuthError(f"Token request failed with HTTP {response.status_code}")

        payload = response.json()
        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            raise GoogleAuthError("Token response missing access_token")

        self._token = access_token
        self._expires_at = self._clock() + int(payload.get("expires_in", 3600))
        logger.debug("Google access token refreshed (expires in %ss)", payload.get("expires_in"))
        return access_token
