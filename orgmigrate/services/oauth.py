"""OAuth token endpoint client: PKCE authorization-code exchange and refresh."""

import base64
import hashlib
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import requests

from ..config import EngineSettings
from ..exceptions import AuthError, ConnectivityError

logger = logging.getLogger(__name__)

PERMANENT_ERROR_MARKERS = (
    "invalid_grant",
    "expired",
    "INVALID_SESSION_ID",
    "Authentication token has expired",
    "TOKEN_EXPIRED",
)


def generate_code_verifier() -> str:
    """Random PKCE verifier (43-128 chars of the unreserved alphabet)."""
    return secrets.token_urlsafe(64)[:96]


def code_challenge(verifier: str) -> str:
    """S256 challenge for a verifier."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def build_authorization_url(
    settings: EngineSettings,
    org_type: str,
    verifier: str,
    state: Optional[str] = None,
    scope: str = "api refresh_token",
) -> str:
    """URL the user-facing flow redirects to for consent."""
    params = {
        "response_type": "code",
        "client_id": settings.client_id,
        "redirect_uri": settings.redirect_uri,
        "scope": scope,
        "code_challenge": code_challenge(verifier),
        "code_challenge_method": "S256",
    }
    if state:
        params["state"] = state
    return f"{settings.login_url(org_type)}/services/oauth2/authorize?{urlencode(params)}"


@dataclass
class TokenResponse:
    """Parsed token endpoint response."""
    access_token: str
    instance_url: str
    refresh_token: Optional[str] = None
    issued_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    org_id: Optional[str] = None

    def __repr__(self) -> str:
        return f"TokenResponse(instance_url={self.instance_url!r}, expires_at={self.expires_at!r})"

    @classmethod
    def from_api(cls, data: Dict[str, Any], default_lifetime: int) -> "TokenResponse":
        issued_at = datetime.utcnow()
        if data.get("issued_at"):
            issued_at = datetime.utcfromtimestamp(int(data["issued_at"]) / 1000)
        # The platform omits expires_in; sessions default to the org's timeout
        lifetime = int(data.get("expires_in") or default_lifetime)
        org_id = None
        if data.get("id"):
            # https://login.salesforce.com/id/<orgId>/<userId>
            parts = data["id"].rstrip("/").split("/")
            if len(parts) >= 2:
                org_id = parts[-2]
        return cls(
            access_token=data["access_token"],
            instance_url=data.get("instance_url", ""),
            refresh_token=data.get("refresh_token"),
            issued_at=issued_at,
            expires_at=issued_at + timedelta(seconds=lifetime),
            org_id=org_id,
        )


class OAuthClient:
    """
    Talks to ``{login_url}/services/oauth2/token``.

    Supports:
    - Authorization code exchange with a PKCE verifier
    - Refresh token exchange
    """

    TOKEN_PATH = "/services/oauth2/token"

    def __init__(self, settings: EngineSettings, session: Optional[requests.Session] = None):
        self.settings = settings
        self.session = session or requests.Session()

    def refresh(self, org_type: str, refresh_token: str) -> TokenResponse:
        """Exchange a refresh token for a new access token."""
        data = {
            "grant_type": "refresh_token",
            "client_id": self.settings.client_id,
            "refresh_token": refresh_token,
        }
        return self._post(org_type, data)

    def exchange_code(self, org_type: str, code: str, code_verifier: str) -> TokenResponse:
        """Complete an authorization-code grant."""
        data = {
            "grant_type": "authorization_code",
            "client_id": self.settings.client_id,
            "redirect_uri": self.settings.redirect_uri,
            "code": code,
            "code_verifier": code_verifier,
        }
        return self._post(org_type, data)

    def _post(self, org_type: str, data: Dict[str, str]) -> TokenResponse:
        if self.settings.client_secret:
            data["client_secret"] = self.settings.client_secret
        url = f"{self.settings.login_url(org_type)}{self.TOKEN_PATH}"

        try:
            response = self.session.post(url, data=data, timeout=self.settings.timeout)
        except requests.RequestException as e:
            raise ConnectivityError(f"Token endpoint unreachable: {type(e).__name__}") from e

        if response.status_code >= 400:
            raise _token_error(response)

        return TokenResponse.from_api(response.json(), self.settings.default_token_lifetime_seconds)


def is_permanent_token_error(text: Optional[str]) -> bool:
    """True if the error means the grant is gone, not that the endpoint hiccuped."""
    if not text:
        return False
    return any(marker.lower() in text.lower() for marker in PERMANENT_ERROR_MARKERS)


def _token_error(response: requests.Response) -> Exception:
    try:
        body = response.json()
    except ValueError:
        body = {}
    error = body.get("error") or f"http_{response.status_code}"
    description = body.get("error_description") or response.reason or ""
    message = f"Token request failed: {error} {description}".strip()

    if response.status_code >= 500:
        return ConnectivityError(message, error_code=error, status_code=response.status_code)
    return AuthError(message, error_code=error, status_code=response.status_code)
