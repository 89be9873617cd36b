"""
Access token suppliers.

A token supplier answers one question for a driver: "what access token do I
send with this request?". It returns the stored token while it is still
valid, silently refreshes it with the stored refresh token otherwise, and
raises TokenRefreshError when neither works. It never hands back an empty or
known-expired token.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence

import msal
import requests
from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow

from .config import DriverSettings
from .errors import TokenRefreshError, get_error_code
from .storage import ConnectionRecord, ConnectionStore

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URI = "https://accounts.google.com/o/oauth2/auth"
GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"

# MSAL adds these itself and rejects them when passed explicitly
MSAL_RESERVED_SCOPES = frozenset({'offline_access', 'openid', 'profile'})


@dataclass
class OAuthTokens:
    """Tokens returned by an authorization code exchange."""
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    scope: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'access_token': self.access_token,
            'refresh_token': self.refresh_token,
            'expires_at': self.expires_at.isoformat() if self.expires_at else None,
            'scope': ' '.join(self.scope),
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _expires_in(seconds: Any) -> Optional[datetime]:
    try:
        return _utcnow() + timedelta(seconds=int(seconds))
    except (TypeError, ValueError):
        return None


class TokenSupplier(ABC):
    """
    Supplies a currently valid access token for one connection.

    Refresh happens at most once per call and is never retried here; a
    failed refresh ends the current operation.
    """

    provider_id: str = ""

    def __init__(
        self,
        connection: ConnectionRecord,
        settings: DriverSettings,
        store: Optional[ConnectionStore] = None,
    ):
        self.connection = connection
        self.settings = settings
        self.store = store

    def _is_current(self) -> bool:
        if not self.connection.access_token:
            return False
        expires_at = self.connection.expires_at
        if expires_at is None:
            # Without an expiry we only know the token once worked
            return True
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at - timedelta(seconds=self.settings.token_refresh_skew) > _utcnow()

    async def get_access_token(self) -> str:
        """Return a usable access token, refreshing it if needed."""
        if self._is_current():
            return self.connection.access_token
        return await self.refresh()

    async def refresh(self) -> str:
        """Exchange the stored refresh token for a new access token."""
        if not self.connection.refresh_token:
            raise TokenRefreshError(
                "No refresh token stored for connection",
                code="invalid_grant",
            )

        tokens = await asyncio.to_thread(self._refresh, self.connection.refresh_token)
        if not tokens.access_token:
            raise TokenRefreshError("Failed to get access token")

        fields: Dict[str, Any] = {
            'access_token': tokens.access_token,
            'expires_at': tokens.expires_at,
        }
        if tokens.refresh_token and tokens.refresh_token != self.connection.refresh_token:
            fields['refresh_token'] = tokens.refresh_token

        self.connection = self.connection.with_tokens(**fields)
        if self.store is not None:
            self.store.update(self.connection.id, **fields)
        logger.info(f"Refreshed {self.provider_id} access token for connection {self.connection.id}")
        return tokens.access_token

    @abstractmethod
    def _refresh(self, refresh_token: str) -> OAuthTokens:
        """Perform the blocking refresh call against the provider."""
        pass

    @abstractmethod
    def exchange_code(self, code: str, scopes: Sequence[str]) -> OAuthTokens:
        """Exchange an OAuth authorization code for tokens (blocking)."""
        pass


class GoogleTokenSupplier(TokenSupplier):
    """Token supplier backed by google-auth credentials."""

    provider_id = "google"

    def _client_config(self) -> Dict[str, Any]:
        client = self.settings.google
        return {
            'web': {
                'client_id': client.client_id,
                'client_secret': client.client_secret,
                'auth_uri': GOOGLE_AUTH_URI,
                'token_uri': GOOGLE_TOKEN_URI,
                'redirect_uris': [client.redirect_uri] if client.redirect_uri else [],
            }
        }

    def _refresh(self, refresh_token: str) -> OAuthTokens:
        creds = Credentials(
            token=None,
            refresh_token=refresh_token,
            token_uri=GOOGLE_TOKEN_URI,
            client_id=self.settings.google.client_id,
            client_secret=self.settings.google.client_secret,
        )
        try:
            creds.refresh(Request())
        except RefreshError as e:
            raise TokenRefreshError(f"Google token refresh failed: {e}", code=get_error_code(e)) from e
        except TransportError as e:
            raise TokenRefreshError(f"Google token endpoint unreachable: {e}") from e

        expires_at = creds.expiry.replace(tzinfo=timezone.utc) if creds.expiry else None
        return OAuthTokens(
            access_token=creds.token,
            refresh_token=creds.refresh_token,
            expires_at=expires_at,
        )

    def exchange_code(self, code: str, scopes: Sequence[str]) -> OAuthTokens:
        flow = Flow.from_client_config(
            self._client_config(),
            scopes=list(scopes),
            redirect_uri=self.settings.google.redirect_uri,
        )
        flow.fetch_token(code=code)
        creds = flow.credentials
        if not creds.token:
            raise TokenRefreshError("Failed to get access token")
        return OAuthTokens(
            access_token=creds.token,
            refresh_token=creds.refresh_token,
            expires_at=creds.expiry.replace(tzinfo=timezone.utc) if creds.expiry else None,
            scope=list(creds.scopes or scopes),
        )


class MicrosoftTokenSupplier(TokenSupplier):
    """Token supplier backed by an MSAL confidential client."""

    provider_id = "microsoft"

    def __init__(
        self,
        connection: ConnectionRecord,
        settings: DriverSettings,
        store: Optional[ConnectionStore] = None,
        scopes: Sequence[str] = (),
        msal_app: Optional[Any] = None,
    ):
        super().__init__(connection, settings, store)
        self.scopes = [s for s in scopes if s not in MSAL_RESERVED_SCOPES]
        self._msal_app = msal_app

    def _get_msal_app(self) -> Any:
        """Get or create MSAL application instance."""
        if self._msal_app is None:
            authority = f"https://login.microsoftonline.com/{self.settings.microsoft_tenant}"
            self._msal_app = msal.ConfidentialClientApplication(
                self.settings.microsoft.client_id,
                authority=authority,
                client_credential=self.settings.microsoft.client_secret,
            )
        return self._msal_app

    def _tokens_from_result(self, result: Dict[str, Any]) -> OAuthTokens:
        if "access_token" not in result:
            error = result.get("error")
            description = result.get("error_description") or error or "Unknown error"
            raise TokenRefreshError(f"Failed to acquire token: {description}", code=error)
        scope = result.get("scope", "")
        return OAuthTokens(
            access_token=result["access_token"],
            refresh_token=result.get("refresh_token"),
            expires_at=_expires_in(result.get("expires_in")),
            scope=scope.split() if isinstance(scope, str) else list(scope),
        )

    def _refresh(self, refresh_token: str) -> OAuthTokens:
        app = self._get_msal_app()
        try:
            result = app.acquire_token_by_refresh_token(refresh_token, scopes=self.scopes)
        except requests.RequestException as e:
            raise TokenRefreshError(f"Microsoft token endpoint unreachable: {e}") from e
        return self._tokens_from_result(result)

    def exchange_code(self, code: str, scopes: Sequence[str]) -> OAuthTokens:
        app = self._get_msal_app()
        result = app.acquire_token_by_authorization_code(
            code,
            scopes=[s for s in scopes if s not in MSAL_RESERVED_SCOPES],
            redirect_uri=self.settings.microsoft.redirect_uri or None,
        )
        return self._tokens_from_result(result)
