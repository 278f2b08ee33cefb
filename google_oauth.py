from __future__ import annotations

from datetime import timezone
from typing import Any, Dict, Iterable, Optional, Sequence

from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow

from gmail_client import GMAIL_MODIFY_SCOPES

GOOGLE_AUTH_URI = "https://accounts.google.com/o/oauth2/auth"
GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"


def credentials_to_record(credentials: Credentials) -> Dict[str, Any]:
    expiry_date: Optional[int] = None
    if credentials.expiry is not None:
        # google-auth keeps expiry as a naive UTC datetime
        expiry_date = int(credentials.expiry.replace(tzinfo=timezone.utc).timestamp() * 1000)
    scopes = getattr(credentials, "granted_scopes", None) or credentials.scopes or []
    return {
        "access_token": credentials.token,
        "refresh_token": credentials.refresh_token,
        "scope": " ".join(scopes) or None,
        "token_type": "Bearer",
        "expiry_date": expiry_date,
    }


class GoogleOAuthClient:
    """
    Web-application OAuth client for the Gmail consent handshake and token refresh.

    Each call builds its own Flow; PKCE is disabled because the consent URL and
    the callback are served by different requests.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        *,
        scopes: Sequence[str] = GMAIL_MODIFY_SCOPES,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.scopes = list(scopes)

    def _client_config(self) -> Dict[str, Any]:
        return {
            "web": {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "auth_uri": GOOGLE_AUTH_URI,
                "token_uri": GOOGLE_TOKEN_URI,
                "redirect_uris": [self.redirect_uri],
            }
        }

    def _flow(self, scopes: Optional[Iterable[str]] = None) -> Flow:
        return Flow.from_client_config(
            self._client_config(),
            scopes=list(scopes or self.scopes),
            redirect_uri=self.redirect_uri,
            autogenerate_code_verifier=False,
        )

    def authorization_url(self, scopes: Optional[Iterable[str]] = None) -> str:
        url, _state = self._flow(scopes).authorization_url(access_type="offline", prompt="consent")
        return url

    def fetch_token(self, code: str) -> Dict[str, Any]:
        flow = self._flow()
        flow.fetch_token(code=code)
        return credentials_to_record(flow.credentials)

    def refresh(self, refresh_token: str) -> Dict[str, Any]:
        credentials = Credentials(
            token=None,
            refresh_token=refresh_token,
            token_uri=GOOGLE_TOKEN_URI,
            client_id=self.client_id,
            client_secret=self.client_secret,
            scopes=self.scopes,
        )
        credentials.refresh(Request())
        return credentials_to_record(credentials)
