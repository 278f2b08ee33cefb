"""
Thin wrapper around the Gmail API calls the poller needs.

These utilities rely on google-auth and google-api-python-client. Install them with:
    pip install google-api-python-client google-auth google-auth-oauthlib
"""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence

import httplib2
from google.auth import exceptions as google_auth_exceptions
from google.oauth2.credentials import Credentials
from google_auth_httplib2 import AuthorizedHttp
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from errors import TransientFetchError, UnauthorizedError

if TYPE_CHECKING:
    from googleapiclient.discovery import Resource  # pragma: no cover

    from token_store import Credential  # pragma: no cover

logger = logging.getLogger(__name__)

# Modify covers listing, reading and removing the UNREAD label.
GMAIL_MODIFY_SCOPES = ["https://www.googleapis.com/auth/gmail.modify"]

UNREAD_QUERY = "is:unread"
UNREAD_LABEL = "UNREAD"


def build_gmail_service(credential: "Credential", *, scopes: Sequence[str] = GMAIL_MODIFY_SCOPES):
    """
    Create a Gmail API service client from a bare access token.

    The transport never refreshes on its own: a 401 reaches safe_execute as an
    HttpError and rotation stays with the CredentialManager.
    """
    credentials = Credentials(token=credential.access_token, scopes=list(scopes))
    authed_http = AuthorizedHttp(credentials, http=httplib2.Http(), refresh_status_codes=())
    return build("gmail", "v1", http=authed_http, cache_discovery=False)


def http_status(exc: BaseException) -> Optional[int]:
    status = getattr(getattr(exc, "resp", None), "status", None)
    try:
        return int(status) if status is not None else None
    except (TypeError, ValueError):
        return None


def error_detail(exc: BaseException) -> str:
    raw = getattr(exc, "content", b"")
    try:
        detail = raw.decode("utf-8") if isinstance(raw, (bytes, bytearray)) else str(raw)
    except UnicodeDecodeError:
        detail = ""
    return detail or str(exc)


def is_unauthorized(exc: BaseException) -> bool:
    return isinstance(exc, HttpError) and http_status(exc) == 401


def safe_execute(callable_request, *, retry_codes: Optional[Sequence[int]] = None, max_attempts: int = 3):
    """
    Execute a Google API request with simple retry logic on selected HTTP status codes.

    A 401, or a transport-side refresh failure, is never retried here and
    surfaces as UnauthorizedError.
    """
    retry_codes = set(retry_codes or [500, 502, 503, 504])
    attempts = 0
    while True:
        attempts += 1
        try:
            return callable_request.execute()
        except google_auth_exceptions.RefreshError as exc:
            raise UnauthorizedError(f"Gmail transport could not refresh the access token: {exc}") from exc
        except HttpError as exc:
            if is_unauthorized(exc):
                raise UnauthorizedError(f"Gmail rejected the access token: {error_detail(exc)}") from exc
            if http_status(exc) in retry_codes and attempts < max_attempts:
                logger.warning("Gmail returned %s; retrying (attempt %s of %s)", http_status(exc), attempts, max_attempts)
                continue
            raise


class GmailClient:
    """
    Authorized handle on one mailbox, as handed to the poller by the CredentialManager.
    """

    def __init__(self, service: "Resource", *, credential: "Credential", user_id: str = "me") -> None:
        self.service = service
        self.credential = credential
        self.user_id = user_id

    def list_unread(self, max_results: int) -> List[Dict[str, Any]]:
        request = self.service.users().messages().list(
            userId=self.user_id,
            maxResults=max_results,
            q=UNREAD_QUERY,
        )
        try:
            response = safe_execute(request)
        except (HttpError, httplib2.HttpLib2Error, OSError) as exc:
            raise TransientFetchError(f"Failed to list unread messages: {error_detail(exc)}") from exc
        return response.get("messages", []) or []

    def get_message(self, message_id: str) -> Dict[str, Any]:
        request = self.service.users().messages().get(
            userId=self.user_id,
            id=message_id,
            format="full",
        )
        try:
            return safe_execute(request)
        except (HttpError, httplib2.HttpLib2Error, OSError) as exc:
            raise TransientFetchError(
                f"Failed to fetch message {message_id}: {error_detail(exc)}",
                gmail_id=message_id,
            ) from exc

    def mark_read(self, message_id: str) -> None:
        request = self.service.users().messages().modify(
            userId=self.user_id,
            id=message_id,
            body={"removeLabelIds": [UNREAD_LABEL]},
        )
        try:
            safe_execute(request)
        except (HttpError, httplib2.HttpLib2Error, OSError) as exc:
            raise TransientFetchError(
                f"Failed to mark message {message_id} as read: {error_detail(exc)}",
                gmail_id=message_id,
            ) from exc
