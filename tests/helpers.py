from __future__ import annotations

import base64
import json
import time
from typing import Any, Dict, Iterable, List, Optional

import httplib2
import requests
from googleapiclient.errors import HttpError

from credential_manager import CredentialManager
from token_store import Credential, MemoryTokenStore

FUTURE_MS = int(time.time() * 1000) + 3600 * 1000
PAST_MS = int(time.time() * 1000) - 3600 * 1000


def http_error(status: int, message: str = "error") -> HttpError:
    content = json.dumps({"error": {"code": status, "message": message}}).encode("utf-8")
    return HttpError(httplib2.Response({"status": str(status)}), content)


def b64url(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode("utf-8")).decode("ascii").rstrip("=")


def make_message(
    message_id: str,
    *,
    subject: Optional[str] = "Test message",
    sender: Optional[str] = "Monitor <monitor@example.test>",
    body: Optional[str] = "body text",
    mime_type: str = "text/plain",
) -> Dict[str, Any]:
    headers = [{"name": "To", "value": "me@example.test"}]
    if subject is not None:
        headers.append({"name": "Subject", "value": subject})
    if sender is not None:
        headers.append({"name": "From", "value": sender})
    parts = []
    if body is not None:
        parts.append({"mimeType": mime_type, "body": {"data": b64url(body), "size": len(body)}})
    return {
        "id": message_id,
        "threadId": message_id,
        "labelIds": ["INBOX", "UNREAD"],
        "payload": {
            "mimeType": "multipart/alternative",
            "headers": headers,
            "body": {"size": 0},
            "parts": parts,
        },
    }


def make_credential(
    access_token: str = "access-1",
    refresh_token: Optional[str] = "refresh-1",
    *,
    expiry_date: Optional[int] = FUTURE_MS,
) -> Credential:
    return Credential(
        access_token=access_token,
        refresh_token=refresh_token,
        scope="https://www.googleapis.com/auth/gmail.modify",
        token_type="Bearer",
        expiry_date=expiry_date,
    )


class _Request:
    def __init__(self, fn) -> None:
        self._fn = fn

    def execute(self):
        return self._fn()


class FakeMailbox:
    """
    In-memory Gmail mailbox. Calls made with a rejected access token raise HTTP 401.
    """

    def __init__(self, messages: Iterable[Dict[str, Any]] = ()) -> None:
        self.messages: Dict[str, Dict[str, Any]] = {}
        self.order: List[str] = []
        self.unread: set[str] = set()
        for message in messages:
            self.add(message)
        self.rejected_tokens: set[str] = set()
        self.get_errors: Dict[str, Exception] = {}
        self.modify_errors: Dict[str, Exception] = {}
        self.list_calls: List[Dict[str, Any]] = []
        self.get_calls: List[str] = []
        self.modify_calls: List[Dict[str, Any]] = []
        self.services_built: List[str] = []

    def add(self, message: Dict[str, Any]) -> None:
        self.messages[message["id"]] = message
        self.order.append(message["id"])
        self.unread.add(message["id"])

    def service_factory(self, credential: Credential) -> "FakeGmailService":
        self.services_built.append(credential.access_token)
        return FakeGmailService(self, credential.access_token)


class FakeGmailService:
    def __init__(self, mailbox: FakeMailbox, token: str) -> None:
        self.mailbox = mailbox
        self.token = token

    def _check_token(self) -> None:
        if self.token in self.mailbox.rejected_tokens:
            raise http_error(401, "Invalid Credentials")

    def users(self) -> "FakeGmailService":
        return self

    def messages(self) -> "FakeGmailService":
        return self

    def list(self, *, userId: str, maxResults: int, q: str) -> _Request:
        def run():
            self.mailbox.list_calls.append({"token": self.token, "maxResults": maxResults, "q": q})
            self._check_token()
            ids = [mid for mid in self.mailbox.order if mid in self.mailbox.unread][:maxResults]
            if not ids:
                return {"resultSizeEstimate": 0}
            return {"messages": [{"id": mid, "threadId": mid} for mid in ids], "resultSizeEstimate": len(ids)}

        return _Request(run)

    def get(self, *, userId: str, id: str, format: str) -> _Request:
        def run():
            self.mailbox.get_calls.append(id)
            self._check_token()
            if id in self.mailbox.get_errors:
                raise self.mailbox.get_errors[id]
            return self.mailbox.messages[id]

        return _Request(run)

    def modify(self, *, userId: str, id: str, body: Dict[str, Any]) -> _Request:
        def run():
            self.mailbox.modify_calls.append({"id": id, "body": body})
            self._check_token()
            if id in self.mailbox.modify_errors:
                raise self.mailbox.modify_errors[id]
            if "UNREAD" in body.get("removeLabelIds", []):
                self.mailbox.unread.discard(id)
            return {"id": id}

        return _Request(run)


class FakeOAuthClient:
    def __init__(
        self,
        *,
        token_record: Optional[Dict[str, Any]] = None,
        refresh_records: Optional[List[Dict[str, Any]]] = None,
        exchange_error: Optional[Exception] = None,
        refresh_error: Optional[Exception] = None,
    ) -> None:
        self.token_record = token_record or make_credential("exchanged-access", "exchanged-refresh").to_record()
        self.refresh_records = list(refresh_records or [])
        self.exchange_error = exchange_error
        self.refresh_error = refresh_error
        self.exchanged_codes: List[str] = []
        self.refresh_calls: List[str] = []
        self.before_refresh = None

    def authorization_url(self, scopes=None) -> str:
        return "https://accounts.example.test/o/oauth2/auth?client_id=cid&access_type=offline"

    def fetch_token(self, code: str) -> Dict[str, Any]:
        self.exchanged_codes.append(code)
        if self.exchange_error is not None:
            raise self.exchange_error
        return dict(self.token_record)

    def refresh(self, refresh_token: str) -> Dict[str, Any]:
        self.refresh_calls.append(refresh_token)
        if self.before_refresh is not None:
            self.before_refresh()
        if self.refresh_error is not None:
            raise self.refresh_error
        if self.refresh_records:
            return self.refresh_records.pop(0)
        return {
            "access_token": f"refreshed-{len(self.refresh_calls)}",
            "token_type": "Bearer",
            "expiry_date": FUTURE_MS,
        }


class RecordingForwarder:
    def __init__(self, error: Optional[Exception] = None) -> None:
        self.error = error
        self.calls: List[Dict[str, Any]] = []

    def __call__(self, payload: Dict[str, Any], *, url: str) -> None:
        self.calls.append({"payload": payload, "url": url})
        if self.error is not None:
            raise self.error


def make_manager(
    mailbox: Optional[FakeMailbox] = None,
    *,
    credential: Optional[Credential] = None,
    oauth_client: Optional[FakeOAuthClient] = None,
    store=None,
    load: bool = True,
) -> CredentialManager:
    manager = CredentialManager(
        store=store if store is not None else MemoryTokenStore(credential),
        oauth_client=oauth_client or FakeOAuthClient(),
        service_factory=(mailbox or FakeMailbox()).service_factory,
    )
    if load:
        manager.load()
    return manager


class FakeResponse:
    def __init__(self, status_code: int = 200, json_data: Any = None, *, content: Optional[bytes] = None) -> None:
        self.status_code = status_code
        self._json = json_data
        if content is None:
            content = b"" if json_data is None else json.dumps(json_data).encode("utf-8")
        self.content = content

    def json(self) -> Any:
        if not self.content:
            raise ValueError("No JSON body")
        return json.loads(self.content.decode("utf-8"))

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error", response=self)  # type: ignore[arg-type]


class FakeSession:
    def __init__(self, responses: Optional[Dict[str, Any]] = None) -> None:
        self.responses = responses or {}
        self.calls: List[Dict[str, Any]] = []

    def _respond(self, method: str, url: str, **kwargs) -> FakeResponse:
        self.calls.append({"method": method, "url": url, **kwargs})
        response = self.responses.get(method, FakeResponse(200, None))
        if isinstance(response, Exception):
            raise response
        return response

    def get(self, url: str, **kwargs) -> FakeResponse:
        return self._respond("GET", url, **kwargs)

    def put(self, url: str, **kwargs) -> FakeResponse:
        return self._respond("PUT", url, **kwargs)

    def post(self, url: str, **kwargs) -> FakeResponse:
        return self._respond("POST", url, **kwargs)
