import json
import logging
import os
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import requests

from errors import CredentialStoreError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30
CREDENTIAL_FIELDS = ("access_token", "refresh_token", "scope", "token_type", "expiry_date")

# Supabase's REST API cannot run DDL; paste this into the dashboard SQL editor.
SUPABASE_TOKEN_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS gmail_tokens (
    id INTEGER PRIMARY KEY,
    access_token TEXT NOT NULL,
    refresh_token TEXT,
    scope TEXT,
    token_type TEXT,
    expiry_date BIGINT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class Credential:
    access_token: str = field(repr=False)
    refresh_token: Optional[str] = field(default=None, repr=False)
    scope: Optional[str] = None
    token_type: Optional[str] = None
    expiry_date: Optional[int] = None

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Credential":
        if not isinstance(record, dict):
            raise ValueError("Credential record must be a JSON object.")
        access_token = record.get("access_token")
        if not access_token or not isinstance(access_token, str):
            raise ValueError("Credential record is missing access_token.")
        expiry = record.get("expiry_date")
        if expiry in (None, ""):
            expiry_date = None
        else:
            # PostgREST serialises BIGINT columns as numbers, some stores as strings
            expiry_date = int(expiry)
        return cls(
            access_token=access_token,
            refresh_token=record.get("refresh_token") or None,
            scope=record.get("scope") or None,
            token_type=record.get("token_type") or None,
            expiry_date=expiry_date,
        )

    def to_record(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in CREDENTIAL_FIELDS}

    def merged_with(self, update: "Credential") -> "Credential":
        """
        Layer the populated fields of ``update`` over this credential.

        An update without a refresh token keeps the existing one.
        """
        changes = {name: value for name, value in update.to_record().items() if value not in (None, "")}
        return replace(self, **changes)

    def is_expired(self, skew_seconds: int = 0, *, now_ms: Optional[int] = None) -> bool:
        if self.expiry_date is None:
            return False
        now = _now_ms() if now_ms is None else now_ms
        return self.expiry_date - skew_seconds * 1000 <= now


class BaseTokenStore:
    backend = "base"

    def load(self) -> Optional[Credential]:
        raise NotImplementedError

    def save(self, credential: Credential) -> Credential:
        raise NotImplementedError


class FileTokenStore(BaseTokenStore):
    """
    Stores the credential as a pretty-printed JSON file on local disk.
    """

    backend = "file"

    def __init__(self, path: os.PathLike) -> None:
        self.path = Path(path)

    def load(self) -> Optional[Credential]:
        if not self.path.exists():
            return None
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise CredentialStoreError(f"Failed to read token file {self.path}: {exc}") from exc
        if not raw:
            return None
        try:
            return Credential.from_record(raw)
        except ValueError as exc:
            raise CredentialStoreError(f"Token file {self.path} is invalid: {exc}") from exc

    def save(self, credential: Credential) -> Credential:
        serialized = json.dumps(credential.to_record(), indent=2)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(serialized, encoding="utf-8")
            os.replace(tmp_path, self.path)
        except OSError as exc:
            raise CredentialStoreError(f"Failed to write token file {self.path}: {exc}") from exc
        return credential


class RemoteDocumentTokenStore(BaseTokenStore):
    """
    Stores the credential as a JSON document behind a URL that accepts GET and PUT.

    Works with JSONSilo bins and Firebase Realtime Database REST paths
    (``https://<db>.firebaseio.com/gmail-token.json``).
    """

    backend = "remote"

    def __init__(
        self,
        url: str,
        *,
        session: Optional[requests.Session] = None,
        headers: Optional[Dict[str, str]] = None,
        timeout: int = DEFAULT_TIMEOUT,
    ) -> None:
        if not url:
            raise ValueError("url is required for the remote token store.")
        self.url = url
        self.session = session or requests.Session()
        self._headers = {"Content-Type": "application/json", **(headers or {})}
        self.timeout = timeout

    def load(self) -> Optional[Credential]:
        try:
            response = self.session.get(self.url, headers=self._headers, timeout=self.timeout)
            if response.status_code == 404:
                return None
            response.raise_for_status()
            data = response.json() if response.content else None
        except (requests.RequestException, ValueError) as exc:
            raise CredentialStoreError(f"Failed to fetch token document: {exc}") from exc
        if not data:
            return None
        try:
            return Credential.from_record(data)
        except ValueError as exc:
            raise CredentialStoreError(f"Token document is invalid: {exc}") from exc

    def save(self, credential: Credential) -> Credential:
        try:
            response = self.session.put(
                self.url,
                headers=self._headers,
                data=json.dumps(credential.to_record()),
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            raise CredentialStoreError(f"Failed to save token document: {exc}") from exc
        return credential


class SupabaseTokenStore(BaseTokenStore):
    """
    Minimal Supabase REST client keeping the credential in a single table row.

    Expected table: see SUPABASE_TOKEN_TABLE_SQL.
    """

    backend = "supabase"
    ROW_ID = 1

    def __init__(
        self,
        url: str,
        service_role_key: str,
        *,
        table: str = "gmail_tokens",
        session: Optional[requests.Session] = None,
        timeout: int = DEFAULT_TIMEOUT,
    ) -> None:
        if not url or not service_role_key:
            raise ValueError("Supabase URL and service role key must be configured.")
        self.url = url.rstrip("/")
        self.table = table
        self.session = session or requests.Session()
        self.timeout = timeout
        self._headers = {
            "apikey": service_role_key,
            "Authorization": f"Bearer {service_role_key}",
            "Content-Type": "application/json",
            "Prefer": "return=representation",
        }

    def _rest(self, path: str) -> str:
        return f"{self.url}/rest/v1/{path.lstrip('/')}"

    def load(self) -> Optional[Credential]:
        try:
            response = self.session.get(
                self._rest(self.table),
                params={
                    "id": f"eq.{self.ROW_ID}",
                    "select": ",".join(CREDENTIAL_FIELDS),
                    "limit": 1,
                },
                headers=self._headers,
                timeout=self.timeout,
            )
            response.raise_for_status()
            items = response.json() or []
        except (requests.RequestException, ValueError) as exc:
            raise CredentialStoreError(f"Failed to load token row from Supabase: {exc}") from exc
        if not items:
            return None
        try:
            return Credential.from_record(items[0])
        except ValueError as exc:
            raise CredentialStoreError(f"Supabase token row is invalid: {exc}") from exc

    def save(self, credential: Credential) -> Credential:
        payload = {"id": self.ROW_ID, **credential.to_record(), "updated_at": datetime.now(timezone.utc).isoformat()}
        try:
            response = self.session.post(
                self._rest(self.table),
                headers={**self._headers, "Prefer": "return=minimal,resolution=merge-duplicates"},
                data=json.dumps(payload),
                timeout=self.timeout,
            )
            # Some configurations return 201, some 204
            if response.status_code not in (200, 201, 204):
                response.raise_for_status()
        except requests.RequestException as exc:
            raise CredentialStoreError(f"Failed to save token row to Supabase: {exc}") from exc
        return credential


class MemoryTokenStore(BaseTokenStore):
    """
    In-memory store for tests and throwaway runs; lost on restart.
    """

    backend = "memory"

    def __init__(self, credential: Optional[Credential] = None) -> None:
        self.credential = credential
        self.save_count = 0

    def load(self) -> Optional[Credential]:
        return self.credential

    def save(self, credential: Credential) -> Credential:
        self.credential = credential
        self.save_count += 1
        return credential


def get_token_store(settings) -> BaseTokenStore:
    backend = settings.token_store
    if backend == "file":
        return FileTokenStore(settings.token_file)
    if backend == "remote":
        return RemoteDocumentTokenStore(settings.token_document_url)
    if backend == "supabase":
        return SupabaseTokenStore(
            settings.supabase_url,
            settings.supabase_service_role_key,
            table=settings.supabase_token_table,
        )
    if backend == "memory":
        logger.warning("Using in-memory token store; authorization will not survive a restart.")
        return MemoryTokenStore()
    raise ValueError(f"Unsupported token store backend: {backend}")
