from __future__ import annotations

import enum
import logging
import threading
from typing import Any, Callable, Dict, Iterable, Optional

from google.auth import exceptions as google_auth_exceptions

from errors import CredentialStoreError, ExchangeError, RefreshError, UnauthorizedError
from gmail_client import GmailClient, build_gmail_service
from token_store import BaseTokenStore, Credential

logger = logging.getLogger(__name__)

EXPIRY_SKEW_SECONDS = 60


class AuthState(str, enum.Enum):
    UNAUTHORIZED = "unauthorized"
    AUTHORIZING = "authorizing"
    AUTHORIZED = "authorized"
    REFRESHING = "refreshing"


class CredentialManager:
    """
    Owns the Gmail OAuth credential: loading, persisting, exchanging and refreshing it.

    The poller never sees token fields; it asks for a GmailClient and hands the
    client's credential back to refresh() when the provider rejects it.
    Refreshes are single-flight: concurrent callers holding the same stale
    credential trigger one provider call.
    """

    def __init__(
        self,
        *,
        store: BaseTokenStore,
        oauth_client,
        service_factory: Callable[[Credential], Any] = build_gmail_service,
        user_id: str = "me",
    ) -> None:
        self.store = store
        self.oauth_client = oauth_client
        self.service_factory = service_factory
        self.user_id = user_id
        self._credential: Optional[Credential] = None
        self._state = AuthState.UNAUTHORIZED
        self._lock = threading.RLock()

    # ---------- State ----------
    @property
    def state(self) -> AuthState:
        return self._state

    @property
    def is_authorized(self) -> bool:
        return self._state in (AuthState.AUTHORIZED, AuthState.REFRESHING)

    @property
    def expiry_date(self) -> Optional[int]:
        credential = self._credential
        return credential.expiry_date if credential else None

    def _set_state(self, state: AuthState) -> None:
        if state != self._state:
            logger.info("Credential state %s -> %s", self._state.value, state.value)
        self._state = state

    # ---------- Persistence ----------
    def load(self) -> Optional[Credential]:
        with self._lock:
            try:
                credential = self.store.load()
            except CredentialStoreError as exc:
                logger.warning("Could not load stored credential: %s", exc)
                credential = None
            if credential is None:
                # An empty store leaves AUTHORIZING alone; the consent handshake may be under way
                if self._state is AuthState.UNAUTHORIZED:
                    logger.info("No stored credential found.")
                return None
            self._credential = credential
            self._set_state(AuthState.AUTHORIZED)
            logger.info("Credential loaded from %s store.", getattr(self.store, "backend", "unknown"))
            return credential

    def save(self, credential: Credential) -> Credential:
        with self._lock:
            self.store.save(credential)
            self._credential = credential
            self._set_state(AuthState.AUTHORIZED)
            return credential

    # ---------- Authorization handshake ----------
    def authorize_url(self, scopes: Optional[Iterable[str]] = None) -> str:
        url = self.oauth_client.authorization_url(scopes)
        if not self.is_authorized:
            self._set_state(AuthState.AUTHORIZING)
        logger.info("Generated authorization URL: %s", url)
        return url

    def exchange(self, code: str) -> Credential:
        if not code or not code.strip():
            raise ExchangeError("Authorization code is required.")
        try:
            record: Dict[str, Any] = self.oauth_client.fetch_token(code.strip())
            credential = Credential.from_record(record)
        except Exception as exc:  # noqa: BLE001 - provider and oauthlib raise many types
            logger.error("Failed to exchange authorization code: %s", exc)
            raise ExchangeError(f"Failed to exchange authorization code: {exc}") from exc
        with self._lock:
            previous = self._credential
            # Google omits the refresh token when the user re-consents without prompt=consent
            if previous is not None and not credential.refresh_token and previous.refresh_token:
                credential = previous.merged_with(credential)
            try:
                self.save(credential)
            except CredentialStoreError as exc:
                logger.error("Authorization succeeded but the credential could not be saved: %s", exc)
                self._credential = credential
                self._set_state(AuthState.AUTHORIZED)
        logger.info("Authorization successful. Credential saved.")
        return credential

    # ---------- Refresh ----------
    def refresh(self, credential: Optional[Credential] = None) -> Credential:
        """
        Obtain a new access token and persist the merged credential.

        ``credential`` is the one the caller was using; if the active credential
        has already moved on, it is returned without another provider call.
        """
        with self._lock:
            current = self._credential or self.load()
            if current is None:
                self._set_state(AuthState.UNAUTHORIZED)
                raise RefreshError("No credential stored; authorization is required.")
            if credential is not None and credential.access_token != current.access_token:
                logger.info("Credential already refreshed by another caller; reusing it.")
                return current
            if not current.refresh_token:
                self._set_state(AuthState.UNAUTHORIZED)
                raise RefreshError("Refresh token is missing. Consent may be required again.")

            self._set_state(AuthState.REFRESHING)
            logger.info("Refreshing access token...")
            try:
                record = self.oauth_client.refresh(current.refresh_token)
                update = Credential.from_record(record)
            except (google_auth_exceptions.GoogleAuthError, ValueError) as exc:
                self._set_state(AuthState.UNAUTHORIZED)
                logger.error("Token refresh rejected: %s", exc)
                raise RefreshError(f"Token refresh failed: {exc}") from exc
            except Exception as exc:  # noqa: BLE001 - custom clients raise requests and oauthlib errors
                self._set_state(AuthState.UNAUTHORIZED)
                logger.error("Token refresh failed unexpectedly: %s", exc)
                raise RefreshError(f"Token refresh failed: {exc}") from exc

            merged = current.merged_with(update)
            self._credential = merged
            self._set_state(AuthState.AUTHORIZED)
            try:
                self.store.save(merged)
            except CredentialStoreError as exc:
                logger.error("Refreshed credential could not be persisted; keeping it in memory: %s", exc)
            logger.info("Access token refreshed.")
            return merged

    # ---------- Capability ----------
    def client(self) -> GmailClient:
        with self._lock:
            credential = self._credential or self.load()
            if credential is None:
                raise UnauthorizedError("Gmail is not authorized yet.")
            if credential.is_expired(EXPIRY_SKEW_SECONDS):
                logger.info("Access token expired or about to expire; refreshing before use.")
                credential = self.refresh(credential)
        return GmailClient(self.service_factory(credential), credential=credential, user_id=self.user_id)
