"""
Error taxonomy for the Gmail alert forwarder.

Only ConfigError is fatal. Everything raised after startup is caught by the
poll loop or the HTTP handlers and turned into a log line or an error response.
"""
from __future__ import annotations

from typing import Iterable, Optional


class ForwarderError(RuntimeError):
    """Base class for errors raised by this service."""


class ConfigError(ForwarderError):
    """Raised when required settings are missing or malformed."""

    def __init__(self, problems: Iterable[str]) -> None:
        self.problems = list(problems)
        super().__init__("Invalid configuration: " + "; ".join(self.problems))


class ExchangeError(ForwarderError):
    """Raised when an authorization code cannot be traded for tokens."""


class RefreshError(ForwarderError):
    """Raised when the access token cannot be refreshed."""


class UnauthorizedError(ForwarderError):
    """Raised when the mail provider rejects the current access token."""


class ForwardError(ForwarderError):
    """Raised when a message cannot be delivered to the chat webhook."""


class TransientFetchError(ForwarderError):
    """Raised when a Gmail read call fails for a reason other than authorization."""

    def __init__(self, message: str, *, gmail_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.gmail_id = gmail_id


class CredentialStoreError(ForwarderError):
    """Raised when the credential store cannot be read or written."""
