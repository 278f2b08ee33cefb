from __future__ import annotations

import os
from dataclasses import dataclass
from typing import List, Mapping, Optional

from errors import ConfigError

DEFAULT_POLL_INTERVAL_MS = 60000
DEFAULT_MAX_EMAILS = 10
DEFAULT_SUBJECT_MARKER = "ALERT"
DEFAULT_LOG_BUFFER_SIZE = 100
DEFAULT_TOKEN_FILE = "token.json"
DEFAULT_SUPABASE_TOKEN_TABLE = "gmail_tokens"

TOKEN_STORE_CHOICES = ("file", "remote", "supabase", "memory")
WEBHOOK_FORMAT_CHOICES = ("embed", "content")

REQUIRED_ENV = ("CLIENT_ID", "CLIENT_SECRET", "REDIRECT_URI", "WEBHOOK_URL")


def _config_value(environ: Mapping[str, str], env_name: str, default=None):
    env_value = environ.get(env_name)
    if env_value not in (None, ""):
        return env_value.strip()
    return default


def _true(value: Optional[str]) -> bool:
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    client_id: str
    client_secret: str
    redirect_uri: str
    webhook_url: str
    poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS
    max_emails: int = DEFAULT_MAX_EMAILS
    subject_marker: str = DEFAULT_SUBJECT_MARKER
    webhook_format: str = "embed"
    mark_read_on_forward_failure: bool = True
    track_processed_ids: bool = False
    log_buffer_size: int = DEFAULT_LOG_BUFFER_SIZE
    token_store: str = "file"
    token_file: str = DEFAULT_TOKEN_FILE
    token_document_url: Optional[str] = None
    supabase_url: Optional[str] = None
    supabase_service_role_key: Optional[str] = None
    supabase_token_table: str = DEFAULT_SUPABASE_TOKEN_TABLE

    @property
    def poll_interval_seconds(self) -> float:
        return self.poll_interval_ms / 1000.0


def _positive_int(environ: Mapping[str, str], env_name: str, default: int, problems: List[str]) -> int:
    raw = _config_value(environ, env_name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        problems.append(f"{env_name} must be an integer (got {raw!r})")
        return default
    if value <= 0:
        problems.append(f"{env_name} must be positive (got {value})")
    return value


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Build Settings from environment variables.

    All problems are collected before raising so a misconfigured deployment
    reports everything at once.
    """
    environ = os.environ if environ is None else environ
    problems: List[str] = []

    missing = [name for name in REQUIRED_ENV if not _config_value(environ, name)]
    if missing:
        problems.append("missing required environment variables: " + ", ".join(missing))

    poll_interval_ms = _positive_int(environ, "REFRESH_MAILS_TIME_MS", DEFAULT_POLL_INTERVAL_MS, problems)
    max_emails = _positive_int(environ, "MAX_EMAILS_TO_FETCH", DEFAULT_MAX_EMAILS, problems)
    log_buffer_size = _positive_int(environ, "LOG_BUFFER_SIZE", DEFAULT_LOG_BUFFER_SIZE, problems)
    if not 20 <= log_buffer_size <= 1000:
        problems.append(f"LOG_BUFFER_SIZE must be between 20 and 1000 (got {log_buffer_size})")

    webhook_format = str(_config_value(environ, "WEBHOOK_FORMAT", "embed")).lower()
    if webhook_format not in WEBHOOK_FORMAT_CHOICES:
        problems.append(f"WEBHOOK_FORMAT must be one of {', '.join(WEBHOOK_FORMAT_CHOICES)}")

    token_store = str(_config_value(environ, "TOKEN_STORE", "file")).lower()
    token_document_url = _config_value(environ, "TOKEN_DOCUMENT_URL") or _config_value(environ, "JSON_SILO_URL")
    supabase_url = _config_value(environ, "SUPABASE_URL")
    supabase_key = _config_value(environ, "SUPABASE_SERVICE_ROLE_KEY")
    if token_store not in TOKEN_STORE_CHOICES:
        problems.append(f"TOKEN_STORE must be one of {', '.join(TOKEN_STORE_CHOICES)}")
    elif token_store == "remote" and not token_document_url:
        problems.append("TOKEN_STORE=remote requires TOKEN_DOCUMENT_URL or JSON_SILO_URL")
    elif token_store == "supabase" and not (supabase_url and supabase_key):
        problems.append("TOKEN_STORE=supabase requires SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY")

    if problems:
        raise ConfigError(problems)

    return Settings(
        client_id=_config_value(environ, "CLIENT_ID"),
        client_secret=_config_value(environ, "CLIENT_SECRET"),
        redirect_uri=_config_value(environ, "REDIRECT_URI"),
        webhook_url=_config_value(environ, "WEBHOOK_URL"),
        poll_interval_ms=poll_interval_ms,
        max_emails=max_emails,
        subject_marker=_config_value(environ, "SUBJECT_MARKER", DEFAULT_SUBJECT_MARKER),
        webhook_format=webhook_format,
        mark_read_on_forward_failure=_true(_config_value(environ, "MARK_READ_ON_FORWARD_FAILURE", "1")),
        track_processed_ids=_true(_config_value(environ, "TRACK_PROCESSED_IDS", "0")),
        log_buffer_size=log_buffer_size,
        token_store=token_store,
        token_file=_config_value(environ, "TOKEN_FILE", DEFAULT_TOKEN_FILE),
        token_document_url=token_document_url,
        supabase_url=supabase_url,
        supabase_service_role_key=supabase_key,
        supabase_token_table=_config_value(environ, "SUPABASE_TOKEN_TABLE", DEFAULT_SUPABASE_TOKEN_TABLE),
    )
