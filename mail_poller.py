import base64
import binascii
import html
import logging
import re
import threading
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from credential_manager import CredentialManager
from errors import ForwardError, RefreshError, TransientFetchError, UnauthorizedError
from gmail_client import GmailClient
from webhook_notify import build_alert_payload, send_webhook_message

logger = logging.getLogger(__name__)

NO_SUBJECT = "No Subject"
UNKNOWN_SENDER = "Unknown Sender"
NO_BODY = "No Body Content"

# One initial attempt plus one retry after a token refresh.
MAX_ATTEMPTS = 2


@dataclass
class ParsedMessage:
    gmail_id: str
    subject: str
    sender: str
    body: str


@dataclass
class PollResult:
    status: str = "ok"  # ok, not_authorized, unauthorized, failed
    attempts: int = 0
    listed: int = 0
    forwarded: int = 0
    skipped: int = 0
    marked_read: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# -----------------------------
# Message parsing
# -----------------------------

def _extract_headers(message: Dict[str, Any]) -> Dict[str, str]:
    headers: Dict[str, str] = {}
    for header in (message.get("payload") or {}).get("headers", []) or []:
        name = header.get("name")
        value = header.get("value")
        if name and value:
            headers.setdefault(name.lower(), value)
    return headers


def _decode_b64url(data: str) -> bytes:
    s = data.strip()
    # Gmail strips base64 padding
    padding = 4 - (len(s) % 4)
    if padding and padding < 4:
        s += "=" * padding
    return base64.urlsafe_b64decode(s.encode("utf-8"))


def _decode_part_body(part: Dict[str, Any]) -> str:
    data = (part.get("body") or {}).get("data")
    if not data or not isinstance(data, str):
        return ""
    try:
        return _decode_b64url(data).decode("utf-8", errors="replace")
    except (binascii.Error, ValueError):
        logger.warning("Could not decode body part of type %s", part.get("mimeType", "unknown"))
        return ""


def _extract_bodies(payload: Dict[str, Any]) -> Tuple[str, str]:
    text_parts: List[str] = []
    html_parts: List[str] = []

    def visit(part: Dict[str, Any]) -> None:
        mime_type = part.get("mimeType", "") or ""
        decoded = _decode_part_body(part)
        if mime_type.startswith("text/plain") and decoded:
            text_parts.append(decoded)
        elif mime_type.startswith("text/html") and decoded:
            html_parts.append(decoded)
        for child in part.get("parts", []) or []:
            visit(child)

    if payload:
        visit(payload)
        if not text_parts and not html_parts:
            # Single-part messages of other types still carry data at the top level
            top_level = _decode_part_body(payload)
            if top_level:
                text_parts.append(top_level)
    return ("\n".join(text_parts).strip(), "\n".join(html_parts).strip())


def _html_to_text(html_value: str) -> str:
    if not html_value:
        return ""
    cleaned = re.sub(r"(?is)<(script|style|head|title)[^>]*>.*?</\1>", " ", html_value)
    cleaned = re.sub(r"(?i)<br\s*/?>", "\n", cleaned)
    cleaned = re.sub(r"(?i)</p>", "\n", cleaned)
    cleaned = re.sub(r"(?i)<li>", "\n- ", cleaned)
    cleaned = re.sub(r"(?is)<[^>]+>", " ", cleaned)
    cleaned = html.unescape(cleaned)
    lines = (" ".join(line.split()) for line in cleaned.splitlines())
    return "\n".join(line for line in lines if line)


def parse_message(message: Dict[str, Any], *, gmail_id: Optional[str] = None) -> ParsedMessage:
    """
    Pull subject, sender and a readable body out of a Gmail ``format=full`` message.

    Plain text wins over HTML; missing fields fall back to placeholders.
    """
    headers = _extract_headers(message)
    text_body, html_body = _extract_bodies(message.get("payload") or {})
    body = text_body or _html_to_text(html_body)
    return ParsedMessage(
        gmail_id=gmail_id or message.get("id", ""),
        subject=headers.get("subject") or NO_SUBJECT,
        sender=headers.get("from") or UNKNOWN_SENDER,
        body=body.strip() or NO_BODY,
    )


# -----------------------------
# Poll-filter-forward loop
# -----------------------------

class MailPoller:
    """
    Runs one poll-filter-forward tick at a time against the authorized mailbox.
    """

    def __init__(
        self,
        *,
        credentials: CredentialManager,
        webhook_url: str,
        max_results: int = 10,
        subject_marker: str = "ALERT",
        webhook_style: str = "embed",
        mark_read_on_forward_failure: bool = True,
        track_processed_ids: bool = False,
        forwarder: Callable[..., None] = send_webhook_message,
    ) -> None:
        if max_results <= 0:
            raise ValueError("max_results must be a positive integer.")
        if not subject_marker:
            raise ValueError("subject_marker must be a non-empty string.")
        self.credentials = credentials
        self.webhook_url = webhook_url
        self.max_results = max_results
        self.subject_marker = subject_marker
        self.webhook_style = webhook_style
        self.mark_read_on_forward_failure = mark_read_on_forward_failure
        self.forwarder = forwarder
        self._processed_ids: Optional[Set[str]] = set() if track_processed_ids else None
        self._tick_lock = threading.Lock()
        self.last_result: Optional[PollResult] = None

    @classmethod
    def from_settings(cls, settings, credentials: CredentialManager, **overrides) -> "MailPoller":
        options = dict(
            credentials=credentials,
            webhook_url=settings.webhook_url,
            max_results=settings.max_emails,
            subject_marker=settings.subject_marker,
            webhook_style=settings.webhook_format,
            mark_read_on_forward_failure=settings.mark_read_on_forward_failure,
            track_processed_ids=settings.track_processed_ids,
        )
        options.update(overrides)
        return cls(**options)

    def poll_once(self) -> PollResult:
        with self._tick_lock:
            result = self._poll()
            self.last_result = result
            return result

    def _poll(self) -> PollResult:
        if not self.credentials.is_authorized:
            # A credential may have been stored out of band (bootstrap_token.py)
            self.credentials.load()
        if not self.credentials.is_authorized:
            logger.warning("Gmail API not yet authorized. Visit / to authorize.")
            return PollResult(status="not_authorized")

        client: Optional[GmailClient] = None
        result = PollResult()
        # Survives the retry; maps gmail id to whether it still needs marking read
        handled_this_tick: Dict[str, bool] = {}
        for attempt in range(1, MAX_ATTEMPTS + 1):
            result.attempts = attempt
            try:
                if client is None:
                    client = self.credentials.client()
                self._run_cycle(client, result, handled_this_tick)
                result.status = "ok"
                return result
            except UnauthorizedError as exc:
                if attempt >= MAX_ATTEMPTS:
                    logger.error("Gmail still rejects the refreshed token; abandoning this tick: %s", exc)
                    result.status = "unauthorized"
                    return result
                logger.warning("Gmail rejected the access token; refreshing and retrying once.")
                try:
                    self.credentials.refresh(client.credential if client else None)
                    client = self.credentials.client()
                except RefreshError as refresh_exc:
                    logger.error("Token refresh failed; re-authorize at /. %s", refresh_exc)
                    result.status = "unauthorized"
                    return result
            except RefreshError as exc:
                logger.error("Token refresh failed; re-authorize at /. %s", exc)
                result.status = "unauthorized"
                return result
            except TransientFetchError as exc:
                logger.error("Error during email fetching: %s", exc)
                result.errors.append({"gmail_id": "", "error": str(exc)})
                result.status = "failed"
                return result
        return result

    def _run_cycle(self, client: GmailClient, result: PollResult, handled_this_tick: Dict[str, bool]) -> None:
        logger.info("Fetching latest unread emails...")
        refs = client.list_unread(self.max_results)
        result.listed = len(refs)
        logger.info("Number of unread emails found: %s", len(refs))
        if not refs:
            logger.info("No unread emails found.")
            return

        for index, ref in enumerate(refs, start=1):
            message_id = ref.get("id")
            if not message_id:
                continue
            logger.info("Processing email %s of %s...", index, len(refs))
            try:
                raw = client.get_message(message_id)
            except TransientFetchError as exc:
                logger.warning("Skipping message %s: %s", message_id, exc)
                result.errors.append({"gmail_id": message_id, "error": str(exc)})
                continue
            self._handle_message(client, parse_message(raw, gmail_id=message_id), result, handled_this_tick)

    def _handle_message(
        self,
        client: GmailClient,
        message: ParsedMessage,
        result: PollResult,
        handled_this_tick: Dict[str, bool],
    ) -> None:
        if message.gmail_id in handled_this_tick:
            # Second attempt after a 401: never forward or count twice in one tick
            if handled_this_tick[message.gmail_id]:
                self._mark_read(client, message, result)
            return

        if self.subject_marker not in message.subject:
            logger.info('Skipping email - Subject does not contain "%s": %s', self.subject_marker, message.subject)
            result.skipped += 1
            handled_this_tick[message.gmail_id] = True
            self._mark_read(client, message, result)
            return

        if self._processed_ids is not None and message.gmail_id in self._processed_ids:
            logger.info("Email %s was already forwarded by this process; marking read only.", message.gmail_id)
            handled_this_tick[message.gmail_id] = True
            self._mark_read(client, message, result)
            return

        logger.info("Sending email - From: %s, Subject: %s", message.sender, message.subject)
        if self._forward(message, result):
            result.forwarded += 1
            if self._processed_ids is not None:
                self._processed_ids.add(message.gmail_id)
        elif not self.mark_read_on_forward_failure:
            logger.warning("Leaving email %s unread so the next tick retries forwarding.", message.gmail_id)
            handled_this_tick[message.gmail_id] = False
            return
        handled_this_tick[message.gmail_id] = True
        self._mark_read(client, message, result)

    def _forward(self, message: ParsedMessage, result: PollResult) -> bool:
        payload = build_alert_payload(
            subject=message.subject,
            body=message.body,
            sender=message.sender,
            style=self.webhook_style,
        )
        try:
            self.forwarder(payload, url=self.webhook_url)
        except ForwardError as exc:
            logger.error("Failed to send email %s to webhook: %s", message.gmail_id, exc)
            result.errors.append({"gmail_id": message.gmail_id, "error": str(exc)})
            return False
        return True

    def _mark_read(self, client: GmailClient, message: ParsedMessage, result: PollResult) -> None:
        try:
            client.mark_read(message.gmail_id)
        except TransientFetchError as exc:
            logger.warning("Could not mark email %s as read: %s", message.gmail_id, exc)
            result.errors.append({"gmail_id": message.gmail_id, "error": str(exc)})
            return
        result.marked_read += 1
        logger.info("Email processed and marked as read: %s", message.subject)
