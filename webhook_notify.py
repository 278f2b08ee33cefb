import logging
from typing import Any, Dict, Optional

import requests

from errors import ForwardError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10

# Discord rejects payloads above these lengths
EMBED_TITLE_LIMIT = 256
EMBED_DESCRIPTION_LIMIT = 4096
EMBED_FIELD_VALUE_LIMIT = 1024
CONTENT_LIMIT = 2000


def _truncate(value: str, limit: int) -> str:
    if len(value) <= limit:
        return value
    return value[: limit - 3].rstrip() + "..."


def build_alert_payload(*, subject: str, body: str, sender: str, style: str = "embed") -> Dict[str, Any]:
    if style == "embed":
        return {
            "embeds": [
                {
                    "title": _truncate(subject, EMBED_TITLE_LIMIT),
                    "description": _truncate(body, EMBED_DESCRIPTION_LIMIT),
                    "fields": [{"name": "From", "value": _truncate(sender, EMBED_FIELD_VALUE_LIMIT)}],
                }
            ]
        }
    if style == "content":
        text = f"**{subject}**\nFrom: {sender}\n\n{body}"
        return {"content": _truncate(text, CONTENT_LIMIT)}
    raise ValueError(f"Unsupported webhook style: {style}")


def send_webhook_message(
    payload: Dict[str, Any],
    *,
    url: str,
    timeout: int = DEFAULT_TIMEOUT,
    session: Optional[requests.Session] = None,
) -> None:
    """
    POST a JSON payload to a chat webhook (Discord-compatible).
    """
    if not url:
        raise ValueError("Webhook URL is required.")
    poster = session or requests
    try:
        response = poster.post(url, json=payload, timeout=timeout)
        response.raise_for_status()
    except requests.RequestException as exc:
        raise ForwardError(f"Failed to send webhook message: {exc}") from exc
    logger.debug("Webhook accepted message with status %s", response.status_code)
