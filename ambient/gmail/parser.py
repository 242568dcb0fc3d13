"""
Normalization of raw Gmail message resources into Email models.

Gmail returns headers as a name/value list and bodies as base64url data,
either on the payload itself or spread over (possibly nested) MIME parts.
This module flattens all of that into plain text. Plain-text parts win over
HTML parts; HTML is reduced to text with regex cleanup.

Defensive parsing: a malformed message yields None instead of raising, so
one bad message never breaks a batch.
"""

import base64
import binascii
import html
import logging
import re
from datetime import datetime, timezone
from typing import Iterable, Optional

from ambient.agent.schemas import NO_CONTENT, Email, Provenance

logger = logging.getLogger(__name__)

_STYLE_RE = re.compile(r"<style[^>]*>.*?</style>", re.IGNORECASE | re.DOTALL)
_SCRIPT_RE = re.compile(r"<script[^>]*>.*?</script>", re.IGNORECASE | re.DOTALL)
_HEAD_RE = re.compile(r"<head[^>]*>.*?</head>", re.IGNORECASE | re.DOTALL)
_BLOCK_TAG_RE = re.compile(r"<\s*(br|/p|/div|/tr|/li|/h[1-6])[^>]*>", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]+>")
_CSS_RULE_RE = re.compile(r"[a-zA-Z0-9_.#,\s-]+\{[^}]*\}")
_LONG_URL_RE = re.compile(r"https?://\S{25,}")
_REPEATED_LINK_RE = re.compile(r"(\[Link\]\s*){2,}")
_INVISIBLE_RE = re.compile("[\u200b\u200c\u200d\u034f\ufeff\u00ad]")
_SPACES_RE = re.compile(r"[ \t\xa0]+")
_BLANK_LINES_RE = re.compile(r"\n\s*\n(\s*\n)+")
_ADDRESS_RE = re.compile(r"<([^>]+)>")
_HTML_HINT_RE = re.compile(r"<\s*(html|body|div|p|br|table|span|a)\b", re.IGNORECASE)


def decode_base64url(data: str) -> str:
    """Decode Gmail's base64url body data, repairing missing padding."""
    if not data:
        return ""
    padded = data + "=" * (-len(data) % 4)
    try:
        return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")
    except (binascii.Error, ValueError):
        logger.warning("gmail.decode.failed", extra={"action": "gmail.decode.failed"})
        return ""


def clean_html(content: str) -> str:
    """Reduce an HTML (or noisy plain-text) body to readable text."""
    text = _HEAD_RE.sub("", content)
    text = _STYLE_RE.sub("", text)
    text = _SCRIPT_RE.sub("", text)
    text = _BLOCK_TAG_RE.sub("\n", text)
    text = _TAG_RE.sub("", text)
    text = html.unescape(text)
    text = _CSS_RULE_RE.sub("", text)
    text = _INVISIBLE_RE.sub("", text)
    text = _LONG_URL_RE.sub("[Link]", text)
    text = _REPEATED_LINK_RE.sub("[Link] ", text)
    text = _SPACES_RE.sub(" ", text)
    lines = [line.strip() for line in text.split("\n")]
    text = "\n".join(line for line in lines if line != "[Link]")
    text = _BLANK_LINES_RE.sub("\n\n", text)
    return text.strip()


def extract_body(payload: Optional[dict]) -> str:
    """
    Pull the body text out of a message payload.

    Single-part payloads carry data on payload.body. Multipart payloads are
    walked recursively; text/plain is preferred, text/html is the fallback.
    """
    if not payload:
        return ""

    data = (payload.get("body") or {}).get("data")
    if data:
        decoded = decode_base64url(data)
        if payload.get("mimeType") == "text/html" or _HTML_HINT_RE.search(decoded):
            return clean_html(decoded)
        return decoded.strip()

    plain: list[str] = []
    rich: list[str] = []
    _collect_parts(payload.get("parts") or [], plain, rich)

    text = "\n".join(plain).strip()
    if text:
        return clean_html(text) if _HTML_HINT_RE.search(text) else text
    markup = "\n".join(rich).strip()
    if markup:
        return clean_html(markup)
    return ""


def _collect_parts(parts: Iterable[dict], plain: list[str], rich: list[str]) -> None:
    for part in parts:
        mime = part.get("mimeType", "")
        data = (part.get("body") or {}).get("data")
        if mime == "text/plain" and data:
            plain.append(decode_base64url(data))
        elif mime == "text/html" and data:
            rich.append(decode_base64url(data))
        elif part.get("parts"):
            _collect_parts(part["parts"], plain, rich)


def header_map(payload: Optional[dict]) -> dict[str, str]:
    """Headers as a case-insensitive (lower-cased keys) dict. First occurrence wins."""
    headers: dict[str, str] = {}
    for header in (payload or {}).get("headers") or []:
        name = str(header.get("name") or "").lower()
        if name and name not in headers:
            headers[name] = str(header.get("value") or "")
    return headers


def sender_domain(sender: str) -> str:
    """Domain of a From header like 'Jane <jane@example.com>'."""
    match = _ADDRESS_RE.search(sender)
    address = match.group(1) if match else sender.strip()
    if "@" not in address:
        return "unknown"
    return address.rsplit("@", 1)[1].strip().lower() or "unknown"


def parse_internal_date(value) -> datetime:
    """Gmail internalDate is milliseconds since the epoch, as a string."""
    try:
        return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return datetime.fromtimestamp(0, tz=timezone.utc)


def parse_message(
    raw: dict,
    provenance: Provenance,
    message_id: Optional[str] = None,
) -> Optional[Email]:
    """
    Parse a raw Gmail message resource into an Email.

    Args:
        raw: The message resource returned by users.messages.get(format=full).
        provenance: Which listing the id came from (inbox or sent).
        message_id: The id that was requested. Takes precedence over raw["id"].

    Returns:
        The Email, or None if the resource is unusable.
    """
    try:
        payload = raw.get("payload") or {}
        headers = header_map(payload)
        sender = headers.get("from", "")
        snippet = html.unescape(str(raw.get("snippet") or ""))

        body = extract_body(payload)
        if not body:
            body = snippet or NO_CONTENT

        email_id = message_id or str(raw.get("id") or "")
        if not email_id:
            raise ValueError("message has no id")

        return Email(
            id=email_id,
            thread_id=str(raw.get("threadId") or email_id),
            provenance=provenance,
            subject=headers.get("subject", ""),
            sender=sender,
            sender_domain=sender_domain(sender),
            recipient=headers.get("to", ""),
            cc=headers.get("cc", ""),
            reply_to=headers.get("reply-to", ""),
            label_ids=[str(label) for label in raw.get("labelIds") or []],
            snippet=snippet,
            body=body,
            timestamp=parse_internal_date(raw.get("internalDate")),
        )
    except Exception as e:
        logger.error(
            "gmail.parse_message.failed",
            extra={
                "action": "gmail.parse_message.failed",
                "error": str(e),
                "msg_id": message_id or (raw.get("id") if isinstance(raw, dict) else None),
            },
        )
        return None


def dedupe_by_thread(emails: Iterable[Email]) -> list[Email]:
    """
    Keep only the most recent email of each thread.

    Order of the result follows the first appearance of each thread.
    """
    latest: dict[str, Email] = {}
    for email in emails:
        key = email.thread_id or email.id
        current = latest.get(key)
        if current is None or email.timestamp > current.timestamp:
            latest[key] = email
    return list(latest.values())
