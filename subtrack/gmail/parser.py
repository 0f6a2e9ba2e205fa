"""
Gmail adapter utilities for converting API payloads into `ParsedMessage`.

Parsing is deterministic and side-effect free apart from telemetry. Observability
hooks surface parse failures with hashed ids only.
"""

from __future__ import annotations

import base64
import binascii
import json
import re
from collections.abc import Iterable
from datetime import UTC, datetime
from email.utils import parseaddr, parsedate_to_datetime
from hashlib import sha256
from typing import Any

from bs4 import BeautifulSoup
from pydantic import BaseModel, Field

from subtrack.observability.telemetry import counter, log_event

_TEXT_PLAIN = "text/plain"
_TEXT_HTML = "text/html"


class GmailParsingError(ValueError):
    """Raised when Gmail payload cannot be converted into a ParsedMessage."""


class AttachmentRef(BaseModel):
    """An attachment part; `data` is set when Gmail inlined the body."""

    filename: str
    mime_type: str = ""
    attachment_id: str | None = None
    data: str | None = Field(default=None, description="URL-safe base64 body when inline")
    size: int = 0


class ParsedMessage(BaseModel):
    message_id: str
    thread_id: str = ""
    subject: str = ""
    sender: str = Field(default="", description="Raw From header, e.g. 'Spotify <no-reply@spotify.com>'")
    sender_email: str = ""
    snippet: str = ""
    internal_date: datetime | None = None
    header_date: datetime | None = None
    text_body: str = ""
    html_body: str | None = None
    attachments: list[AttachmentRef] = Field(default_factory=list)

    @property
    def sender_domain(self) -> str:
        _, _, domain = self.sender_email.rpartition("@")
        return domain.lower()

    @property
    def received_at(self) -> datetime | None:
        return self.internal_date or self.header_date

    def message_id_hash(self) -> str:
        return hash_id(self.message_id)


def hash_id(value: str) -> str:
    return sha256(value.encode()).hexdigest()[:12]


def _header_lookup(headers: Iterable[dict[str, str]], name: str) -> str | None:
    name_lower = name.lower()
    for header in headers:
        if header.get("name", "").lower() == name_lower:
            return header.get("value")
    return None


def _decode_base64(data: str) -> str:
    """Decode Gmail's URL-safe base64 payloads."""
    padding = "=" * (-len(data) % 4)
    try:
        decoded = base64.urlsafe_b64decode((data + padding).encode("utf-8"))
        return decoded.decode("utf-8", errors="replace")
    except (binascii.Error, UnicodeDecodeError) as exc:
        raise GmailParsingError("failed to decode message body") from exc


def decode_base64_bytes(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    try:
        return base64.urlsafe_b64decode((data + padding).encode("utf-8"))
    except binascii.Error as exc:
        raise GmailParsingError("failed to decode attachment body") from exc


def html_to_text(html: str) -> str:
    """Convert an HTML-only email body to plain text."""
    if not html:
        return ""

    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "head"]):
        tag.decompose()
    text = soup.get_text(separator="\n")

    lines = [line.strip() for line in text.splitlines()]
    text = "\n".join(lines)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def _walk_parts(payload: dict[str, Any]) -> Iterable[dict[str, Any]]:
    yield payload
    for part in payload.get("parts") or []:
        yield from _walk_parts(part)


def _extract_content(payload: dict[str, Any]) -> tuple[str | None, str | None, list[AttachmentRef]]:
    """Walk the MIME tree (nested multiparts included) collecting the first
    text/plain and text/html bodies plus every named attachment."""
    body_text: str | None = None
    body_html: str | None = None
    attachments: list[AttachmentRef] = []

    for part in _walk_parts(payload):
        mime_type = part.get("mimeType", "")
        body = part.get("body") or {}
        filename = part.get("filename") or ""

        if filename:
            attachments.append(
                AttachmentRef(
                    filename=filename,
                    mime_type=mime_type,
                    attachment_id=body.get("attachmentId"),
                    data=body.get("data"),
                    size=int(body.get("size") or 0),
                )
            )
            continue

        data = body.get("data")
        if not data:
            continue
        if mime_type == _TEXT_PLAIN and body_text is None:
            body_text = _decode_base64(data)
        elif mime_type == _TEXT_HTML and body_html is None:
            body_html = _decode_base64(data)

    return body_text, body_html, attachments


def _parse_internal_date(raw: Any) -> datetime | None:
    if raw in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(raw) / 1000, tz=UTC)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def _parse_header_date(raw: str | None) -> datetime | None:
    if not raw:
        return None
    try:
        parsed = parsedate_to_datetime(raw)
    except (TypeError, ValueError, IndexError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def parse_message(message: dict[str, Any]) -> ParsedMessage:
    """
    Convert a Gmail API message (format=full) into `ParsedMessage`.

    `GmailParsingError` is raised on structurally invalid payloads. HTML-only
    messages get a text body derived from the HTML.
    """
    if not isinstance(message, dict):
        raise GmailParsingError("message must be a dict")

    try:
        message_id = message["id"]
        payload = message["payload"]
    except KeyError as exc:
        raise GmailParsingError(f"missing field: {exc}") from exc

    if not isinstance(payload, dict):
        raise GmailParsingError("payload must be a dict")

    headers = payload.get("headers") or []
    subject = _header_lookup(headers, "Subject") or ""
    sender = _header_lookup(headers, "From") or ""
    _, sender_email = parseaddr(sender)

    body_text, body_html, attachments = _extract_content(payload)
    if body_text is None and body_html:
        body_text = html_to_text(body_html)
        counter("gmail.html_only_body")

    parsed = ParsedMessage(
        message_id=message_id,
        thread_id=message.get("threadId") or "",
        subject=subject,
        sender=sender,
        sender_email=sender_email.lower(),
        snippet=message.get("snippet") or "",
        internal_date=_parse_internal_date(message.get("internalDate")),
        header_date=_parse_header_date(_header_lookup(headers, "Date")),
        text_body=body_text or "",
        html_body=body_html,
        attachments=attachments,
    )

    log_event(
        "gmail.parsed",
        message_id_hash=parsed.message_id_hash(),
        attachments=len(attachments),
    )
    counter("gmail.parsed.count")
    return parsed


def parse_message_strict(message: dict[str, Any]) -> ParsedMessage:
    """
    Wrapper that emits observability signals on failure.
    """
    try:
        return parse_message(message)
    except GmailParsingError as exc:
        log_event(
            "gmail.parse_failed",
            message_id_hash=hash_id(str(message.get("id", "")) if isinstance(message, dict) else ""),
            error=str(exc),
        )
        counter("gmail.parse_failed.count")
        raise
    except Exception as exc:
        snapshot = {
            "id_hash": hash_id(str(message.get("id", ""))) if isinstance(message, dict) else "",
        }
        log_event(
            "gmail.parse_unexpected_error",
            snapshot=json.dumps(snapshot),
            error=str(exc),
        )
        counter("gmail.parse_unexpected_error.count")
        raise
