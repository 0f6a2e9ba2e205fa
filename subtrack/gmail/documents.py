"""
Attachment text for billing messages.

Turning PDFs or images into text is an external concern; callers inject a
`DocumentTextExtractor`. The default only decodes text-like attachments.
"""

from __future__ import annotations

from collections.abc import Callable

from subtrack.config import EXTRACTION_ATTACHMENT_CHARS
from subtrack.gmail.client import MessageSource
from subtrack.gmail.parser import AttachmentRef, GmailParsingError, ParsedMessage, decode_base64_bytes
from subtrack.infrastructure.retry import AdapterError
from subtrack.observability.logging import get_logger
from subtrack.observability.telemetry import counter

logger = get_logger(__name__)

DocumentTextExtractor = Callable[[str, bytes], str]

_TEXT_LIKE = ("text/", "application/json", "application/xml")
# Receipt PDFs are small; skip anything large enough to be a statement archive
MAX_ATTACHMENT_BYTES = 5 * 1024 * 1024


def plain_text_extractor(mime_type: str, data: bytes) -> str:
    """Decode text-like attachments; binary formats yield no text."""
    if mime_type.startswith(_TEXT_LIKE):
        return data.decode("utf-8", errors="replace")
    return ""


def _wants_text(attachment: AttachmentRef) -> bool:
    name = attachment.filename.lower()
    return (
        attachment.mime_type == "application/pdf"
        or name.endswith(".pdf")
        or attachment.mime_type.startswith(_TEXT_LIKE)
    )


def extract_attachment_text(
    message: ParsedMessage,
    source: MessageSource,
    to_text: DocumentTextExtractor = plain_text_extractor,
    max_chars: int = EXTRACTION_ATTACHMENT_CHARS,
) -> str:
    """
    Concatenated text of a message's document attachments, bounded to max_chars.

    A failing attachment is logged and skipped; the message is still processed.
    """
    chunks: list[str] = []
    for attachment in message.attachments:
        if not _wants_text(attachment) or attachment.size > MAX_ATTACHMENT_BYTES:
            continue
        try:
            if attachment.data:
                data = decode_base64_bytes(attachment.data)
            elif attachment.attachment_id:
                data = source.get_attachment(message.message_id, attachment.attachment_id)
            else:
                continue
            text = to_text(attachment.mime_type, data)
        except (AdapterError, GmailParsingError, ValueError) as exc:
            logger.warning(
                "Attachment text extraction failed (message=%s): %s",
                message.message_id_hash(),
                exc,
            )
            counter("gmail.attachment.error")
            continue
        if text:
            chunks.append(text.strip())
            counter("gmail.attachment.text")

    return "\n".join(chunks)[:max_chars]
