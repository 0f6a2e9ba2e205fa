"""
Gmail message source.

Wraps an authenticated Gmail API service behind the small `MessageSource`
protocol the ingestion pool consumes, translating Google client errors into
engine error types. Token acquisition and refresh happen elsewhere; this
module only builds a service from credentials it is handed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Protocol

from google.auth.exceptions import RefreshError
from googleapiclient.errors import HttpError

from subtrack.config import SCAN_PAGE_SIZE, SCAN_QUERY_TERMS
from subtrack.errors import (
    MailProviderAuthError,
    MailProviderPermissionError,
    ProviderNotConfiguredError,
)
from subtrack.gmail.parser import decode_base64_bytes
from subtrack.infrastructure.retry import AdapterError, CircuitBreaker, RetryPolicy
from subtrack.observability.logging import get_logger
from subtrack.observability.telemetry import counter, log_event, time_block

logger = get_logger(__name__)

GMAIL_SCOPES = ["https://www.googleapis.com/auth/gmail.readonly"]


@dataclass
class MessagePage:
    ids: list[str] = field(default_factory=list)
    next_page_token: str | None = None


class MessageSource(Protocol):
    """What the ingestion pool needs from a mail provider."""

    def list_message_ids(
        self,
        query: str,
        page_token: str | None = None,
        max_results: int = SCAN_PAGE_SIZE,
    ) -> MessagePage: ...

    def get_message(self, message_id: str) -> dict[str, Any]: ...

    def get_attachment(self, message_id: str, attachment_id: str) -> bytes: ...


def build_billing_query(after: date, terms: tuple[str, ...] = SCAN_QUERY_TERMS) -> str:
    """Broad billing keyword expression bounded below by `after`."""
    return f"({' OR '.join(terms)}) after:{after.strftime('%Y/%m/%d')}"


def translate_google_error(exc: Exception) -> Exception:
    """Map Google client exceptions to engine error types.

    Auth/config failures become engine errors (abort the scan); rate limits and
    server errors become retryable AdapterErrors; other HTTP errors become
    non-retryable AdapterErrors that skip the single message.
    """
    if isinstance(exc, RefreshError):
        text = str(exc).lower()
        if "invalid_client" in text or "unauthorized_client" in text:
            return ProviderNotConfiguredError("gmail", "OAuth client is invalid")
        return MailProviderAuthError(f"Gmail credentials rejected: {exc}")

    if isinstance(exc, HttpError):
        status = getattr(exc.resp, "status", None)
        status = int(status) if status is not None else None
        text = str(exc).lower()
        if status == 401 or "invalid_grant" in text:
            return MailProviderAuthError("Gmail credentials rejected (401)")
        if status == 403:
            if "ratelimitexceeded" in text.replace(" ", "") or "quota" in text:
                return AdapterError("Gmail rate limited", status_code=429)
            if "insufficient" in text:
                return MailProviderPermissionError("Gmail token lacks read permission")
            return MailProviderPermissionError(f"Gmail access forbidden: {exc}")
        return AdapterError(f"Gmail API error: {exc}", status_code=status)

    return exc


_ENGINE_ERRORS = (MailProviderAuthError, ProviderNotConfiguredError)


class GmailMessageSource:
    """
    MessageSource backed by the Gmail REST API.

    Args:
        service: An authenticated `googleapiclient` Gmail service, or None to
            build one lazily from `credentials`.
        credentials: google.oauth2 credentials used when `service` is None.
    """

    def __init__(self, service: Any | None = None, credentials: Any | None = None):
        if service is None and credentials is None:
            raise ProviderNotConfiguredError("gmail", "no service or credentials supplied")
        self._service = service
        self._credentials = credentials
        self._policy = RetryPolicy(stage="gmail.fetch", fatal=_ENGINE_ERRORS)
        self._circuit = CircuitBreaker(stage="gmail.fetch", fail_max=3, reset_timeout=30.0)

    @classmethod
    def from_tokens(
        cls,
        access_token: str,
        refresh_token: str | None = None,
        client_id: str | None = None,
        client_secret: str | None = None,
    ) -> GmailMessageSource:
        from google.oauth2.credentials import Credentials

        credentials = Credentials(
            token=access_token,
            refresh_token=refresh_token,
            token_uri="https://oauth2.googleapis.com/token",
            client_id=client_id,
            client_secret=client_secret,
            scopes=GMAIL_SCOPES,
        )
        return cls(credentials=credentials)

    @property
    def service(self) -> Any:
        if self._service is None:
            from googleapiclient.discovery import build

            self._service = build(
                "gmail", "v1", credentials=self._credentials, cache_discovery=False
            )
        return self._service

    def _call(self, func, stage: str):
        def attempt():
            try:
                return func()
            except (HttpError, RefreshError) as exc:
                raise translate_google_error(exc) from exc

        try:
            with time_block(f"{stage}.latency"):
                return self._circuit.call(self._policy, attempt)
        except AdapterError as exc:
            log_event(f"{stage}.error", status=exc.status_code)
            raise

    def list_message_ids(
        self,
        query: str,
        page_token: str | None = None,
        max_results: int = SCAN_PAGE_SIZE,
    ) -> MessagePage:
        def request():
            kwargs: dict[str, Any] = {"userId": "me", "q": query, "maxResults": max_results}
            if page_token:
                kwargs["pageToken"] = page_token
            return self.service.users().messages().list(**kwargs).execute()

        response = self._call(request, "gmail.list")
        ids = [msg["id"] for msg in response.get("messages", [])]
        counter("gmail.messages.listed", len(ids))
        return MessagePage(ids=ids, next_page_token=response.get("nextPageToken"))

    def get_message(self, message_id: str) -> dict[str, Any]:
        return self._call(
            lambda: self.service.users()
            .messages()
            .get(userId="me", id=message_id, format="full")
            .execute(),
            "gmail.get",
        )

    def get_attachment(self, message_id: str, attachment_id: str) -> bytes:
        response = self._call(
            lambda: self.service.users()
            .messages()
            .attachments()
            .get(userId="me", messageId=message_id, id=attachment_id)
            .execute(),
            "gmail.attachment",
        )
        return decode_base64_bytes(response.get("data", ""))
