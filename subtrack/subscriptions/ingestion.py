"""
Ingestion Worker Pool - mailbox scan coordinator.

list ids -> shared queue -> N workers (fetch -> parse -> attachments ->
pipeline) -> scan counters -> lifecycle sweep.

Workers pull from one queue.Queue until it is empty; no ordering between
messages is assumed. Correctness under concurrency rests on ledger idempotency
(one Charge per source message) and the aggregator's per-key locks.
"""

from __future__ import annotations

import concurrent.futures
import queue
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from subtrack.config import (
    SCAN_MAX_MESSAGES,
    SCAN_PAGE_SIZE,
    SCAN_SAFETY_OVERLAP_DAYS,
    SCAN_WINDOW_DAYS,
    SCAN_WORKERS,
)
from subtrack.errors import MailProviderAuthError, ProviderNotConfiguredError
from subtrack.gmail.client import MessageSource, build_billing_query
from subtrack.gmail.documents import DocumentTextExtractor, extract_attachment_text, plain_text_extractor
from subtrack.gmail.parser import hash_id, parse_message_strict
from subtrack.infrastructure.database import checkpoint_wal
from subtrack.infrastructure.retry import AdapterError
from subtrack.observability.logging import get_logger
from subtrack.observability.telemetry import counter, log_event, time_block
from subtrack.subscriptions.ledger import ChargeRepository
from subtrack.subscriptions.lifecycle import sweep_subscriptions
from subtrack.subscriptions.models import ScanMode, ScanStatus, utc_now
from subtrack.subscriptions.pipeline import ExtractionPipeline
from subtrack.subscriptions.repository import (
    IgnoredSenderRepository,
    ScanSessionRepository,
    ScanStateRepository,
    SubscriptionRepository,
)
from subtrack.subscriptions.types import MessageOutcome

logger = get_logger(__name__)

_ENGINE_ERRORS = (MailProviderAuthError, ProviderNotConfiguredError)
# Scan session counters are flushed to the database every N processed messages
_PROGRESS_EVERY = 25

_OUTCOME_BUCKETS = {
    MessageOutcome.CHARGE_CREATED: "new_charges",
    MessageOutcome.RECORDED_ONLY: "new_charges",
    MessageOutcome.DUPLICATE: "skipped_existing",
    MessageOutcome.PENDING_REVIEW: "pending_review",
}


@dataclass
class ScanSummary:
    scan_id: str
    processed: int = 0
    new_charges: int = 0
    skipped_existing: int = 0
    skipped_other: int = 0
    pending_review: int = 0
    scanned_after: datetime | None = None


@dataclass
class _ScanCounters:
    """Counters shared by the workers of one scan."""

    processed: int = 0
    new_charges: int = 0
    skipped_existing: int = 0
    skipped_other: int = 0
    pending_review: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def record(self, bucket: str) -> int:
        with self._lock:
            setattr(self, bucket, getattr(self, bucket) + 1)
            self.processed += 1
            return self.processed

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return {
                "processed": self.processed,
                "new_charges": self.new_charges,
                "skipped_existing": self.skipped_existing,
                "skipped_other": self.skipped_other,
                "pending_review": self.pending_review,
            }


def compute_scan_window(mode: ScanMode | str, last_scan_at: datetime | None, now: datetime) -> datetime:
    """
    Lower bound for the message query.

    full -> now - 365d; incremental -> max(now - 365d, last_scan_at - 2d),
    or now - 365d when the user was never scanned.
    """
    floor = now - timedelta(days=SCAN_WINDOW_DAYS)
    if ScanMode(mode) == ScanMode.FULL or last_scan_at is None:
        return floor
    return max(floor, last_scan_at - timedelta(days=SCAN_SAFETY_OVERLAP_DAYS))


def _list_message_ids(source: MessageSource, query: str, max_messages: int) -> list[str]:
    ids: list[str] = []
    page_token = None
    while len(ids) < max_messages:
        page = source.list_message_ids(
            query,
            page_token=page_token,
            max_results=min(SCAN_PAGE_SIZE, max_messages - len(ids)),
        )
        ids.extend(page.ids)
        page_token = page.next_page_token
        if not page_token or not page.ids:
            break
    # Pages can overlap when new mail arrives mid-listing
    return list(dict.fromkeys(ids))[:max_messages]


def _process_message(
    user_id: str,
    message_id: str,
    source: MessageSource,
    pipeline: ExtractionPipeline,
    to_text: DocumentTextExtractor,
) -> str:
    """Process one message id; returns the scan counter it belongs to."""
    if ChargeRepository.exists_for_message(user_id, message_id):
        return "skipped_existing"

    message = parse_message_strict(source.get_message(message_id))
    if message.sender_email and IgnoredSenderRepository.is_ignored(user_id, message.sender_email):
        counter("ingestion.ignored_sender")
        return "skipped_other"

    attachment_text = extract_attachment_text(message, source, to_text=to_text)
    result = pipeline.process(user_id, message, attachment_text)
    return _OUTCOME_BUCKETS.get(result.outcome, "skipped_other")


def _flush_progress(scan_id: str, counters: _ScanCounters) -> None:
    """Persist intermediate counters; a failed write never stops the worker."""
    try:
        ScanSessionRepository.update_progress(scan_id, **counters.snapshot())
    except Exception as exc:
        logger.warning("Progress update for scan %s failed: %s", scan_id, exc)
        counter("ingestion.progress_error")


def _run_workers(
    user_id: str,
    scan_id: str,
    message_ids: list[str],
    source: MessageSource,
    pipeline: ExtractionPipeline,
    to_text: DocumentTextExtractor,
    workers: int,
) -> _ScanCounters:
    work: queue.Queue[str] = queue.Queue()
    for message_id in message_ids:
        work.put(message_id)

    counters = _ScanCounters()
    abort = threading.Event()
    engine_errors: list[BaseException] = []

    def worker() -> None:
        while not abort.is_set():
            try:
                message_id = work.get_nowait()
            except queue.Empty:
                return
            try:
                bucket = _process_message(user_id, message_id, source, pipeline, to_text)
            except _ENGINE_ERRORS as exc:
                engine_errors.append(exc)
                abort.set()
                return
            except Exception as exc:
                logger.warning("Message %s failed: %s", hash_id(message_id), exc)
                counter("ingestion.message_error")
                bucket = "skipped_other"

            processed = counters.record(bucket)
            if processed % _PROGRESS_EVERY == 0:
                _flush_progress(scan_id, counters)

    with concurrent.futures.ThreadPoolExecutor(max_workers=max(1, workers)) as executor:
        futures = [executor.submit(worker) for _ in range(max(1, workers))]
        for future in concurrent.futures.as_completed(futures):
            future.result()

    if engine_errors:
        raise engine_errors[0]
    return counters


def scan_mailbox(
    user_id: str,
    mode: ScanMode | str = ScanMode.INCREMENTAL,
    source: MessageSource | None = None,
    pipeline: ExtractionPipeline | None = None,
    now: datetime | None = None,
    max_messages: int = SCAN_MAX_MESSAGES,
    workers: int = SCAN_WORKERS,
    to_text: DocumentTextExtractor = plain_text_extractor,
) -> ScanSummary:
    """
    Scan a user's mailbox for billing messages.

    Args:
        user_id: Owner of the mailbox
        mode: "incremental" (since last scan, 2-day overlap) or "full" (365 days, resets ledger)
        source: Mail provider adapter
        pipeline: Extraction pipeline (default: Gemini-backed when enabled)
        now: Reference time for the window and sweep
        max_messages: Upper bound on listed messages
        workers: Worker thread count
        to_text: Attachment document-to-text function

    Returns:
        ScanSummary with per-scan counters

    Raises:
        ProviderNotConfiguredError: No mail source supplied or OAuth client invalid
        MailProviderAuthError: Stored credentials rejected (scan marked failed)

    Side Effects:
        - Writes charges, subscriptions, review items, scan session
        - full mode deletes the user's charges and subscriptions first
        - Runs the lifecycle sweep
    """
    if source is None:
        raise ProviderNotConfiguredError("gmail", "mailbox not connected")

    mode = ScanMode(mode)
    now = now or utc_now()
    pipeline = pipeline or ExtractionPipeline()

    last_scan_at = ScanStateRepository.get_last_scan_at(user_id)
    scanned_after = compute_scan_window(mode, last_scan_at, now)

    if mode == ScanMode.FULL:
        ChargeRepository.delete_for_user(user_id)
        SubscriptionRepository.delete_for_user(user_id)

    session = ScanSessionRepository.create(user_id, mode, scanned_after=scanned_after)
    log_event("ingestion.scan_started", scan=session.scan_id, mode=mode.value, after=scanned_after.date())

    try:
        with time_block("ingestion.list.latency"):
            message_ids = _list_message_ids(source, build_billing_query(scanned_after.date()), max_messages)
        ScanSessionRepository.update_progress(session.scan_id, total_messages=len(message_ids))

        with time_block("ingestion.scan.latency"):
            counters = _run_workers(
                user_id, session.scan_id, message_ids, source, pipeline, to_text, workers
            )
    except (*_ENGINE_ERRORS, AdapterError) as exc:
        ScanSessionRepository.finish(session.scan_id, ScanStatus.FAILED, error=str(exc))
        counter("ingestion.scan_failed")
        logger.error("Scan %s failed for user %s: %s", session.scan_id, user_id, exc)
        raise

    totals = counters.snapshot()
    ScanStateRepository.set_last_scan_at(user_id, now)
    ScanSessionRepository.update_progress(session.scan_id, **totals)
    ScanSessionRepository.finish(session.scan_id, ScanStatus.COMPLETED)

    sweep_subscriptions(user_id, now=now)
    if mode == ScanMode.FULL:
        checkpoint_wal()

    log_event("ingestion.scan_completed", scan=session.scan_id, **totals)
    return ScanSummary(scan_id=session.scan_id, scanned_after=scanned_after, **totals)
