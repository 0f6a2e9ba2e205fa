"""
Extraction Pipeline - per-message orchestration.

Coordinates:
1. Presence detection (free) - drops pure marketing before any model call
2. BillingFieldExtractor - LLM + deterministic parser merge
3. Classification heuristics - ordered deterministic corrections
4. Routing - aggregator (charges, status events) or review queue

Entry point: ExtractionPipeline.process()
"""

from __future__ import annotations

import uuid
from datetime import datetime

from subtrack.config import (
    AUTO_COMMIT_CONFIDENCE,
    MERCHANT_RULE_BOOST_MAX,
    MERCHANT_RULE_BOOST_STEP,
)
from subtrack.gmail.parser import ParsedMessage
from subtrack.observability.logging import get_logger
from subtrack.observability.telemetry import counter, log_event
from subtrack.subscriptions import aggregator
from subtrack.subscriptions.aggregator import ApplyOutcome
from subtrack.subscriptions.field_extractor import BillingFieldExtractor, GeminiBillingExtractor
from subtrack.subscriptions.heuristics import HeuristicInput, ProviderRule, apply_heuristics
from subtrack.subscriptions.models import (
    ChargeCreate,
    MerchantRule,
    PendingSuggestion,
    SubscriptionSource,
    utc_now,
)
from subtrack.subscriptions.presence import detect_subscription_presence
from subtrack.subscriptions.repository import MerchantRuleRepository, PendingSuggestionRepository
from subtrack.subscriptions.types import ExtractedSignal, MessageOutcome, PipelineResult, SignalKind

logger = get_logger(__name__)

_PREVIEW_CHARS = 300


def confidence_level(confidence: float) -> int:
    """Review priority bucket: >=0.8 -> 5, >=0.6 -> 4, >=0.4 -> 3, else 2."""
    if confidence >= 0.8:
        return 5
    if confidence >= 0.6:
        return 4
    if confidence >= 0.4:
        return 3
    return 2


def _has_pdf(message: ParsedMessage) -> bool:
    return any(
        a.mime_type == "application/pdf" or a.filename.lower().endswith(".pdf") for a in message.attachments
    )


class ExtractionPipeline:
    """
    Turn one parsed message into a charge, status change, review item or skip.

    Args:
        field_extractor: Field extractor; defaults to Gemini-backed (rules when the LLM is off)
        provider_rules: Heuristic provider overrides; defaults to data/provider_rules.yaml
        auto_commit_confidence: Billing events below this become review items
    """

    def __init__(
        self,
        field_extractor: BillingFieldExtractor | None = None,
        provider_rules: tuple[ProviderRule, ...] | None = None,
        auto_commit_confidence: float = AUTO_COMMIT_CONFIDENCE,
    ):
        self.field_extractor = field_extractor or BillingFieldExtractor(GeminiBillingExtractor())
        self.provider_rules = provider_rules
        self.auto_commit_confidence = auto_commit_confidence

    def process(
        self,
        user_id: str,
        message: ParsedMessage,
        attachment_text: str = "",
    ) -> PipelineResult:
        msg_hash = message.message_id_hash()

        # =========================================================
        # Stage 1: Presence (free)
        # =========================================================
        presence = detect_subscription_presence(
            subject=message.subject,
            sender=message.sender,
            snippet=message.snippet,
            body_text=message.text_body,
            attachment_text=attachment_text,
            has_pdf_attachment=_has_pdf(message),
        )
        if not presence.presence:
            counter("pipeline.rejected_presence")
            logger.debug("Presence rejected message=%s reason=%s", msg_hash, presence.reason)
            return PipelineResult.skipped("non_billing" if presence.pure_marketing else "no_presence")

        # =========================================================
        # Stage 2: Field extraction
        # =========================================================
        merchant_rule = MerchantRuleRepository.get(user_id, message.sender_domain)
        signal = self.field_extractor.extract(
            message,
            user_id=user_id,
            attachment_text=attachment_text,
            merchant_rule=merchant_rule,
        )

        # =========================================================
        # Stage 3: Heuristics
        # =========================================================
        corrected = apply_heuristics(
            HeuristicInput(
                kind=signal.kind,
                amount=signal.amount,
                billing_cycle=signal.billing_cycle,
                service=signal.service,
                status_event_type=signal.status_event_type,
                subject=message.subject,
                body=message.text_body,
                sender=message.sender_email or message.sender,
                attachment_names=tuple(a.filename for a in message.attachments),
            ),
            rules=self.provider_rules,
        )
        signal = signal.with_changes(
            kind=corrected.kind,
            amount=corrected.amount,
            billing_cycle=corrected.billing_cycle,
            service=corrected.service,
            status_event_type=corrected.status_event_type,
            confidence=self._confidence(signal, presence.confidence, merchant_rule),
        )

        # =========================================================
        # Stage 4: Routing
        # =========================================================
        result = self._route(user_id, message, signal)
        counter(f"pipeline.{result.outcome.value}")
        log_event(
            "pipeline.routed",
            message=msg_hash,
            outcome=result.outcome.value,
            kind=signal.kind,
            reason=result.reason,
        )
        return result

    def _confidence(
        self,
        signal: ExtractedSignal,
        presence_confidence: float,
        merchant_rule: MerchantRule | None,
    ) -> float:
        confidence = signal.confidence if signal.confidence is not None else presence_confidence
        if merchant_rule is not None:
            confidence += merchant_rule.confidence_boost(MERCHANT_RULE_BOOST_STEP, MERCHANT_RULE_BOOST_MAX)
        return max(0.0, min(1.0, confidence))

    def _charge_date(self, message: ParsedMessage, signal: ExtractedSignal) -> datetime:
        return signal.charge_date or message.internal_date or message.header_date or utc_now()

    def _route(self, user_id: str, message: ParsedMessage, signal: ExtractedSignal) -> PipelineResult:
        if signal.kind == SignalKind.STATUS_EVENT.value:
            if not signal.service or not signal.status_event_type:
                return PipelineResult.skipped("status_without_service", signal)
            subscription = aggregator.apply_status_event(user_id, signal.service, signal.status_event_type)
            if subscription is None:
                return PipelineResult(MessageOutcome.STATUS_DROPPED, reason="no_subscription", signal=signal)
            return PipelineResult(
                MessageOutcome.STATUS_APPLIED,
                reason=signal.status_event_type,
                signal=signal,
                subscription_id=subscription.id,
            )

        if signal.kind != SignalKind.BILLING_EVENT.value:
            return PipelineResult.skipped("non_billing", signal)

        if (signal.confidence or 0.0) < self.auto_commit_confidence:
            self._queue_for_review(user_id, message, signal)
            return PipelineResult(MessageOutcome.PENDING_REVIEW, reason="low_confidence", signal=signal)

        if not signal.service:
            logger.info("Billing event without service dropped (message=%s)", message.message_id_hash())
            return PipelineResult.skipped("missing_service", signal)
        if signal.amount <= 0:
            return PipelineResult.skipped("non_positive_amount", signal)

        applied = aggregator.apply_charge(
            ChargeCreate(
                user_id=user_id,
                service=signal.service,
                amount=signal.amount,
                currency=signal.currency,
                billing_cycle=signal.billing_cycle,
                charged_at=self._charge_date(message, signal),
                category=signal.category,
                source_message_id=message.message_id,
                source=SubscriptionSource.EMAIL,
                subject=message.subject[:200],
                sender=message.sender_email or message.sender,
            )
        )

        subscription_id = applied.subscription.id if applied.subscription else None
        if applied.outcome == ApplyOutcome.DUPLICATE:
            return PipelineResult(MessageOutcome.DUPLICATE, reason="duplicate", signal=signal)
        if applied.outcome == ApplyOutcome.RECORDED_ONLY:
            return PipelineResult(MessageOutcome.RECORDED_ONLY, reason="non_recurring", signal=signal)
        return PipelineResult(
            MessageOutcome.CHARGE_CREATED,
            reason=applied.outcome.value,
            signal=signal,
            subscription_id=subscription_id,
        )

    def _queue_for_review(self, user_id: str, message: ParsedMessage, signal: ExtractedSignal) -> None:
        confidence = signal.confidence or 0.0
        suggestion = PendingSuggestion(
            id=str(uuid.uuid4()),
            user_id=user_id,
            source_message_id=message.message_id,
            sender=message.sender_email or message.sender,
            subject=message.subject,
            charged_at=self._charge_date(message, signal),
            service=signal.service,
            amount=signal.amount,
            currency=signal.currency,
            billing_cycle=signal.billing_cycle,
            category=signal.category,
            kind=signal.kind,
            confidence=confidence,
            confidence_level=confidence_level(confidence),
            preview=(message.snippet or message.text_body)[:_PREVIEW_CHARS],
            extracted=signal.as_dict(),
        )
        PendingSuggestionRepository.create(suggestion)
