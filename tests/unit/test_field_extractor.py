from __future__ import annotations

from datetime import UTC, datetime

import pytest

from subtrack.gmail.parser import AttachmentRef, ParsedMessage
from subtrack.subscriptions.field_extractor import (
    BillingFieldExtractor,
    GeminiBillingExtractor,
    service_from_sender,
    service_from_subject,
    truncate_text,
)
from subtrack.subscriptions.models import MerchantRule
from subtrack.subscriptions.types import ExtractedSignal

RECEIVED = datetime(2025, 6, 15, 12, 0, tzinfo=UTC)


def _message(subject: str, body: str, sender: str = "Spotify <no-reply@spotify.com>", **extra) -> ParsedMessage:
    _, _, email = sender.rpartition("<")
    return ParsedMessage(
        message_id="m-1",
        subject=subject,
        sender=sender,
        sender_email=email.rstrip(">") or sender,
        snippet=body[:80],
        internal_date=RECEIVED,
        text_body=body,
        **extra,
    )


class StubExtractor:
    def __init__(self, signal: ExtractedSignal | None):
        self.signal = signal
        self.calls = 0

    def extract(self, text, subject, sender, snippet, user_id):
        self.calls += 1
        return self.signal


@pytest.mark.parametrize(
    "sender,service",
    [
        ("Spotify <no-reply@spotify.com>", "Spotify"),
        ("billing@mail.netflix.co.uk", "Netflix"),
        ("receipts@e.talabat.com", "Talabat"),
        ("hello@my-gym.io", "My Gym"),
        ("not an address", None),
        ("", None),
    ],
)
def test_service_from_sender(sender, service):
    assert service_from_sender(sender) == service


def test_service_from_subject_skips_generic_words():
    assert service_from_subject("Your Receipt From Netflix") == "Netflix"
    assert service_from_subject("thanks for your order") is None


def test_truncate_text_prefers_sentence_boundary():
    text = "The first sentence is right here. " + "x" * 40 + ". tail"
    assert truncate_text(text, limit=50) == "The first sentence is right here."


def test_truncate_text_hard_cuts_without_late_boundary():
    text = "a. " + "b" * 100
    assert truncate_text(text, limit=20) == text[:20]
    assert truncate_text("short", limit=20) == "short"
    assert truncate_text(None) == ""


def test_rules_path_billing_event():
    extractor = BillingFieldExtractor(extractor=None)
    signal = extractor.extract(
        _message(
            "Your receipt from Spotify",
            "You were charged $9.99 for Spotify Premium. Billed monthly.",
        ),
        user_id="u1",
    )

    assert signal.kind == "billing_event"
    assert signal.amount == 9.99
    assert signal.currency == "USD"
    assert signal.billing_cycle == "monthly"
    assert signal.service == "Spotify"
    assert signal.extraction_method == "rules"


def test_rules_path_status_event():
    extractor = BillingFieldExtractor(extractor=None)
    signal = extractor.extract(
        _message("Account update", "Your subscription has been canceled. We hope to see you again."),
        user_id="u1",
    )

    assert signal.kind == "status_event"
    assert signal.status_event_type == "canceled"


def test_rules_path_amount_without_charge_evidence_is_other():
    extractor = BillingFieldExtractor(extractor=None)
    signal = extractor.extract(_message("Plans", "Premium is just $9.99"), user_id="u1")
    assert signal.kind == "other"


def test_receipt_attachment_name_counts_as_evidence():
    extractor = BillingFieldExtractor(extractor=None)
    message = _message(
        "Documents",
        "Amount: EGP 79.00",
        attachments=[AttachmentRef(filename="subscription-charge-0001.pdf", mime_type="application/pdf")],
    )
    signal = extractor.extract(message, user_id="u1")
    assert signal.kind == "billing_event"
    assert signal.currency == "EGP"


def test_parser_charge_date_used_inside_lookback_only():
    extractor = BillingFieldExtractor(extractor=None)
    recent = extractor.extract(
        _message("Your receipt", "Total $9.99. Payment date: 2025-06-01"), user_id="u1"
    )
    assert recent.charge_date == datetime(2025, 6, 1, tzinfo=UTC)

    stale = extractor.extract(
        _message("Your receipt", "Total $9.99. Payment date: 2024-01-01"), user_id="u1"
    )
    assert stale.charge_date is None


def test_parser_fills_missing_llm_amount_and_cycle():
    stub = StubExtractor(ExtractedSignal(kind="billing_event", service="Spotify", confidence=0.9))
    signal = BillingFieldExtractor(stub).extract(
        _message("Your receipt", "Total: $11.99 per month"), user_id="u1"
    )

    assert stub.calls == 1
    assert signal.amount == 11.99
    assert signal.billing_cycle == "monthly"
    assert signal.extraction_method == "hybrid"
    assert signal.confidence == 0.9


def test_llm_amount_is_not_overridden():
    stub = StubExtractor(
        ExtractedSignal(
            kind="billing_event",
            service="Spotify",
            amount=10.99,
            billing_cycle="yearly",
            extraction_method="llm",
        )
    )
    signal = BillingFieldExtractor(stub).extract(
        _message("Your receipt", "Total: $11.99 per month"), user_id="u1"
    )

    assert signal.amount == 10.99
    assert signal.billing_cycle == "yearly"
    assert signal.extraction_method == "llm"


def test_merchant_rule_supplies_service_and_category():
    rule = MerchantRule(
        user_id="u1",
        domain="billing.example.com",
        default_service="Acme Cloud",
        default_category="Cloud",
        verified_count=2,
    )
    signal = BillingFieldExtractor(extractor=None).extract(
        _message("Invoice", "Amount paid $20.00", sender="Billing <ops@billing.example.com>"),
        user_id="u1",
        merchant_rule=rule,
    )

    assert signal.service == "Acme Cloud"
    assert signal.category == "Cloud"


def test_gemini_extractor_disabled_returns_none():
    assert GeminiBillingExtractor().extract("text", "subject", "sender", "snippet", "u1") is None


def test_gemini_response_parsing():
    extractor = GeminiBillingExtractor()
    assert extractor._parse_llm_response('```json\n{"kind": "other"}\n```') == {"kind": "other"}
    assert extractor._parse_llm_response("[1, 2]") == {}
    assert extractor._parse_llm_response("not json") == {}
    assert extractor._parse_llm_response(None) == {}
