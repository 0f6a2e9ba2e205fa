from __future__ import annotations

from subtrack.subscriptions.presence import detect_subscription_presence


def test_known_domain_receipt_scores_full_confidence():
    result = detect_subscription_presence(
        subject="Your receipt from Spotify",
        sender="Spotify <no-reply@spotify.com>",
        body_text="You were charged $9.99 for Spotify Premium.",
    )

    assert result.presence is True
    assert result.confidence == 1.0
    assert result.score > 1.0
    assert "known billing domain" in result.reason


def test_pure_marketing_is_rejected_outright():
    result = detect_subscription_presence(
        subject="New arrivals this week",
        sender="news@shop.example.com",
        body_text="Limited time only. Click here to unsubscribe.",
    )

    assert result.presence is False
    assert result.pure_marketing is True
    assert result.confidence == 0.0


def test_marketing_with_amount_is_not_pure_marketing():
    result = detect_subscription_presence(
        subject="Special offer",
        sender="news@shop.example.com",
        body_text="Special offer: get it for $4.99. Click here to unsubscribe.",
    )

    assert result.pure_marketing is False


def test_no_signals_below_threshold():
    result = detect_subscription_presence(
        subject="Lunch tomorrow?",
        sender="friend@example.com",
        body_text="Are you free at noon?",
    )

    assert result.presence is False
    assert result.reason.startswith("low score")


def test_pdf_attachment_alone_reaches_threshold():
    result = detect_subscription_presence(
        subject="Documents",
        sender="accounts@vendor.example.com",
        has_pdf_attachment=True,
    )

    assert result.presence is True
    assert result.confidence == 0.4


def test_attachment_invoice_text_counts():
    result = detect_subscription_presence(
        subject="Your documents",
        sender="accounts@vendor.example.com",
        attachment_text="TAX INVOICE  Total 120.00",
    )

    assert result.presence is True
    assert "attachment invoice/receipt" in result.reason
