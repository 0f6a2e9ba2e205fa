from __future__ import annotations

from pathlib import Path

import pytest

from subtrack.subscriptions.heuristics import (
    HeuristicInput,
    ProviderRule,
    apply_heuristics,
    load_provider_rules,
)


@pytest.fixture(autouse=True)
def _fresh_rules():
    load_provider_rules.cache_clear()
    yield
    load_provider_rules.cache_clear()


def _input(**overrides) -> HeuristicInput:
    defaults = {
        "kind": "billing_event",
        "amount": 9.99,
        "billing_cycle": "unknown",
        "service": None,
        "subject": "Your receipt",
        "body": "Thanks for your payment.",
        "sender": "billing@vendor.example.com",
    }
    defaults.update(overrides)
    return HeuristicInput(**defaults)


def test_billing_event_without_amount_becomes_marketing():
    result = apply_heuristics(_input(amount=0.0), rules=())
    assert result.kind == "marketing"
    assert "non_positive_amount" in result.applied


def test_promo_without_receipt_is_marketing():
    result = apply_heuristics(
        _input(subject="Big sale on plans", body="Get 25% off when you upgrade today."),
        rules=(),
    )
    assert result.kind == "marketing"
    assert result.amount == 0.0
    assert "promo_without_receipt" in result.applied


def test_promo_language_on_receipt_is_kept():
    result = apply_heuristics(
        _input(subject="Your receipt", body="You saved 10% on this invoice. Total $9.99"),
        rules=(),
    )
    assert result.kind == "billing_event"
    assert result.amount == 9.99


def test_promo_with_receipt_attachment_is_kept():
    result = apply_heuristics(
        _input(subject="Sale confirmation", body="Attached.", attachment_names=("Invoice-0042.pdf",)),
        rules=(),
    )
    assert result.kind == "billing_event"


@pytest.mark.parametrize(
    "body,status",
    [
        ("Your membership is on hold until you update your card.", "on_hold"),
        ("Payment failed for your plan.", "payment_failed"),
        ("Start your trial now.", "trial_offer"),
    ],
)
def test_status_keywords(body, status):
    result = apply_heuristics(_input(body=body), rules=())
    assert result.kind == "status_event"
    assert result.status_event_type == status
    assert result.amount == 0.0


def test_status_type_cleared_for_non_status_kinds():
    result = apply_heuristics(_input(status_event_type="canceled"), rules=())
    assert result.kind == "billing_event"
    assert result.status_event_type is None


def test_spotify_rule_forces_monthly_and_service():
    result = apply_heuristics(
        _input(
            billing_cycle="yearly",
            sender="no-reply@spotify.com",
            body="We will charge you each month until you cancel.",
        )
    )
    assert result.kind == "billing_event"
    assert result.billing_cycle == "monthly"
    assert result.service == "Spotify"
    assert "provider:spotify" in result.applied


def test_spotify_rule_needs_positive_amount():
    result = apply_heuristics(
        _input(
            kind="other",
            amount=0.0,
            sender="no-reply@spotify.com",
            body="We will charge you each month until you cancel.",
        )
    )
    assert result.kind == "other"
    assert "provider:spotify" not in result.applied


def test_talabat_rule_fills_unknown_cycle_only():
    result = apply_heuristics(
        _input(
            billing_cycle="yearly",
            sender="noreply@talabat.com",
            body="Your subscription fee invoice is attached. Total EGP 79.00",
        )
    )
    assert result.billing_cycle == "yearly"

    result = apply_heuristics(
        _input(
            sender="noreply@talabat.com",
            body="Your subscription fee invoice is attached. Total EGP 79.00",
        )
    )
    assert result.billing_cycle == "monthly"
    assert result.service == "Talabat Pro"


def test_talabat_rule_preserves_status_event():
    result = apply_heuristics(
        _input(
            kind="status_event",
            amount=0.0,
            status_event_type="payment_failed",
            sender="noreply@talabat.com",
            body="We were unable to charge your subscription fee invoice.",
        )
    )
    assert result.kind == "status_event"
    assert result.status_event_type == "payment_failed"


def test_forced_billing_event_without_amount_is_demoted():
    rule = ProviderRule(
        name="acme",
        domain="acme.example.com",
        phrases=("your plan",),
        billing_cycle="monthly",
    )
    result = apply_heuristics(
        _input(kind="other", amount=0.0, sender="billing@acme.example.com", body="About your plan"),
        rules=(rule,),
    )
    assert result.kind == "marketing"
    assert "post_condition" in result.applied


def test_rules_never_fire_on_marketing():
    result = apply_heuristics(
        _input(
            sender="no-reply@spotify.com",
            subject="Premium deal",
            body="Try Premium. We will charge you each month until you cancel.",
        )
    )
    assert result.kind == "marketing"


def test_rules_load_from_yaml(tmp_path: Path):
    path = tmp_path / "rules.yaml"
    path.write_text(
        "providers:\n"
        "  - name: acme\n"
        "    domain: ACME.example.com\n"
        "    phrases: [Your Plan]\n"
        "    billing_cycle: yearly\n"
        "    cycle_mode: force\n"
    )
    rules = load_provider_rules(path)
    assert len(rules) == 1
    assert rules[0].domain == "acme.example.com"
    assert rules[0].phrases == ("your plan",)
    assert rules[0].cycle_mode == "force"


def test_missing_rules_file_yields_no_rules(tmp_path: Path):
    assert load_provider_rules(tmp_path / "missing.yaml") == ()


def test_bundled_rules_cover_spotify_and_talabat():
    names = {rule.name for rule in load_provider_rules()}
    assert {"spotify", "talabat"} <= names
