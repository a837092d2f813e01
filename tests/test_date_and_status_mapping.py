from datetime import datetime, timezone

import pytest

from paycore.common.date_functions import as_utc, calculate_next_renewal
from paycore.common.payment_enums import (
    PaymentIntentStatus,
    PaymentRefundStatus,
    PaymentStatus,
    PaymentSubscriptionStatus,
    WebhookEventType,
)
from paycore.common.utility_functions import compute_signature, mask_token, merge_metadata, signatures_match
from paycore.service.status_mapping import (
    map_intent_status,
    map_payment_status,
    map_refund_status,
    map_subscription_status,
    map_webhook_event,
)


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


@pytest.mark.parametrize("interval,count,expected", [
    ("daily", 1, utc(2024, 1, 16)),
    ("weekly", 2, utc(2024, 1, 29)),
    ("monthly", 1, utc(2024, 2, 15)),
    ("quarterly", 1, utc(2024, 4, 15)),
    ("yearly", 1, utc(2025, 1, 15)),
    ("annually", 1, utc(2025, 1, 15)),
])
def test_calculate_next_renewal(interval, count, expected):
    assert calculate_next_renewal(utc(2024, 1, 15), interval, count) == expected


def test_monthly_renewal_clamps_to_month_end():
    assert calculate_next_renewal(utc(2024, 1, 31), "monthly", 1) == utc(2024, 2, 29)


def test_unknown_interval_falls_back_to_monthly():
    assert calculate_next_renewal(utc(2024, 3, 10), "fortnightly", 1) == utc(2024, 4, 10)
    assert calculate_next_renewal(utc(2024, 3, 10), None, 2) == utc(2024, 5, 10)


def test_as_utc_treats_naive_as_utc():
    assert as_utc(datetime(2024, 1, 1, 12)) == utc(2024, 1, 1, 12)
    assert as_utc(None) is None


def test_vendor_statuses_map_to_internal_states():
    assert map_payment_status("paid") == PaymentStatus.CAPTURED
    assert map_payment_status("SUCCEEDED") == PaymentStatus.CAPTURED
    assert map_payment_status("canceled") == PaymentStatus.CANCELLED
    assert map_intent_status("requires_payment_method") == PaymentIntentStatus.REQUIRES_METHOD
    assert map_intent_status("paid") == PaymentIntentStatus.SUCCEEDED
    assert map_refund_status("completed") == PaymentRefundStatus.SUCCEEDED
    assert map_subscription_status("canceled") == PaymentSubscriptionStatus.CANCELLED


def test_unmapped_status_falls_back_to_pending():
    assert map_payment_status("on_hold") == PaymentStatus.PENDING
    assert map_intent_status(None) == PaymentIntentStatus.PENDING
    assert map_refund_status("weird") == PaymentRefundStatus.PENDING
    assert map_subscription_status("") == PaymentSubscriptionStatus.PENDING


def test_webhook_event_mapping():
    assert map_webhook_event("transaction.succeeded") == WebhookEventType.PAYMENT_SUCCEEDED
    assert map_webhook_event("charge.refunded") == WebhookEventType.PAYMENT_REFUNDED
    assert map_webhook_event("payment_intent.payment_failed") == WebhookEventType.PAYMENT_FAILED
    assert map_webhook_event("foo.bar") == WebhookEventType.UNKNOWN
    assert map_webhook_event(None) == WebhookEventType.UNKNOWN


def test_merge_metadata_is_non_destructive():
    current = {"a": 1, "b": 2}
    merged = merge_metadata(current, {"b": 3}, None, {"c": 4})
    assert merged == {"a": 1, "b": 3, "c": 4}
    assert current == {"a": 1, "b": 2}


def test_mask_token_keeps_last_four():
    assert mask_token("pm_1234567890") == "****7890"
    assert mask_token("abc") == "****"
    assert mask_token(None) == "****"


def test_signatures_match():
    payload = '{"id": "evt_1"}'
    signature = compute_signature(payload, "secret")
    assert signatures_match(payload, signature, "secret")
    assert signatures_match(payload, f"sha256={signature.upper()}", "secret")
    assert not signatures_match(payload, signature, "other")
    assert not signatures_match(payload, None, "secret")
