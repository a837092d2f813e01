"""
Vendor status vocabulary -> internal enums.

Unknown strings never raise: they land on the pending state of the target
machine and are logged as unmapped_provider_status so drift is visible.
"""
from typing import Dict, Optional, TypeVar
from enum import Enum

import structlog

from paycore.common.payment_enums import (
    PaymentIntentStatus,
    PaymentRefundStatus,
    PaymentStatus,
    PaymentSubscriptionStatus,
    WebhookEventType,
)

logger = structlog.get_logger()

E = TypeVar("E", bound=Enum)

INTENT_STATUS_MAP: Dict[str, PaymentIntentStatus] = {
    "pending": PaymentIntentStatus.PENDING,
    "requires_method": PaymentIntentStatus.REQUIRES_METHOD,
    "requires_payment_method": PaymentIntentStatus.REQUIRES_METHOD,
    "requires_confirmation": PaymentIntentStatus.REQUIRES_CONFIRMATION,
    "requires_action": PaymentIntentStatus.REQUIRES_CONFIRMATION,
    "processing": PaymentIntentStatus.PROCESSING,
    "requires_capture": PaymentIntentStatus.PROCESSING,
    "succeeded": PaymentIntentStatus.SUCCEEDED,
    "paid": PaymentIntentStatus.SUCCEEDED,
    "cancelled": PaymentIntentStatus.CANCELLED,
    "canceled": PaymentIntentStatus.CANCELLED,
    "failed": PaymentIntentStatus.FAILED,
}

PAYMENT_STATUS_MAP: Dict[str, PaymentStatus] = {
    "pending": PaymentStatus.PENDING,
    "requires_confirmation": PaymentStatus.PENDING,
    "requires_capture": PaymentStatus.PENDING,
    "processing": PaymentStatus.PENDING,
    "authorized": PaymentStatus.AUTHORIZED,
    "captured": PaymentStatus.CAPTURED,
    "paid": PaymentStatus.CAPTURED,
    "succeeded": PaymentStatus.CAPTURED,
    "settled": PaymentStatus.SETTLED,
    "failed": PaymentStatus.FAILED,
    "refunded": PaymentStatus.REFUNDED,
    "cancelled": PaymentStatus.CANCELLED,
    "canceled": PaymentStatus.CANCELLED,
}

REFUND_STATUS_MAP: Dict[str, PaymentRefundStatus] = {
    "pending": PaymentRefundStatus.PENDING,
    "processing": PaymentRefundStatus.PROCESSING,
    "succeeded": PaymentRefundStatus.SUCCEEDED,
    "completed": PaymentRefundStatus.SUCCEEDED,
    "failed": PaymentRefundStatus.FAILED,
}

SUBSCRIPTION_STATUS_MAP: Dict[str, PaymentSubscriptionStatus] = {
    "pending": PaymentSubscriptionStatus.PENDING,
    "trialing": PaymentSubscriptionStatus.TRIALING,
    "active": PaymentSubscriptionStatus.ACTIVE,
    "past_due": PaymentSubscriptionStatus.PAST_DUE,
    "grace": PaymentSubscriptionStatus.GRACE,
    "cancelled": PaymentSubscriptionStatus.CANCELLED,
    "canceled": PaymentSubscriptionStatus.CANCELLED,
    "expired": PaymentSubscriptionStatus.EXPIRED,
}

WEBHOOK_EVENT_MAP: Dict[str, WebhookEventType] = {
    "transaction.succeeded": WebhookEventType.PAYMENT_SUCCEEDED,
    "payment.succeeded": WebhookEventType.PAYMENT_SUCCEEDED,
    "charge.succeeded": WebhookEventType.PAYMENT_SUCCEEDED,
    "payment_intent.succeeded": WebhookEventType.PAYMENT_SUCCEEDED,
    "transaction.failed": WebhookEventType.PAYMENT_FAILED,
    "payment.failed": WebhookEventType.PAYMENT_FAILED,
    "charge.failed": WebhookEventType.PAYMENT_FAILED,
    "payment_intent.payment_failed": WebhookEventType.PAYMENT_FAILED,
    "transaction.refunded": WebhookEventType.PAYMENT_REFUNDED,
    "payment.refunded": WebhookEventType.PAYMENT_REFUNDED,
    "refund.succeeded": WebhookEventType.PAYMENT_REFUNDED,
    "charge.refunded": WebhookEventType.PAYMENT_REFUNDED,
    "payment_token.created": WebhookEventType.PAYMENT_TOKEN_CREATED,
    "token.created": WebhookEventType.PAYMENT_TOKEN_CREATED,
}


def _lookup(vocabulary: Dict[str, E], status: Optional[str], fallback: E, machine: str) -> E:
    key = (status or "").strip().lower()
    mapped = vocabulary.get(key)
    if mapped is None:
        logger.warning("unmapped_provider_status", machine=machine, provider_status=status, fallback=fallback.value)
        return fallback
    return mapped


def map_intent_status(status: Optional[str]) -> PaymentIntentStatus:
    return _lookup(INTENT_STATUS_MAP, status, PaymentIntentStatus.PENDING, "intent")


def map_payment_status(status: Optional[str]) -> PaymentStatus:
    return _lookup(PAYMENT_STATUS_MAP, status, PaymentStatus.PENDING, "payment")


def map_refund_status(status: Optional[str]) -> PaymentRefundStatus:
    return _lookup(REFUND_STATUS_MAP, status, PaymentRefundStatus.PENDING, "refund")


def map_subscription_status(status: Optional[str]) -> PaymentSubscriptionStatus:
    return _lookup(SUBSCRIPTION_STATUS_MAP, status, PaymentSubscriptionStatus.PENDING, "subscription")


def map_webhook_event(event: Optional[str]) -> WebhookEventType:
    # Unknown event names are a normal outcome, not vocabulary drift
    return WEBHOOK_EVENT_MAP.get((event or "").strip().lower(), WebhookEventType.UNKNOWN)
