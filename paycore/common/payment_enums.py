from enum import Enum


class PaymentStatus(str, Enum):
    PENDING = "pending"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    SETTLED = "settled"
    FAILED = "failed"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


class PaymentIntentStatus(str, Enum):
    PENDING = "pending"
    REQUIRES_METHOD = "requires_method"
    REQUIRES_CONFIRMATION = "requires_confirmation"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PaymentRefundStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class PaymentSubscriptionStatus(str, Enum):
    PENDING = "pending"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    GRACE = "grace"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


ENTITLED_SUBSCRIPTION_STATUSES = (
    PaymentSubscriptionStatus.ACTIVE,
    PaymentSubscriptionStatus.TRIALING,
    PaymentSubscriptionStatus.GRACE,
)


class PaymentMethodStatus(str, Enum):
    ACTIVE = "active"
    REMOVED = "removed"


class PaymentWebhookStatus(str, Enum):
    RECEIVED = "received"
    PROCESSED = "processed"
    FAILED = "failed"


class PaymentType(str, Enum):
    ONE_TIME = "one_time"
    RECURRING = "recurring"
    ADJUSTMENT = "adjustment"


class PayableKind(str, Enum):
    TIP = "tip"
    WISHLIST_PURCHASE = "wishlist_purchase"
    SUBSCRIPTION_CHARGE = "subscription_charge"
    POST_PURCHASE = "post_purchase"
    MESSAGE_UNLOCK = "message_unlock"


class PostPurchaseStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class WebhookEventType(str, Enum):
    PAYMENT_SUCCEEDED = "payment.succeeded"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_REFUNDED = "payment.refunded"
    PAYMENT_TOKEN_CREATED = "payment_token.created"
    UNKNOWN = "unknown"


class DomainEventName(str, Enum):
    PAYMENT_INITIATED = "PaymentInitiated"
    PAYMENT_CAPTURED = "PaymentCaptured"
    PAYMENT_FAILED = "PaymentFailed"
    PAYMENT_CANCELLED = "PaymentCancelled"
    PAYMENT_REFUNDED = "PaymentRefunded"
    PAYMENT_INTENT_CREATED = "PaymentIntentCreated"
    PAYMENT_INTENT_SUCCEEDED = "PaymentIntentSucceeded"
    PAYMENT_INTENT_CANCELLED = "PaymentIntentCancelled"
    SUBSCRIPTION_STARTED = "SubscriptionStarted"
    SUBSCRIPTION_RENEWED = "SubscriptionRenewed"
    SUBSCRIPTION_ENTERED_GRACE = "SubscriptionEnteredGrace"
    SUBSCRIPTION_EXPIRED = "SubscriptionExpired"
    SUBSCRIPTION_CANCELLED = "SubscriptionCancelled"
    SUBSCRIPTION_PAYMENT_FAILED = "SubscriptionPaymentFailed"
