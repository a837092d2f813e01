from typing import Any, Dict, Optional


class DataLayerException(Exception):
    """Base exception for data layer errors"""
    def __init__(self, message: str, context: Dict[str, Any] = None):
        self.message = message
        self.context = context or {}
        super().__init__(self.message)


class RecordNotFoundException(DataLayerException):
    """Specific exception for when a record is not found"""
    pass


class IntegrityException(DataLayerException):
    """Unique / foreign key violations surfaced from a flush"""
    pass


class GeneralDataException(DataLayerException):
    pass


# ----------------------------------------------------------------------
# Payment domain
# ----------------------------------------------------------------------


class PaymentDomainException(Exception):
    """Base class for errors raised by the payment and subscription core."""
    def __init__(self, reason: str, **kwargs):
        self.reason = reason
        for key, value in kwargs.items():
            setattr(self, key, value)
        super().__init__(reason)


class GatewayUnavailable(PaymentDomainException):
    """The provider could not be reached (network, timeout, outage). Safe to retry."""
    def __init__(self, gateway: str, reason: str = "Payment gateway unavailable"):
        self.gateway = gateway
        super().__init__(reason, gateway=gateway)


class GatewayRejected(PaymentDomainException):
    """The provider answered but declined the request."""
    def __init__(
        self,
        gateway: str,
        reason: str = "Payment gateway rejected the request",
        raw: Optional[Dict[str, Any]] = None,
    ):
        self.gateway = gateway
        self.raw = raw or {}
        super().__init__(reason, gateway=gateway, raw=self.raw)


class CapabilityUnsupported(PaymentDomainException):
    def __init__(self, gateway: str, capability: str, reason: Optional[str] = None):
        self.gateway = gateway
        self.capability = capability
        super().__init__(
            reason or f"Gateway [{gateway}] does not support {capability}.",
            gateway=gateway,
            capability=capability,
        )


class GatewayNotConfigured(PaymentDomainException):
    def __init__(self, gateway: str, reason: Optional[str] = None):
        self.gateway = gateway
        super().__init__(reason or f"Gateway [{gateway}] is not configured.", gateway=gateway)


class OwnershipMismatch(PaymentDomainException):
    def __init__(self, user_id: int, resource: str, reason: str = "Resource does not belong to user"):
        self.user_id = user_id
        self.resource = resource
        super().__init__(reason, user_id=user_id, resource=resource)


class InvalidPaymentState(PaymentDomainException):
    pass


class InvalidWebhookSignature(PaymentDomainException):
    def __init__(self, provider: str, reason: str = "Invalid signature"):
        self.provider = provider
        super().__init__(reason, provider=provider)


class WebhookPayloadError(PaymentDomainException):
    pass
