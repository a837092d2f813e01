from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import structlog

from paycore.common.exception import (
    CapabilityUnsupported,
    GatewayNotConfigured,
    GatewayUnavailable,
)
from paycore.config.config import settings
from paycore.gateway.contracts import PaymentGateway, SubscriptionGateway
from paycore.gateway.fake import FakeGateway
from paycore.gateway.stripe_gateway import StripeGateway

logger = structlog.get_logger()

T = TypeVar("T")

GatewayFactory = Callable[[Dict[str, Any]], Any]

DRIVERS: Dict[str, GatewayFactory] = {
    "fake": FakeGateway,
    "stripe": StripeGateway,
}


class PaymentGatewayManager:
    """
    Resolves drivers by name from configuration and caches them.

    `extend(name, factory)` registers a custom resolver; registering
    "<name>.subscription" overrides only the subscription driver for <name>.
    """

    def __init__(
        self,
        config: Optional[Dict[str, Dict[str, Any]]] = None,
        default: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self.config = config if config is not None else settings.gateway_config()
        self.default = default or settings.PAYMENTS_DEFAULT_GATEWAY or "fake"
        self.timeout_seconds = timeout_seconds or settings.GATEWAY_TIMEOUT_SECONDS
        self._custom: Dict[str, GatewayFactory] = {}
        self._drivers: Dict[str, Any] = {}

    def get_default_driver(self) -> str:
        return self.default

    def extend(self, name: str, factory: GatewayFactory) -> "PaymentGatewayManager":
        self._custom[name] = factory
        self._drivers.pop(name, None)
        return self

    def driver(self, name: Optional[str] = None) -> PaymentGateway:
        name = name or self.get_default_driver()
        if name not in self._drivers:
            self._drivers[name] = self._resolve(name)
        gateway = self._drivers[name]
        if not isinstance(gateway, PaymentGateway):
            raise GatewayNotConfigured(name, f"Gateway [{name}] does not implement the payment contract.")
        return gateway

    def subscription_driver(self, name: Optional[str] = None) -> SubscriptionGateway:
        name = name or self.get_default_driver()
        key = f"{name}.subscription"
        if key in self._custom:
            if key not in self._drivers:
                self._drivers[key] = self._custom[key](self._options(name))
            gateway = self._drivers[key]
        else:
            gateway = self.driver(name)
        if not isinstance(gateway, SubscriptionGateway):
            raise CapabilityUnsupported(name, "subscriptions")
        return gateway

    def _options(self, name: str) -> Dict[str, Any]:
        return dict((self.config.get(name) or {}).get("options") or {})

    def _resolve(self, name: str) -> Any:
        if name in self._custom:
            return self._custom[name](self._options(name))

        entry = self.config.get(name)
        if entry is None:
            raise GatewayNotConfigured(name)

        driver = entry.get("driver", name)
        factory = DRIVERS.get(driver)
        if factory is None:
            raise GatewayNotConfigured(name, f"Gateway driver [{driver}] is not supported.")
        logger.info("Resolved payment gateway", gateway=name, driver=driver)
        return factory(self._options(name))

    async def call(self, gateway_name: str, operation: str, awaitable: Awaitable[T]) -> T:
        """
        Await one driver call with the configured deadline. A timeout is a
        retryable GatewayUnavailable like any other transport failure.
        """
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            logger.warning(
                "Gateway call timed out",
                gateway=gateway_name,
                operation=operation,
                timeout_seconds=self.timeout_seconds,
            )
            raise GatewayUnavailable(gateway_name, f"Gateway call [{operation}] timed out") from exc
