# scripts/sweep_subscriptions.py
import asyncio
from dotenv import load_dotenv

load_dotenv()  # make sure DATABASE_URL / POSTGRES_* etc. are in the environment

from paycore.common.logger import configure_logging
configure_logging()

from paycore.common.messaging import build_event_sink
from paycore.data.dbinit import SessionLocal
from paycore.gateway.manager import PaymentGatewayManager
from paycore.service.subscription import SubscriptionService


async def sweep():
    """Run by the external scheduler: expire lapsed subscriptions, open grace periods."""
    async with SessionLocal() as db:
        service = SubscriptionService(db, PaymentGatewayManager(), build_event_sink())
        counts = await service.sweep()
    print(f"Expired: {counts['expired']}, entered grace: {counts['grace']}")


if __name__ == "__main__":
    asyncio.run(sweep())
