# scripts/reprocess_webhooks.py
import argparse
import asyncio
from dotenv import load_dotenv

load_dotenv()  # make sure DATABASE_URL / POSTGRES_* etc. are in the environment

from paycore.common.logger import configure_logging
configure_logging()

from paycore.common.messaging import build_event_sink
from paycore.data.dbinit import SessionLocal
from paycore.gateway.manager import PaymentGatewayManager
from paycore.service.webhook import reprocess_failed


async def reprocess(provider=None, limit=50):
    async with SessionLocal() as db:
        counts = await reprocess_failed(
            db,
            PaymentGatewayManager(),
            build_event_sink(),
            provider=provider,
            limit=limit,
        )
    print(f"Reprocessed webhooks: {counts}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Retry failed gateway webhooks")
    parser.add_argument("--provider", default=None)
    parser.add_argument("--limit", type=int, default=50)
    args = parser.parse_args()
    asyncio.run(reprocess(args.provider, args.limit))
