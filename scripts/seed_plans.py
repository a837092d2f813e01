# scripts/seed_plans.py
import asyncio
import sys
from dotenv import load_dotenv

load_dotenv()  # make sure DATABASE_URL / POSTGRES_* etc. are in the environment

from paycore.data.dbinit import SessionLocal, init_db, unit_of_work
from paycore.data.subscription import create_plan


async def seed_plans(creator_id: int):
    await init_db()
    async with SessionLocal() as db:
        async with unit_of_work(db):
            await create_plan(
                db,
                creator_id=creator_id,
                name="Fan (monthly)",
                slug=f"creator-{creator_id}-fan-monthly",
                amount=999,
                currency="USD",
                interval="monthly",
                trial_days=7,
            )

            await create_plan(
                db,
                creator_id=creator_id,
                name="Fan (quarterly)",
                slug=f"creator-{creator_id}-fan-quarterly",
                amount=2499,
                currency="USD",
                interval="quarterly",
            )

            await create_plan(
                db,
                creator_id=creator_id,
                name="Superfan (yearly)",
                slug=f"creator-{creator_id}-superfan-yearly",
                amount=8999,
                currency="USD",
                interval="yearly",
            )
    print(f"Seeded plans for creator {creator_id}")


if __name__ == "__main__":
    asyncio.run(seed_plans(int(sys.argv[1]) if len(sys.argv) > 1 else 1))
