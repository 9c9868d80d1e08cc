import asyncio
import logging
from escrow_service import database
from escrow_service.config import settings
from escrow_service.models import Account

logger = logging.getLogger("escrow.seeder")

DEMO_PAYERS = {
    "payer-A": 1_000,
    "payer-B": 500,
    "payer-C": 0, # For testing InsufficientFunds
}

async def seed_accounts():
    await database.init_db()
    async for session in database.get_session():
        # Check if accounts are already seeded
        if await session.get(Account, settings.merchant_id):
            logger.info("Accounts already seeded.")
            return

        accounts = [Account(identity=settings.merchant_id, balance=0)]
        accounts += [Account(identity=identity, balance=balance) for identity, balance in DEMO_PAYERS.items()]
        session.add_all(accounts)
        await session.commit()
        logger.info(f"Seeded merchant {settings.merchant_id} and {len(DEMO_PAYERS)} payer accounts.")

def run():
    logging.basicConfig(level=logging.INFO)
    asyncio.run(seed_accounts())

if __name__ == "__main__":
    run()
