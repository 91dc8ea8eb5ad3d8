from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv
import os
import logging
from pathlib import Path

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

class Database:
    client: AsyncIOMotorClient = None
    db = None

    async def connect(self):
        try:
            mongo_url = os.environ['MONGO_URL']
            self.client = AsyncIOMotorClient(mongo_url)
            self.db = self.client[os.environ['DB_NAME']]
            await self.db.command("ping")
            logger.info(f"Connected to MongoDB: {os.environ['DB_NAME']}")

            await self._create_indexes()
        except Exception as e:
            logger.error(f"Failed to connect to MongoDB: {e}")
            raise

    async def close(self):
        if self.client:
            self.client.close()
            logger.info("MongoDB connection closed")

    def get_db(self):
        return self.db

    async def _create_indexes(self):
        """Create MongoDB indexes for billing lookups and idempotency keys."""
        try:
            # Profiles - reconciliation maps Stripe customers back to accounts
            await self.db.profiles.create_index("account_id", unique=True)
            await self.db.profiles.create_index("stripe_customer_id", unique=True, sparse=True)

            # Subscriptions - upserted by Stripe subscription id, never deleted
            await self.db.subscriptions.create_index("subscription_id", unique=True)
            await self.db.subscriptions.create_index([("account_id", 1), ("status", 1)])
            await self.db.subscriptions.create_index([("status", 1), ("current_period_end", 1)])

            # Ledger - history queries and replay protection for grants
            await self.db.credit_transactions.create_index("transaction_id", unique=True)
            await self.db.credit_transactions.create_index([("account_id", 1), ("created_at", -1)])
            await self.db.credit_transactions.create_index(
                [("account_id", 1), ("type", 1), ("reference_id", 1)],
                unique=True,
                partialFilterExpression={"reference_id": {"$type": "string"}},
            )

            # Webhook idempotency
            await self.db.stripe_events.create_index("event_id", unique=True)
            await self.db.stripe_events.create_index([("status", 1), ("received_at", 1)])

            # Disputes - one row per Stripe dispute
            await self.db.dispute_events.create_index("dispute_id", unique=True)
            await self.db.dispute_events.create_index([("account_id", 1), ("status", 1)])

            # Per-subscription change leases
            await self.db.billing_locks.create_index("lock_id", unique=True)
            await self.db.billing_locks.create_index("expires_at", expireAfterSeconds=0)

            await self.db.audit_logs.create_index([("account_id", 1), ("timestamp", -1)])
            await self.db.audit_logs.create_index([("action", 1), ("timestamp", -1)])

            logger.info("Database indexes created")
        except Exception as e:
            logger.warning(f"Index creation warning (may already exist): {e}")

database = Database()

