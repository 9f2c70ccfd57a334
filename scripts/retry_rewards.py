"""
Re-deliver reward grants that did not reach the ledger.

Meant for cron: exits non-zero when grants are still pending afterwards.
"""
import logging
import os
import sys

from dotenv import load_dotenv
from sqlalchemy import func, select

# Add project root to path so we can import src
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from src.expedition import EngineSettings, ExpeditionEngine, InMemoryRoster
from src.expedition.models import RewardGrant

load_dotenv(override=True)


def pending_count(engine: ExpeditionEngine) -> int:
    with engine.database.read_scope() as session:
        return session.scalar(
            select(func.count(RewardGrant.id)).where(RewardGrant.delivered_at.is_(None))
        )


def retry_rewards(limit: int = 100):
    settings = EngineSettings.from_env()
    logging.basicConfig(level=settings.log_level.upper())
    engine = ExpeditionEngine.from_settings(settings, InMemoryRoster())

    before = pending_count(engine)
    print(f"🔄 {before} reward grants pending")
    if not before:
        print("✅ Nothing to deliver.")
        return

    delivered = engine.retry_pending_rewards(limit=limit)
    after = pending_count(engine)
    print(f"✅ Delivered {delivered} grants. {after} still pending.")
    if after:
        sys.exit(1)


if __name__ == "__main__":
    retry_rewards(int(sys.argv[1]) if len(sys.argv) > 1 else 100)
