import os
import sys

from dotenv import load_dotenv
from sqlalchemy import inspect

# Add project root to path so we can import src
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from src.expedition.config import EngineSettings
from src.expedition.database import Database
from src.expedition.models import Base

# Force reload of .env
load_dotenv(override=True)


def init_db():
    settings = EngineSettings.from_env()
    print(f"🔄 Connecting to: {settings.database_url.split('@')[-1]}")  # Print only host for privacy

    try:
        database = Database(settings.database_url)
        database.init_db()
        tables = set(inspect(database.engine).get_table_names())
    except Exception as e:
        print(f"\n❌ INIT FAILED: {str(e)}")
        sys.exit(1)

    expected = set(Base.metadata.tables)
    missing = expected - tables
    if missing:
        print(f"❌ Missing tables: {', '.join(sorted(missing))}")
        sys.exit(1)
    print(f"✅ Schema ready. {len(expected)} expedition tables present.")


if __name__ == "__main__":
    init_db()
