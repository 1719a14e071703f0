# scripts/setup/init_db.py
"""
Initialize database: creates all tables.
Run once before first launch, or after adding new models.
Usage: python scripts/setup/init_db.py
"""

import sys
import os
import asyncio
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", ".."))

from app.database import Base, create_tables, engine
from app.config import settings
from sqlalchemy import text
from sqlalchemy.engine import make_url


async def main():
    print("🗄️  Access Control DB Initialization")
    print("=" * 40)
    # Never print the password part of the URL
    print(f"📡 Database: {make_url(settings.DATABASE_URL).render_as_string(hide_password=True)}")

    # Test connection
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        print("✅ Database connection OK")
    except Exception as e:
        print(f"❌ Cannot connect to database: {e.__class__.__name__}")
        print("\nMake sure PostgreSQL is running:")
        print("  docker-compose up -d db")
        print("  # or: sudo systemctl start postgresql")
        sys.exit(1)

    # Create all tables
    print("\n📋 Creating tables...")
    await create_tables()
    tables = sorted(Base.metadata.tables)
    print(f"✅ All tables created ({len(tables)} total):")
    for t in tables:
        print(f"   ✓ {t}")

    await engine.dispose()
    print("\n🎉 Database ready! You can now start the backend:")
    print("   uvicorn app.main:app --host 0.0.0.0 --port 8080 --reload")


if __name__ == "__main__":
    asyncio.run(main())
