# app/database.py
"""
Database connection, session management, and table creation.
Uses SQLAlchemy's asyncio extension (asyncpg in production, aiosqlite in tests).
All models are auto-imported here so create_tables() creates every table in one call.
"""

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from app.config import settings

_engine_kwargs = {
    "pool_pre_ping": True,       # Auto-reconnect if DB connection drops
    "echo": False,               # Set True to log all SQL queries (debug only)
}
if settings.DATABASE_URL.startswith("sqlite"):
    _engine_kwargs["connect_args"] = {"check_same_thread": False}
else:
    _engine_kwargs.update(pool_size=10, max_overflow=20)

engine = create_async_engine(settings.DATABASE_URL, **_engine_kwargs)

AsyncSessionLocal = async_sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

Base = declarative_base()


async def get_db():
    """FastAPI dependency: yields a DB session and closes it after request."""
    async with AsyncSessionLocal() as db:
        yield db


async def create_tables(bind=None):
    """
    Creates all DB tables on startup. Safe to call multiple times.
    Import all models here so SQLAlchemy knows about them.
    """
    from app.models.integration_credential import IntegrationCredential   # noqa
    from app.models.access_token import AccessToken                       # noqa
    from app.models.access_event import AccessEvent                       # noqa
    from app.models.attendance import AttendanceRecord                    # noqa
    from app.models.person_mapping import PersonMapping                   # noqa
    from app.models.membership import Branch, Member, Membership, AccessDoor  # noqa
    from app.models.member_access import MemberAccessOverride, MemberAccessCredential  # noqa
    from app.models.sync_log import SyncLog                               # noqa

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
