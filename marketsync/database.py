from datetime import datetime, timezone

from sqlalchemy import DateTime, create_engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase
from sqlalchemy.types import TypeDecorator

from marketsync.config import DATABASE_URL

# Default remains the lightweight local sqlite DB; DATABASE_URL overrides.
SQLALCHEMY_DATABASE_URL = DATABASE_URL


def create_session_factory(url: str) -> sessionmaker:
    connect_args = {"check_same_thread": False, "timeout": 30} if url.startswith("sqlite") else {}
    bind = create_engine(url, connect_args=connect_args)
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=bind)


SessionLocal = create_session_factory(SQLALCHEMY_DATABASE_URL)
engine = SessionLocal.kw["bind"]


class Base(DeclarativeBase):
    pass


class UTCDateTime(TypeDecorator):
    """Stores naive UTC, always hands back aware UTC datetimes.

    SQLite drops tzinfo on the way in and out; comparing those values with
    ``utc_now()`` would otherwise raise.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, datetime) and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
