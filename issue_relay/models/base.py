"""Database base configuration"""

from datetime import datetime, timezone

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

Base = declarative_base()


def utcnow() -> datetime:
    """UTC 'now' as tz-naive datetime (all stored timestamps are naive UTC)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def create_session_factory(database_url: str) -> sessionmaker:
    """Build an engine and a session factory for the given URL."""
    connect_args = {}
    engine_kwargs = {}
    if database_url.startswith("sqlite"):
        # Worker threads share the engine.
        connect_args["check_same_thread"] = False
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            # An in-memory database only exists on its one connection.
            engine_kwargs["poolclass"] = StaticPool

    engine = create_engine(database_url, connect_args=connect_args, **engine_kwargs)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(engine):
    """Initialize database"""
    # Ensure all models are imported so SQLAlchemy metadata is populated.
    import issue_relay.models  # noqa: F401  (import for side-effects)

    Base.metadata.create_all(bind=engine)


def create_database(database_url: str) -> sessionmaker:
    """Session factory for `database_url` with all tables created."""
    session_factory = create_session_factory(database_url)
    init_db(session_factory.kw["bind"])
    return session_factory
