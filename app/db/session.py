from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.config import settings


def make_engine(database_url: str):
    connect_args = {}
    if database_url.startswith("sqlite"):
        # Request handlers and webhook deliveries share the engine across threads
        connect_args = {"check_same_thread": False, "timeout": 30}
    return create_engine(database_url, connect_args=connect_args, pool_pre_ping=True)


def make_session_factory(engine):
    # Store methods return detached snapshots, so keep attributes loaded after commit
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


def init_db(engine):
    from app.models.booking import Base

    Base.metadata.create_all(bind=engine)


engine = make_engine(settings.DATABASE_URL)
SessionLocal = make_session_factory(engine)
