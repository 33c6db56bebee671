import os
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

# Get DB URL from env or fallback to local sqlite
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///poloc.db")

Base = declarative_base()


def create_db_engine(url: str = DATABASE_URL):
    if not url.startswith("sqlite"):
        return create_engine(url)
    if url in ("sqlite://", "sqlite:///:memory:"):
        # One shared connection, otherwise every session sees an empty database
        return create_engine(url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    return create_engine(url, connect_args={"check_same_thread": False})


def create_session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(engine):
    # Models register themselves on Base at import time
    from poloc.storage import models  # noqa: F401
    Base.metadata.create_all(bind=engine)
