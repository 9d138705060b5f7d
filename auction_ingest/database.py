from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker

from auction_ingest.db_models import Base


SQLITE_BUSY_TIMEOUT_SECONDS = 30


def build_engine(database_url: str) -> Engine:
    if database_url.startswith("sqlite"):
        # Audit events and result rows are written from separate sessions.
        return create_engine(
            database_url,
            future=True,
            connect_args={"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT_SECONDS},
        )
    return create_engine(database_url, future=True, pool_pre_ping=True)


def build_session_factory(database_url: str) -> sessionmaker[Session]:
    engine = build_engine(database_url)
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
