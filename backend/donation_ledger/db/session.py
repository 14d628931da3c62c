"""Database session management"""
from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from donation_ledger.models.base import Base
from donation_ledger.core.config import settings


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True, "pool_recycle": 3600}


def enable_sqlite_savepoints(sqlite_engine: Engine) -> None:
    """Let SQLAlchemy emit BEGIN itself so SAVEPOINTs nest inside the unit of work.

    pysqlite otherwise delays BEGIN until the first DML statement, and releasing
    a SAVEPOINT opened before it commits the whole transaction.
    """
    @event.listens_for(sqlite_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(sqlite_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


# Create engine
engine = create_engine(settings.DATABASE_URL, **_engine_kwargs(settings.DATABASE_URL))
if settings.DATABASE_URL.startswith("sqlite"):
    enable_sqlite_savepoints(engine)

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """Dependency for FastAPI endpoints"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Initialize database (create all tables)"""
    # Importing the package registers every model with Base.metadata
    import donation_ledger.models  # noqa: F401
    Base.metadata.create_all(bind=engine)


@contextmanager
def unit_of_work(db: Session):
    """One atomic transaction per event: commit on success, roll back everything otherwise"""
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
