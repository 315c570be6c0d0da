from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.pool import StaticPool

from ..config.config import settings

SQLALCHEMY_DATABASE_URL = settings.sqlalchemy_database_url

if SQLALCHEMY_DATABASE_URL.startswith("sqlite"):
    # in-memory sqlite must share one connection across the threadpool
    engine = create_engine(
        SQLALCHEMY_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
else:
    engine = create_engine(SQLALCHEMY_DATABASE_URL, pool_pre_ping=True)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    db = SessionLocal()  # one session per request
    try:
        yield db
    finally:
        db.close()


@contextmanager
def transactional(db: Session):
    """Commit on success, roll back on any exception.

    Services and the payment ledger only flush; whoever opens this block owns the
    transaction boundary, so Order and Payment rows are never observed half-updated.
    """
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
