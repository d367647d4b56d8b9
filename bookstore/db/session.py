from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool
from bookstore.core.config import settings
from bookstore.core.resources import LazyResource

class Base(DeclarativeBase): pass


def _create_engine():
    dsn = settings.POSTGRES_DSN
    if dsn.startswith("sqlite"):
        # one shared connection so an in-memory database survives across sessions
        return create_engine(dsn, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    return create_engine(dsn, pool_pre_ping=True)


engine = LazyResource(_create_engine, "db-engine")
session_factory = LazyResource(
    lambda: sessionmaker(bind=engine.get(), autoflush=False, autocommit=False, expire_on_commit=False),
    "db-sessionmaker",
)


def SessionLocal() -> Session:
    return session_factory.get()()
