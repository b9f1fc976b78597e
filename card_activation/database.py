from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from card_activation.config import settings


def _build_database_url(raw_url: str) -> str:
    if raw_url.startswith("postgresql://"):
        return raw_url.replace("postgresql://", "postgresql+psycopg://", 1)
    return raw_url


def _create_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        # Sync endpoints run in a threadpool, so connections cross threads.
        return create_engine(
            url,
            pool_pre_ping=True,
            connect_args={"check_same_thread": False, "timeout": 30},
        )
    return create_engine(url, pool_pre_ping=True)


DATABASE_URL = _build_database_url(settings.database_url)
engine = _create_engine(DATABASE_URL)
SessionLocal = sessionmaker(
    bind=engine, autoflush=False, autocommit=False, expire_on_commit=False
)
Base = declarative_base()


def configure_database(raw_url: str) -> Engine:
    """Point the module-level engine and session factory at another database."""
    global DATABASE_URL, engine
    engine.dispose()
    DATABASE_URL = _build_database_url(raw_url)
    engine = _create_engine(DATABASE_URL)
    SessionLocal.configure(bind=engine)
    return engine


def init_db() -> None:
    if not DATABASE_URL:
        raise RuntimeError("DATABASE_URL is not configured")
    from card_activation.models import attempt as _attempt  # noqa: F401
    from card_activation.models import card as _card  # noqa: F401
    from card_activation.models import otp as _otp  # noqa: F401

    Base.metadata.create_all(bind=engine)


@contextmanager
def session_scope():
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
