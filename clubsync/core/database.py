"""
SQLAlchemy engine and session management for the durable local cache.
"""
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from clubsync.core.logging import get_logger

logger = get_logger(__name__)

Base = declarative_base()


def _ensure_sqlite_directory(cache_url: str) -> None:
    """Create the parent directory of a file-backed SQLite database."""
    db_path = cache_url.replace("sqlite:///", "", 1)
    if not db_path or db_path == ":memory:":
        return
    if db_path.startswith("./"):
        db_path = db_path[2:]
    db_dir = Path(db_path).parent
    if db_dir and not db_dir.exists():
        db_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"Created cache directory: {db_dir}")


def create_cache_engine(cache_url: str, echo: bool = False) -> Engine:
    """Build an engine for the given cache URL."""
    connect_args = {}
    engine_kwargs = {}
    if cache_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        if cache_url in ("sqlite://", "sqlite:///:memory:"):
            # a single shared connection, otherwise every session sees an empty database
            engine_kwargs["poolclass"] = StaticPool
        else:
            _ensure_sqlite_directory(cache_url)

    engine = create_engine(
        cache_url,
        connect_args=connect_args,
        echo=echo,
        pool_pre_ping=True,
        **engine_kwargs,
    )
    logger.info("Cache engine created", extra={"extra_data": {"cache_url": cache_url}})
    return engine


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@contextmanager
def session_scope(factory: sessionmaker) -> Generator[Session, None, None]:
    """Transactional scope: commit on success, roll back on error."""
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_cache_schema(engine: Engine) -> None:
    """Create cache tables if missing."""
    from clubsync.models import cache_entry  # noqa: F401 - Import to register models

    Base.metadata.create_all(bind=engine)
    logger.info("Cache tables created")


def check_cache_connection(engine: Engine) -> bool:
    """Check if the cache database is reachable."""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Cache connection check failed: {e}")
        return False
