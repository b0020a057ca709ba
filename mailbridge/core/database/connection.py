"""
Database connection and session management.

Sessions are synchronous; async callers run repository work through
asyncio.to_thread so the event loop never blocks on the database.
"""
from contextlib import contextmanager
from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.exc import OperationalError, DBAPIError
from typing import Callable, Generator, Iterator, Optional
import logging
import time

from mailbridge.core.config import get_settings

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]

engine = None
SessionLocal: Optional[sessionmaker] = None


def make_session_factory(bind) -> sessionmaker:
    """Session factory used everywhere; objects stay readable after commit."""
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=bind)


def init_db(database_url: Optional[str] = None, max_retries: int = 3, retry_delay: float = 1.0):
    """
    Initialize the database engine and session factory with retry logic.
    Call this once at application startup.

    Args:
        database_url: Override for settings.database_url
        max_retries: Number of connection attempts
        retry_delay: Seconds to wait between retries

    Raises:
        RuntimeError: If connection fails after all retries
    """
    global engine, SessionLocal

    settings = get_settings()
    url = database_url or settings.normalized_database_url

    engine_kwargs = {'pool_pre_ping': True, 'echo': False}
    if url.startswith('postgresql'):
        engine_kwargs.update(
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_recycle=3600,  # Recycle connections after 1 hour
            connect_args={'connect_timeout': 10},
        )

    for attempt in range(max_retries):
        try:
            candidate = create_engine(url, **engine_kwargs)

            # Test connection
            with candidate.connect() as conn:
                conn.execute(text("SELECT 1"))

            engine = candidate
            SessionLocal = make_session_factory(engine)
            logger.info(f"Database initialized: {url.split('@')[1] if '@' in url else 'local'}")
            return

        except (OperationalError, DBAPIError) as e:
            logger.warning(f"Database connection attempt {attempt + 1}/{max_retries} failed: {e}")
            if attempt < max_retries - 1:
                time.sleep(retry_delay * (attempt + 1))
            else:
                logger.error(f"Database initialization failed after {max_retries} attempts")
                raise RuntimeError(f"Failed to connect to database: {e}") from e


def get_session_factory() -> sessionmaker:
    """Return the configured session factory."""
    if not SessionLocal:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return SessionLocal


def get_db() -> Generator[Session, None, None]:
    """
    Get a database session (FastAPI dependency).

    Usage:
        @router.get("/health")
        def health(db: Session = Depends(get_db)): ...
    """
    db = get_session_factory()()
    try:
        yield db
    except (OperationalError, DBAPIError) as e:
        logger.error(f"Database session error: {e}")
        db.rollback()
        raise
    finally:
        db.close()


@contextmanager
def session_scope(factory: SessionFactory) -> Iterator[Session]:
    """Transactional scope: commit on success, rollback on error, always close."""
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
