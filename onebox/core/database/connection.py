"""
Database connection and session management.

One Database value per process, built from settings and handed to the store.
"""
from contextlib import contextmanager
from typing import Iterator, Optional
import logging
import time

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.orm import Session, sessionmaker

from .models import Base

logger = logging.getLogger(__name__)


def normalize_database_url(url: str) -> str:
    # Some hosts hand out postgres:// which SQLAlchemy no longer accepts
    if url.startswith('postgres://'):
        return url.replace('postgres://', 'postgresql://', 1)
    return url


class Database:
    """Engine plus session factory"""

    def __init__(self, url: str, echo: bool = False):
        self.url = normalize_database_url(url)
        self.echo = echo
        self.engine: Optional[Engine] = None
        self.SessionLocal: Optional[sessionmaker] = None

    @property
    def backend(self) -> str:
        return self.url.split(':', 1)[0].split('+', 1)[0]

    def init(self, max_retries: int = 3, retry_delay: float = 1.0) -> None:
        """
        Create the engine, verify connectivity and create missing tables.

        Args:
            max_retries: Number of connection attempts
            retry_delay: Seconds to wait between retries (grows linearly)

        Raises:
            RuntimeError: If connection fails after all retries
        """
        if self.engine is not None:
            return

        if self.backend == 'sqlite':
            # Store calls run in worker threads
            engine = create_engine(self.url, echo=self.echo, connect_args={'check_same_thread': False})
        else:
            engine = create_engine(
                self.url,
                echo=self.echo,
                pool_pre_ping=True,
                pool_size=10,
                max_overflow=20,
                pool_recycle=3600,
            )

        for attempt in range(max_retries):
            try:
                with engine.connect() as conn:
                    conn.execute(text("SELECT 1"))
                Base.metadata.create_all(engine)
                break
            except (OperationalError, DBAPIError) as e:
                logger.warning(f"Database connection attempt {attempt + 1}/{max_retries} failed: {e}")
                if attempt < max_retries - 1:
                    time.sleep(retry_delay * (attempt + 1))
                else:
                    engine.dispose()
                    logger.error(f"Database initialization failed after {max_retries} attempts")
                    raise RuntimeError(f"Failed to connect to database: {e}") from e

        self.engine = engine
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
        logger.info(f"Database initialized: {self.url.split('@')[1] if '@' in self.url else self.url}")

    @contextmanager
    def session(self) -> Iterator[Session]:
        """
        Transactional session: commits on success, rolls back on any error.

        Usage:
            with database.session() as db:
                EmailRepository(db).exists(message_id, account)
        """
        if self.SessionLocal is None:
            raise RuntimeError("Database not initialized. Call init() first.")

        db = self.SessionLocal()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def dispose(self) -> None:
        if self.engine is not None:
            self.engine.dispose()
            self.engine = None
            self.SessionLocal = None
