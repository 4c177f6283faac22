"""
Async persistence/search sink over SQLAlchemy.

Every operation runs in a worker thread with its own session and transaction,
so concurrent account workers never share a session. SQLAlchemy errors are
translated to SinkError here.
"""
import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, TypeVar

from sqlalchemy.exc import SQLAlchemyError

from onebox.core.email.models import Email, EmailSearchFilters, Pagination, SearchResult
from onebox.core.exceptions import SinkError
from .connection import Database
from .repository import EmailRepository, email_from_record

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SQLEmailStore:
    """Email store with existence check, upserts and filtered queries"""

    def __init__(self, database: Database):
        self.database = database

    async def initialize(self) -> None:
        """
        Connect and create the schema.

        Raises:
            SinkError: Database unreachable
        """
        try:
            await asyncio.to_thread(self.database.init)
        except (RuntimeError, SQLAlchemyError) as e:
            raise SinkError(f"Store initialization failed: {e}") from e

    async def _run(self, operation: str, fn: Callable[[EmailRepository], T]) -> T:
        def run_in_session() -> T:
            with self.database.session() as db:
                return fn(EmailRepository(db))

        try:
            return await asyncio.to_thread(run_in_session)
        except SQLAlchemyError as e:
            logger.error(f"Store {operation} failed: {e}")
            raise SinkError(f"{operation} failed: {e}") from e
        except RuntimeError as e:
            raise SinkError(f"{operation} failed: {e}") from e

    async def exists(self, message_id: str, account: str) -> bool:
        return await self._run("exists", lambda repo: repo.exists(message_id, account))

    async def upsert_one(self, email: Email) -> None:
        await self._run("upsert", lambda repo: repo.upsert(email))

    async def upsert_bulk(self, emails: List[Email]) -> int:
        """
        Store all emails in one transaction: either every email is written or none.

        Raises:
            SinkError: On any failure; nothing from the batch is persisted
        """
        if not emails:
            return 0
        stored = await self._run("bulk upsert", lambda repo: repo.upsert_bulk(emails))
        logger.info(f"Stored {stored} email(s)")
        return stored

    async def get_by_id(self, email_id: str) -> Optional[Email]:
        def get(repo: EmailRepository) -> Optional[Email]:
            record = repo.get_by_id(email_id)
            return email_from_record(record) if record is not None else None

        return await self._run("get", get)

    async def update_fields(self, email_id: str, fields: Dict[str, Any]) -> None:
        """
        Raises:
            EmailNotFoundError: Unknown id
        """
        await self._run("update", lambda repo: repo.update_fields(email_id, fields))

    async def query(self, filters: Optional[EmailSearchFilters] = None,
                    pagination: Optional[Pagination] = None) -> SearchResult:
        filters = filters or EmailSearchFilters()
        pagination = pagination or Pagination()

        def search(repo: EmailRepository) -> SearchResult:
            records, total = repo.query(filters, pagination.offset, pagination.limit)
            return SearchResult(emails=[email_from_record(r) for r in records], total=total)

        return await self._run("query", search)

    async def health(self) -> Dict[str, Any]:
        """Store health; reports failures instead of raising"""
        try:
            count = await self._run("health", lambda repo: repo.count())
        except SinkError as e:
            return {"status": "unhealthy", "backend": self.database.backend, "error": str(e)}
        return {"status": "healthy", "backend": self.database.backend, "emails": count}

    async def close(self) -> None:
        await asyncio.to_thread(self.database.dispose)
