"""
Drops emails whose (message_id, account) pair is already stored.
"""
import asyncio
import logging
from typing import List, Protocol, Sequence

from .models import Email

logger = logging.getLogger(__name__)


class ExistenceIndex(Protocol):
    async def exists(self, message_id: str, account: str) -> bool:
        ...


class Deduplicator:
    """Partitions a parsed batch into new and already-stored emails"""

    def __init__(self, store: ExistenceIndex):
        self.store = store

    async def filter_new(self, emails: Sequence[Email]) -> List[Email]:
        """
        Return the emails not yet present in the store.

        Existence checks run concurrently. Duplicate keys inside the batch
        collapse to their first occurrence. Output keeps input order.

        Raises:
            SinkError: If any existence check fails; the whole batch is aborted
        """
        unique: List[Email] = []
        seen = set()
        for email in emails:
            if email.dedup_key in seen:
                logger.debug(f"Duplicate {email.message_id} within batch for {email.account}")
                continue
            seen.add(email.dedup_key)
            unique.append(email)

        if not unique:
            return []

        # gather propagates the first SinkError
        present = await asyncio.gather(
            *(self.store.exists(email.message_id, email.account) for email in unique)
        )

        new_emails = [email for email, exists in zip(unique, present) if not exists]
        skipped = len(unique) - len(new_emails)
        if skipped:
            logger.info(f"Skipped {skipped} already stored email(s)")
        return new_emails
