"""
Synchronization Orchestrator

Wires one IMAP connection manager and one worker per account. Each worker
drains its account's channel and runs every batch through
parse -> dedup -> classify -> persist -> notify, strictly in that order.
Accounts are fully independent of each other.

Also exposes the read path (search, lookup, on-demand re-classification,
reply suggestions) to interactive callers.
"""
import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Sequence

from onebox.core.ai.classifier import EmailClassifier
from onebox.core.config import AccountConnectionConfig, Settings
from onebox.core.database.store import SQLEmailStore
from onebox.core.email.deduplicator import Deduplicator
from onebox.core.email.imap_monitor import IMAPMonitor
from onebox.core.email.models import (
    BatchResult, Email, EmailCategory, EmailSearchFilters, Pagination, RawMessage,
    SearchResult, SuggestedReply, SyncBatch,
)
from onebox.core.email.processor import EmailProcessor
from onebox.core.exceptions import (
    EmailNotFoundError, MailboxError, MailConnectionError, OneboxError, SinkError, StartupError
)
from onebox.core.notifications.service import NotificationService
from onebox.core.replies.knowledge import KnowledgeEntry
from onebox.core.replies.suggester import ReplySuggester

logger = logging.getLogger(__name__)

MonitorFactory = Callable[[AccountConnectionConfig, "asyncio.Queue[SyncBatch]"], IMAPMonitor]


class SyncOrchestrator:
    """Coordinates connection managers, deduplication, classification, storage and notifications"""

    def __init__(self,
                 settings: Settings,
                 store: SQLEmailStore,
                 classifier: EmailClassifier,
                 notifier: NotificationService,
                 reply_suggester: Optional[ReplySuggester] = None,
                 processor: Optional[EmailProcessor] = None,
                 monitor_factory: Optional[MonitorFactory] = None,
                 accounts: Optional[Sequence[AccountConnectionConfig]] = None):
        """
        Args:
            settings: Process settings
            store: Persistence/search sink
            classifier: Email classifier
            notifier: Notification sink for Interested emails
            reply_suggester: Optional reply-suggestion collaborator
            processor: Message parser (default EmailProcessor)
            monitor_factory: Builds a connection manager for an account and its channel
            accounts: Accounts to synchronize (default settings.accounts)
        """
        self.settings = settings
        self.store = store
        self.classifier = classifier
        self.notifier = notifier
        self.reply_suggester = reply_suggester
        self.processor = processor or EmailProcessor()
        self.deduplicator = Deduplicator(store)
        self.monitor_factory = monitor_factory or self._build_monitor
        self.account_configs = list(accounts) if accounts is not None else settings.accounts

        self.monitors: Dict[str, IMAPMonitor] = {}
        self.channels: Dict[str, "asyncio.Queue[SyncBatch]"] = {}
        self.workers: Dict[str, asyncio.Task] = {}
        self.last_results: Dict[str, BatchResult] = {}
        self._replies_ready = False
        self._initialized = False

    def _build_monitor(self, config: AccountConnectionConfig, channel: "asyncio.Queue[SyncBatch]") -> IMAPMonitor:
        s = self.settings
        return IMAPMonitor(
            config,
            channel,
            timeout=s.imap_timeout,
            poll_interval=s.poll_interval_seconds,
            reconnect_delay=s.reconnect_delay_seconds,
            idle_renew=s.idle_renew_seconds,
            live_lookback_days=s.live_lookback_days,
            fetch_chunk_size=s.fetch_chunk_size,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """
        Initialize the store, the reply collaborator and one connection
        manager per account.

        Raises:
            SinkError: Store initialization failed
        """
        await self.store.initialize()
        logger.info("Email store initialized")

        if self.reply_suggester is not None:
            try:
                self.reply_suggester.initialize()
                self._replies_ready = True
            except Exception as e:
                logger.warning(f"Reply suggester initialization failed, continuing without it: {e}")

        for config in self.account_configs:
            channel: "asyncio.Queue[SyncBatch]" = asyncio.Queue()
            self.channels[config.address] = channel
            self.monitors[config.address] = self.monitor_factory(config, channel)

        self._initialized = True
        logger.info(f"Initialized {len(self.monitors)} IMAP connection(s)")

    async def start_sync(self, live: bool = True) -> None:
        """
        Start one worker per account, then start every account concurrently
        (connect, backfill, live mode).

        In live mode connection failures are retried in the background; with
        live=False they are reported, since nothing would backfill the account
        later. Accounts whose folder cannot be opened are stopped and reported
        together.

        Raises:
            StartupError: One or more accounts failed to start
        """
        if not self._initialized:
            raise OneboxError("Orchestrator not initialized. Call initialize() first.")

        for account, channel in self.channels.items():
            if account not in self.workers or self.workers[account].done():
                self.workers[account] = asyncio.create_task(
                    self._worker(account, channel), name=f"worker:{account}"
                )

        accounts = list(self.monitors)
        results = await asyncio.gather(
            *(self.monitors[account].start(backfill_days=self.settings.backfill_days, live=live)
              for account in accounts),
            return_exceptions=True,
        )

        failures: Dict[str, Exception] = {}
        for account, result in zip(accounts, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.error(f"Failed to start sync for {account}: {result}")
                failures[account] = result
                if isinstance(result, MailboxError):
                    await self.monitors[account].disconnect()
            elif result is False and not live:
                failures[account] = MailConnectionError(
                    f"Initial connection to {account} failed, nothing backfilled"
                )
                logger.error(f"Failed to start sync for {account}: {failures[account]}")
                await self.monitors[account].disconnect()

        started = len(accounts) - len(failures)
        logger.info(f"Email synchronization started for {started}/{len(accounts)} account(s)")
        if failures:
            raise StartupError(failures)

    async def stop(self) -> None:
        """
        Disconnect every account, let batches already handed over finish
        (bounded by shutdown_grace_seconds), then stop the workers.
        """
        logger.info("Stopping email orchestrator...")

        results = await asyncio.gather(
            *(monitor.disconnect() for monitor in self.monitors.values()),
            return_exceptions=True,
        )
        for account, result in zip(self.monitors, results):
            if isinstance(result, Exception):
                logger.error(f"Error disconnecting {account}: {result}")

        pending = [channel.join() for channel in self.channels.values()]
        if pending:
            try:
                await asyncio.wait_for(asyncio.gather(*pending), timeout=self.settings.shutdown_grace_seconds)
            except asyncio.TimeoutError:
                logger.warning("Timed out waiting for in-flight batches")

        for task in self.workers.values():
            task.cancel()
        await asyncio.gather(*self.workers.values(), return_exceptions=True)
        self.workers.clear()

        await self.store.close()
        logger.info("Email orchestrator stopped")

    async def _worker(self, account: str, channel: "asyncio.Queue[SyncBatch]") -> None:
        """Drain one account's channel; a failed batch is logged and dropped"""
        while True:
            batch = await channel.get()
            try:
                result = await self.process_batch(account, batch.messages)
                self.last_results[account] = result
            except SinkError as e:
                logger.error(f"Store error, batch of {len(batch.messages)} for {account} aborted: {e}")
            except Exception as e:
                logger.error(f"Error processing {batch.kind.value} batch for {account}: {e}", exc_info=True)
            finally:
                batch.mark_processed()
                channel.task_done()

    # ------------------------------------------------------------------
    # Batch pipeline
    # ------------------------------------------------------------------

    async def process_batch(self, account: str, raw_messages: Sequence[RawMessage]) -> BatchResult:
        """
        Run one batch through parse -> dedup -> classify -> persist -> notify.

        Raises:
            SinkError: Existence check or bulk upsert failed; nothing is notified
        """
        result = BatchResult(account=account, fetched=len(raw_messages))
        logger.info(f"Processing {len(raw_messages)} emails for {account}...")

        emails = self.processor.parse_batch(raw_messages)
        result.parsed = len(emails)

        new_emails = await self.deduplicator.filter_new(emails)
        result.new = len(new_emails)
        if not new_emails:
            logger.info(f"No new emails to process for {account}")
            return result

        logger.info(f"Found {len(new_emails)} new emails for {account}")

        categories = await self.classifier.classify_batch(new_emails)
        for email in new_emails:
            email.category = categories.get(email.id, EmailCategory.UNCATEGORIZED)

        result.stored = await self.store.upsert_bulk(new_emails)

        interested = [email for email in new_emails if email.category == EmailCategory.INTERESTED]
        for email in interested:
            await self._notify(email)
        result.interested = len(interested)

        logger.info(f"Processed {len(new_emails)} emails for {account}, {len(interested)} interested")
        return result

    async def _notify(self, email: Email) -> None:
        try:
            await self.notifier.notify(email)
        except Exception as e:
            logger.error(f"Notification failed for email {email.id}: {e}")

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    async def search_emails(self, filters: Optional[EmailSearchFilters] = None,
                            pagination: Optional[Pagination] = None) -> SearchResult:
        return await self.store.query(filters, pagination)

    async def get_email_by_id(self, email_id: str) -> Email:
        """
        Raises:
            EmailNotFoundError: Unknown id
            SinkError: Store failure
        """
        email = await self.store.get_by_id(email_id)
        if email is None:
            raise EmailNotFoundError(f"Email {email_id} not found")
        return email

    async def categorize_email(self, email_id: str) -> EmailCategory:
        """
        Re-classify one stored email and persist the result.

        Notifies when the new category is Interested.
        """
        email = await self.get_email_by_id(email_id)
        category = await self.classifier.classify(email)
        await self.store.update_fields(email_id, {"category": category})
        logger.info(f"Re-categorized {email_id} as {category.value}")

        if category == EmailCategory.INTERESTED:
            email.category = category
            await self._notify(email)
        return category

    def _require_replies(self) -> ReplySuggester:
        if self.reply_suggester is None or not self._replies_ready:
            raise OneboxError("Reply suggestions are not available")
        return self.reply_suggester

    async def suggest_reply(self, email_id: str) -> SuggestedReply:
        suggester = self._require_replies()
        email = await self.get_email_by_id(email_id)
        return await suggester.suggest_reply(email)

    def add_knowledge(self, text: str, metadata: Optional[Dict[str, str]] = None) -> KnowledgeEntry:
        return self._require_replies().knowledge_base.add(text, metadata)

    def get_knowledge_base(self) -> List[KnowledgeEntry]:
        return self._require_replies().knowledge_base.entries()

    async def get_health(self) -> Dict[str, Any]:
        return {
            "store": await self.store.health(),
            "accounts": [monitor.status() for monitor in self.monitors.values()],
        }
