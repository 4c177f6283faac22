"""
Per-account IMAP connection manager.

Owns one authenticated session to one mailbox and turns it into two message
sources: a bulk backfill and a live stream driven by IDLE push events (or a
polling loop when the server lacks IDLE). Fetched batches are published on the
account's channel; the orchestrator consumes them.

Blocking imapclient calls run on a single worker thread owned by the monitor,
so an account parked in IDLE holds only its own thread and never the loop's
shared executor. All session commands for an account are issued from a single
task at a time: startup, then the live loop, then (after a session loss) the
reconnect task.
"""
import asyncio
import functools
import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from imapclient import IMAPClient
from imapclient.exceptions import IMAPClientAbortError, IMAPClientError, LoginError

from onebox.core.config import AccountConnectionConfig
from onebox.core.exceptions import MailboxError, MailConnectionError, OneboxError
from .models import ConnectionState, RawMessage, SyncBatch, SyncKind

logger = logging.getLogger(__name__)

# Errors that mean the session itself is gone
SESSION_LOST_ERRORS = (IMAPClientAbortError, OSError, EOFError)

NEW_MAIL_RESPONSES = (b'EXISTS', b'RECENT')


class IMAPMonitor:
    """Connection manager for a single IMAP account"""

    def __init__(self,
                 config: AccountConnectionConfig,
                 channel: "asyncio.Queue[SyncBatch]",
                 timeout: int = 120,
                 poll_interval: float = 30.0,
                 reconnect_delay: float = 5.0,
                 idle_renew: int = 300,
                 live_lookback_days: int = 1,
                 fetch_chunk_size: int = 50):
        """
        Initialize the connection manager.

        Args:
            config: Account connection configuration
            channel: Queue the fetched batches are published on
            timeout: Network timeout in seconds
            poll_interval: Seconds between polls when IDLE is unsupported
            reconnect_delay: Fixed delay before every reconnection attempt
            idle_renew: Seconds after which IDLE is re-armed
            live_lookback_days: Window fetched on each live-mode event
            fetch_chunk_size: Messages per FETCH command
        """
        self.config = config
        self.channel = channel
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.reconnect_delay = reconnect_delay
        self.idle_renew = idle_renew
        self.live_lookback_days = live_lookback_days
        self.fetch_chunk_size = fetch_chunk_size

        self.client: Optional[IMAPClient] = None
        self.state = ConnectionState.DISCONNECTED
        self.current_folder: Optional[str] = None
        self.live_mode: Optional[str] = None  # "idle" or "poll"

        self.reconnect_attempts = 0
        self.suppressed_triggers = 0
        self.backfill_done = False
        self._backfill_days: Optional[int] = None
        self._wanted_folder: Optional[str] = None
        self._want_live = True

        self._closing = False
        self._idling = False
        self._cycle_lock = asyncio.Lock()
        self._live_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._executor: Optional[ThreadPoolExecutor] = None

    @property
    def account(self) -> str:
        return self.config.address

    def is_connected(self) -> bool:
        return self.client is not None and self.state not in (
            ConnectionState.DISCONNECTED, ConnectionState.CONNECTING, ConnectionState.RECONNECTING
        )

    def _set_state(self, state: ConnectionState) -> None:
        if state != self.state:
            logger.debug(f"{self.account}: {self.state.value} -> {state.value}")
            self.state = state

    async def _run_blocking(self, fn: Callable[..., Any], *args: Any) -> Any:
        """Run a blocking session call on this account's own worker thread"""
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"imap-{self.account}")
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, functools.partial(fn, *args))

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """
        Establish an authenticated session.

        Raises:
            MailConnectionError: On authentication or network failure
        """
        self._closing = False
        self._set_state(ConnectionState.CONNECTING)
        logger.info(f"Connecting to IMAP server {self.config.host}:{self.config.port} for {self.account}")

        try:
            self.client = await self._run_blocking(self._open_session)
        except LoginError as e:
            self._set_state(ConnectionState.DISCONNECTED)
            raise MailConnectionError(f"Login failed for {self.account}: {e}") from e
        except (IMAPClientError, OSError, EOFError) as e:
            self._set_state(ConnectionState.DISCONNECTED)
            raise MailConnectionError(f"Cannot connect {self.account} to {self.config.host}: {e}") from e

        self.reconnect_attempts = 0
        self._set_state(ConnectionState.READY)
        logger.info(f"IMAP connected for {self.account}")

    def _open_session(self) -> IMAPClient:
        client = IMAPClient(
            host=self.config.host,
            port=self.config.port,
            ssl=self.config.use_ssl,
            timeout=self.timeout
        )
        try:
            client.login(self.config.address, self.config.password)
        except Exception:
            self._close_quietly(client, logout=False)
            raise
        return client

    async def open_mailbox(self, name: str = "INBOX") -> Dict[Any, Any]:
        """
        Select a folder for subsequent fetches.

        Raises:
            MailboxError: Folder missing or selection rejected
            MailConnectionError: Session lost while selecting
        """
        client = self._require_client()
        try:
            exists = await self._run_blocking(client.folder_exists, name)
            if not exists:
                raise MailboxError(f"Folder {name!r} does not exist for {self.account}")
            info = await self._run_blocking(client.select_folder, name, True)
        except SESSION_LOST_ERRORS as e:
            raise MailConnectionError(f"Session lost selecting {name} for {self.account}: {e}") from e
        except IMAPClientError as e:
            raise MailboxError(f"Cannot select {name!r} for {self.account}: {e}") from e

        self.current_folder = name
        logger.info(f"Opened box {name} for {self.account} ({info.get(b'EXISTS', '?')} messages)")
        return info

    async def fetch_since(self, cutoff: datetime) -> List[RawMessage]:
        """
        Fetch every message in the selected folder dated on or after cutoff.

        Messages are fetched with BODY.PEEK[] so they are not marked seen.

        Raises:
            MailConnectionError: Session lost during the fetch
            MailboxError: No folder selected or the server rejected the search
        """
        client = self._require_client()
        if not self.current_folder:
            raise MailboxError(f"No folder selected for {self.account}")

        previous = self.state
        self._set_state(ConnectionState.FETCHING)
        try:
            messages = await self._run_blocking(self._fetch_since_blocking, client, cutoff)
        except SESSION_LOST_ERRORS as e:
            raise MailConnectionError(f"Session lost fetching {self.account}: {e}") from e
        except IMAPClientError as e:
            raise MailboxError(f"Fetch failed for {self.account}/{self.current_folder}: {e}") from e
        finally:
            if self.state == ConnectionState.FETCHING:
                self._set_state(previous)

        logger.info(f"Fetched {len(messages)} emails since {cutoff:%Y-%m-%d} for {self.account}")
        return messages

    def _fetch_since_blocking(self, client: IMAPClient, cutoff: datetime) -> List[RawMessage]:
        # IMAP SINCE has day granularity and ignores time zones
        since = cutoff.astimezone(timezone.utc).date() if cutoff.tzinfo else cutoff.date()
        uids = client.search(['SINCE', since])
        if not uids:
            return []

        folder = self.current_folder
        messages = []
        for start in range(0, len(uids), self.fetch_chunk_size):
            chunk = uids[start:start + self.fetch_chunk_size]
            fetch_data = client.fetch(chunk, ['BODY.PEEK[]'])
            for uid in chunk:
                data = fetch_data.get(uid)
                if not data:
                    logger.warning(f"No data returned for message {uid} in {self.account}")
                    continue
                raw = data.get(b'BODY[]', data.get(b'RFC822'))
                if raw is None:
                    continue
                messages.append(RawMessage(account=self.account, folder=folder, uid=str(uid), data=raw))
        return messages

    # ------------------------------------------------------------------
    # Startup / live mode
    # ------------------------------------------------------------------

    async def start(self, folder: Optional[str] = None, backfill_days: int = 30, live: bool = True) -> bool:
        """
        Connect, open the folder, publish the backfill batch and enter live mode.

        A connection failure is logged and handed to the reconnection loop,
        which runs the pending backfill on its first successful attempt.

        Returns:
            True if the account is live (or backfilled when live=False)

        Raises:
            MailboxError: The folder cannot be opened
        """
        folder = folder or self.config.folder
        self.current_folder = None
        self._wanted_folder = folder
        self._backfill_days = backfill_days
        self._want_live = live

        try:
            await self.connect()
        except MailConnectionError as e:
            logger.error(f"Initial connection failed for {self.account}: {e}")
            self._schedule_reconnect(e)
            return False

        try:
            await self.open_mailbox(folder)
            await self._run_backfill()
            if live:
                await self.enter_realtime_mode()
        except MailConnectionError as e:
            self._handle_session_lost(e)
            return False
        return True

    async def _run_backfill(self) -> None:
        if self.backfill_done or self._backfill_days is None:
            return

        cutoff = datetime.now(timezone.utc) - timedelta(days=self._backfill_days)
        logger.info(f"Fetching recent emails ({self._backfill_days} days) for {self.account}...")
        async with self._cycle_lock:
            messages = await self.fetch_since(cutoff)
            self.backfill_done = True
            await self._publish(messages, SyncKind.BACKFILL)

    async def enter_realtime_mode(self) -> None:
        """
        Switch to live mode: IDLE if the server supports it, polling otherwise.
        """
        client = self._require_client()
        if self._live_task and not self._live_task.done():
            return

        try:
            supports_idle = await self._run_blocking(client.has_capability, 'IDLE')
        except SESSION_LOST_ERRORS as e:
            raise MailConnectionError(f"Session lost checking capabilities for {self.account}: {e}") from e

        if supports_idle:
            self.live_mode = "idle"
            self._live_task = asyncio.create_task(self._idle_loop(), name=f"idle:{self.account}")
            logger.info(f"IDLE mode started for {self.account}")
        else:
            self.live_mode = "poll"
            self._live_task = asyncio.create_task(self._poll_loop(), name=f"poll:{self.account}")
            logger.warning(f"IDLE not available for {self.account}, polling every {self.poll_interval:.0f}s")
        self._set_state(ConnectionState.LISTENING)

    async def _idle_loop(self) -> None:
        while not self._closing:
            client = self.client
            if client is None:
                return
            try:
                has_new_mail = await self._run_blocking(self._idle_wait, client)
            except (IMAPClientError, *SESSION_LOST_ERRORS) as e:
                if not self._closing:
                    self._handle_session_lost(e)
                return

            if self._closing:
                return
            if has_new_mail:
                logger.info(f"New email(s) received in {self.account}")
                await self.trigger()
                if self.state == ConnectionState.RECONNECTING:
                    return

    def _idle_wait(self, client: IMAPClient) -> bool:
        """Block in IDLE until the server reports new mail or the renew interval passes"""
        self._idling = True
        try:
            client.idle()
            try:
                responses = client.idle_check(timeout=self.idle_renew)
            finally:
                client.idle_done()
        finally:
            self._idling = False

        return any(
            isinstance(response, tuple) and len(response) > 1 and response[1] in NEW_MAIL_RESPONSES
            for response in responses
        )

    async def _poll_loop(self) -> None:
        while not self._closing:
            await asyncio.sleep(self.poll_interval)
            if self._closing:
                return
            await self.trigger()
            if self.state == ConnectionState.RECONNECTING:
                return

    async def trigger(self) -> bool:
        """
        Run one live-mode cycle: fetch the lookback window and publish it.

        A trigger that arrives while a cycle is in flight is dropped, not queued.

        Returns:
            True if a cycle ran
        """
        if self._closing:
            return False
        if self._cycle_lock.locked():
            self.suppressed_triggers += 1
            logger.debug(f"Fetch already in flight for {self.account}, trigger suppressed")
            return False

        async with self._cycle_lock:
            cutoff = datetime.now(timezone.utc) - timedelta(days=self.live_lookback_days)
            try:
                messages = await self.fetch_since(cutoff)
            except MailConnectionError as e:
                self._handle_session_lost(e)
                return False
            except MailboxError as e:
                logger.error(f"Error fetching new emails for {self.account}: {e}")
                return False

            if messages:
                await self._publish(messages, SyncKind.LIVE)
        return True

    async def _publish(self, messages: List[RawMessage], kind: SyncKind) -> None:
        """Hand a batch to the orchestrator and wait until it has been processed"""
        if not messages or self._closing:
            return
        batch = SyncBatch(account=self.account, kind=kind, messages=messages)
        await self.channel.put(batch)
        await batch.wait_processed()

    # ------------------------------------------------------------------
    # Reconnection
    # ------------------------------------------------------------------

    def _handle_session_lost(self, error: Exception) -> None:
        """Unexpected session termination: drop the session and schedule a reconnect"""
        if self._closing:
            return
        logger.warning(f"IMAP connection ended for {self.account}: {error}")
        client, self.client = self.client, None
        if client is not None:
            self._close_quietly(client, logout=False)
        self._schedule_reconnect(error)

    def _schedule_reconnect(self, error: Optional[Exception] = None) -> None:
        """
        Schedule exactly one reconnection attempt after the fixed delay.

        A pending attempt is replaced, never stacked.
        """
        if self._closing:
            return

        current = asyncio.current_task()
        pending = self._reconnect_task
        if pending is not None and not pending.done() and pending is not current:
            pending.cancel()

        self._set_state(ConnectionState.RECONNECTING)
        self._reconnect_task = asyncio.create_task(
            self._reconnect_after_delay(), name=f"reconnect:{self.account}"
        )
        logger.info(f"Reconnect for {self.account} scheduled in {self.reconnect_delay:.0f}s")

    async def _reconnect_after_delay(self) -> None:
        await asyncio.sleep(self.reconnect_delay)
        if self._closing:
            return

        self.reconnect_attempts += 1
        logger.info(f"Attempting to reconnect {self.account} (attempt {self.reconnect_attempts})...")
        folder = self.current_folder or self._wanted_folder or self.config.folder
        attempts = self.reconnect_attempts

        try:
            await self.connect()
            await self.open_mailbox(folder)
            await self._run_backfill()
            if self._want_live:
                await self.enter_realtime_mode()
        except MailboxError as e:
            logger.error(f"Reconnected {self.account} but cannot reopen {folder}: {e}")
            self.reconnect_attempts = attempts
            self._drop_session()
            self._schedule_reconnect(e)
        except MailConnectionError as e:
            logger.error(f"Reconnection failed for {self.account}: {e}")
            self.reconnect_attempts = attempts
            self._drop_session()
            self._schedule_reconnect(e)
        else:
            logger.info(f"Reconnected {self.account} and resumed {self.live_mode or 'backfill'} mode")

    def _drop_session(self) -> None:
        client, self.client = self.client, None
        if client is not None:
            self._close_quietly(client, logout=False)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def disconnect(self) -> None:
        """
        Cancel any pending reconnect and close the session.

        No further batches are published after this returns.
        """
        self._closing = True

        if self._reconnect_task and not self._reconnect_task.done():
            self._reconnect_task.cancel()
        self._reconnect_task = None

        client, self.client = self.client, None
        if client is not None:
            # A blocked IDLE or FETCH holds the account's worker thread, so
            # the socket is shut from outside it; a quiet session gets a
            # proper LOGOUT on its own thread
            idle_running = self.live_mode == "idle" and self._live_task is not None and not self._live_task.done()
            if idle_running or self._idling or self._cycle_lock.locked():
                await asyncio.to_thread(self._close_quietly, client, False)
            else:
                await self._run_blocking(self._close_quietly, client, True)

        if self._live_task and not self._live_task.done():
            self._live_task.cancel()
            try:
                await self._live_task
            except asyncio.CancelledError:
                pass
            except OneboxError as e:
                logger.debug(f"Live loop for {self.account} ended with: {e}")
        self._live_task = None

        executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=False, cancel_futures=True)

        self.current_folder = None
        self.live_mode = None
        self._set_state(ConnectionState.DISCONNECTED)
        logger.info(f"Disconnected {self.account}")

    def _close_quietly(self, client: IMAPClient, logout: bool = True) -> None:
        try:
            if logout:
                client.logout()
            else:
                client.shutdown()
        except Exception as e:
            logger.debug(f"Error closing IMAP session for {self.account}: {e}")

    def _require_client(self) -> IMAPClient:
        if self.client is None:
            raise MailConnectionError(f"IMAP not connected for {self.account}")
        return self.client

    def status(self) -> Dict[str, Any]:
        """Connection status for health checks"""
        return {
            "account": self.account,
            "state": self.state.value,
            "connected": self.is_connected(),
            "folder": self.current_folder,
            "mode": self.live_mode,
            "reconnect_attempts": self.reconnect_attempts,
            "suppressed_triggers": self.suppressed_triggers,
        }
