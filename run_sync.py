#!/usr/bin/env python3
"""
Email Sync Service - continuous multi-account ingestion

Connects every configured IMAP account, backfills recent mail, then follows
each inbox in real time (IDLE, or polling where IDLE is unavailable).
New emails are deduplicated, categorized by the configured LLM, stored, and
Interested ones are pushed to Slack / the external webhook.

Usage:
    # Run continuously (Ctrl+C to stop)
    python3 run_sync.py

    # Backfill only the last 7 days, then exit
    python3 run_sync.py --backfill-days 7 --once

    # Verbose logging, poll every 60s on servers without IDLE
    python3 run_sync.py --log-level DEBUG --poll-interval 60

Configuration comes from environment variables / .env
(IMAP_USERNAME, IMAP_PASSWORD, IMAP_ACCOUNTS, LLM_PROVIDER, DATABASE_URL, ...).
"""

import argparse
import asyncio
import logging
import signal
import sys

from dotenv import load_dotenv

# Load environment variables FIRST (before settings are built)
load_dotenv()

from onebox.core.ai.classifier import EmailClassifier, LLMClassificationBackend
from onebox.core.ai.providers import create_provider
from onebox.core.config import Settings, load_settings
from onebox.core.database import Database, SQLEmailStore
from onebox.core.exceptions import OneboxError, SinkError, StartupError
from onebox.core.notifications import NotificationService
from onebox.core.replies import KnowledgeBase, ReplySuggester
from onebox.core.sync import SyncOrchestrator

logger = logging.getLogger("run_sync")


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(level=settings.log_level.upper(), format=settings.log_format)

    # Suppress verbose HTTP/IMAP logging (only show warnings)
    for name in ("httpx", "httpcore", "openai", "anthropic", "imapclient"):
        logging.getLogger(name).setLevel(logging.WARNING)


def build_orchestrator(settings: Settings) -> SyncOrchestrator:
    """Wire store, provider, classifier, notifier and reply suggester"""
    try:
        provider = create_provider(settings)
        logger.info(f"Using LLM provider {provider.name} ({provider.model})")
    except ValueError as e:
        logger.warning(f"LLM provider unavailable, emails will stay Uncategorized: {e}")
        provider = None

    classifier = EmailClassifier(
        LLMClassificationBackend(provider),
        group_size=settings.classifier_group_size,
        group_pause=settings.classifier_group_pause_seconds,
        body_chars=settings.classifier_body_chars,
    )
    notifier = NotificationService(
        slack_webhook_url=settings.slack_webhook_url,
        external_webhook_url=settings.external_webhook_url,
        timeout=settings.notification_timeout_seconds,
    )
    knowledge_base = KnowledgeBase(
        product_name=settings.product_name,
        outreach_agenda=settings.outreach_agenda,
        meeting_link=settings.meeting_link,
    )
    store = SQLEmailStore(Database(settings.database_url, echo=settings.database_echo))

    return SyncOrchestrator(
        settings,
        store=store,
        classifier=classifier,
        notifier=notifier,
        reply_suggester=ReplySuggester(knowledge_base, provider),
    )


async def run(settings: Settings, once: bool) -> int:
    if not settings.accounts:
        logger.error("No IMAP accounts configured (set IMAP_USERNAME/IMAP_PASSWORD or IMAP_ACCOUNTS)")
        return 1

    orchestrator = build_orchestrator(settings)

    try:
        await orchestrator.initialize()
    except SinkError as e:
        logger.error(f"Cannot initialize email store: {e}")
        return 1

    exit_code = 0
    try:
        await orchestrator.start_sync(live=not once)
    except StartupError as e:
        logger.error(str(e))
        exit_code = 2
        if len(e.failures) == len(orchestrator.monitors):
            await orchestrator.stop()
            return exit_code

    if not once:
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_event.set)
            except NotImplementedError:
                # Windows: rely on KeyboardInterrupt
                pass

        logger.info("Sync running. Press Ctrl+C to stop.")
        await stop_event.wait()

    health = await orchestrator.get_health()
    for account in health["accounts"]:
        logger.info(f"{account['account']}: {account['state']}")
    await orchestrator.stop()
    return exit_code


def main() -> int:
    parser = argparse.ArgumentParser(
        description='Synchronize IMAP accounts, categorize and store new emails'
    )
    parser.add_argument('--backfill-days', type=int, default=None,
                        help='Initial backfill window in days (default: 30)')
    parser.add_argument('--poll-interval', type=float, default=None,
                        help='Polling interval in seconds for servers without IDLE (default: 30)')
    parser.add_argument('--log-level', type=str, default=None,
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                        help='Logging level (default: from LOG_LEVEL or INFO)')
    parser.add_argument('--once', action='store_true',
                        help='Run the backfill for every account and exit (no live mode); '
                             'exits 2 if an account could not be backfilled')
    args = parser.parse_args()

    overrides = {}
    if args.backfill_days is not None:
        overrides['backfill_days'] = args.backfill_days
    if args.poll_interval is not None:
        overrides['poll_interval_seconds'] = args.poll_interval
    if args.log_level:
        overrides['log_level'] = args.log_level

    settings = load_settings(**overrides)
    configure_logging(settings)

    try:
        return asyncio.run(run(settings, once=args.once))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 130
    except OneboxError as e:
        logger.error(f"Fatal: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
