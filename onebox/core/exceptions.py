"""
Error taxonomy for the ingestion engine.

Library errors (imapclient, SQLAlchemy, httpx, LLM SDKs) are translated into
these types at the component boundary that owns them.
"""
from typing import Dict


class OneboxError(Exception):
    """Base class for all onebox errors"""
    pass


class MailConnectionError(OneboxError, ConnectionError):
    """IMAP authentication, network failure or unexpected session loss"""
    pass


class MailboxError(OneboxError):
    """Mailbox folder does not exist or selection was rejected"""
    pass


class MessageParseError(OneboxError):
    """A raw message could not be parsed into an Email"""
    pass


class SinkError(OneboxError):
    """Persistence/search store failure"""
    pass


class EmailNotFoundError(SinkError):
    """No stored email with the requested id"""
    pass


class ClassificationError(OneboxError):
    """Classification backend call failed"""
    pass


class StartupError(OneboxError):
    """One or more accounts failed to start synchronization"""

    def __init__(self, failures: Dict[str, Exception]):
        self.failures = failures
        details = "; ".join(f"{account}: {error}" for account, error in failures.items())
        super().__init__(f"Failed to start {len(failures)} account(s): {details}")
