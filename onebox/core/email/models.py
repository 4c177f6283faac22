"""
Canonical email models shared by every ingestion stage.

An Email is created by the parser, gets its category from the classifier and
is persisted by the orchestrator. Only category, read and updated_at change
after it has been stored.
"""
import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EmailCategory(str, Enum):
    """Closed set of business categories"""
    INTERESTED = "Interested"
    MEETING_BOOKED = "Meeting Booked"
    NOT_INTERESTED = "Not Interested"
    SPAM = "Spam"
    OUT_OF_OFFICE = "Out of Office"
    UNCATEGORIZED = "Uncategorized"


class ConnectionState(str, Enum):
    """Per-account IMAP session state"""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    READY = "ready"
    FETCHING = "fetching"
    LISTENING = "listening"
    RECONNECTING = "reconnecting"


class EmailAddress(BaseModel):
    """Email address with optional display name"""
    address: str = Field("", description="Email address (empty if missing)")
    name: Optional[str] = Field(None, description="Display name")

    def __str__(self) -> str:
        if self.name:
            return f"{self.name} <{self.address}>"
        return self.address


class AttachmentInfo(BaseModel):
    """Attachment metadata (content is never stored)"""
    filename: str = "unknown"
    content_type: str = "application/octet-stream"
    size: int = Field(0, ge=0, description="Decoded size in bytes")


class Email(BaseModel):
    """Canonical stored email"""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()), description="Process-generated record id")
    message_id: str = Field(..., description="RFC822 Message-ID (dedup key with account)")
    account: str = Field(..., description="Owning mailbox address")
    folder: str = "INBOX"
    sender: EmailAddress = Field(default_factory=EmailAddress)
    to: List[EmailAddress] = Field(default_factory=list)
    subject: str = "(No Subject)"
    body: str = ""
    body_html: Optional[str] = None
    date: datetime = Field(default_factory=utcnow, description="Origination timestamp")
    category: EmailCategory = EmailCategory.UNCATEGORIZED
    read: bool = False
    attachments: List[AttachmentInfo] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _check_timestamps(self) -> "Email":
        if self.updated_at < self.created_at:
            raise ValueError("updated_at must not be earlier than created_at")
        return self

    @property
    def dedup_key(self) -> tuple[str, str]:
        return (self.message_id, self.account)

    class Config:
        json_schema_extra = {
            "example": {
                "message_id": "<abc@example.com>",
                "account": "sales@example.com",
                "folder": "INBOX",
                "sender": {"address": "lead@prospect.com", "name": "Lead"},
                "to": [{"address": "sales@example.com"}],
                "subject": "Re: Quick question",
                "body": "Sounds interesting, let's talk.",
                "date": "2024-01-01T12:00:00Z",
                "category": "Interested",
            }
        }


class EmailSearchFilters(BaseModel):
    """Filters for the read path"""
    account: Optional[str] = None
    folder: Optional[str] = None
    category: Optional[EmailCategory] = None
    text: Optional[str] = Field(None, description="Free text over subject, body and sender")


class Pagination(BaseModel):
    offset: int = Field(0, ge=0)
    limit: int = Field(20, ge=1, le=100)


class SearchResult(BaseModel):
    emails: List[Email]
    total: int


class SuggestedReply(BaseModel):
    """Reply suggestion produced by the reply collaborator"""
    email_id: str
    suggestion: str
    confidence: float = Field(..., ge=0, le=1)
    context: List[str] = Field(default_factory=list)


@dataclass(frozen=True)
class RawMessage:
    """Opaque RFC822 bytes as fetched from one account's folder"""
    account: str
    folder: str
    uid: str
    data: bytes


class SyncKind(str, Enum):
    BACKFILL = "backfill"
    LIVE = "live"


@dataclass
class SyncBatch:
    """
    One fetch cycle's output, handed from a connection manager to the
    orchestrator over the account's channel.

    The producer awaits wait_processed() so that fetch and processing of one
    account never overlap.
    """
    account: str
    kind: SyncKind
    messages: List[RawMessage]
    _processed: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    def mark_processed(self) -> None:
        self._processed.set()

    async def wait_processed(self) -> None:
        await self._processed.wait()

    @property
    def is_processed(self) -> bool:
        return self._processed.is_set()


@dataclass
class BatchResult:
    """Counts for one processed batch"""
    account: str
    fetched: int = 0
    parsed: int = 0
    new: int = 0
    stored: int = 0
    interested: int = 0
