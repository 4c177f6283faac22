"""
Database Repository - synchronous, session-scoped email queries.

Converts between the canonical Email model and EmailRecord rows.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
import logging

from sqlalchemy import case, func, or_, select
from sqlalchemy.orm import Session

from onebox.core.email.models import (
    AttachmentInfo, Email, EmailAddress, EmailCategory, EmailSearchFilters, utcnow
)
from onebox.core.exceptions import EmailNotFoundError
from .models import EmailRecord

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100

# Email field -> column for partial updates
UPDATABLE_FIELDS = {
    'category': 'category',
    'read': 'is_read',
    'folder': 'folder',
}


def sanitize_text(text: Optional[str], field_name: str = "text", max_length: Optional[int] = None) -> Optional[str]:
    """
    Remove NUL bytes and surrogates, which PostgreSQL text columns reject,
    and enforce column length limits.
    """
    if text is None:
        return None

    if '\x00' in text:
        logger.debug(f"Sanitized {text.count(chr(0))} NUL byte(s) from {field_name}")
        text = text.replace('\x00', '')

    try:
        text.encode('utf-8', errors='strict')
    except UnicodeEncodeError:
        text = text.encode('utf-8', errors='replace').decode('utf-8', errors='replace')
        logger.debug(f"Removed surrogate characters from {field_name}")

    if max_length and len(text) > max_length:
        logger.debug(f"Truncated {field_name} from {len(text)} to {max_length} characters")
        text = text[:max_length]

    return text


def escape_like(text: str) -> str:
    """Escape LIKE wildcards so user text matches literally (use with escape='\\')"""
    return text.replace('\\', '\\\\').replace('%', '\\%').replace('_', '\\_')


def to_utc(value: datetime) -> datetime:
    """Aware UTC datetime (SQLite hands back naive values)"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def record_from_email(email: Email) -> EmailRecord:
    return EmailRecord(
        id=email.id,
        message_id=sanitize_text(email.message_id, 'message_id', 500),
        account=email.account,
        folder=sanitize_text(email.folder, 'folder', 200),
        from_address=sanitize_text(email.sender.address, 'from_address', 500),
        from_name=sanitize_text(email.sender.name, 'from_name', 500),
        to_addresses=[addr.model_dump() for addr in email.to],
        subject=sanitize_text(email.subject, 'subject'),
        date=to_utc(email.date),
        body=sanitize_text(email.body, 'body'),
        body_html=sanitize_text(email.body_html, 'body_html'),
        category=email.category.value,
        is_read=email.read,
        attachment_info=[att.model_dump() for att in email.attachments],
        created_at=to_utc(email.created_at),
        updated_at=to_utc(email.updated_at),
    )


def email_from_record(record: EmailRecord) -> Email:
    return Email(
        id=record.id,
        message_id=record.message_id,
        account=record.account,
        folder=record.folder,
        sender=EmailAddress(address=record.from_address or "", name=record.from_name),
        to=[EmailAddress(**addr) for addr in (record.to_addresses or [])],
        subject=record.subject,
        body=record.body or "",
        body_html=record.body_html,
        date=to_utc(record.date),
        category=EmailCategory(record.category),
        read=bool(record.is_read),
        attachments=[AttachmentInfo(**att) for att in (record.attachment_info or [])],
        created_at=to_utc(record.created_at),
        updated_at=to_utc(record.updated_at),
    )


class EmailRepository:
    """
    Email persistence operations on one session.

    The caller owns the transaction (see Database.session).
    """

    def __init__(self, db: Session):
        self.db = db

    def exists(self, message_id: str, account: str) -> bool:
        stmt = select(EmailRecord.id).where(
            EmailRecord.message_id == message_id,
            EmailRecord.account == account,
        ).limit(1)
        return self.db.execute(stmt).first() is not None

    def get_by_id(self, email_id: str) -> Optional[EmailRecord]:
        return self.db.get(EmailRecord, email_id)

    def upsert(self, email: Email) -> EmailRecord:
        """Insert or replace by id"""
        record = self.db.merge(record_from_email(email))
        self.db.flush()
        return record

    def upsert_bulk(self, emails: List[Email]) -> int:
        """
        Insert or replace many emails in the caller's transaction.

        Any failure propagates; the caller's rollback leaves nothing written.
        """
        for email in emails:
            self.db.merge(record_from_email(email))
        self.db.flush()
        return len(emails)

    def update_fields(self, email_id: str, fields: Dict[str, Any]) -> EmailRecord:
        """
        Update mutable fields of one email and stamp updated_at.

        Args:
            email_id: Stored email id
            fields: Partial update keyed by Email field name (category, read, folder)

        Raises:
            EmailNotFoundError: Unknown id
            ValueError: Field is not updatable
        """
        unknown = set(fields) - set(UPDATABLE_FIELDS)
        if unknown:
            raise ValueError(f"Fields not updatable: {', '.join(sorted(unknown))}")

        record = self.get_by_id(email_id)
        if record is None:
            raise EmailNotFoundError(f"Email {email_id} not found")

        for name, value in fields.items():
            if isinstance(value, EmailCategory):
                value = value.value
            setattr(record, UPDATABLE_FIELDS[name], value)

        now = utcnow()
        created = to_utc(record.created_at)
        record.updated_at = now if now >= created else created
        self.db.flush()
        return record

    def query(self, filters: EmailSearchFilters, offset: int = 0, limit: int = 20) -> Tuple[List[EmailRecord], int]:
        """
        Filtered, paged query, newest first. With a text filter, subject
        matches rank ahead of body and sender matches.

        Returns:
            Tuple of (records for the page, total matching count)
        """
        conditions = []
        ordering = [EmailRecord.date.desc(), EmailRecord.id]
        if filters.account:
            conditions.append(EmailRecord.account == filters.account)
        if filters.folder:
            conditions.append(EmailRecord.folder == filters.folder)
        if filters.category:
            conditions.append(EmailRecord.category == filters.category.value)
        if filters.text:
            pattern = f"%{escape_like(filters.text.strip())}%"
            subject_match = EmailRecord.subject.ilike(pattern, escape='\\')
            ordering.insert(0, case((subject_match, 0), else_=1))
            conditions.append(or_(
                subject_match,
                EmailRecord.body.ilike(pattern, escape='\\'),
                EmailRecord.from_name.ilike(pattern, escape='\\'),
                EmailRecord.from_address.ilike(pattern, escape='\\'),
            ))

        total = self.db.execute(
            select(func.count()).select_from(EmailRecord).where(*conditions)
        ).scalar_one()

        limit = max(1, min(limit, MAX_PAGE_SIZE))
        stmt = (
            select(EmailRecord)
            .where(*conditions)
            .order_by(*ordering)
            .offset(max(0, offset))
            .limit(limit)
        )
        records = list(self.db.execute(stmt).scalars())
        return records, total

    def count(self) -> int:
        return self.db.execute(select(func.count()).select_from(EmailRecord)).scalar_one()
