"""
SQLAlchemy Database Models

One row per (message_id, account). Timestamps are stored as UTC.
"""
from sqlalchemy import Boolean, Column, DateTime, Index, JSON, String, Text, UniqueConstraint
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class EmailRecord(Base):
    """Stored email. Only category, is_read and updated_at change after insert."""
    __tablename__ = "emails"

    id = Column(String(36), primary_key=True)
    message_id = Column(String(500), nullable=False)  # RFC822 Message-ID
    account = Column(String(320), nullable=False, index=True)
    folder = Column(String(200), nullable=False, default="INBOX", index=True)

    from_address = Column(String(500), nullable=False, default="", index=True)
    from_name = Column(String(500))
    to_addresses = Column(JSON, nullable=False, default=list)  # [{"address", "name"}]
    subject = Column(Text, nullable=False)
    date = Column(DateTime(timezone=True), nullable=False, index=True)

    body = Column(Text, nullable=False, default="")
    body_html = Column(Text)

    category = Column(String(32), nullable=False, default="Uncategorized", index=True)
    is_read = Column(Boolean, nullable=False, default=False)
    attachment_info = Column(JSON, nullable=False, default=list)  # metadata only

    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint('message_id', 'account', name='uq_emails_message_account'),
        Index('idx_emails_account_date', 'account', 'date'),
    )

    def __repr__(self):
        return f"<EmailRecord(id={self.id}, account={self.account}, subject={self.subject[:30]!r})>"
