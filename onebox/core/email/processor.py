"""
Email parsing: raw RFC822 bytes -> canonical Email.

Handles header decoding with charset fallbacks, plain/HTML body selection and
attachment metadata. A message that cannot be parsed is skipped; it never
fails the batch it belongs to.
"""
import email
import hashlib
import logging
from datetime import datetime, timezone
from email import policy
from email.header import decode_header
from email.message import Message
from email.utils import getaddresses, parseaddr, parsedate_to_datetime
from typing import Iterable, List, Optional, Tuple

from bs4 import BeautifulSoup

from onebox.core.exceptions import MessageParseError
from .models import AttachmentInfo, Email, EmailAddress, EmailCategory, RawMessage, utcnow

logger = logging.getLogger(__name__)

NO_SUBJECT = "(No Subject)"
SYNTHETIC_ID_DOMAIN = "onebox.local"
SYNTHETIC_ID_BODY_CHARS = 1000

# Common non-standard charset labels seen in the wild
ENCODING_MAP = {
    'x-unknown': 'utf-8',
    'ansi_x3.110-1983': 'latin-1',
    'x-euc-jp': 'euc-jp',
    'x-sjis': 'shift-jis',
    'x-gb2312': 'gb2312',
    'x-big5': 'big5',
}


class EmailProcessor:
    """Parses raw messages into canonical Email records"""

    def parse(self, raw: RawMessage) -> Email:
        """
        Parse one raw message.

        Args:
            raw: Raw message fetched from an account folder

        Returns:
            Email with category Uncategorized and read=False

        Raises:
            MessageParseError: If the message is structurally unparsable
        """
        if not raw.data or not isinstance(raw.data, (bytes, bytearray)):
            raise MessageParseError(f"Message {raw.uid} in {raw.account} has no content")

        try:
            msg = email.message_from_bytes(bytes(raw.data), policy=policy.default)
            if not msg.keys():
                raise MessageParseError(f"Message {raw.uid} has no headers")

            subject = self._decode_header(msg.get('Subject', '')).strip() or NO_SUBJECT
            sender = self._extract_sender(msg.get('From', ''))
            to = self._extract_recipients(msg.get_all('To', []))
            date = self._parse_date_safe(msg.get('Date'), raw.uid)
            html_body, text_body = self._extract_body(msg, raw.uid)
            attachments = self._extract_attachments(msg)
        except MessageParseError:
            raise
        except Exception as e:
            raise MessageParseError(f"Failed to parse message {raw.uid} in {raw.account}: {e}") from e

        body = text_body if text_body is not None else self._html_to_text(html_body)

        message_id = (msg.get('Message-ID') or '').strip()
        if not message_id:
            message_id = self._synthetic_message_id(sender, subject, str(msg.get('Date') or ''), body)
            logger.debug(f"Message {raw.uid} in {raw.account} has no Message-ID, using {message_id}")

        now = utcnow()
        return Email(
            message_id=message_id,
            account=raw.account,
            folder=raw.folder,
            sender=sender,
            to=to,
            subject=subject,
            body=body or "",
            body_html=html_body,
            date=date,
            category=EmailCategory.UNCATEGORIZED,
            read=False,
            attachments=attachments,
            created_at=now,
            updated_at=now,
        )

    def parse_batch(self, raws: Iterable[RawMessage]) -> List[Email]:
        """Parse many raw messages, dropping (and logging) the unparsable ones"""
        emails = []
        for raw in raws:
            try:
                emails.append(self.parse(raw))
            except MessageParseError as e:
                logger.warning(f"Skipping message: {e}")
        return emails

    @staticmethod
    def _synthetic_message_id(sender: EmailAddress, subject: str, date_header: str, body: str) -> str:
        """Content hash standing in for a missing Message-ID; stable across restarts.

        Uses the raw Date header, since a missing date is replaced by the current time.
        """
        digest = hashlib.sha256()
        for part in (sender.address.lower(), subject, date_header.strip(), (body or "")[:SYNTHETIC_ID_BODY_CHARS]):
            digest.update(part.encode('utf-8', errors='replace'))
            digest.update(b'\x00')
        return f"<{digest.hexdigest()[:40]}@{SYNTHETIC_ID_DOMAIN}>"

    def _decode_header(self, header) -> str:
        """Decode email header (handles encoding with fallbacks for unknown charsets)"""
        if not header:
            return ""

        decoded_parts = []
        for part, encoding in decode_header(str(header)):
            if not isinstance(part, bytes):
                decoded_parts.append(part)
                continue

            encoding = ENCODING_MAP.get((encoding or 'utf-8').lower(), encoding or 'utf-8')
            # MIME types occasionally end up in the charset slot
            if encoding.lower().startswith(('text/', 'application/')):
                encoding = 'utf-8'
            try:
                decoded_parts.append(part.decode(encoding, errors='replace'))
            except LookupError:
                decoded_parts.append(part.decode('utf-8', errors='replace'))

        return ''.join(decoded_parts)

    def _extract_sender(self, header: str) -> EmailAddress:
        """
        Extract sender address and display name.

        A missing From header yields an empty address rather than an error.
        """
        if not header:
            return EmailAddress(address="", name=None)

        name, addr = parseaddr(self._decode_header(header))
        name = name.strip('"').strip("'").strip() if name else None
        return EmailAddress(address=addr or "", name=name or None)

    def _extract_recipients(self, headers: List[str]) -> List[EmailAddress]:
        recipients = []
        for header in headers:
            if not header:
                continue
            for name, addr in getaddresses([self._decode_header(header)]):
                if not addr:
                    continue
                clean_name = name.strip('"').strip("'").strip() if name else None
                recipients.append(EmailAddress(address=addr, name=clean_name or None))
        return recipients

    def _parse_date_safe(self, date_str: Optional[str], uid: str) -> datetime:
        """
        Parse email date with validation and fallbacks.
        Naive dates are taken as UTC; far-future and pre-1970 dates fall back to now.
        """
        if not date_str:
            logger.debug(f"Email {uid}: No date header, using current time")
            return utcnow()

        try:
            parsed_date = parsedate_to_datetime(str(date_str))
        except (TypeError, ValueError, IndexError) as e:
            logger.warning(f"Email {uid}: Failed to parse date '{date_str}': {e}, using current time")
            return utcnow()

        if parsed_date.tzinfo is None or parsed_date.utcoffset() is None:
            parsed_date = parsed_date.replace(tzinfo=timezone.utc)

        now = utcnow()
        if (parsed_date - now).total_seconds() > 86400:
            logger.warning(f"Email {uid}: Date {parsed_date} is in the future, using current time")
            return now
        if parsed_date.year < 1970:
            logger.warning(f"Email {uid}: Date {parsed_date} is before 1970, using current time")
            return now

        return parsed_date

    def _decode_body_safe(self, payload: bytes, charset: Optional[str], uid: str) -> str:
        """Decode body bytes with fallbacks for unknown/invalid encodings"""
        charset = (charset or 'utf-8').lower()
        charset = ENCODING_MAP.get(charset, charset)

        try:
            return payload.decode(charset, errors='replace')
        except LookupError:
            logger.debug(f"Email {uid}: Unknown charset '{charset}', falling back to utf-8")
            return payload.decode('utf-8', errors='replace')

    def _extract_body(self, msg: Message, uid: str = "unknown") -> Tuple[Optional[str], Optional[str]]:
        """
        Extract HTML and text body from email.

        Returns: (html_body, text_body)
        """
        html_body = None
        text_body = None

        parts = msg.walk() if msg.is_multipart() else [msg]
        for part in parts:
            if part.is_multipart():
                continue
            if part.get_content_disposition() == 'attachment':
                continue

            content_type = part.get_content_type()
            if content_type not in ('text/plain', 'text/html'):
                continue

            payload = part.get_payload(decode=True)
            if payload is None:
                continue
            decoded = self._decode_body_safe(payload, part.get_content_charset(), uid)

            if content_type == 'text/plain' and text_body is None:
                text_body = decoded
            elif content_type == 'text/html' and html_body is None:
                html_body = decoded

        return html_body, text_body

    def _html_to_text(self, html: Optional[str]) -> str:
        """Plain text from HTML (scripts, styles and tracking pixels removed)"""
        if not html:
            return ""

        soup = BeautifulSoup(html, 'html.parser')
        for tag in soup(["script", "style"]):
            tag.decompose()

        lines = (line.strip() for line in soup.get_text(separator='\n').splitlines())
        return '\n'.join(line for line in lines if line)

    def _extract_attachments(self, msg: Message) -> List[AttachmentInfo]:
        """Attachment metadata only; content is discarded"""
        infos = []
        for part in msg.walk():
            if part.is_multipart():
                continue

            filename = part.get_filename()
            if part.get_content_disposition() != 'attachment' and not filename:
                continue

            payload = part.get_payload(decode=True)
            infos.append(AttachmentInfo(
                filename=self._decode_header(filename) if filename else "unknown",
                content_type=part.get_content_type(),
                size=len(payload) if payload else 0,
            ))
        return infos
