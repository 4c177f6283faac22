"""
Unit tests for the email parser.
"""
import pytest
from datetime import datetime, timedelta, timezone

from onebox.core.email.models import EmailCategory, RawMessage
from onebox.core.email.processor import EmailProcessor, NO_SUBJECT
from onebox.core.exceptions import MessageParseError


def raw(data: bytes, uid="1") -> RawMessage:
    return RawMessage(account="sales@example.com", folder="INBOX", uid=uid, data=data)


class TestEmailProcessor:
    """Test EmailProcessor parsing"""

    @pytest.fixture
    def processor(self):
        return EmailProcessor()

    def test_parse_simple_email(self, processor, raw_email_simple):
        email = processor.parse(raw(raw_email_simple))

        assert email.message_id == "<test@example.com>"
        assert email.account == "sales@example.com"
        assert email.folder == "INBOX"
        assert email.subject == "Test Email"
        assert email.sender.address == "jane@prospect.com"
        assert email.sender.name == "Jane Lead"
        assert [r.address for r in email.to] == ["sales@example.com"]
        assert "This is a test email body." in email.body
        assert email.date == datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def test_new_email_defaults(self, processor, raw_email_simple):
        email = processor.parse(raw(raw_email_simple))

        assert email.category == EmailCategory.UNCATEGORIZED
        assert email.read is False
        assert email.created_at <= email.updated_at
        assert email.id

    def test_html_only_email(self, processor, raw_email_html):
        email = processor.parse(raw(raw_email_html))

        assert "<strong>bold text</strong>" in email.body_html
        assert "Test Header" in email.body
        assert "bold text" in email.body
        assert "alert" not in email.body
        assert "color: red" not in email.body

    def test_missing_subject_placeholder(self, processor, make_raw):
        email = processor.parse(make_raw(subject=""))
        assert email.subject == NO_SUBJECT

    def test_missing_sender_name(self, processor, make_raw):
        email = processor.parse(make_raw(sender="bare@prospect.com"))

        assert email.sender.address == "bare@prospect.com"
        assert email.sender.name is None

    def test_missing_from_header(self, processor):
        email = processor.parse(raw(b"Subject: hi\r\nMessage-ID: <x@y>\r\n\r\nbody"))

        assert email.sender.address == ""
        assert email.sender.name is None

    def test_encoded_subject(self, processor):
        data = (
            b"From: a@b.com\r\n"
            b"Subject: =?utf-8?B?VGVzdCDDqW1haWw=?=\r\n"
            b"Message-ID: <enc@b.com>\r\n\r\nbody"
        )
        assert processor.parse(raw(data)).subject == "Test émail"

    def test_missing_message_id_is_deterministic(self, processor, make_raw):
        first = processor.parse(make_raw(message_id=None))
        second = processor.parse(make_raw(message_id=None, uid="99"))

        assert first.message_id.endswith("@onebox.local>")
        assert first.message_id == second.message_id
        assert first.id != second.id

    def test_missing_message_id_differs_by_content(self, processor, make_raw):
        a = processor.parse(make_raw(message_id=None, body="one"))
        b = processor.parse(make_raw(message_id=None, body="two"))

        assert a.message_id != b.message_id

    def test_synthetic_id_stable_without_date(self, processor):
        data = b"From: a@b.com\r\nSubject: undated\r\n\r\nbody"

        assert processor.parse(raw(data)).message_id == processor.parse(raw(data, uid="2")).message_id

    def test_missing_date_uses_now(self, processor):
        before = datetime.now(timezone.utc)
        email = processor.parse(raw(b"From: a@b.com\r\nSubject: x\r\n\r\nbody"))

        assert email.date >= before - timedelta(seconds=1)

    def test_future_date_falls_back_to_now(self, processor, make_raw):
        email = processor.parse(make_raw(date="Mon, 1 Jan 2103 12:00:00 +0000"))
        assert email.date < datetime.now(timezone.utc) + timedelta(minutes=1)

    def test_naive_date_is_utc(self, processor, make_raw):
        email = processor.parse(make_raw(date="Mon, 1 Jan 2024 12:00:00 -0000"))
        assert email.date.tzinfo is not None

    def test_attachment_metadata_only(self, processor):
        data = b"""From: a@b.com
Subject: Deck
Message-ID: <att@b.com>
MIME-Version: 1.0
Content-Type: multipart/mixed; boundary="XYZ"

--XYZ
Content-Type: text/plain; charset="utf-8"

See attached.
--XYZ
Content-Type: application/pdf
Content-Disposition: attachment; filename="deck.pdf"
Content-Transfer-Encoding: base64

JVBERi0xLjQK
--XYZ--
"""
        email = processor.parse(raw(data))

        assert email.body.strip() == "See attached."
        assert len(email.attachments) == 1
        attachment = email.attachments[0]
        assert attachment.filename == "deck.pdf"
        assert attachment.content_type == "application/pdf"
        assert attachment.size == 9

    def test_unparsable_message_raises(self, processor):
        with pytest.raises(MessageParseError):
            processor.parse(raw(b""))

    def test_parse_batch_skips_unparsable(self, processor, make_raw):
        batch = [make_raw(message_id="<a@x>"), raw(b"", uid="2"), make_raw(message_id="<b@x>", uid="3")]

        emails = processor.parse_batch(batch)

        assert [e.message_id for e in emails] == ["<a@x>", "<b@x>"]
