"""
Shared fixtures: raw messages, canonical emails, settings, a SQLite-backed
store and a mocked IMAP client.
"""
import pytest
from unittest.mock import AsyncMock, MagicMock, Mock
from datetime import datetime, timezone
import uuid

from onebox.core.ai.classifier import EmailClassifier
from onebox.core.config import AccountConnectionConfig, load_settings
from onebox.core.database import Database, SQLEmailStore
from onebox.core.email.models import Email, EmailAddress, RawMessage


@pytest.fixture
def raw_email_simple():
    """Simple raw email for testing"""
    return b"""From: Jane Lead <jane@prospect.com>
To: sales@example.com
Subject: Test Email
Date: Mon, 1 Jan 2024 12:00:00 +0000
Message-ID: <test@example.com>

This is a test email body.
"""


@pytest.fixture
def raw_email_html():
    """HTML-only email"""
    return b"""From: sender@example.com
To: sales@example.com
Subject: HTML Test Email
Date: Mon, 1 Jan 2024 12:00:00 +0000
Message-ID: <test-html@example.com>
Content-Type: text/html; charset="utf-8"

<html>
<head><style>p { color: red; }</style></head>
<body>
<h1>Test Header</h1>
<p>This is <strong>bold text</strong> and <em>italic text</em>.</p>
<script>alert('x')</script>
</body>
</html>
"""


@pytest.fixture
def make_raw():
    """Build a RawMessage with the given headers and body"""
    def _make(message_id="<m1@example.com>", subject="Hello", body="Body text",
              sender="Lead <lead@prospect.com>", account="sales@example.com",
              date="Mon, 1 Jan 2024 12:00:00 +0000", uid="1"):
        headers = [f"From: {sender}", "To: sales@example.com", f"Subject: {subject}", f"Date: {date}"]
        if message_id:
            headers.append(f"Message-ID: {message_id}")
        data = ("\r\n".join(headers) + "\r\n\r\n" + body + "\r\n").encode("utf-8")
        return RawMessage(account=account, folder="INBOX", uid=uid, data=data)
    return _make


@pytest.fixture
def make_email():
    """Build a canonical Email"""
    def _make(message_id=None, account="sales@example.com", subject="Hello",
              body="Body text", date=None, **kwargs):
        return Email(
            message_id=message_id or f"<{uuid.uuid4().hex}@example.com>",
            account=account,
            sender=kwargs.pop("sender", EmailAddress(address="lead@prospect.com", name="Lead")),
            subject=subject,
            body=body,
            date=date or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc),
            **kwargs,
        )
    return _make


@pytest.fixture
def account_config():
    return AccountConnectionConfig(
        address="sales@example.com",
        password="app-password",
        host="imap.test.com",
    )


@pytest.fixture
def settings(tmp_path):
    """Settings isolated from the developer's .env"""
    return load_settings(
        _env_file=None,
        imap_username="sales@example.com",
        imap_password="app-password",
        imap_accounts_json=None,
        database_url=f"sqlite:///{tmp_path / 'onebox.db'}",
        classifier_group_pause_seconds=0.0,
        shutdown_grace_seconds=1.0,
        slack_webhook_url=None,
        external_webhook_url=None,
    )


@pytest.fixture
def store(tmp_path):
    """SQLEmailStore on a fresh SQLite file (schema created)"""
    database = Database(f"sqlite:///{tmp_path / 'store.db'}")
    database.init()
    yield SQLEmailStore(database)
    database.dispose()


@pytest.fixture
def keyword_backend():
    """Classification backend echoing a label chosen from the prompt text"""
    async def classify(context):
        # Only look at the email part, not the instruction listing every label
        text = context.split("Subject:", 1)[-1].lower()
        if "out of office" in text:
            return "Out of Office"
        if "interested" in text:
            return "Interested"
        return "unsure"

    backend = Mock()
    backend.classify = AsyncMock(side_effect=classify)
    return backend


@pytest.fixture
def classifier(keyword_backend):
    return EmailClassifier(keyword_backend, group_pause=0.0)


@pytest.fixture
def notifier():
    notifier = Mock()
    notifier.notify = AsyncMock(return_value=None)
    return notifier


@pytest.fixture
def mock_imap_client():
    """Mock imapclient.IMAPClient instance"""
    mock = MagicMock()
    mock.login = Mock(return_value=b'LOGIN completed')
    mock.folder_exists = Mock(return_value=True)
    mock.select_folder = Mock(return_value={b'EXISTS': 3})
    mock.has_capability = Mock(return_value=False)
    mock.search = Mock(return_value=[1, 2, 3])
    mock.fetch = Mock(side_effect=lambda uids, parts: {
        uid: {b'BODY[]': f"Message-ID: <{uid}@example.com>\r\nSubject: s\r\n\r\nbody".encode()}
        for uid in uids
    })
    mock.logout = Mock()
    mock.shutdown = Mock()
    return mock
