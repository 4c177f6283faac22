"""
Tests for the SQL email store on SQLite.
"""
import pytest
import pytest_asyncio
from datetime import datetime, timezone
from unittest.mock import patch

from sqlalchemy.exc import OperationalError

from onebox.core.database import Database, SQLEmailStore
from onebox.core.database.repository import escape_like, sanitize_text
from onebox.core.email.models import EmailAddress, EmailCategory, EmailSearchFilters, Pagination
from onebox.core.exceptions import EmailNotFoundError, SinkError


def day(n: int) -> datetime:
    return datetime(2024, 1, n, 12, 0, tzinfo=timezone.utc)


class TestStoreWrites:

    @pytest.mark.asyncio
    async def test_upsert_and_get(self, store, make_email):
        email = make_email(message_id="<a@x>", subject="Hello there", to=[EmailAddress(address="sales@example.com")])
        await store.upsert_one(email)

        loaded = await store.get_by_id(email.id)

        assert loaded.message_id == "<a@x>"
        assert loaded.subject == "Hello there"
        assert loaded.sender == email.sender
        assert loaded.to == email.to
        assert loaded.date == email.date
        assert loaded.date.tzinfo is not None

    @pytest.mark.asyncio
    async def test_get_unknown_id(self, store):
        assert await store.get_by_id("missing") is None

    @pytest.mark.asyncio
    async def test_exists_is_scoped_to_account(self, store, make_email):
        await store.upsert_one(make_email(message_id="<a@x>", account="sales@example.com"))

        assert await store.exists("<a@x>", "sales@example.com")
        assert not await store.exists("<a@x>", "support@example.com")
        assert not await store.exists("<b@x>", "sales@example.com")

    @pytest.mark.asyncio
    async def test_upsert_replaces_by_id(self, store, make_email):
        email = make_email(message_id="<a@x>")
        await store.upsert_one(email)
        await store.upsert_one(email.model_copy(update={"category": EmailCategory.SPAM}))

        result = await store.query()
        assert result.total == 1
        assert result.emails[0].category == EmailCategory.SPAM

    @pytest.mark.asyncio
    async def test_bulk_upsert(self, store, make_email):
        emails = [make_email() for _ in range(3)]

        assert await store.upsert_bulk(emails) == 3
        assert (await store.query()).total == 3

    @pytest.mark.asyncio
    async def test_bulk_upsert_empty(self, store):
        assert await store.upsert_bulk([]) == 0

    @pytest.mark.asyncio
    async def test_bulk_upsert_is_all_or_nothing(self, store, make_email):
        # Same (message_id, account) under two ids violates the unique constraint
        emails = [make_email(message_id="<ok@x>"), make_email(message_id="<dup@x>"), make_email(message_id="<dup@x>")]

        with pytest.raises(SinkError):
            await store.upsert_bulk(emails)

        assert (await store.query()).total == 0
        assert not await store.exists("<ok@x>", "sales@example.com")

    @pytest.mark.asyncio
    async def test_update_fields(self, store, make_email):
        email = make_email()
        await store.upsert_one(email)

        await store.update_fields(email.id, {"category": EmailCategory.INTERESTED, "read": True})

        loaded = await store.get_by_id(email.id)
        assert loaded.category == EmailCategory.INTERESTED
        assert loaded.read is True
        assert loaded.updated_at >= loaded.created_at

    @pytest.mark.asyncio
    async def test_update_unknown_id(self, store):
        with pytest.raises(EmailNotFoundError):
            await store.update_fields("missing", {"category": EmailCategory.SPAM})

    @pytest.mark.asyncio
    async def test_update_rejects_immutable_fields(self, store, make_email):
        email = make_email()
        await store.upsert_one(email)

        with pytest.raises(ValueError):
            await store.update_fields(email.id, {"message_id": "<other@x>"})

    @pytest.mark.asyncio
    async def test_nul_bytes_are_stripped(self, store, make_email):
        email = make_email(body="hello\x00world")
        await store.upsert_one(email)

        assert (await store.get_by_id(email.id)).body == "helloworld"


class TestStoreQuery:

    @pytest_asyncio.fixture
    async def populated(self, store, make_email):
        await store.upsert_bulk([
            make_email(message_id="<1@x>", subject="Pricing question", date=day(1),
                       category=EmailCategory.INTERESTED),
            make_email(message_id="<2@x>", subject="Out of office", date=day(2),
                       category=EmailCategory.OUT_OF_OFFICE),
            make_email(message_id="<3@x>", account="support@example.com", body="Our pricing is too high",
                       date=day(3), category=EmailCategory.NOT_INTERESTED),
            make_email(message_id="<4@x>", folder="Leads", date=day(4),
                       sender=EmailAddress(address="ceo@bigcorp.com", name="Big Corp")),
        ])
        return store

    @pytest.mark.asyncio
    async def test_newest_first(self, populated):
        result = await populated.query()

        assert result.total == 4
        assert [e.message_id for e in result.emails] == ["<4@x>", "<3@x>", "<2@x>", "<1@x>"]

    @pytest.mark.asyncio
    async def test_filter_by_account(self, populated):
        result = await populated.query(EmailSearchFilters(account="support@example.com"))
        assert [e.message_id for e in result.emails] == ["<3@x>"]

    @pytest.mark.asyncio
    async def test_filter_by_folder(self, populated):
        result = await populated.query(EmailSearchFilters(folder="Leads"))
        assert [e.message_id for e in result.emails] == ["<4@x>"]

    @pytest.mark.asyncio
    async def test_filter_by_category(self, populated):
        result = await populated.query(EmailSearchFilters(category=EmailCategory.INTERESTED))
        assert [e.message_id for e in result.emails] == ["<1@x>"]

    @pytest.mark.asyncio
    async def test_text_search_ranks_subject_matches_first(self, populated):
        result = await populated.query(EmailSearchFilters(text="PRICING"))
        assert [e.message_id for e in result.emails] == ["<1@x>", "<3@x>"]

    @pytest.mark.asyncio
    async def test_text_search_sender(self, populated):
        result = await populated.query(EmailSearchFilters(text="bigcorp"))
        assert [e.message_id for e in result.emails] == ["<4@x>"]

    @pytest.mark.asyncio
    async def test_text_search_wildcards_match_literally(self, store, make_email):
        await store.upsert_bulk([
            make_email(message_id="<plain@x>", subject="hello", body="world"),
            make_email(message_id="<sale@x>", subject="50% off this week", body="Limited offer"),
            make_email(message_id="<file@x>", subject="Report", body="See q3_summary.pdf"),
        ])

        assert [e.message_id for e in (await store.query(EmailSearchFilters(text="%"))).emails] == ["<sale@x>"]
        assert [e.message_id for e in (await store.query(EmailSearchFilters(text="50%"))).emails] == ["<sale@x>"]
        assert [e.message_id for e in (await store.query(EmailSearchFilters(text="q3_"))).emails] == ["<file@x>"]
        assert (await store.query(EmailSearchFilters(text="_"))).total == 1

    @pytest.mark.asyncio
    async def test_combined_filters(self, populated):
        result = await populated.query(EmailSearchFilters(account="sales@example.com", text="pricing"))
        assert [e.message_id for e in result.emails] == ["<1@x>"]

    @pytest.mark.asyncio
    async def test_pagination(self, populated):
        page = await populated.query(pagination=Pagination(offset=1, limit=2))

        assert page.total == 4
        assert [e.message_id for e in page.emails] == ["<3@x>", "<2@x>"]

    @pytest.mark.asyncio
    async def test_offset_past_end(self, populated):
        page = await populated.query(pagination=Pagination(offset=10, limit=5))

        assert page.total == 4
        assert page.emails == []

    def test_page_size_is_capped(self):
        with pytest.raises(ValueError):
            Pagination(limit=101)


class TestStoreHealth:

    @pytest.mark.asyncio
    async def test_healthy(self, store, make_email):
        await store.upsert_one(make_email())

        health = await store.health()

        assert health == {"status": "healthy", "backend": "sqlite", "emails": 1}

    @pytest.mark.asyncio
    async def test_unhealthy(self, store):
        with patch("onebox.core.database.repository.EmailRepository.count",
                   side_effect=OperationalError("SELECT", {}, Exception("disk I/O error"))):
            health = await store.health()

        assert health["status"] == "unhealthy"
        assert "disk I/O error" in health["error"]

    @pytest.mark.asyncio
    async def test_uninitialized_database_raises_sink_error(self, tmp_path):
        store = SQLEmailStore(Database(f"sqlite:///{tmp_path / 'never.db'}"))

        with pytest.raises(SinkError):
            await store.exists("<a@x>", "sales@example.com")


class TestSanitizeText:

    def test_none(self):
        assert sanitize_text(None) is None

    def test_truncates(self):
        assert sanitize_text("abcdef", max_length=3) == "abc"

    def test_surrogates_replaced(self):
        assert "\ud800" not in sanitize_text("a\ud800b")


def test_escape_like():
    assert escape_like("50%_off\\") == "50\\%\\_off\\\\"
    assert escape_like("plain") == "plain"
