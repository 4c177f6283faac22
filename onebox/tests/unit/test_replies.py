"""
Tests for the knowledge base and reply suggestions.
"""
import pytest
from unittest.mock import AsyncMock, Mock

from onebox.core.ai.providers.base import LLMResponse, TokenUsage
from onebox.core.replies import KnowledgeBase, ReplySuggester
from onebox.core.replies.knowledge import tokenize


@pytest.fixture
def knowledge_base():
    return KnowledgeBase(
        product_name="Onebox",
        outreach_agenda="We are hiring backend engineers for our data platform team.",
        meeting_link="https://cal.test/sales",
    )


def provider_returning(text):
    provider = Mock()
    provider.name = "openai"
    provider.complete = AsyncMock(return_value=LLMResponse(text=text, usage=TokenUsage(100, 20, 120)))
    return provider


class TestKnowledgeBase:

    def test_seed_entries(self, knowledge_base):
        ids = [entry.id for entry in knowledge_base.entries()]

        assert ids[:2] == ["product-info", "outreach-agenda"]
        assert "meeting-link" in ids
        assert "Onebox" in knowledge_base.entries()[0].text

    def test_no_agenda_entry_when_blank(self):
        kb = KnowledgeBase(outreach_agenda="   ")
        assert "outreach-agenda" not in [entry.id for entry in kb.entries()]

    def test_unseeded(self):
        kb = KnowledgeBase(seed=False)

        assert len(kb) == 0
        assert kb.search("anything") == []

    def test_add(self, knowledge_base):
        before = len(knowledge_base)
        entry = knowledge_base.add("  Pricing starts at 49 dollars per seat.  ", {"type": "pricing"})

        assert len(knowledge_base) == before + 1
        assert entry.id.startswith("custom-")
        assert entry.text == "Pricing starts at 49 dollars per seat."
        assert entry.metadata == {"type": "pricing"}

    def test_add_empty_rejected(self, knowledge_base):
        with pytest.raises(ValueError):
            knowledge_base.add("   ")

    def test_search_ranks_relevant_entry_first(self, knowledge_base):
        knowledge_base.add("Pricing starts at 49 dollars per seat, billed monthly.")

        results = knowledge_base.search("what is your pricing per seat?")

        assert results[0][0].text.startswith("Pricing starts")
        scores = [score for _, score in results]
        assert scores == sorted(scores, reverse=True)
        assert all(0 < score <= 1.0 + 1e-9 for score in scores)

    def test_search_sees_entries_added_after_index(self, knowledge_base):
        knowledge_base.build_index()
        knowledge_base.add("Kubernetes migration consulting")

        assert knowledge_base.search("kubernetes")[0][0].text == "Kubernetes migration consulting"

    def test_search_without_overlap(self, knowledge_base):
        assert knowledge_base.search("zzzz qqqq") == []

    def test_top_k(self, knowledge_base):
        assert len(knowledge_base.search("meeting link interested call", top_k=2)) <= 2

    def test_tokenize_drops_stop_words(self):
        assert tokenize("The Meeting is at 10") == ["meeting", "10"]


class TestReplySuggester:

    @pytest.mark.asyncio
    async def test_llm_reply_with_context(self, knowledge_base, make_email):
        provider = provider_returning("  Thanks! Book here: https://cal.test/sales  ")
        suggester = ReplySuggester(knowledge_base, provider)
        suggester.initialize()
        email = make_email(subject="Interested in a call", body="Can we schedule a meeting?")

        reply = await suggester.suggest_reply(email)

        assert reply.email_id == email.id
        assert reply.suggestion == "Thanks! Book here: https://cal.test/sales"
        assert 0.5 <= reply.confidence <= 1.0
        assert any("https://cal.test/sales" in text for text in reply.context)
        prompt = provider.complete.call_args.args[0]
        assert "Can we schedule a meeting?" in prompt

    @pytest.mark.asyncio
    async def test_no_context_confidence(self, knowledge_base, make_email):
        suggester = ReplySuggester(knowledge_base, provider_returning("Thanks for your note."))

        reply = await suggester.suggest_reply(make_email(subject="zzzz", body="qqqq"))

        assert reply.confidence == 0.3
        assert reply.context == []

    @pytest.mark.asyncio
    async def test_fallback_without_provider(self, knowledge_base, make_email):
        suggester = ReplySuggester(knowledge_base)

        reply = await suggester.suggest_reply(make_email(body="Sounds good, I'm interested"))

        assert reply.confidence == 0.5
        assert reply.context == ["Using template-based fallback"]
        assert "https://cal.test/sales" in reply.suggestion
        assert reply.suggestion.startswith("Thank you for your interest")

    @pytest.mark.asyncio
    async def test_fallback_on_empty_llm_reply(self, knowledge_base, make_email):
        suggester = ReplySuggester(knowledge_base, provider_returning("   "))

        reply = await suggester.suggest_reply(make_email())

        assert reply.context == ["Using template-based fallback"]

    @pytest.mark.asyncio
    async def test_fallback_on_provider_error(self, knowledge_base, make_email):
        provider = Mock()
        provider.complete = AsyncMock(side_effect=RuntimeError("timeout"))
        suggester = ReplySuggester(knowledge_base, provider)

        reply = await suggester.suggest_reply(make_email(subject="Interview invitation", body="Are you free?"))

        assert "interview" in reply.suggestion.lower()

    @pytest.mark.parametrize("subject,body,expected", [
        ("Hi", "Can we schedule a call?", "schedule a meeting"),
        ("Hi", "Just checking in", "Please let me know how I can assist you"),
    ])
    def test_fallback_templates(self, knowledge_base, make_email, subject, body, expected):
        suggester = ReplySuggester(knowledge_base)
        assert expected in suggester.fallback_reply(make_email(subject=subject, body=body))
