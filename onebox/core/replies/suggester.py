"""
Reply Suggestions

Retrieves relevant knowledge for an email and asks the LLM for a short reply.
Falls back to keyword templates when the LLM is unavailable or fails.
"""
import logging
from typing import List, Optional, Tuple

from onebox.core.ai.providers.base import BaseLLMProvider
from onebox.core.email.models import Email, SuggestedReply
from .knowledge import KnowledgeBase, KnowledgeEntry

logger = logging.getLogger(__name__)

TOP_K = 3
MIN_CONFIDENCE_WITH_CONTEXT = 0.5
CONFIDENCE_WITHOUT_CONTEXT = 0.3
FALLBACK_CONFIDENCE = 0.5

GENERIC_GUIDANCE = "Generate a professional, polite reply acknowledging the email and offering assistance."

REPLY_SYSTEM_PROMPT = """You are an AI email assistant. Generate a professional, concise reply to the email based on the provided context.

Guidelines:
- Be professional and friendly
- Keep the response concise
- If a meeting link is mentioned in the context, include it in the reply
- Match the tone of the incoming email
- Don't make up information not in the context"""


class ReplySuggester:
    """Retrieval-augmented reply generation"""

    def __init__(self, knowledge_base: KnowledgeBase, provider: Optional[BaseLLMProvider] = None):
        self.knowledge_base = knowledge_base
        self.provider = provider

    def initialize(self) -> None:
        self.knowledge_base.build_index()
        logger.info(f"Reply suggester initialized with {len(self.knowledge_base)} knowledge entries")

    async def suggest_reply(self, email: Email) -> SuggestedReply:
        """
        Suggest a reply for one email.

        Confidence is the best retrieval score, floored at 0.5, or 0.3 when
        nothing relevant was found. Template fallbacks report 0.5.
        """
        context = self.knowledge_base.search(f"{email.subject} {email.body}", top_k=TOP_K)

        try:
            suggestion = await self._generate(email, context)
        except Exception as e:
            logger.error(f"Error generating reply for {email.id}: {e}")
            return SuggestedReply(
                email_id=email.id,
                suggestion=self.fallback_reply(email),
                confidence=FALLBACK_CONFIDENCE,
                context=["Using template-based fallback"],
            )

        return SuggestedReply(
            email_id=email.id,
            suggestion=suggestion,
            confidence=self._confidence(context),
            context=[entry.text for entry, _ in context],
        )

    async def _generate(self, email: Email, context: List[Tuple[KnowledgeEntry, float]]) -> str:
        if self.provider is None:
            raise RuntimeError("No LLM provider configured")

        context_text = "\n\n".join(entry.text for entry, _ in context) or GENERIC_GUIDANCE
        prompt = (
            f"Context:\n{context_text}\n\n"
            f"Email Subject: {email.subject}\n"
            f"From: {email.sender.name or email.sender.address}\n"
            f"Body: {email.body}\n\n"
            "Generate a suitable reply:"
        )
        response = await self.provider.complete(prompt, system=REPLY_SYSTEM_PROMPT)
        text = response.text.strip()
        if not text:
            raise ValueError("LLM returned an empty reply")
        return text

    @staticmethod
    def _confidence(context: List[Tuple[KnowledgeEntry, float]]) -> float:
        if not context:
            return CONFIDENCE_WITHOUT_CONTEXT
        best = max(score for _, score in context)
        return min(1.0, max(best, MIN_CONFIDENCE_WITH_CONTEXT))

    def fallback_reply(self, email: Email) -> str:
        """Keyword template reply"""
        subject = (email.subject or "").lower()
        body = (email.body or "").lower()
        link = self.knowledge_base.meeting_link

        if "interested" in body or "sounds good" in body or "let's talk" in body:
            return (
                "Thank you for your interest! I'm excited to discuss this further with you.\n\n"
                f"You can book a time that works best for you here: {link}\n\n"
                "Looking forward to our conversation!\n\nBest regards"
            )
        if "meeting" in body or "schedule" in body or "call" in body:
            return (
                "Thank you for reaching out! I'd be happy to schedule a meeting.\n\n"
                f"Please feel free to book a convenient time slot here: {link}\n\n"
                "Looking forward to connecting!\n\nBest regards"
            )
        if "interview" in subject or "interview" in body:
            return (
                "Thank you for considering my application! I'm very interested in this opportunity "
                "and would love to schedule an interview.\n\n"
                f"I'm available at your convenience. Please let me know what times work best for you, "
                f"or feel free to book directly: {link}\n\n"
                "Looking forward to speaking with you!\n\nBest regards"
            )
        return (
            "Thank you for your email. I appreciate you reaching out.\n\n"
            "I'd be happy to discuss this further. Please let me know how I can assist you.\n\n"
            "Best regards"
        )
