"""
Email Classifier

Assigns one category from the fixed set to each email using a pluggable
text-classification backend. Classification is best-effort: a backend
failure of any kind yields Uncategorized for that email.
"""
import asyncio
import logging
from typing import Dict, Optional, Protocol, Sequence

from onebox.core.email.models import Email, EmailCategory
from onebox.core.exceptions import ClassificationError
from .providers.base import BaseLLMProvider

logger = logging.getLogger(__name__)

GROUP_SIZE = 5
GROUP_PAUSE_SECONDS = 1.0
BODY_PREFIX_CHARS = 500

CLASSIFICATION_SYSTEM_PROMPT = """You classify replies received by a sales team.
Answer with exactly one of these labels and nothing else:
Interested, Meeting Booked, Not Interested, Spam, Out of Office."""


class ClassificationBackend(Protocol):
    """Anything that turns a prompt context into free-text classification output"""

    async def classify(self, context: str) -> str:
        ...


class LLMClassificationBackend:
    """Classification backend backed by an LLM provider"""

    def __init__(self, provider: Optional[BaseLLMProvider], system_prompt: str = CLASSIFICATION_SYSTEM_PROMPT):
        self.provider = provider
        self.system_prompt = system_prompt

    async def classify(self, context: str) -> str:
        """
        Raises:
            ClassificationError: If no provider is configured or the call fails
        """
        if self.provider is None:
            raise ClassificationError("No LLM provider configured")
        try:
            response = await self.provider.complete(context, system=self.system_prompt)
        except Exception as e:
            raise ClassificationError(f"{self.provider.name} classification failed: {e}") from e
        return response.text


def map_response_to_category(text: Optional[str]) -> EmailCategory:
    """
    Map free-text backend output to a category.

    Case-insensitive substring rules, first match wins:
    interested (without "not"), meeting/booked, not interested/decline, spam,
    out of office/ooo. Anything else is Uncategorized.
    """
    t = (text or "").lower()

    if "interested" in t and "not" not in t:
        return EmailCategory.INTERESTED
    if "meeting" in t or "booked" in t:
        return EmailCategory.MEETING_BOOKED
    if "not interested" in t or "decline" in t:
        return EmailCategory.NOT_INTERESTED
    if "spam" in t:
        return EmailCategory.SPAM
    if "out of office" in t or "ooo" in t:
        return EmailCategory.OUT_OF_OFFICE
    return EmailCategory.UNCATEGORIZED


def is_rate_limit_error(error: BaseException) -> bool:
    """Quota or rate-limit rejection from any provider SDK"""
    while error is not None:
        if getattr(error, 'status_code', None) == 429 or getattr(error, 'code', None) == 429:
            return True
        message = str(error).lower()
        if "429" in message or "rate limit" in message or "quota" in message:
            return True
        error = error.__cause__
    return False


class EmailClassifier:
    """Classifies emails in paced, bounded-concurrency groups"""

    def __init__(self,
                 backend: ClassificationBackend,
                 group_size: int = GROUP_SIZE,
                 group_pause: float = GROUP_PAUSE_SECONDS,
                 body_chars: int = BODY_PREFIX_CHARS):
        if group_size < 1:
            raise ValueError("group_size must be at least 1")
        self.backend = backend
        self.group_size = group_size
        self.group_pause = group_pause
        self.body_chars = body_chars

        self.total_classified = 0
        self.total_failures = 0

    def build_prompt_context(self, email: Email) -> str:
        """Bounded context: subject, sender and the first body_chars of the body"""
        body = (email.body or "")[:self.body_chars]
        return (
            "Categorize this email into one of: Interested, Meeting Booked, "
            "Not Interested, Spam, Out of Office.\n\n"
            f"Subject: {email.subject}\n"
            f"From: {email.sender}\n"
            f"Body: {body}\n\n"
            "Category:"
        )

    async def classify(self, email: Email) -> EmailCategory:
        """
        Classify one email. Never raises.

        Returns:
            Mapped category, or Uncategorized if the backend failed
        """
        context = self.build_prompt_context(email)
        try:
            response = await self.backend.classify(context)
        except Exception as e:
            self.total_failures += 1
            if is_rate_limit_error(e):
                logger.warning(f"Classification quota/rate limit hit for {email.message_id}, using Uncategorized")
            else:
                logger.error(f"Classification failed for {email.message_id}: {type(e).__name__}: {e}")
            return EmailCategory.UNCATEGORIZED

        self.total_classified += 1
        category = map_response_to_category(response)
        logger.debug(f"Classified {email.message_id} as {category.value} (raw: {str(response)[:50]!r})")
        return category

    async def classify_batch(self, emails: Sequence[Email]) -> Dict[str, EmailCategory]:
        """
        Classify many emails in groups of group_size.

        Calls within a group run concurrently; consecutive groups are separated
        by group_pause seconds.

        Returns:
            Mapping email.id -> category covering every input email
        """
        results: Dict[str, EmailCategory] = {}
        groups = [emails[i:i + self.group_size] for i in range(0, len(emails), self.group_size)]

        for index, group in enumerate(groups):
            if index > 0:
                await self._pause()

            categories = await asyncio.gather(
                *(self.classify(email) for email in group), return_exceptions=True
            )
            for email, category in zip(group, categories):
                if isinstance(category, BaseException):
                    logger.error(f"Unexpected classification failure for {email.message_id}: {category}")
                    category = EmailCategory.UNCATEGORIZED
                results[email.id] = category

        logger.info(f"Classified {len(results)} email(s) in {len(groups)} group(s)")
        return results

    async def _pause(self) -> None:
        await asyncio.sleep(self.group_pause)

    def get_stats(self) -> dict:
        return {
            "classified": self.total_classified,
            "failures": self.total_failures,
        }
