"""
Providers backed by a LangChain chat model.
"""
from typing import Optional
import logging

from langchain_core.messages import SystemMessage
from langchain_core.prompts import ChatPromptTemplate

from .base import BaseLLMProvider, LLMResponse, TokenUsage

logger = logging.getLogger(__name__)


def message_text(content) -> str:
    """Plain text of an AIMessage content (string or list of content blocks)"""
    if isinstance(content, list):
        return "".join(
            block.get("text", "") if isinstance(block, dict) else str(block)
            for block in content
        )
    return str(content)


def usage_from_message(message, prompt: str) -> TokenUsage:
    """Token usage reported on an AIMessage, estimated when the provider omits it"""
    usage_metadata = getattr(message, 'usage_metadata', None)
    if usage_metadata:
        return TokenUsage.of(usage_metadata.get('input_tokens', 0), usage_metadata.get('output_tokens', 0))

    metadata = getattr(message, 'response_metadata', None) or {}
    token_usage = metadata.get('token_usage') or metadata.get('usage')
    if token_usage:
        return TokenUsage.of(
            token_usage.get('prompt_tokens', token_usage.get('input_tokens', 0)),
            token_usage.get('completion_tokens', token_usage.get('output_tokens', 0)),
        )

    logger.debug("No token usage on response, estimating")
    return TokenUsage.estimate(prompt, message_text(getattr(message, 'content', '')))


class LangChainChatProvider(BaseLLMProvider):
    """
    Runs prompt -> chat model as a LangChain chain.

    Subclasses build self.client (a chat model) in __init__.
    """

    default_system: Optional[str] = None

    async def _complete_impl(self, prompt: str, system: Optional[str]) -> LLMResponse:
        system = system or self.default_system
        # System text goes in as a message, not a template, so braces in it are literal
        messages = [SystemMessage(content=system)] if system else []
        chain = ChatPromptTemplate.from_messages(messages + [("user", "{input}")]) | self.client

        try:
            message = await chain.ainvoke({"input": prompt})
        except Exception as e:
            logger.error(f"{self.name} API error: {e}")
            raise

        return LLMResponse(
            text=message_text(message.content),
            usage=usage_from_message(message, prompt),
            raw_response=dict(getattr(message, 'response_metadata', None) or {}),
        )
