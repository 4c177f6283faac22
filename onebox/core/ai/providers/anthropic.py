"""
Anthropic Claude models through LangChain.
"""
from langchain_anthropic import ChatAnthropic

from .base import Pricing
from .chat import LangChainChatProvider

ANTHROPIC_PRICING: Pricing = {
    "claude-3-haiku-20240307": (0.25, 1.25),
    "claude-3-5-haiku-20241022": (0.80, 4.00),
    "claude-3-5-sonnet-20241022": (3.00, 15.00),
}


class AnthropicProvider(LangChainChatProvider):
    """Claude provider; content-block replies are flattened to text"""

    name = "anthropic"
    pricing = ANTHROPIC_PRICING
    default_model = "claude-3-haiku-20240307"

    def __init__(self, api_key: str, model: str = "claude-3-haiku-20240307", temperature: float = 0.3):
        if not api_key:
            raise ValueError("ANTHROPIC_API_KEY not set")
        super().__init__(model, temperature)
        self.client = ChatAnthropic(model=model, temperature=temperature, anthropic_api_key=api_key)
