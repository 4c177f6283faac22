"""
OpenAI chat models through LangChain.
"""
from langchain_openai import ChatOpenAI

from .base import Pricing
from .chat import LangChainChatProvider

OPENAI_PRICING: Pricing = {
    "gpt-4o-mini": (0.15, 0.60),
    "gpt-4o": (2.50, 10.00),
    "gpt-4.1-nano": (0.10, 0.40),
    "gpt-4.1-mini": (0.40, 1.60),
    "gpt-4.1": (2.00, 8.00),
}


class OpenAIProvider(LangChainChatProvider):

    name = "openai"
    pricing = OPENAI_PRICING
    default_model = "gpt-4o-mini"
    default_system = "You are a helpful assistant for a sales team's shared inbox."

    def __init__(self, api_key: str, model: str = "gpt-4o-mini", temperature: float = 0.3):
        if not api_key:
            raise ValueError("OPENAI_API_KEY not set")
        super().__init__(model, temperature)
        self.client = ChatOpenAI(model=model, temperature=temperature, api_key=api_key)
