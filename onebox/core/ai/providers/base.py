"""
LLM provider interface.

A provider turns (prompt, system instruction) into text plus token usage.
Latency, token and cost accounting happen here; subclasses only talk to
their SDK.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple
import logging
import time

logger = logging.getLogger(__name__)

# Rough character/token ratio used when a provider reports no usage
CHARS_PER_TOKEN = 4

# model -> (input, output) USD per 1M tokens
Pricing = Dict[str, Tuple[float, float]]


@dataclass
class TokenUsage:
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int

    @classmethod
    def of(cls, prompt_tokens: int, completion_tokens: int) -> "TokenUsage":
        return cls(prompt_tokens, completion_tokens, prompt_tokens + completion_tokens)

    @classmethod
    def estimate(cls, prompt: str, completion: str) -> "TokenUsage":
        return cls.of(len(prompt) // CHARS_PER_TOKEN, len(completion) // CHARS_PER_TOKEN)


@dataclass
class LLMResponse:
    """Completion text with its usage, whatever the provider"""
    text: str
    usage: TokenUsage
    raw_response: dict = field(default_factory=dict)
    latency_ms: int = 0


class BaseLLMProvider(ABC):
    """
    Common accounting for every provider.

    Subclasses set name, pricing and default_model and implement
    _complete_impl. Models missing from pricing are billed at the
    default_model rate.
    """

    name = "base"
    pricing: Pricing = {}
    default_model = ""

    def __init__(self, model: str, temperature: float = 0.3):
        self.model = model
        self.temperature = temperature

        self.requests = 0
        self.tokens_used = 0
        self.cost_usd = 0.0

        if self.pricing and model not in self.pricing:
            logger.warning(f"No {self.name} pricing for {model}, using {self.default_model} rates")

    async def complete(self, prompt: str, system: Optional[str] = None) -> LLMResponse:
        """
        Run one completion and record its usage.

        SDK errors propagate unchanged; callers decide how to degrade.
        """
        started = time.perf_counter()
        response = await self._complete_impl(prompt, system)
        response.latency_ms = int((time.perf_counter() - started) * 1000)

        cost = self.calculate_cost(response.usage)
        self.requests += 1
        self.tokens_used += response.usage.total_tokens
        self.cost_usd += cost

        logger.debug(
            f"{self.name}/{self.model}: {response.usage.total_tokens} tokens "
            f"(${cost:.4f}) in {response.latency_ms}ms"
        )
        return response

    @abstractmethod
    async def _complete_impl(self, prompt: str, system: Optional[str]) -> LLMResponse:
        ...

    def calculate_cost(self, usage: TokenUsage) -> float:
        rates = self.pricing.get(self.model) or self.pricing.get(self.default_model)
        if rates is None:
            return 0.0
        input_rate, output_rate = rates
        return (usage.prompt_tokens * input_rate + usage.completion_tokens * output_rate) / 1_000_000

    def get_stats(self) -> dict:
        return {
            "provider": self.name,
            "model": self.model,
            "requests": self.requests,
            "tokens": self.tokens_used,
            "cost": round(self.cost_usd, 4),
        }
