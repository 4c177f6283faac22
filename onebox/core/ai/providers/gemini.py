"""
Google Gemini through the google-generativeai SDK.

The SDK call is blocking and runs in a worker thread.
"""
import asyncio
import logging
from typing import Optional

import google.generativeai as genai

from .base import BaseLLMProvider, LLMResponse, Pricing, TokenUsage

logger = logging.getLogger(__name__)

GEMINI_PRICING: Pricing = {
    "gemini-2.0-flash": (0.10, 0.40),
    "gemini-1.5-flash": (0.075, 0.30),
    "gemini-1.5-pro": (1.25, 5.00),
}


class GeminiProvider(BaseLLMProvider):

    name = "gemini"
    pricing = GEMINI_PRICING
    default_model = "gemini-2.0-flash"

    def __init__(self, api_key: str, model: str = "gemini-2.0-flash",
                 temperature: float = 0.3, max_output_tokens: int = 1024):
        if not api_key:
            raise ValueError("GEMINI_API_KEY not set")
        super().__init__(model, temperature)

        genai.configure(api_key=api_key)
        self.generation_config = genai.GenerationConfig(
            temperature=temperature,
            max_output_tokens=max_output_tokens,
        )

    def _generate(self, prompt: str, system: Optional[str]):
        model = genai.GenerativeModel(
            self.model,
            generation_config=self.generation_config,
            system_instruction=system,
        )
        return model.generate_content(prompt)

    async def _complete_impl(self, prompt: str, system: Optional[str]) -> LLMResponse:
        try:
            response = await asyncio.to_thread(self._generate, prompt, system)
            text = response.text
        except Exception as e:
            logger.error(f"gemini API error: {e}")
            raise

        metadata = getattr(response, 'usage_metadata', None)
        if metadata is not None:
            usage = TokenUsage.of(
                getattr(metadata, 'prompt_token_count', 0) or 0,
                getattr(metadata, 'candidates_token_count', 0) or 0,
            )
        else:
            usage = TokenUsage.estimate(prompt, text)

        return LLMResponse(text=text, usage=usage)
