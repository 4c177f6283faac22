"""
LLM Provider Abstraction Layer

Provides a unified interface for different LLM providers (OpenAI, Anthropic, Gemini).
"""

from .base import BaseLLMProvider, LLMResponse, TokenUsage
from .factory import create_provider

__all__ = [
    'BaseLLMProvider',
    'LLMResponse',
    'TokenUsage',
    'create_provider',
]
