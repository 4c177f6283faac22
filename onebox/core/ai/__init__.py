"""AI module for email classification"""
from .classifier import EmailClassifier, LLMClassificationBackend, map_response_to_category

__all__ = ['EmailClassifier', 'LLMClassificationBackend', 'map_response_to_category']
