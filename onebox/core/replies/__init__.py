"""Reply suggestions: knowledge base retrieval + LLM generation"""
from .knowledge import KnowledgeBase, KnowledgeEntry
from .suggester import ReplySuggester

__all__ = ['KnowledgeBase', 'KnowledgeEntry', 'ReplySuggester']
