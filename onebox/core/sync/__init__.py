"""Synchronization orchestration"""
from .orchestrator import SyncOrchestrator

__all__ = ['SyncOrchestrator']
