"""Notification sink"""
from .service import NotificationService

__all__ = ['NotificationService']
