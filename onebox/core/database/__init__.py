"""Database module: SQLAlchemy models, repository and async email store"""
from .connection import Database
from .models import Base, EmailRecord
from .repository import EmailRepository
from .store import SQLEmailStore

__all__ = [
    'Base',
    'Database',
    'EmailRecord',
    'EmailRepository',
    'SQLEmailStore',
]
