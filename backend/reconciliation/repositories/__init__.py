"""
Session repositories
"""

from .base import SessionRepository, BANK_MOVEMENTS, INTERNAL_MOVEMENTS, MOVEMENT_COLLECTIONS
from .memory import InMemorySessionRepository
from .sql import SqlSessionRepository

__all__ = [
    "SessionRepository",
    "BANK_MOVEMENTS",
    "INTERNAL_MOVEMENTS",
    "MOVEMENT_COLLECTIONS",
    "InMemorySessionRepository",
    "SqlSessionRepository",
]
