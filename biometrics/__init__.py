"""
Biometric module for the Face Authentication Server

This module owns everything that knows about faces and the people behind them:

Components:
- models: BiometricTemplate and User records
- templates: enrolled face templates (in-memory and SQLite stores)
- identities: user profile records (in-memory and SQLite stores)
- matcher: nearest-neighbour face matching with a distance threshold
"""

from .identities import IdentityStore, InMemoryIdentityStore, SQLiteIdentityStore
from .matcher import LinearScanMatcher, Matcher, MatchResult
from .models import BiometricTemplate, RegistrationProfile, User
from .templates import InMemoryTemplateStore, SQLiteTemplateStore, TemplateStore

__all__ = [
    "BiometricTemplate",
    "IdentityStore",
    "InMemoryIdentityStore",
    "InMemoryTemplateStore",
    "LinearScanMatcher",
    "MatchResult",
    "Matcher",
    "RegistrationProfile",
    "SQLiteIdentityStore",
    "SQLiteTemplateStore",
    "TemplateStore",
    "User",
]
