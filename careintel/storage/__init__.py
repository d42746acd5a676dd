"""Persistence for pipeline-owned records."""

from .base import IntelligenceStore
from .memory import InMemoryIntelligenceStore

__all__ = ["IntelligenceStore", "InMemoryIntelligenceStore"]
