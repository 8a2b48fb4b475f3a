"""
SerialForge Services Module
Generation, persistence and queue integrations.

The run queue lives in ``services.run_queue`` and is imported from there; it
depends on the Runner, which depends on this package.
"""

from .generation import GenerationService, classify_error, is_retryable_error
from .store import DurableStore, InMemoryStore
from .supabase_store import SupabaseStore

__all__ = [
    "GenerationService",
    "classify_error",
    "is_retryable_error",
    "DurableStore",
    "InMemoryStore",
    "SupabaseStore",
]
