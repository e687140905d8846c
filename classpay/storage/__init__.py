# storage/__init__.py
# ============================================================================
# CLASSPAY — STORAGE MODULE
# ============================================================================
# Store interfaces plus the in-memory and PostgreSQL backends
# ============================================================================

from classpay.storage.base import Store
from classpay.storage.memory import build_memory_store

__all__ = [
    "Store",
    "build_memory_store",
]
