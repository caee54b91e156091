"""
Persistent Storage Module.

Provides SQLite-backed persistence for:
- Engine checkpoints (resumable computation)
- The mock coprocessor's ciphertext table
- Backend metadata (KV Store)
"""

from sealbid.core.storage.sqlite_adapter import SQLiteAdapter
from sealbid.core.storage.storage_manager import StorageManager

__all__ = ["SQLiteAdapter", "StorageManager"]
