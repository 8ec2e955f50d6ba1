"""Durable key/value stores backing the job store and the bus fallback record."""

from .base import DurableStore, encoded_size
from .debounce import DebouncedWriter
from .json_file import JsonFileDurableStore
from .memory import MemoryDurableStore

__all__ = [
    "DebouncedWriter",
    "DurableStore",
    "JsonFileDurableStore",
    "MemoryDurableStore",
    "encoded_size",
]
