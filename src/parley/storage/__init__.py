from parley.storage.backend import BaseBackend, SessionBackend
from parley.storage.factory import create_backend
from parley.storage.filesystem import FilesystemBackend
from parley.storage.memory import MemoryBackend
from parley.storage.sqlite import SQLiteBackend

__all__ = [
    "BaseBackend",
    "SessionBackend",
    "create_backend",
    "FilesystemBackend",
    "MemoryBackend",
    "SQLiteBackend",
]
