import logging

from parley.config import StorageConfig
from parley.errors import ConfigError
from parley.storage.backend import BaseBackend
from parley.storage.filesystem import FilesystemBackend
from parley.storage.memory import MemoryBackend
from parley.storage.sqlite import SQLiteBackend

logger = logging.getLogger(__name__)


def create_backend(config: StorageConfig) -> BaseBackend:
    backend = config.backend
    logger.debug(f"Creating {backend} storage backend")
    if backend == "filesystem":
        if not config.base_dir:
            raise ConfigError("filesystem backend requires 'base_dir'")
        return FilesystemBackend(config.base_dir, **config.options)
    if backend == "sqlite":
        if not config.db_path:
            raise ConfigError("sqlite backend requires 'db_path'")
        return SQLiteBackend(config.db_path, **config.options)
    if backend == "memory":
        return MemoryBackend(**config.options)
    raise ConfigError(f"Unknown storage backend type: {backend}")
