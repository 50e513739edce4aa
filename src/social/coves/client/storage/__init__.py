"""
Secure storage backends.

- secure.py: SecureStorage interface with memory, file and Redis backends,
  all Fernet-encrypted
"""

from redis import asyncio as redis

from social.coves.client.app.config import Settings
from social.coves.client.storage.secure import (
    CorruptedValueError,
    FernetFileStorage,
    MemorySecureStorage,
    RedisSecureStorage,
    SecureStorage,
)

__all__ = [
    "CorruptedValueError",
    "FernetFileStorage",
    "MemorySecureStorage",
    "RedisSecureStorage",
    "SecureStorage",
    "create_secure_storage",
]


def create_secure_storage(settings: Settings) -> SecureStorage:
    if settings.storage_backend == "redis":
        client = redis.Redis.from_url(str(settings.redis_dsn), decode_responses=False)
        return RedisSecureStorage(client, settings.encryption_key)
    elif settings.storage_backend == "memory":
        return MemorySecureStorage(settings.encryption_key)
    return FernetFileStorage(settings.storage_path, settings.encryption_key)
