"""
Encrypted key-value storage for secrets such as the persisted session.

Values are encrypted with Fernet before they leave the process, whichever
backend holds them. A value that cannot be decrypted (wrong key, truncated
file) raises ``CorruptedValueError`` so callers can discard it.
"""

import asyncio
import logging
import os
import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional

from cryptography.fernet import Fernet, InvalidToken
from redis import asyncio as redis

logger = logging.getLogger(__name__)

_SAFE_KEY = re.compile(r"^[A-Za-z0-9._-]+$")


class CorruptedValueError(Exception):
    """A stored value exists but could not be decrypted."""


class SecureStorage(ABC):
    @abstractmethod
    async def read(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    async def write(self, key: str, value: str) -> None:
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        pass

    async def close(self) -> None:
        pass


class _EncryptingStorage(SecureStorage):
    def __init__(self, encryption_key: Fernet) -> None:
        self._encryption_key = encryption_key

    def _encrypt(self, value: str) -> bytes:
        return self._encryption_key.encrypt(value.encode("utf-8"))

    def _decrypt(self, key: str, data: bytes) -> str:
        try:
            return self._encryption_key.decrypt(data).decode("utf-8")
        except (InvalidToken, UnicodeDecodeError) as e:
            raise CorruptedValueError(f"Stored value for {key} cannot be decrypted") from e


class MemorySecureStorage(_EncryptingStorage):
    """Process-local storage, used in tests and for throwaway sessions."""

    def __init__(self, encryption_key: Optional[Fernet] = None) -> None:
        super().__init__(encryption_key or Fernet(Fernet.generate_key()))
        self._values: Dict[str, bytes] = {}

    async def read(self, key: str) -> Optional[str]:
        data = self._values.get(key)
        if data is None:
            return None
        return self._decrypt(key, data)

    async def write(self, key: str, value: str) -> None:
        self._values[key] = self._encrypt(value)

    async def delete(self, key: str) -> None:
        self._values.pop(key, None)


class FernetFileStorage(_EncryptingStorage):
    """One encrypted file per key inside a private directory."""

    def __init__(self, directory: str, encryption_key: Fernet) -> None:
        super().__init__(encryption_key)
        self._directory = Path(directory).expanduser()

    def _path(self, key: str) -> Path:
        if not _SAFE_KEY.match(key):
            raise ValueError(f"Invalid storage key: {key!r}")
        return self._directory / key

    def _read_sync(self, path: Path) -> Optional[bytes]:
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None

    def _write_sync(self, path: Path, data: bytes) -> None:
        self._directory.mkdir(mode=0o700, parents=True, exist_ok=True)
        tmp_path = path.with_name(f"{path.name}.tmp")
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
        os.replace(tmp_path, path)

    async def read(self, key: str) -> Optional[str]:
        data = await asyncio.to_thread(self._read_sync, self._path(key))
        if data is None:
            return None
        return self._decrypt(key, data)

    async def write(self, key: str, value: str) -> None:
        await asyncio.to_thread(self._write_sync, self._path(key), self._encrypt(value))

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self._path(key).unlink, missing_ok=True)


class RedisSecureStorage(_EncryptingStorage):
    """Encrypted values in Redis, for clients running as a shared service."""

    def __init__(
        self,
        redis_client: redis.Redis,
        encryption_key: Fernet,
        prefix: str = "coves:secure:",
    ) -> None:
        super().__init__(encryption_key)
        self._redis = redis_client
        self._prefix = prefix

    async def read(self, key: str) -> Optional[str]:
        data = await self._redis.get(f"{self._prefix}{key}")
        if data is None:
            return None
        if isinstance(data, str):
            data = data.encode("utf-8")
        return self._decrypt(key, data)

    async def write(self, key: str, value: str) -> None:
        await self._redis.set(f"{self._prefix}{key}", self._encrypt(value))

    async def delete(self, key: str) -> None:
        await self._redis.delete(f"{self._prefix}{key}")

    async def close(self) -> None:
        await self._redis.aclose()
