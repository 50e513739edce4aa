"""
Configuration Module for the Coves client

This module defines the configuration system for the client core, using
Pydantic settings for validation and environment variable loading.

The configuration follows these principles:
1. Environment-based configuration with sensible defaults
2. Strong validation and typing through Pydantic
3. Explicit network timeouts on every HTTP session the client opens
4. Secure handling of the key used to encrypt persisted sessions

Two deployment environments are known: ``production`` talks to the public
Coves instance and ``local`` talks to a development stack on localhost. The
environment also namespaces persisted sessions so that switching between
them never mixes tokens.
"""

import base64
import logging
from dataclasses import dataclass
from typing import Final, Literal, Optional

from aiohttp import ClientTimeout
from cryptography.fernet import Fernet
from pydantic import AliasChoices, Field, RedisDsn, field_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

EnvironmentName = Literal["production", "local"]

SESSION_STORAGE_KEY_PREFIX: Final = "coves_session"
"""Prefix of the secure storage key holding the serialized session."""

DEFAULT_REDIRECT_URI: Final = "social.coves:/callback"
"""Custom scheme URI the backend redirects to after a successful login."""


@dataclass(frozen=True)
class EnvironmentConfig:
    """Endpoints for one deployment environment."""

    environment: EnvironmentName
    api_url: str
    handle_resolver_url: str
    plc_directory_url: str

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def is_local(self) -> bool:
        return self.environment == "local"


PRODUCTION: Final = EnvironmentConfig(
    environment="production",
    api_url="https://coves.social",
    handle_resolver_url="https://bsky.social/xrpc/com.atproto.identity.resolveHandle",
    plc_directory_url="https://plc.directory",
)

LOCAL: Final = EnvironmentConfig(
    environment="local",
    api_url="http://localhost:8081",
    handle_resolver_url="http://localhost:3001/xrpc/com.atproto.identity.resolveHandle",
    plc_directory_url="http://localhost:3002",
)

ENVIRONMENTS: Final = {
    "production": PRODUCTION,
    "local": LOCAL,
}


def session_storage_key(environment: str) -> str:
    """Storage key for the session blob of an environment, e.g. ``coves_session_local``."""
    return f"{SESSION_STORAGE_KEY_PREFIX}_{environment}"


class Settings(BaseSettings):
    """
    Client settings.

    Values are loaded from environment variables with defaults suitable for
    talking to the production instance. Aliases are provided where a shorter
    or conventional variable name exists, for example the environment can be
    selected with either COVES_ENV or ENVIRONMENT.
    """

    debug: bool = False
    """
    Enable verbose logging.
    Set with DEBUG=true environment variable.
    """

    environment: EnvironmentName = Field(
        "production",
        validation_alias=AliasChoices("environment", "coves_env"),
    )
    """
    Deployment environment, either production or local.
    Set with COVES_ENV or ENVIRONMENT environment variables.
    """

    api_url: Optional[str] = None
    """
    Override for the backend base URL. When unset the environment preset is used.
    Set with API_URL environment variable.
    """

    redirect_uri: str = DEFAULT_REDIRECT_URI
    """
    Redirect URI passed to the backend login endpoint.
    Set with REDIRECT_URI environment variable.
    """

    connect_timeout: float = 10.0
    """
    Seconds allowed for establishing a connection.
    Set with CONNECT_TIMEOUT environment variable.
    Default: 10
    """

    read_timeout: float = 30.0
    """
    Seconds allowed between reads of a response.
    Set with READ_TIMEOUT environment variable.
    Default: 30
    """

    storage_backend: Literal["file", "redis", "memory"] = "file"
    """
    Where the encrypted session is persisted.
    Set with STORAGE_BACKEND environment variable.
    """

    storage_path: str = "~/.config/coves/secure-storage"
    """
    Directory used by the file storage backend.
    Set with STORAGE_PATH environment variable.
    """

    redis_dsn: RedisDsn = Field(
        "redis://localhost:6379/0",
        validation_alias=AliasChoices("redis_dsn", "redis_url"),
    )  # type: ignore
    """
    Redis connection string used by the redis storage backend.
    Set with REDIS_DSN or REDIS_URL environment variables.
    """

    encryption_key: Fernet = Fernet(Fernet.generate_key())
    """
    Fernet key used to encrypt persisted sessions.
    Can be set to a Fernet object or base64-encoded key string.
    Set with ENCRYPTION_KEY environment variable. A random key is generated
    when unset, so persisted sessions do not survive a restart.
    """

    sentry_dsn: Optional[str] = None
    """
    Sentry DSN for error reporting. Optional, no error reporting if not set.
    Set with SENTRY_DSN environment variable.
    """

    metrics_backend: Literal["telegraf", "none"] = "none"
    """
    Metrics backend.
    Set with METRICS_BACKEND environment variable.
    """

    statsd_host: str = Field(
        "localhost",
        validation_alias=AliasChoices("statsd_host", "telegraf_host"),
    )
    """
    StatsD/Telegraf host for metrics collection.
    Set with TELEGRAF_HOST environment variable.
    """

    statsd_port: int = Field(
        8125,
        validation_alias=AliasChoices("statsd_port", "telegraf_port"),
    )
    """
    StatsD/Telegraf port for metrics collection.
    Set with TELEGRAF_PORT environment variable.
    """

    statsd_prefix: str = "coves.client"
    """
    Prefix for all metric names emitted by the client.
    Set with STATSD_PREFIX environment variable.
    """

    profile_cache_size: int = 50
    """Maximum number of profiles kept in memory."""

    feed_page_size: int = 15
    """Posts requested per feed page."""

    comments_page_size: int = 50
    """Comments requested per page."""

    @field_validator("encryption_key", mode="before")
    @classmethod
    def decode_encryption_key(cls, v) -> Fernet:
        """
        Accept either a Fernet object or a base64-encoded Fernet key.

        Raises:
            ValueError: If the input is neither a Fernet object nor a valid base64 key
        """
        if isinstance(v, Fernet):
            return v
        elif isinstance(v, str):
            key_data = base64.b64decode(v)
            return Fernet(key_data)
        raise ValueError(
            "encryption_key must be a Fernet object or a base64-encoded key string"
        )

    @field_validator("connect_timeout", "read_timeout")
    @classmethod
    def positive_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("timeouts must be positive")
        return v

    @field_validator("profile_cache_size")
    @classmethod
    def positive_cache_size(cls, v: int) -> int:
        if v < 1:
            raise ValueError("profile_cache_size must be at least 1")
        return v

    def environment_config(self) -> EnvironmentConfig:
        """The endpoint preset for the selected environment, with any API URL override applied."""
        preset = ENVIRONMENTS[self.environment]
        if self.api_url:
            return EnvironmentConfig(
                environment=preset.environment,
                api_url=self.api_url.rstrip("/"),
                handle_resolver_url=preset.handle_resolver_url,
                plc_directory_url=preset.plc_directory_url,
            )
        return preset

    def client_timeout(self) -> ClientTimeout:
        return ClientTimeout(sock_connect=self.connect_timeout, sock_read=self.read_timeout)

    @property
    def session_storage_key(self) -> str:
        return session_storage_key(self.environment)
