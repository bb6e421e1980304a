"""Pluggable persistence backends behind Protocol interfaces."""

from __future__ import annotations

from cadenza.core.config import AppSettings
from cadenza.persistence.memory_backend import MemoryCacheBackend
from cadenza.persistence.redis_backend import RedisCacheBackend
from cadenza.persistence.s3_backend import S3FileStore


def create_persistence(settings: AppSettings | None = None):
    """Create wired-up persistence backends from application settings.

    Conversation history falls back to an in-process dict when Redis is
    disabled.

    Returns:
        Tuple of (cache, file_store).
    """
    if settings is None:
        settings = AppSettings()

    if settings.redis.enabled:
        cache = RedisCacheBackend(
            host=settings.redis.host,
            port=settings.redis.port,
            db=settings.redis.db,
        )
    else:
        cache = MemoryCacheBackend()

    file_store = S3FileStore(
        bucket=settings.s3.bucket,
        region=settings.s3.region,
        endpoint_url=settings.s3.endpoint_url,
        public_base_url=settings.s3.public_base_url,
    )

    return cache, file_store
