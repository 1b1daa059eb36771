"""Certificate record storage.

Records live in a remote key-value store under /certs/<hex hostname>. The
daemon only depends on the CertificateStore contract; RedisCertificateStore
is the production backend.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import List, Optional

import redis.asyncio as redis
from pydantic import ValidationError
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from .errors import CommsError, NotFoundError, StorageError
from .models import CERT_PATH_PREFIX, CertificateRecord, host_from_path

logger = logging.getLogger(__name__)


class CertificateStore(ABC):
    """Persistence contract for certificate records."""

    @abstractmethod
    async def fetch_all(self) -> List[CertificateRecord]:
        """Load every record."""

    @abstractmethod
    async def load(self, path: str) -> CertificateRecord:
        """Load one record. Raises NotFoundError if it does not exist."""

    @abstractmethod
    async def save(self, path: str, record: CertificateRecord) -> None:
        """Create or overwrite a record."""

    @abstractmethod
    async def delete(self, path: str) -> None:
        """Delete a record."""

    @abstractmethod
    async def list_paths(self) -> List[str]:
        """List the paths of all records."""

    async def list_hostnames(self) -> List[str]:
        return [host_from_path(path) for path in await self.list_paths()]


class RedisCertificateStore(CertificateStore):
    """Redis storage backend for certificate records."""

    def __init__(self, redis_url: str):
        """Initialize Redis connection."""
        self.redis_url = redis_url
        self.redis_client = redis.from_url(redis_url, decode_responses=True)

    async def close(self) -> None:
        await self.redis_client.aclose()

    async def health_check(self) -> bool:
        """Check Redis connectivity."""
        try:
            return await self.redis_client.ping()
        except RedisError:
            return False

    @staticmethod
    def _wrap(operation: str, path: str, e: RedisError) -> StorageError:
        if isinstance(e, (RedisConnectionError, RedisTimeoutError)):
            return CommsError(f"failed to {operation} {path}: {e}")
        return StorageError(f"failed to {operation} {path}: {e}")

    async def list_paths(self) -> List[str]:
        try:
            paths = [key async for key in self.redis_client.scan_iter(match=f"{CERT_PATH_PREFIX}*")]
        except RedisError as e:
            raise self._wrap("list", CERT_PATH_PREFIX, e) from e
        return sorted(paths)

    async def fetch_all(self) -> List[CertificateRecord]:
        return [await self.load(path) for path in await self.list_paths()]

    async def load(self, path: str) -> CertificateRecord:
        try:
            data = await self.redis_client.hgetall(path)
        except RedisError as e:
            raise self._wrap("load", path, e) from e

        if not data or 'value' not in data:
            raise NotFoundError(path)

        try:
            record = CertificateRecord.model_validate_json(data['value'])
        except ValidationError as e:
            raise StorageError(f"bad data for {path}: {e}") from e

        created_at: Optional[datetime] = None
        if data.get('created_at'):
            try:
                created_at = datetime.fromisoformat(data['created_at'])
            except ValueError:
                logger.warning(f"Ignoring bad created_at for {path}: {data['created_at']}")
        return record.bind(path, created_at)

    async def save(self, path: str, record: CertificateRecord) -> None:
        created_at = datetime.now(timezone.utc)
        try:
            await self.redis_client.hset(path, mapping={
                'value': record.model_dump_json(),
                'created_at': created_at.isoformat(),
            })
        except RedisError as e:
            raise self._wrap("save", path, e) from e
        record.bind(path, created_at)
        logger.debug(f"Saved record {path}")

    async def delete(self, path: str) -> None:
        try:
            await self.redis_client.delete(path)
        except RedisError as e:
            raise self._wrap("delete", path, e) from e
        logger.info(f"Deleted record {path}")
