"""Redis backends implementing ICacheBackend and ILeaseManager."""

from __future__ import annotations

import uuid

import redis

from remindflow.core.exceptions import CacheError, LeaseError


class RedisCacheBackend:
    """Production ICacheBackend backed by Redis."""

    def __init__(self, host: str = "localhost", port: int = 6379, db: int = 0) -> None:
        self._host = host
        self._port = port
        self._db = db
        self._client = redis.Redis(
            host=host, port=port, db=db, decode_responses=True,
        )

    def get(self, key: str) -> str | None:
        try:
            return self._client.get(key)
        except Exception as exc:
            raise CacheError(f"Redis GET failed for key={key!r}: {exc}") from exc

    def setex(self, key: str, ttl: int, value: str) -> None:
        try:
            self._client.setex(key, ttl, value)
        except Exception as exc:
            raise CacheError(f"Redis SETEX failed for key={key!r}: {exc}") from exc

    def delete(self, key: str) -> None:
        try:
            self._client.delete(key)
        except Exception as exc:
            raise CacheError(f"Redis DELETE failed for key={key!r}: {exc}") from exc


class RedisLeaseManager:
    """Production ILeaseManager: ``SET NX PX`` lease with token-checked release."""

    def __init__(self, host: str = "localhost", port: int = 6379, db: int = 0,
                 key_prefix: str = "remindflow:lease:") -> None:
        self._key_prefix = key_prefix
        self._client = redis.Redis(
            host=host, port=port, db=db, decode_responses=True,
        )

    def _key(self, item_id: str) -> str:
        return f"{self._key_prefix}{item_id}"

    def acquire(self, item_id: str, ttl_seconds: int) -> str | None:
        token = uuid.uuid4().hex
        try:
            ok = self._client.set(self._key(item_id), token, nx=True, px=ttl_seconds * 1000)
        except Exception as exc:
            raise LeaseError(f"Redis lease acquire failed for item={item_id!r}: {exc}") from exc
        return token if ok else None

    def release(self, item_id: str, token: str) -> None:
        key = self._key(item_id)
        try:
            with self._client.pipeline() as pipe:
                pipe.watch(key)
                if pipe.get(key) == token:
                    pipe.multi()
                    pipe.delete(key)
                    pipe.execute()
                else:
                    pipe.unwatch()
        except redis.WatchError:
            # Lease expired and was taken by another holder mid-release
            return
        except Exception as exc:
            raise LeaseError(f"Redis lease release failed for item={item_id!r}: {exc}") from exc
