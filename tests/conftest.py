"""
Shared fixtures for the PDF generator tests.

Provides an in-memory FakeRedis covering the commands the job queue uses,
plus settings/queue/context fixtures wired to it. No test talks to a real
Redis, S3 or Chromium.
"""

import os
import time
from typing import Any, Dict, List, Optional

# Set test environment BEFORE any imports from generator_service so the
# cached settings used by generator_service.app are predictable.
os.environ["ENVIRONMENT"] = "development"
for _name in ("API_SECRET", "S3_BUCKET", "CDN_URL", "DOMAIN", "REDIS_URL", "QUEUE_NAME"):
    os.environ.pop(_name, None)

import pytest
from unittest.mock import MagicMock

from generator_service.config import GeneratorSettings
from generator_service.context import ServiceContext
from generator_service.queue import JobQueue
from generator_service.storage import ObjectStore


class FakeRedis:
    """Fake Redis implementation for testing (strings, hashes, lists, zsets, TTLs)."""

    def __init__(self):
        self.strings: Dict[str, str] = {}
        self.hashes: Dict[str, Dict[str, str]] = {}
        self.lists: Dict[str, List[str]] = {}
        self.zsets: Dict[str, Dict[str, float]] = {}
        self.expiry: Dict[str, float] = {}  # key -> absolute monotonic ms
        self.published: List[tuple] = []
        self.closed = False

    # --- helpers -----------------------------------------------------------

    @staticmethod
    def _now_ms() -> float:
        return time.monotonic() * 1000

    def _purge(self, key: str) -> None:
        deadline = self.expiry.get(key)
        if deadline is not None and self._now_ms() >= deadline:
            self._drop(key)

    def _drop(self, key: str) -> None:
        for store in (self.strings, self.hashes, self.lists, self.zsets):
            store.pop(key, None)
        self.expiry.pop(key, None)

    def _key_exists(self, key: str) -> bool:
        self._purge(key)
        return any(key in store for store in (self.strings, self.hashes, self.lists, self.zsets))

    def force_expire(self, key: str) -> None:
        """Simulate a TTL running out."""
        self._drop(key)

    # --- connection --------------------------------------------------------

    async def ping(self):
        return True

    async def close(self):
        self.closed = True

    # --- strings -----------------------------------------------------------

    async def set(self, key: str, value: str, px: Optional[int] = None, nx: bool = False):
        if nx and self._key_exists(key):
            return None
        self._drop(key)
        self.strings[key] = str(value)
        if px is not None:
            self.expiry[key] = self._now_ms() + px
        return True

    async def get(self, key: str):
        self._purge(key)
        return self.strings.get(key)

    async def incr(self, key: str):
        self._purge(key)
        value = int(self.strings.get(key, "0")) + 1
        self.strings[key] = str(value)
        return value

    async def delete(self, *keys: str):
        removed = 0
        for key in keys:
            if self._key_exists(key):
                removed += 1
            self._drop(key)
        return removed

    async def exists(self, *keys: str):
        return sum(1 for key in keys if self._key_exists(key))

    async def expire(self, key: str, seconds: int):
        if not self._key_exists(key):
            return False
        self.expiry[key] = self._now_ms() + seconds * 1000
        return True

    async def pexpire(self, key: str, ms: int):
        if not self._key_exists(key):
            return False
        self.expiry[key] = self._now_ms() + ms
        return True

    async def persist(self, key: str):
        return self.expiry.pop(key, None) is not None

    async def pttl(self, key: str):
        if not self._key_exists(key):
            return -2
        deadline = self.expiry.get(key)
        if deadline is None:
            return -1
        return int(deadline - self._now_ms())

    # --- hashes ------------------------------------------------------------

    async def hset(self, key: str, mapping: Dict[str, Any]):
        self._purge(key)
        self.hashes.setdefault(key, {}).update({k: str(v) for k, v in mapping.items()})
        return len(mapping)

    async def hgetall(self, key: str):
        self._purge(key)
        return dict(self.hashes.get(key, {}))

    async def hget(self, key: str, field: str):
        self._purge(key)
        return self.hashes.get(key, {}).get(field)

    # --- lists -------------------------------------------------------------

    async def lpush(self, key: str, *values):
        self._purge(key)
        lst = self.lists.setdefault(key, [])
        for value in values:
            lst.insert(0, value)
        return len(lst)

    async def llen(self, key: str):
        self._purge(key)
        return len(self.lists.get(key, []))

    async def lrange(self, key: str, start: int, end: int):
        self._purge(key)
        lst = self.lists.get(key, [])
        if end == -1:
            return list(lst[start:])
        return list(lst[start:end + 1])

    async def lrem(self, key: str, count: int, value: str):
        lst = self.lists.get(key)
        if not lst or value not in lst:
            return 0
        lst.remove(value)
        if not lst:
            self.lists.pop(key)
        return 1

    async def lmove(self, source: str, destination: str, src: str = "LEFT", dest: str = "RIGHT"):
        lst = self.lists.get(source)
        if not lst:
            return None
        value = lst.pop() if src == "RIGHT" else lst.pop(0)
        if not lst:
            self.lists.pop(source)
        target = self.lists.setdefault(destination, [])
        if dest == "LEFT":
            target.insert(0, value)
        else:
            target.append(value)
        return value

    # --- sorted sets -------------------------------------------------------

    async def zadd(self, key: str, mapping: Dict[str, float]):
        zset = self.zsets.setdefault(key, {})
        added = sum(1 for member in mapping if member not in zset)
        zset.update(mapping)
        return added

    async def zcard(self, key: str):
        return len(self.zsets.get(key, {}))

    async def zscore(self, key: str, member: str):
        return self.zsets.get(key, {}).get(member)

    async def zrangebyscore(self, key: str, min_score, max_score):
        zset = self.zsets.get(key, {})
        return [
            member for member, score in sorted(zset.items(), key=lambda item: item[1])
            if float(min_score) <= score <= float(max_score)
        ]

    async def zrem(self, key: str, *members):
        zset = self.zsets.get(key, {})
        removed = 0
        for member in members:
            if member in zset:
                del zset[member]
                removed += 1
        return removed

    async def zremrangebyscore(self, key: str, min_score, max_score):
        doomed = await self.zrangebyscore(key, min_score, max_score)
        return await self.zrem(key, *doomed) if doomed else 0

    # --- pub/sub -----------------------------------------------------------

    async def publish(self, channel: str, message: str):
        self.published.append((channel, message))
        return 0

    def pubsub(self):
        return MagicMock()


@pytest.fixture
def fake_redis():
    """In-memory Redis stand-in."""
    return FakeRedis()


@pytest.fixture
def settings():
    """Settings tuned for fast tests."""
    return GeneratorSettings(
        environment="development",
        domain="https://crm.example.com",
        s3_bucket="crm-bucket",
        aws_region="ap-south-1",
        wait_poll_interval_seconds=0.05,
        wait_timeout_seconds=2.0,
        admission_ceiling=5,
    )


@pytest.fixture
def queue(settings, fake_redis):
    """JobQueue backed by FakeRedis (already connected)."""
    return JobQueue.from_settings(settings, redis=fake_redis)


@pytest.fixture
def s3_client():
    """Mocked boto3 S3 client."""
    client = MagicMock()
    client.put_object = MagicMock(return_value={"ETag": '"abc"'})
    client.upload_fileobj = MagicMock(return_value=None)
    return client


@pytest.fixture
def store(settings, s3_client):
    """ObjectStore with a mocked client and no real sleeping."""
    async def no_sleep(seconds):
        return None

    object_store = ObjectStore.from_settings(settings, client=s3_client)
    object_store._sleep = no_sleep
    return object_store


@pytest.fixture
def context(settings, queue, store):
    """ServiceContext wired to the fakes."""
    return ServiceContext.build(settings, queue=queue, store=store)
