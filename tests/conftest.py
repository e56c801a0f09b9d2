import fnmatch

import pytest
import structlog


class MockRedisClient:
    """Mock async Redis client for testing (strings and lists)."""

    def __init__(self):
        self._store: dict[str, str] = {}
        self._lists: dict[str, list[str]] = {}
        self._ttls: dict[str, int] = {}
        self.closed = False

    # --- strings ---

    async def get(self, key: str) -> str | None:
        return self._store.get(key)

    async def set(self, key: str, value: str, ex: int | None = None) -> bool:
        self._store[key] = value
        if ex is not None:
            self._ttls[key] = ex
        return True

    # --- lists (index 0 is the head) ---

    async def lpush(self, key: str, *values: str) -> int:
        items = self._lists.setdefault(key, [])
        for value in values:
            items.insert(0, value)
        return len(items)

    async def rpop(self, key: str) -> str | None:
        items = self._lists.get(key)
        if not items:
            return None
        value = items.pop()
        if not items:
            del self._lists[key]
        return value

    async def lrange(self, key: str, start: int, end: int) -> list[str]:
        items = self._lists.get(key, [])
        if end == -1:
            return list(items[start:])
        return list(items[start : end + 1])

    async def llen(self, key: str) -> int:
        return len(self._lists.get(key, []))

    async def lrem(self, key: str, count: int, value: str) -> int:
        items = self._lists.get(key, [])
        removed = 0
        for i, item in enumerate(list(items)):
            if item == value and (count == 0 or removed < count):
                items.pop(i - removed)
                removed += 1
        if key in self._lists and not items:
            del self._lists[key]
        return removed

    async def ltrim(self, key: str, start: int, end: int) -> bool:
        if key in self._lists:
            self._lists[key] = self._lists[key][start : end + 1]
        return True

    # --- keys ---

    async def expire(self, key: str, ttl: int) -> bool:
        if key not in self._store and key not in self._lists:
            return False
        self._ttls[key] = ttl
        return True

    async def ttl(self, key: str) -> int:
        if key not in self._store and key not in self._lists:
            return -2
        return self._ttls.get(key, -1)

    async def delete(self, *keys: str) -> int:
        deleted = 0
        for key in keys:
            if self._store.pop(key, None) is not None or self._lists.pop(key, None):
                self._ttls.pop(key, None)
                deleted += 1
        return deleted

    async def exists(self, *keys: str) -> int:
        return sum(1 for key in keys if key in self._store or key in self._lists)

    async def scan_iter(self, match: str):
        for key in list(self._store) + list(self._lists):
            if fnmatch.fnmatch(key, match):
                yield key

    async def aclose(self) -> None:
        self.closed = True


class FakeClock:
    """Settable epoch-millisecond clock."""

    def __init__(self, now: int = 1_700_000_000_000):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture
def mock_redis():
    return MockRedisClient()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def captured_logs():
    """Capture structlog events emitted during a test."""
    with structlog.testing.capture_logs() as logs:
        yield logs
