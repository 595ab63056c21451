"""
Pytest configuration and shared fixtures.

Provides an in-memory Redis double, a synthetic EcoManager upstream
and wired components for engine tests.
"""

import json
from pathlib import Path

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import WatchError

from config.settings import RateLimitConfig, StoreCredential, SyncConfig
from ordersync.ratelimit.governor import RateGovernor
from ordersync.storage.order_store import OrderStore
from ordersync.storage.position_store import PositionStore
from ordersync.sync.engine import SyncEngine
from ordersync.upstream.client import EcoManagerClient
from ordersync.upstream.models import OrderSnapshot, Page


IMPORTABLE = "En dispatch"


# ============================================================================
# Time
# ============================================================================

class FakeClock:
    """Wall clock that only moves when slept on."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start
        self.sleeps: list[float] = []

    def time(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += max(0.0, seconds)


# ============================================================================
# Redis
# ============================================================================

def _score_bound(value, lower: bool):
    """Predicate for a sorted-set score bound ("-inf", "+inf", "(1.5", 1.5)."""
    text = str(value)
    exclusive = text.startswith("(")
    bound = float(text.lstrip("("))
    if lower:
        return (lambda s: s > bound) if exclusive else (lambda s: s >= bound)
    return (lambda s: s < bound) if exclusive else (lambda s: s <= bound)


class FakeRedis:
    """
    In-memory subset of redis-py used by the governor, the position
    store and the engine. Values are strings (decode_responses=True).
    Expiry follows the injected clock.
    """

    def __init__(self, clock: FakeClock):
        self._clock = clock
        self._data: dict[str, str] = {}
        self._zsets: dict[str, dict[str, float]] = {}
        self._expires: dict[str, float] = {}
        self._versions: dict[str, int] = {}
        # Called with the pipeline right before a watched transaction executes
        self.before_execute = None

    def _purge(self, key: str) -> None:
        expires = self._expires.get(key)
        if expires is not None and expires <= self._clock.time():
            self._data.pop(key, None)
            self._zsets.pop(key, None)
            self._expires.pop(key, None)

    def _touch(self, key: str) -> None:
        self._versions[key] = self._versions.get(key, 0) + 1

    def ping(self) -> bool:
        return True

    def get(self, key):
        self._purge(key)
        return self._data.get(key)

    def mget(self, keys):
        return [self.get(k) for k in keys]

    def set(self, key, value, ex=None, px=None, nx=False):
        self._purge(key)
        if nx and key in self._data:
            return None
        self._data[key] = str(value)
        self._expires.pop(key, None)
        if ex is not None:
            self._expires[key] = self._clock.time() + ex
        elif px is not None:
            self._expires[key] = self._clock.time() + px / 1000.0
        self._touch(key)
        return True

    def incr(self, key):
        self._purge(key)
        value = int(self._data.get(key, 0)) + 1
        self._data[key] = str(value)
        self._touch(key)
        return value

    def expire(self, key, seconds):
        self._purge(key)
        if key not in self._data and key not in self._zsets:
            return False
        self._expires[key] = self._clock.time() + seconds
        return True

    def pttl(self, key):
        self._purge(key)
        if key not in self._data and key not in self._zsets:
            return -2
        expires = self._expires.get(key)
        if expires is None:
            return -1
        return int(round((expires - self._clock.time()) * 1000))

    def ttl(self, key):
        value = self.pttl(key)
        return value if value < 0 else int(value / 1000)

    def zadd(self, key, mapping):
        self._purge(key)
        zset = self._zsets.setdefault(key, {})
        added = sum(1 for member in mapping if member not in zset)
        zset.update({member: float(score) for member, score in mapping.items()})
        self._touch(key)
        return added

    def _scored(self, key, low, high):
        self._purge(key)
        low_ok, high_ok = _score_bound(low, lower=True), _score_bound(high, lower=False)
        items = sorted(self._zsets.get(key, {}).items(), key=lambda item: (item[1], item[0]))
        return [(m, s) for m, s in items if low_ok(s) and high_ok(s)]

    def zcount(self, key, low, high):
        return len(self._scored(key, low, high))

    def zcard(self, key):
        self._purge(key)
        return len(self._zsets.get(key, {}))

    def zrangebyscore(self, key, low, high, start=None, num=None, withscores=False):
        items = self._scored(key, low, high)
        if start is not None:
            items = items[start:start + num]
        return items if withscores else [m for m, _ in items]

    def zremrangebyscore(self, key, low, high):
        doomed = [m for m, _ in self._scored(key, low, high)]
        for member in doomed:
            del self._zsets[key][member]
        if doomed:
            self._touch(key)
        return len(doomed)

    def exists(self, *keys):
        return sum(1 for k in keys if self.get(k) is not None)

    def delete(self, *keys):
        removed = 0
        for key in keys:
            if self._data.pop(key, None) is not None or self._zsets.pop(key, None) is not None:
                removed += 1
            self._expires.pop(key, None)
            self._touch(key)
        return removed

    def flushall(self):
        for key in list(self._data) + list(self._zsets):
            self.delete(key)

    def pipeline(self, transaction=True):
        return FakePipeline(self)


class FakePipeline:
    """Buffers commands; immediate mode while watching and before multi()."""

    def __init__(self, redis: FakeRedis):
        self._redis = redis
        self.reset()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.reset()
        return False

    def reset(self):
        self._commands = []
        self._watched = {}
        self._multi = False

    def watch(self, *keys):
        for key in keys:
            self._watched[key] = self._redis._versions.get(key, 0)

    def unwatch(self):
        self._watched = {}

    def multi(self):
        self._multi = True

    def _command(self, name, *args, **kwargs):
        if self._watched and not self._multi:
            return getattr(self._redis, name)(*args, **kwargs)
        self._commands.append((name, args, kwargs))
        return self

    def get(self, *args, **kwargs):
        return self._command("get", *args, **kwargs)

    def set(self, *args, **kwargs):
        return self._command("set", *args, **kwargs)

    def incr(self, *args, **kwargs):
        return self._command("incr", *args, **kwargs)

    def expire(self, *args, **kwargs):
        return self._command("expire", *args, **kwargs)

    def zadd(self, *args, **kwargs):
        return self._command("zadd", *args, **kwargs)

    def zcount(self, *args, **kwargs):
        return self._command("zcount", *args, **kwargs)

    def zrangebyscore(self, *args, **kwargs):
        return self._command("zrangebyscore", *args, **kwargs)

    def zremrangebyscore(self, *args, **kwargs):
        return self._command("zremrangebyscore", *args, **kwargs)

    def execute(self):
        try:
            hook = self._redis.before_execute
            if self._watched and hook is not None:
                self._redis.before_execute = None
                hook(self._redis)
            for key, version in self._watched.items():
                if self._redis._versions.get(key, 0) != version:
                    raise WatchError("Watched variable changed.")
            return [getattr(self._redis, name)(*args, **kwargs) for name, args, kwargs in self._commands]
        finally:
            self.reset()


class UnavailableRedis:
    """Redis client whose every command fails to connect."""

    def __getattr__(self, name):
        def fail(*args, **kwargs):
            raise RedisConnectionError("Connection refused")
        return fail


# ============================================================================
# Upstream
# ============================================================================

def order_record(order_id: int, status: str = IMPORTABLE) -> dict:
    """One order as the EcoManager API returns it."""
    return {
        "id": order_id,
        "reference": f"NAT-{order_id}",
        "order_state_name": status,
        "confirmation_state_name": "Confirmé" if status != IMPORTABLE else None,
        "full_name": f"Client {order_id}",
        "telephone": "0550123456",
        "wilaya": "Alger",
        "commune": "Bab Ezzouar",
        "items": [
            {
                "product_id": "P-100",
                "title": "Huile d'argan",
                "quantity": 2,
                "sku": "ARG-50",
                "unit_price": 1500,
                "total_price": 3000,
            }
        ],
        "total": 3000,
        "created_at": "2025-03-01T10:00:00Z",
        "updated_at": "2025-03-01T10:05:00Z",
    }


class FakeUpstream:
    """
    Synthetic order listing served newest-first in fixed-size pages.

    New orders land on page 1 and push older ones to higher pages, the
    same way the real listing moves.
    """

    def __init__(self, page_size: int = 5):
        self.page_size = page_size
        self.statuses: dict[int, str] = {}

    def add(self, ids, status: str = IMPORTABLE) -> None:
        for order_id in ids:
            self.statuses[order_id] = status

    def set_status(self, order_id: int, status: str) -> None:
        self.statuses[order_id] = status

    def remove(self, order_id: int) -> None:
        self.statuses.pop(order_id, None)

    @property
    def ids(self) -> list[int]:
        return sorted(self.statuses, reverse=True)

    @property
    def page_count(self) -> int:
        return -(-len(self.statuses) // self.page_size)

    def page_of(self, order_id: int) -> int:
        return self.ids.index(order_id) // self.page_size + 1

    def records(self, number: int, per_page: int = None) -> list[dict]:
        per_page = per_page or self.page_size
        ids = self.ids[(number - 1) * per_page:number * per_page]
        return [order_record(i, self.statuses[i]) for i in ids]

    def body(self, number: int, per_page: int = None) -> dict:
        per_page = per_page or self.page_size
        has_more = len(self.statuses) > number * per_page
        return {
            "data": self.records(number, per_page),
            "meta": {"current_page": number, "next_page": number + 1 if has_more else None},
        }

    def page(self, number: int) -> Page:
        """Page object for tests that bypass HTTP."""
        body = self.body(number)
        orders = tuple(OrderSnapshot.from_api_response(r) for r in body["data"])
        return Page(token=number, orders=orders, next_token=body["meta"]["next_page"])


class FakeResponse:
    def __init__(self, status_code: int = 200, body=None, headers=None, raw: str = None):
        self.status_code = status_code
        self.headers = headers or {}
        self._body = body
        self._raw = raw

    def json(self):
        if self._raw is not None:
            return json.loads(self._raw)
        return self._body


class FakeSession:
    """
    requests.Session stand-in serving a FakeUpstream.

    `script(page, response)` queues responses returned before the
    upstream is consulted; page None is the connection probe.
    """

    def __init__(self, upstream: FakeUpstream):
        self.upstream = upstream
        self.headers: dict = {}
        self.calls: list[dict] = []
        self._scripted: dict = {}
        self.closed = False

    def mount(self, prefix, adapter):
        pass

    def script(self, page, *responses) -> None:
        self._scripted.setdefault(page, []).extend(responses)

    def pages_requested(self) -> list:
        return [c.get("page") for c in self.calls]

    def get(self, url, params=None, timeout=None):
        params = dict(params or {})
        self.calls.append(params)
        page = params.get("page")
        queued = self._scripted.get(page)
        if queued:
            return queued.pop(0)
        return FakeResponse(200, self.upstream.body(page or 1, params.get("per_page")))

    def close(self):
        self.closed = True


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_redis(clock: FakeClock) -> FakeRedis:
    return FakeRedis(clock)


@pytest.fixture
def rate_config() -> RateLimitConfig:
    return RateLimitConfig()


@pytest.fixture
def governor(fake_redis: FakeRedis, clock: FakeClock, rate_config: RateLimitConfig) -> RateGovernor:
    return RateGovernor(fake_redis, rate_config, clock=clock.time, sleep=clock.sleep)


@pytest.fixture
def store() -> StoreCredential:
    return StoreCredential(
        identifier="natu",
        name="Natu",
        base_url="https://natu.ecomanager.test/api/shop/v2",
        api_token="secret-token",
    )


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream(page_size=5)


@pytest.fixture
def session(upstream: FakeUpstream) -> FakeSession:
    return FakeSession(upstream)


@pytest.fixture
def client(store, governor, session) -> EcoManagerClient:
    return EcoManagerClient(store, governor, page_size=5, session=session)


@pytest.fixture
def order_store(tmp_path: Path) -> OrderStore:
    return OrderStore(tmp_path / "orders.db")


@pytest.fixture
def positions(fake_redis: FakeRedis, tmp_path: Path) -> PositionStore:
    return PositionStore(fake_redis, tmp_path / "sync-positions")


@pytest.fixture
def sync_config() -> SyncConfig:
    return SyncConfig(
        page_size=5,
        max_empty_pages=2,
        forward_max_pages=50,
        backward_window_pages=3,
        max_malformed_pages=2,
        retry_delay_seconds=0.0,
    )


@pytest.fixture
def make_engine(store, client, order_store, positions, fake_redis, clock):
    """Build a SyncEngine over the shared fakes, optionally with another config."""
    def build(config: SyncConfig) -> SyncEngine:
        return SyncEngine(
            store_id=store.identifier,
            client=client,
            persister=order_store,
            positions=positions,
            config=config,
            redis_client=fake_redis,
            sleep=clock.sleep,
        )
    return build


@pytest.fixture
def engine(make_engine, sync_config) -> SyncEngine:
    return make_engine(sync_config)
