import threading
import time
import uuid
from datetime import datetime, timedelta, timezone

import redis
from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from common.config import INSTANCE_ID
from common.errors import LeaseNotHeld
from common.logs import log_event
from db.models import Lease

DEFAULT_TTL_SECONDS = 60


def _k_lease(name: str) -> str:
    return f"jobwarden:lease:{name}"


_LUA_RELEASE_LEASE = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('DEL', KEYS[1])
else
  return 0
end
"""


class _HeldLeases:
    """Per-coordinator record of which names this process owns, and until when."""

    def __init__(self, monotonic=time.monotonic):
        self._monotonic = monotonic
        self._lock = threading.Lock()
        self._held = {}

    def _new_token(self) -> str:
        return f"{INSTANCE_ID}:{uuid.uuid4().hex}"

    def _remember(self, name, token, ttl_seconds):
        with self._lock:
            self._held[name] = (token, self._monotonic() + ttl_seconds)

    def _forget(self, name):
        with self._lock:
            entry = self._held.pop(name, None)
        return entry[0] if entry else None

    def is_held(self, name: str) -> bool:
        with self._lock:
            entry = self._held.get(name)
        return entry is not None and entry[1] > self._monotonic()

    def assert_held(self, name: str) -> None:
        if not self.is_held(name):
            raise LeaseNotHeld(name)


class RedisLeaseCoordinator(_HeldLeases):
    def __init__(self, redis_url: str, *, default_ttl_seconds: float = DEFAULT_TTL_SECONDS, client=None, monotonic=time.monotonic):
        super().__init__(monotonic)
        self._redis = client or redis.Redis.from_url(redis_url, decode_responses=True)
        self._default_ttl = default_ttl_seconds
        self._release_lease = self._redis.register_script(_LUA_RELEASE_LEASE)

    def try_acquire(self, name: str, ttl_seconds: float | None = None) -> bool:
        ttl = ttl_seconds or self._default_ttl
        token = self._new_token()
        try:
            acquired = self._redis.set(_k_lease(name), token, nx=True, px=int(ttl * 1000))
        except redis.RedisError as e:
            log_event("lease_store_unavailable", lease=name, error=repr(e))
            return False
        if not acquired:
            return False
        self._remember(name, token, ttl)
        return True

    def release(self, name: str) -> None:
        token = self._forget(name)
        if token is None:
            return
        self._release_lease(keys=[_k_lease(name)], args=[token])


def _db_now(s) -> datetime:
    # Naive UTC from the database, so instances with skewed clocks agree on expiry.
    now = s.scalar(select(func.now()))
    if isinstance(now, str):
        now = datetime.fromisoformat(now)
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc).replace(tzinfo=None)
    return now


class SqlLeaseCoordinator(_HeldLeases):
    """
    Lease rows in the ``leases`` table; an expired row is reclaimable.

    Expiry is judged against the database clock. ``clock`` overrides it.
    """

    def __init__(self, session_factory, *, default_ttl_seconds: float = DEFAULT_TTL_SECONDS, clock=None, monotonic=time.monotonic):
        super().__init__(monotonic)
        self._sessions = session_factory
        self._default_ttl = default_ttl_seconds
        self._clock = clock

    def try_acquire(self, name: str, ttl_seconds: float | None = None) -> bool:
        ttl = ttl_seconds or self._default_ttl
        token = self._new_token()
        try:
            with self._sessions.begin() as s:
                now = self._clock.now() if self._clock else _db_now(s)
                s.execute(delete(Lease).where(Lease.name == name, Lease.expires_at <= now))
                s.add(
                    Lease(
                        name=name,
                        owner=token,
                        acquired_at=now,
                        expires_at=now + timedelta(seconds=ttl),
                    )
                )
        except IntegrityError:
            return False
        except SQLAlchemyError as e:
            log_event("lease_store_unavailable", lease=name, error=repr(e))
            return False
        self._remember(name, token, ttl)
        return True

    def release(self, name: str) -> None:
        token = self._forget(name)
        if token is None:
            return
        with self._sessions.begin() as s:
            s.execute(delete(Lease).where(Lease.name == name, Lease.owner == token))
