"""
Lease Service
Short-lived exclusive leases keyed by (upload id, chunk index).

Leases are acquired with a token so that only the holder can renew or
release them. Long-running holders keep their lease alive with a
``LeaseHeartbeat`` that renews it on an interval shorter than the TTL.
"""

import logging
import threading
import time
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, Iterator, Optional, Tuple

import redis

from ..errors import LeaseServiceError

logger = logging.getLogger(__name__)


_RELEASE_LUA = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
  return redis.call("DEL", KEYS[1])
else
  return 0
end
"""

_RENEW_LUA = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
  return redis.call("PEXPIRE", KEYS[1], ARGV[2])
else
  return 0
end
"""


def chunk_lease_key(upload_id: str, chunk_index: int) -> str:
    return f"{upload_id}:{chunk_index}"


@dataclass(frozen=True)
class Lease:
    """Handle for an acquired lease."""

    key: str
    token: str
    ttl_seconds: float


class LeaseService(ABC):
    """
    Mutual-exclusion leases over a keyed store with atomic conditional set.

    The TTL must be larger than the worst-case time a holder needs between
    two renewals, otherwise a second holder can acquire the same key.
    """

    @abstractmethod
    def acquire(self, key: str, ttl_seconds: float) -> Optional[Lease]:
        """
        Try to take the lease without waiting.

        Returns:
            Lease handle, or None if someone else holds the key

        Raises:
            LeaseServiceError: the backing store is unavailable
        """

    @abstractmethod
    def renew(self, lease: Lease, ttl_seconds: Optional[float] = None) -> bool:
        """Extend the TTL if the lease is still ours."""

    @abstractmethod
    def release(self, lease: Lease) -> bool:
        """Give the lease back if it is still ours."""

    @contextmanager
    def keep_alive(self, lease: Lease, interval_seconds: float) -> Iterator["LeaseHeartbeat"]:
        """Renew ``lease`` in the background while the block runs."""
        heartbeat = LeaseHeartbeat(self, lease, interval_seconds)
        heartbeat.start()
        try:
            yield heartbeat
        finally:
            heartbeat.stop()


class LeaseHeartbeat:
    """Background renewer for one lease."""

    def __init__(self, service: LeaseService, lease: Lease, interval_seconds: float):
        self.service = service
        self.lease = lease
        self.interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._lost = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def lost(self) -> bool:
        """True once a renewal failed; the holder must not commit after this."""
        return self._lost.is_set()

    def start(self) -> None:
        self._thread = threading.Thread(
            target=self._loop, name=f"lease-heartbeat-{self.lease.key}", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self.interval_seconds + 1)

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                ok = self.service.renew(self.lease)
            except LeaseServiceError as e:
                logger.warning(f"Lease renew error for {self.lease.key}: {e}")
                ok = False
            if not ok:
                logger.critical(f"LEASE LOST: {self.lease.key} - another worker may take over")
                self._lost.set()
                return


class RedisLeaseService(LeaseService):
    """
    Redis-backed leases.

    Acquire is ``SET key token NX PX ttl``; renew and release are Lua scripts
    that only act when the stored token is ours.
    """

    def __init__(self, client: redis.Redis, key_prefix: str = "lock"):
        self._client = client
        self._key_prefix = key_prefix.rstrip(":")

        # Pre-register scripts for atomicity
        self._release_script = self._client.register_script(_RELEASE_LUA)
        self._renew_script = self._client.register_script(_RENEW_LUA)

    def _key(self, key: str) -> str:
        return f"{self._key_prefix}:{key}"

    def acquire(self, key: str, ttl_seconds: float) -> Optional[Lease]:
        redis_key = self._key(key)
        token = uuid.uuid4().hex
        try:
            ok = self._client.set(name=redis_key, value=token, nx=True, px=int(ttl_seconds * 1000))
        except redis.RedisError as e:
            raise LeaseServiceError(f"Lease acquire failed for {key}: {e}") from e

        if not ok:
            return None
        return Lease(key=key, token=token, ttl_seconds=ttl_seconds)

    def renew(self, lease: Lease, ttl_seconds: Optional[float] = None) -> bool:
        ttl = ttl_seconds or lease.ttl_seconds
        try:
            res = self._renew_script(keys=[self._key(lease.key)], args=[lease.token, int(ttl * 1000)])
        except redis.RedisError as e:
            raise LeaseServiceError(f"Lease renew failed for {lease.key}: {e}") from e
        return bool(res)

    def release(self, lease: Lease) -> bool:
        try:
            res = self._release_script(keys=[self._key(lease.key)], args=[lease.token])
        except redis.RedisError:
            logger.exception(f"Lease release error: {lease.key}")
            return False

        ok = bool(res)
        if not ok:
            logger.warning(f"Lease release failed (not owner?): {lease.key}")
        return ok

    def delete_all(self) -> int:
        """Drop every lease under the prefix (administrative cleanup)."""
        deleted = 0
        for redis_key in self._client.scan_iter(match=f"{self._key_prefix}:*"):
            deleted += self._client.delete(redis_key)
        return deleted


class InMemoryLeaseService(LeaseService):
    """
    Process-local leases.

    Used by the inline pipeline runner and tests; same semantics as the
    Redis service, including expiry.
    """

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        self._leases: Dict[str, Tuple[str, float]] = {}

    def acquire(self, key: str, ttl_seconds: float) -> Optional[Lease]:
        now = self._clock()
        with self._lock:
            held = self._leases.get(key)
            if held is not None and held[1] > now:
                return None
            token = uuid.uuid4().hex
            self._leases[key] = (token, now + ttl_seconds)
        return Lease(key=key, token=token, ttl_seconds=ttl_seconds)

    def renew(self, lease: Lease, ttl_seconds: Optional[float] = None) -> bool:
        now = self._clock()
        with self._lock:
            held = self._leases.get(lease.key)
            if held is None or held[0] != lease.token or held[1] <= now:
                return False
            self._leases[lease.key] = (lease.token, now + (ttl_seconds or lease.ttl_seconds))
        return True

    def release(self, lease: Lease) -> bool:
        with self._lock:
            held = self._leases.get(lease.key)
            if held is None or held[0] != lease.token:
                return False
            del self._leases[lease.key]
        return True

    def is_held(self, key: str) -> bool:
        with self._lock:
            held = self._leases.get(key)
            return held is not None and held[1] > self._clock()
