import logging
import threading
import uuid

import redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


def build_redis(url):
    if not url:
        return None
    return redis.Redis.from_url(url, decode_responses=True, socket_timeout=5)


class JobLock:
    """
    Single-flight guard for batch jobs.

    A process-local lock always applies; when a Redis client is configured a
    ``SET NX EX`` key extends the guard across processes. Losing either one
    (restart, key expiry) is safe: the job row's running status and the
    ledger's idempotency keys still prevent double work.
    """

    def __init__(self, redis_client=None, ttl_seconds=3600, prefix="fincore:job:"):
        self.redis = redis_client
        self.ttl_seconds = ttl_seconds
        self.prefix = prefix
        self._guard = threading.Lock()
        self._held = {}

    def acquire(self, job):
        token = uuid.uuid4().hex
        with self._guard:
            if job in self._held:
                return None
            self._held[job] = token

        if self.redis is not None:
            try:
                acquired = self.redis.set(self._key(job), token, nx=True, ex=self.ttl_seconds)
            except RedisError as e:
                logger.warning(f"Shared lock for job {job} unavailable, using local guard only: {e}")
                acquired = True
            if not acquired:
                with self._guard:
                    self._held.pop(job, None)
                return None

        return token

    def release(self, job, token):
        with self._guard:
            if self._held.get(job) == token:
                del self._held[job]

        if self.redis is not None:
            try:
                current = self.redis.get(self._key(job))
                if isinstance(current, bytes):
                    current = current.decode()
                if current == token:
                    self.redis.delete(self._key(job))
            except RedisError as e:
                logger.warning(f"Could not release shared lock for job {job}, it will expire: {e}")

    def is_held(self, job):
        with self._guard:
            return job in self._held

    def _key(self, job):
        return f"{self.prefix}{job}"
