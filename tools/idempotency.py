import os
import time

import redis
from loguru import logger

KEY_PREFIX = "lead:"


class Idem:
    """Remembers recently relayed lead keys so a double submit is relayed once."""

    def __init__(self, redis_url: str = None):
        self._local_expiry = {}
        url = redis_url or os.getenv("REDIS_URL", "redis://localhost:6379")
        try:
            self.r = redis.from_url(url)
            self.r.ping()
            logger.info(f"Lead dedupe store: redis at {url}")
        except Exception as e:
            logger.error(f"Redis unavailable ({e}), deduplicating leads in process memory")
            self.r = None

    def check_and_set(self, key: str, ttl: int = 3600) -> bool:
        """
        Claim a lead key for `ttl` seconds.

        Returns:
            True the first time a key is seen inside its window, False for repeats
            and for empty keys
        """
        if not key:
            logger.warning("Lead dedupe called without a key")
            return False

        try:
            if self.r:
                return self.r.set(f"{KEY_PREFIX}{key}", int(time.time()), ex=ttl, nx=True) is True

            now = time.time()
            if self._local_expiry.get(key, 0) > now:
                return False
            self._local_expiry[key] = now + ttl
            return True

        except Exception as e:
            logger.error(f"Lead dedupe lookup failed for {key}: {e}")
            # unknown state counts as a new lead
            return True

    def clear_key(self, key: str) -> bool:
        """Forget a lead key so it can be relayed again."""
        try:
            if self.r:
                return bool(self.r.delete(f"{KEY_PREFIX}{key}"))
            self._local_expiry.pop(key, None)
            return True
        except Exception as e:
            logger.error(f"Could not clear lead key {key}: {e}")
            return False
