# src/engine/cache.py
"""
ResultCache: redis-backed snapshot cache keyed by (repo_url, provider).

The cache is a latency optimisation only. Every redis failure is logged and reads as a miss.
"""
import hashlib
import json
import logging
from typing import Optional

import redis

from engine.config import CACHE_ENABLED, CACHE_KEY_PREFIX, CACHE_TTL, REDIS_URL


def make_redis_client(url: str = REDIS_URL):
    return redis.Redis.from_url(url, decode_responses=True, socket_connect_timeout=2, socket_timeout=2)


class ResultCache:
    def __init__(self, client=None, ttl: int = CACHE_TTL, key_prefix: str = CACHE_KEY_PREFIX):
        # client=None disables the cache: every lookup misses
        self.client = client
        self.ttl = ttl
        self.key_prefix = key_prefix

    @classmethod
    def from_config(cls) -> "ResultCache":
        return cls(make_redis_client() if CACHE_ENABLED else None)

    def scan_key(self, repo_url: str, provider) -> str:
        provider = getattr(provider, "value", provider)
        digest = hashlib.sha256(repo_url.encode("utf-8")).hexdigest()
        return f"{self.key_prefix}scan:{provider}:{digest}"

    def get_scan_result(self, repo_url: str, provider) -> Optional[dict]:
        if self.client is None:
            return None
        key = self.scan_key(repo_url, provider)
        try:
            raw = self.client.get(key)
        except redis.RedisError as e:
            logging.error(f"Cache read failed for {key}: {e}")
            return None
        if raw is None:
            logging.debug(f"Cache miss for key: {key}")
            return None
        try:
            value = json.loads(raw)
        except (TypeError, ValueError) as e:
            logging.warning(f"Discarding undecodable cache entry {key}: {e}")
            return None
        logging.debug(f"Cache hit for key: {key}")
        return value if isinstance(value, dict) else None

    def set_scan_result(self, repo_url: str, provider, snapshot: dict, ttl: Optional[int] = None) -> bool:
        if self.client is None:
            return False
        key = self.scan_key(repo_url, provider)
        ttl = ttl or self.ttl
        try:
            self.client.set(key, json.dumps(snapshot, default=str), ex=ttl)
        except redis.RedisError as e:
            logging.error(f"Cache write failed for {key}: {e}")
            return False
        logging.debug(f"Cache set for key: {key}, TTL: {ttl}s")
        return True

    def delete_scan_result(self, repo_url: str, provider) -> bool:
        if self.client is None:
            return False
        key = self.scan_key(repo_url, provider)
        try:
            self.client.delete(key)
        except redis.RedisError as e:
            logging.error(f"Cache delete failed for {key}: {e}")
            return False
        logging.debug(f"Cache deleted for key: {key}")
        return True

    def ping(self) -> Optional[bool]:
        if self.client is None:
            return None
        try:
            return bool(self.client.ping())
        except redis.RedisError as e:
            logging.error(f"Cache ping failed: {e}")
            return False
