# utils/redis_conn.py
import hashlib
import json
import logging
import os
from functools import lru_cache
from typing import List, Optional

import redis
from dotenv import load_dotenv
from redis.lock import Lock

load_dotenv()

logger = logging.getLogger(__name__)


class RedisConnection:
    """
    Thin wrapper around a Redis client: query embedding cache và
    lock theo conversation cho bước compaction.
    """

    def __init__(self, client: Optional[redis.Redis] = None):
        if client is not None:
            self.client = client
            return

        # Load từ .env
        redis_uri = os.getenv("REDIS_URI")
        if redis_uri:
            self.client = redis.from_url(redis_uri, decode_responses=True)
        else:
            redis_host = os.getenv("REDIS_HOST", "localhost")
            redis_port_raw = os.getenv("REDIS_PORT", "6379")
            redis_db_raw = os.getenv("REDIS_DB", "0")

            try:
                redis_port = int(redis_port_raw)
            except ValueError:
                redis_port = 6379

            try:
                redis_db = int(redis_db_raw) if redis_db_raw.strip() != "" else 0
            except ValueError:
                redis_db = 0

            redis_password = os.getenv("REDIS_PASSWORD", None)

            self.client = redis.Redis(
                host=redis_host,
                port=redis_port,
                db=redis_db,
                password=redis_password if redis_password else None,
                socket_timeout=int(os.getenv("REDIS_SOCKET_TIMEOUT", 5)),
                decode_responses=True,
            )
            self.check_connection()

    # Cache embeddings (query → embedding)
    @staticmethod
    def query_embedding_key(query: str) -> str:
        # hash() của Python thay đổi theo process, dùng sha256 để key ổn định
        digest = hashlib.sha256(query.encode("utf-8")).hexdigest()
        return f"embed:query:{digest}"

    def get_query_embedding(self, query: str) -> Optional[List[float]]:
        data = self.client.get(self.query_embedding_key(query))
        if data:
            return json.loads(data)
        return None

    def cache_query_embedding(self, query: str, embedding: List[float], ttl=None):
        if ttl is None:
            ttl = int(os.getenv("CACHE_EMBEDDING_TTL", 1800))
        self.client.setex(self.query_embedding_key(query), ttl, json.dumps(embedding))

    # Lock cho compaction (single writer theo conversation)
    def try_acquire_lock(self, name: str, ttl=None) -> Optional[Lock]:
        """
        Non-blocking acquire. Trả về Lock nếu lấy được, None nếu đang có
        worker khác giữ lock.
        """
        if ttl is None:
            # Phải dài hơn một lần summarize tệ nhất (LLM_TIMEOUT x số lần retry của client)
            ttl = int(os.getenv("COMPACTION_LOCK_TTL", 600))
        lock = self.client.lock(f"lock:{name}", timeout=ttl)
        if lock.acquire(blocking=False):
            return lock
        return None

    def release_lock(self, lock: Lock):
        try:
            lock.release()
        except redis.RedisError as e:
            # Lock đã hết hạn hoặc Redis mất kết nối; lock tự hết hạn theo TTL
            logger.warning(f"[Redis] Lock release failed: {e}")

    def ping(self):
        """Check if Redis connection is alive"""
        return self.client.ping()

    def check_connection(self):
        """Check if Redis connection is alive (alias for ping with error handling)"""
        try:
            if self.client and self.ping():
                logger.info("[Redis] Connection OK")
                return True
        except redis.RedisError as e:
            logger.error(f"[Redis] Connection error: {e}")
        return False


@lru_cache(maxsize=1)
def get_redis_connection() -> RedisConnection:
    """
    FastAPI dependency factory that returns a singleton RedisConnection instance.
    """
    return RedisConnection()
