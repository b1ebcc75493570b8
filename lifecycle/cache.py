from __future__ import annotations

import json
from typing import Any

import redis

KEY_PREFIX = "lifecycle:round_status"


class RoundStatusCache:
    """Read-through cache for operator status views.

    Advisory only: no execution decision reads from it, and every status
    write invalidates the round's entry.
    """

    def __init__(self, client: "redis.Redis", ttl_seconds: int = 300, prefix: str = KEY_PREFIX) -> None:
        self.client = client
        self.ttl_seconds = max(1, int(ttl_seconds))
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str, ttl_seconds: int = 300) -> "RoundStatusCache":
        client = redis.Redis.from_url(url, socket_connect_timeout=5, socket_timeout=5, decode_responses=True)
        client.ping()
        return cls(client, ttl_seconds=ttl_seconds)

    def _key(self, round_id: str) -> str:
        return f"{self.prefix}:{round_id}"

    def get(self, round_id: str) -> dict[str, Any] | None:
        try:
            raw = self.client.get(self._key(round_id))
        except redis.RedisError:
            return None
        if not raw:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            return None

    def put(self, round_id: str, view: dict[str, Any]) -> None:
        try:
            self.client.set(
                self._key(round_id),
                json.dumps(view, separators=(",", ":"), sort_keys=True, default=str),
                ex=self.ttl_seconds,
            )
        except redis.RedisError:
            return

    def invalidate(self, round_id: str) -> None:
        try:
            self.client.delete(self._key(round_id))
        except redis.RedisError:
            return
