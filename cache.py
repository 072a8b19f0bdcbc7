from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable

from cachetools import TLRUCache

logger = logging.getLogger("influxity.cache")

DEFAULT_TTL_SECONDS = 3600
STATIC_TTL_SECONDS = 86400

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits: list[str] = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def simple_hash(text: str) -> str:
    """Non-cryptographic 32-bit rolling hash (h * 31 + c), rendered in base 36.

    Collisions only produce a wrong-but-plausible cache hit within one feature
    type, which is acceptable for an advisory cache.
    """
    h = 0
    for char in text:
        h = ((h << 5) - h + ord(char)) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return _to_base36(abs(h))


@dataclass(frozen=True)
class CacheEntry:
    value: str
    ttl: float


def _entry_expiry(key: str, entry: CacheEntry, now: float) -> float:
    return now + entry.ttl


class ResponseCache:
    """In-memory cache of LLM responses keyed by (type, prompt, user).

    Entries live in a ``cachetools.TLRUCache`` whose time-to-use comes from
    the ttl stored with each entry, so ``set`` and ``set_static`` can mix
    lifetimes in one store. Every public method swallows internal failures so
    callers can always fall back to calling the model directly.
    """

    def __init__(
        self,
        *,
        default_ttl: int = DEFAULT_TTL_SECONDS,
        static_ttl: int = STATIC_TTL_SECONDS,
        max_keys: int | None = None,
        hash_fn: Callable[[str], str] = simple_hash,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.default_ttl = default_ttl
        self.static_ttl = static_ttl
        self.max_keys = max_keys
        self._hash = hash_fn
        # Request handlers run in a threadpool; every store access holds this.
        self._lock = threading.Lock()
        self._store: TLRUCache[str, CacheEntry] = TLRUCache(
            maxsize=max_keys if max_keys is not None else math.inf,
            ttu=_entry_expiry,
            timer=clock,
        )
        self._hits = 0
        self._misses = 0

    def make_key(self, type_: str, prompt: str, user_id: int | None = None) -> str:
        user_part = f"user:{user_id}:" if user_id else ""
        return f"{type_}:{user_part}{self._hash(prompt)}"

    def get(self, type_: str, prompt: str, user_id: int | None = None) -> str | None:
        try:
            key = self.make_key(type_, prompt, user_id)
            with self._lock:
                entry = self._store.get(key)
                if entry is None:
                    self._misses += 1
                    return None
                self._hits += 1
                return entry.value
        except Exception:
            logger.exception("Cache lookup failed for type %s.", type_)
            return None

    def set(
        self,
        type_: str,
        prompt: str,
        value: str,
        user_id: int | None = None,
        ttl: int | None = None,
    ) -> bool:
        try:
            key = self.make_key(type_, prompt, user_id)
            ttl_seconds = self.default_ttl if ttl is None else ttl
            with self._lock:
                if ttl_seconds <= 0:
                    # TLRUCache skips already-expired writes; drop any older value.
                    self._store.pop(key, None)
                    return True
                if self.max_keys is not None and key not in self._store:
                    self._store.expire()
                    if len(self._store) >= self.max_keys:
                        logger.warning("Cache full (%d keys); not caching %s.", self.max_keys, type_)
                        return False
                self._store[key] = CacheEntry(value=value, ttl=ttl_seconds)
            return True
        except Exception:
            logger.exception("Cache write failed for type %s.", type_)
            return False

    def set_static(
        self, type_: str, prompt: str, value: str, user_id: int | None = None
    ) -> bool:
        return self.set(type_, prompt, value, user_id, ttl=self.static_ttl)

    def delete(self, type_: str, prompt: str, user_id: int | None = None) -> int:
        try:
            key = self.make_key(type_, prompt, user_id)
            with self._lock:
                live = key in self._store
                self._store.pop(key, None)
        except Exception:
            logger.exception("Cache delete failed for type %s.", type_)
            return 0
        return 1 if live else 0

    def clear(self) -> None:
        try:
            with self._lock:
                self._store.clear()
        except Exception:
            logger.exception("Cache clear failed.")
            return
        logger.info("Response cache cleared.")

    def stats(self) -> dict[str, int]:
        try:
            with self._lock:
                self._store.expire()
                return {"hits": self._hits, "misses": self._misses, "keys": len(self._store)}
        except Exception:
            logger.exception("Cache stats failed.")
            return {"hits": self._hits, "misses": self._misses, "keys": 0}
