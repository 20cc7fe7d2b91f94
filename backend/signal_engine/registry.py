"""Bounded registry of pooled httpx clients keyed by base URL.

Owned by the service root. Entries idle for longer than `max_age_seconds`
are closed on the next lookup; when full, the least recently used entry is
closed to make room.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

import httpx

from .clock import SystemClock
from .config import config

logger = logging.getLogger(__name__)


def _default_factory() -> httpx.AsyncClient:
    timeout = float(config.get("external_timeout_seconds", 10.0))
    return httpx.AsyncClient(timeout=httpx.Timeout(timeout, connect=min(timeout, 5.0)))


@dataclass
class _Entry:
    client: httpx.AsyncClient
    created_at: datetime
    last_used: datetime


class ClientRegistry:
    def __init__(
        self,
        max_clients: Optional[int] = None,
        max_age_seconds: Optional[float] = None,
        factory: Optional[Callable[[], httpx.AsyncClient]] = None,
        clock=None,
    ) -> None:
        self.max_clients = max(1, int(max_clients or config.get("registry_max_clients", 16)))
        self.max_age_seconds = float(max_age_seconds or config.get("registry_max_age_seconds", 900.0))
        self.factory = factory or _default_factory
        self.clock = clock or SystemClock()
        self._entries: dict[str, _Entry] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    async def get(self, key: str) -> httpx.AsyncClient:
        async with self._lock:
            now = self.clock.now()
            await self._evict_idle(now)

            entry = self._entries.get(key)
            if entry is None:
                if len(self._entries) >= self.max_clients:
                    oldest = min(self._entries, key=lambda k: self._entries[k].last_used)
                    await self._close(oldest, "capacity")
                entry = _Entry(client=self.factory(), created_at=now, last_used=now)
                self._entries[key] = entry
                logger.debug(f"[REGISTRY] Opened client for {key} ({len(self._entries)}/{self.max_clients})")
            entry.last_used = now
            return entry.client

    async def _evict_idle(self, now: datetime) -> None:
        stale = [
            key for key, entry in self._entries.items()
            if (now - entry.last_used).total_seconds() > self.max_age_seconds
        ]
        for key in stale:
            await self._close(key, "idle")

    async def _close(self, key: str, reason: str) -> None:
        entry = self._entries.pop(key, None)
        if entry is not None:
            await entry.client.aclose()
            logger.debug(f"[REGISTRY] Closed client for {key} ({reason})")

    async def aclose(self) -> None:
        async with self._lock:
            for key in list(self._entries):
                await self._close(key, "shutdown")
