"""
Repositories for client configuration and per-client usage limits.

Client configuration is owned by an external configuration service; the
engine only reads a snapshot of it. Nothing here persists request data.
"""

import json
import threading
import time
from collections import deque
from pathlib import Path
from typing import Deque, Dict, Iterable, Optional

from pydantic import ValidationError as PydanticValidationError

from imagery.core.config import Settings, settings as default_settings
from imagery.core.exceptions import RateLimitedError
from imagery.core.logging import get_logger
from imagery.engines.detection.schemas import ClientConfig

logger = get_logger(__name__)

MINUTE = 60.0
DAY = 86400.0


# =============================================================================
# Client Config Repository
# =============================================================================

class ClientConfigRepository:
    """Read-only lookup of ClientConfig by client id."""

    def __init__(self, configs: Iterable[ClientConfig] = (), settings: Settings = default_settings):
        self._configs: Dict[str, ClientConfig] = {c.client_id: c for c in configs}
        self._defaults = {
            "requests_per_minute": settings.DEFAULT_REQUESTS_PER_MINUTE,
            "requests_per_day": settings.DEFAULT_REQUESTS_PER_DAY,
            "concurrent_limit": settings.DEFAULT_CONCURRENT_LIMIT,
        }

    @classmethod
    def from_file(cls, path: str, settings: Settings = default_settings) -> "ClientConfigRepository":
        """
        Load a snapshot exported by the configuration service.

        Expected shape: ``{"clients": [{"client_id": "...", ...}, ...]}``
        or a bare list of client objects.
        """
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
        entries = raw.get("clients", []) if isinstance(raw, dict) else raw
        configs = []
        for entry in entries:
            try:
                configs.append(ClientConfig(**entry))
            except (PydanticValidationError, TypeError) as e:
                logger.warning("client_config_rejected", client_id=entry.get("client_id"), error=str(e))
        logger.info("client_configs_loaded", path=path, count=len(configs))
        return cls(configs, settings=settings)

    @classmethod
    def from_settings(cls, settings: Settings = default_settings) -> "ClientConfigRepository":
        if settings.CLIENT_CONFIG_PATH:
            return cls.from_file(settings.CLIENT_CONFIG_PATH, settings=settings)
        return cls(settings=settings)

    def get(self, client_id: str) -> ClientConfig:
        """Known clients get their own config, everyone else the defaults."""
        config = self._configs.get(client_id)
        if config is None:
            config = ClientConfig(client_id=client_id, **self._defaults)
        return config

    def __contains__(self, client_id: str) -> bool:
        return client_id in self._configs

    def __len__(self) -> int:
        return len(self._configs)


# =============================================================================
# Client Rate Limiter
# =============================================================================

class _ClientUsage:
    __slots__ = ("minute", "day", "in_flight")

    def __init__(self):
        self.minute: Deque[float] = deque()
        self.day: Deque[float] = deque()
        self.in_flight = 0


class ClientRateLimiter:
    """
    Sliding-window request limits plus a concurrent-request cap per client.

    Usage:
        limiter.acquire(config)
        try:
            ...
        finally:
            limiter.release(config.client_id)
    """

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        self._usage: Dict[str, _ClientUsage] = {}

    def acquire(self, config: ClientConfig):
        """
        Count one request against the client's limits.

        Raises:
            RateLimitedError: a limit is already exhausted (nothing is counted)
        """
        now = self._clock()
        with self._lock:
            usage = self._usage.setdefault(config.client_id, _ClientUsage())
            self._expire(usage, now)

            if usage.in_flight >= config.concurrent_limit:
                raise RateLimitedError(config.client_id, "concurrent_limit", retry_after=1.0)
            if len(usage.minute) >= config.requests_per_minute:
                retry_after = max(0.1, usage.minute[0] + MINUTE - now)
                raise RateLimitedError(config.client_id, "requests_per_minute", retry_after=round(retry_after, 1))
            if len(usage.day) >= config.requests_per_day:
                retry_after = max(0.1, usage.day[0] + DAY - now)
                raise RateLimitedError(config.client_id, "requests_per_day", retry_after=round(retry_after, 1))

            usage.minute.append(now)
            usage.day.append(now)
            usage.in_flight += 1

    def release(self, client_id: str):
        with self._lock:
            usage = self._usage.get(client_id)
            if usage is not None and usage.in_flight > 0:
                usage.in_flight -= 1

    def in_flight(self, client_id: str) -> int:
        with self._lock:
            usage = self._usage.get(client_id)
            return usage.in_flight if usage else 0

    @staticmethod
    def _expire(usage: _ClientUsage, now: float):
        while usage.minute and now - usage.minute[0] >= MINUTE:
            usage.minute.popleft()
        while usage.day and now - usage.day[0] >= DAY:
            usage.day.popleft()

    def get_stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "tracked_clients": len(self._usage),
                "in_flight": sum(u.in_flight for u in self._usage.values()),
            }
