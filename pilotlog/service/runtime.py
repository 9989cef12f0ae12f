from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from pilotlog.config import get_settings, reset_settings_cache
from pilotlog.logging import get_logger
from pilotlog.service.access import AccessGuard
from pilotlog.service.auth import AuthService
from pilotlog.service.notifications import TokenNotifier
from pilotlog.service.rate_limit import MemoryRateLimitBackend
from pilotlog.service.sessions import SessionManager
from pilotlog.storage.memory import MemoryStore
from pilotlog.storage.postgres import PostgresStore
from pilotlog.storage.redis_cache import RedisRateLimitBackend

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        netloc = f"{parsed.username or ''}:***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.rate_limit_backend = self._build_rate_limit_backend()
        self.sessions = SessionManager(
            self.store,
            ttl_minutes=self.settings.session_ttl_minutes,
            cookie_name=self.settings.session_cookie_name,
            secure=self.settings.cookie_secure,
        )
        self.guard = AccessGuard(self.sessions)
        self.notifier = TokenNotifier(
            self.settings.app_base_url, capture=self.settings.test_mode
        )
        self.auth = AuthService(
            self.store,
            self.settings,
            sessions=self.sessions,
            rate_limit_backend=self.rate_limit_backend,
            notifier=self.notifier,
        )

    def _build_rate_limit_backend(self):
        redis_url = self.settings.redis_url
        if redis_url:
            try:
                backend = RedisRateLimitBackend(redis_url)
                backend.verify_connection()
                logger.info("rate_limit_backend", backend="redis")
                return backend
            except Exception as exc:
                logger.warning(
                    "redis_unavailable_fallback",
                    redis_url=_mask_url_password(redis_url),
                    error=str(exc),
                    message="Rate limits are process-local until Redis is reachable",
                )
        logger.info("rate_limit_backend", backend="memory")
        return MemoryRateLimitBackend()

    async def close(self) -> None:
        if isinstance(self.rate_limit_backend, RedisRateLimitBackend):
            await self.rate_limit_backend.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the unlocked read is the fast path once the
    runtime exists.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""

    global runtime

    with _runtime_lock:
        if runtime is not None:
            try:
                asyncio.get_running_loop().create_task(runtime.close())
            except RuntimeError:
                asyncio.run(runtime.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
