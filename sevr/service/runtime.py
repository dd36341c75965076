from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from sevr.config import AuthConfig, get_settings, reset_settings_cache
from sevr.logging import get_logger
from sevr.service.auth import ActivityNotifier, AuthService
from sevr.service.email import EmailService
from sevr.service.otp import OTPManager
from sevr.service.tokens import TokenService
from sevr.service.vault import VaultService
from sevr.storage.memory import MemoryStore
from sevr.storage.models import utcnow
from sevr.storage.postgres import PostgresStore
from sevr.storage.redis_cache import RedisCache

logger = get_logger(__name__)

# Idle buckets are dropped once the in-process table grows past this size
LOCAL_RATE_LIMIT_PRUNE_AT = 1024


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds the store, cache and service singletons for the FastAPI app."""

    def __init__(self, *, notifier: Optional[ActivityNotifier] = None):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            if self.settings.use_memory_store:
                self.store = MemoryStore(
                    self.settings.shared_fs_root
                    if self.settings.memory_store_persist
                    else None
                )
            else:
                self.store = PostgresStore(self.settings.database_url)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                if not (self.settings.test_mode or self.settings.allow_redis_fallback_dev):
                    raise RuntimeError(
                        "Redis is configured but unreachable; start Redis, unset REDIS_URL, "
                        "or set ALLOW_REDIS_FALLBACK_DEV=true for in-process rate limits."
                    ) from exc
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                )

        self.auth_config = AuthConfig.from_settings(self.settings)
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
        )
        self.otp = OTPManager(self.store, self.email)
        self.tokens = TokenService(self.store, self.auth_config)
        self.auth = AuthService(
            self.store, self.otp, self.tokens, self.auth_config, notifier=notifier
        )
        self.vault = VaultService(self.store)

        self._local_rate_limits: Dict[str, Tuple[float, datetime]] = {}
        self._local_rate_limit_lock = asyncio.Lock()

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            admin_allowlist_size=len(self.auth_config.admin_allowlist),
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(*, notifier: Optional[ActivityNotifier] = None) -> Runtime:
    """Rebuild the runtime from a fresh read of the environment (TEST_MODE only)."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(notifier=notifier)
        return runtime


def _prune_local_rate_limits(runtime: Runtime, cutoff: datetime) -> int:
    """Drop buckets untouched since ``cutoff``; a full window refills them anyway."""
    stale = [key for key, (_, last_ts) in runtime._local_rate_limits.items() if last_ts <= cutoff]
    for key in stale:
        del runtime._local_rate_limits[key]
    if stale:
        logger.debug("rate_limit_buckets_pruned", count=len(stale))
    return len(stale)


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Token-bucket rate limit; Redis when available, otherwise per process.

    Returns ``allowed`` or, with ``return_remaining``, ``(allowed, remaining,
    retry_after_seconds)``.
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    now = utcnow()
    refill_rate = float(limit) / float(window_seconds)
    async with runtime._local_rate_limit_lock:
        tokens, last_ts = runtime._local_rate_limits.get(key, (float(limit), now))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        runtime._local_rate_limits[key] = (tokens, now)
        if len(runtime._local_rate_limits) > LOCAL_RATE_LIMIT_PRUNE_AT:
            _prune_local_rate_limits(runtime, now - timedelta(seconds=window_seconds))
        retry_after = 0 if allowed else int((cost - tokens) / refill_rate) + 1
        remaining = int(tokens)
    if return_remaining:
        return (allowed, remaining, retry_after)
    return allowed
