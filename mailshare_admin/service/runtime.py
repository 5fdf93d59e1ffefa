from __future__ import annotations

import asyncio
import os
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from argon2 import PasswordHasher, Type

from mailshare_admin.config import get_settings, reset_settings_cache
from mailshare_admin.logging import get_logger
from mailshare_admin.service.audit import AuditFanout
from mailshare_admin.service.auth import AdminAuthService
from mailshare_admin.service.events import (
    InMemoryEventBus,
    RedisEventBus,
    SyncRedisEventBus,
)
from mailshare_admin.service.gate import RequestGate
from mailshare_admin.service.policy import StoreInactivityPolicy
from mailshare_admin.service.revocation import RevocationService
from mailshare_admin.service.sessions import SessionRegistry
from mailshare_admin.service.tokens import TokenIssuer
from mailshare_admin.storage.memory import MemoryStore
from mailshare_admin.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    redis://:hunter2@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        if parsed.username:
            netloc = f"{parsed.username}:***@{netloc}"
        else:
            netloc = f":***@{netloc}"
        return urlunparse(
            (
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            )
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds the store, event bus and admin services for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        secret_key = self.settings.totp_secret_key or self.settings.jwt_secret
        try:
            if self.settings.use_memory_store:
                self.store: Union[MemoryStore, PostgresStore] = MemoryStore(
                    secret_key=secret_key,
                    state_path=self.settings.memory_store_path,
                )
            else:
                self.store = PostgresStore(
                    self.settings.database_url, secret_key=secret_key
                )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.events = self._build_event_bus()

        self.password_hasher = PasswordHasher(type=Type.ID)
        self.registry = SessionRegistry(self.store)
        self.tokens = TokenIssuer(self.settings)
        self.policy = StoreInactivityPolicy(self.store)
        self.audit = AuditFanout(self.store, self.events)
        self.gate = RequestGate(self.registry, self.tokens, self.policy, self.audit)
        self.revocation = RevocationService(
            self.store, self.registry, self.password_hasher
        )
        self.auth = AdminAuthService(
            self.store,
            self.settings,
            self.audit,
            self.registry,
            self.tokens,
            password_hasher=self.password_hasher,
        )
        logger.info("runtime_init_completed", pid=os.getpid())

    def _build_event_bus(self):
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode so nothing binds to a per-test loop
                if self.settings.test_mode:
                    bus = SyncRedisEventBus(
                        self.settings.redis_url, self.settings.events_channel
                    )
                else:
                    bus = RedisEventBus(
                        self.settings.redis_url, self.settings.events_channel
                    )
                bus.verify_connection()
                return bus
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required to fan out admin session and audit events; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = (
            "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        )
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; admin events only "
                "reach observers connected to this process."
            ),
            mode=fallback_mode,
        )
        return InMemoryEventBus()

    async def close(self) -> None:
        await self.events.close()
        close_store = getattr(self.store, "close", None)
        if close_store is not None:
            close_store()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton with double-checked locking."""
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
            events = runtime.events
            try:
                if isinstance(events, SyncRedisEventBus):
                    events.client.close()
                elif isinstance(events, RedisEventBus):
                    try:
                        loop = asyncio.get_running_loop()
                        loop.create_task(events.close())
                    except RuntimeError:
                        asyncio.run(events.close())
            except Exception as exc:
                # Connection may already be closed
                logger.debug("runtime_reset_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
