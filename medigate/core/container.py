"""
Service container for Medigate.

build_services() wires the secret and clock services, token codec,
principal store, rate limiter, audit log, auth pipeline and credential
flows from one Settings object. The result lives on app.state.services;
nothing is kept in module globals.

Startup creates SQL tables when a database is configured. Shutdown runs
the registered close handlers in reverse order, each under a timeout.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Coroutine, Optional

from medigate.core.audit import (
    AuditLog,
    AuditSink,
    FileAuditSink,
    LoggingAuditSink,
    MemoryAuditSink,
    WebhookAuditSink,
)
from medigate.core.clock import Clock, SystemClock
from medigate.core.config import ConfigError, Settings
from medigate.core.database import Database
from medigate.core.keys import KeyProvider
from medigate.core.passwords import PasswordHasher
from medigate.core.pipeline import AuthPipeline
from medigate.core.principals import CachedPrincipalStore, InMemoryUserStore, UserStore
from medigate.core.rate_limit import (
    CounterStore,
    MemoryCounterStore,
    RateLimiter,
    RedisCounterStore,
    default_bot_check,
)
from medigate.core.sessions import MemorySessionStore, SessionStore
from medigate.core.tokens import TokenCodec
from medigate.core.verification import MemoryVerificationStore, VerificationService, VerificationStore

if TYPE_CHECKING:
    from medigate.services.credentials import CredentialService
    from medigate.services.notifications import Notifier

logger = logging.getLogger(__name__)

SHUTDOWN_TIMEOUT = 10.0

ShutdownHandler = Callable[[], Coroutine[Any, Any, None]]


@dataclass
class AuthServices:
    """Everything a request needs, reachable from request.app.state.services."""
    settings: Settings
    clock: Clock
    keys: KeyProvider
    codec: TokenCodec
    hasher: PasswordHasher
    users: CachedPrincipalStore
    sessions: SessionStore
    counters: CounterStore
    limiter: RateLimiter
    audit: AuditLog
    verification: VerificationService
    pipeline: AuthPipeline
    credentials: "CredentialService"
    notifier: "Notifier"
    database: Optional[Database] = None
    _shutdown_handlers: list[ShutdownHandler] = field(default_factory=list)

    def on_shutdown(self, handler: ShutdownHandler) -> None:
        self._shutdown_handlers.append(handler)

    async def startup(self) -> None:
        if self.database is not None:
            await self.database.create_all()
            logger.info("Database tables ready")
        logger.info(
            "Auth services started (audit sink %s, rate-limit store %s)",
            self.audit.sink.name,
            self.settings.rate_limit_store,
        )

    async def shutdown(self) -> None:
        """Run close handlers, newest first. A failing handler does not stop the rest."""
        for handler in reversed(self._shutdown_handlers):
            try:
                await asyncio.wait_for(handler(), timeout=SHUTDOWN_TIMEOUT)
            except asyncio.TimeoutError:
                logger.error("Shutdown handler timed out: %s", handler.__name__)
            except Exception as e:
                logger.error("Shutdown handler failed: %s - %s", handler.__name__, e)
        self._shutdown_handlers.clear()
        logger.info("Auth services stopped")

    async def ready(self) -> dict[str, Any]:
        """Readiness checks for /readyz."""
        checks: dict[str, Any] = {"audit": self.audit.status()}
        if self.database is not None:
            try:
                await asyncio.wait_for(self.database.ping(), timeout=self.settings.upstream_timeout_seconds)
                checks["database"] = {"available": True}
            except Exception as e:
                logger.warning("Database readiness check failed: %s", e)
                checks["database"] = {"available": False}
        return checks


# =============================================================================
# Builders
# =============================================================================

def build_audit_sink(settings: Settings, clock: Clock, database: Optional[Database]) -> AuditSink:
    """Audit destination from AUDIT_SINK. An unknown value fails startup."""
    target = settings.audit_sink
    if target == "memory":
        return MemoryAuditSink()
    if target == "log":
        return LoggingAuditSink()
    if target.startswith("file:"):
        return FileAuditSink(Path(target[len("file:"):]), clock)
    if target.startswith("webhook:"):
        return WebhookAuditSink(target[len("webhook:"):], timeout=settings.upstream_timeout_seconds)
    if target == "database":
        if database is None:
            raise ConfigError("AUDIT_SINK=database requires DATABASE_URL")
        from medigate.services.sql_store import SqlAuditSink

        return SqlAuditSink(database)
    raise ConfigError(f"unknown audit sink {target!r}")


def build_counter_store(settings: Settings) -> CounterStore:
    if settings.rate_limit_store == "external":
        if not settings.rate_limit_redis_url:
            raise ConfigError("RATE_LIMIT_STORE=external requires RATE_LIMIT_REDIS_URL")
        return RedisCounterStore(settings.rate_limit_redis_url)
    return MemoryCounterStore()


def build_services(
    settings: Settings,
    *,
    clock: Optional[Clock] = None,
    user_store: Optional[UserStore] = None,
    notifier=None,
    database: Optional[Database] = None,
) -> AuthServices:
    """
    Wire the auth core.

    With DATABASE_URL set (or a Database passed in), users, sessions and
    verification codes live in SQL; otherwise in-process stores are used.
    """
    from medigate.services.credentials import CredentialService
    from medigate.services.notifications import OutboxNotifier

    clock = clock or SystemClock()
    if database is None and settings.database_url:
        database = Database(settings.database_url)

    keys = KeyProvider(settings)
    codec = TokenCodec(keys, clock, settings)
    hasher = PasswordHasher(settings.kdf_params)

    if database is not None:
        from medigate.services.sql_store import SqlSessionStore, SqlUserStore, SqlVerificationStore

        base_users: UserStore = user_store or SqlUserStore(database, clock)
        sessions: SessionStore = SqlSessionStore(database)
        codes: VerificationStore = SqlVerificationStore(database)
    else:
        base_users = user_store or InMemoryUserStore(clock)
        sessions = MemorySessionStore()
        codes = MemoryVerificationStore()

    users = CachedPrincipalStore(base_users, clock)
    counters = build_counter_store(settings)
    limiter = RateLimiter(counters, clock, bot_check=default_bot_check)
    audit = AuditLog(
        build_audit_sink(settings, clock, database),
        clock,
        buffer_size=settings.audit_buffer_size,
        outage_seconds=settings.audit_sink_outage_seconds,
        timeout_seconds=settings.upstream_timeout_seconds,
    )
    verification = VerificationService(codes, keys, clock)
    pipeline = AuthPipeline(
        codec,
        users,
        sessions,
        limiter,
        audit,
        clock,
        upstream_timeout=settings.upstream_timeout_seconds,
    )
    notifier = notifier or OutboxNotifier(clock)
    credentials = CredentialService(
        users=users,
        sessions=sessions,
        codec=codec,
        hasher=hasher,
        verification=verification,
        limiter=limiter,
        audit=audit,
        notifier=notifier,
        clock=clock,
        timeout=settings.upstream_timeout_seconds,
    )

    services = AuthServices(
        settings=settings,
        clock=clock,
        keys=keys,
        codec=codec,
        hasher=hasher,
        users=users,
        sessions=sessions,
        counters=counters,
        limiter=limiter,
        audit=audit,
        verification=verification,
        pipeline=pipeline,
        credentials=credentials,
        notifier=notifier,
        database=database,
    )

    # Registered first, closed last.
    if database is not None:
        services.on_shutdown(database.dispose)
    services.on_shutdown(counters.close)
    services.on_shutdown(sessions.close)
    services.on_shutdown(audit.close)
    return services
