"""Runtime entry point for the escrow coordinator.

Lifecycle:
    1. Startup: initialize logging, database (tables in dev/SQLite), Redis.
    2. Running: the workflow engine evaluates open disputes every interval.
    3. Shutdown: stop the engine, close database and Redis connections.

Outside --in-memory mode PostgreSQL and Redis are required: startup fails with
DependencyUnavailableError when Redis cannot be reached. --in-memory uses the
in-process event bus, fired-key store, and repository instead.

Run with:
    uv run python -m escrow_coordinator.main
    uv run python -m escrow_coordinator.main --in-memory --once
    uv run python -m escrow_coordinator.main --admin alice:PAYMENT,FRAUD --admin bob
"""

from __future__ import annotations

import argparse
import asyncio
import signal
from contextlib import suppress
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from escrow_coordinator.clock import SystemClock
from escrow_coordinator.config import Settings, get_settings
from escrow_coordinator.domain.exceptions import DependencyUnavailableError
from escrow_coordinator.domain.models import AdminWorkload
from escrow_coordinator.infrastructure.event_bus import GatewayNotifier, InMemoryEventBus
from escrow_coordinator.infrastructure.locks import KeyedLock
from escrow_coordinator.infrastructure.memory import (
    InMemoryAdminDirectory,
    InMemoryFiredKeyStore,
    InMemoryRepository,
)
from escrow_coordinator.logging_config import get_logger, setup_logging
from escrow_coordinator.orchestration.workflow_engine import WorkflowEngine, configured_rules
from escrow_coordinator.services.admin_balancer import AdminWorkloadBalancer
from escrow_coordinator.services.dispute_service import DisputeService
from escrow_coordinator.services.transaction_service import TransactionService

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from escrow_coordinator.domain.ports import (
        AdminDirectory,
        Clock,
        EventGateway,
        FiredKeyStore,
        Repository,
    )

logger = get_logger(__name__)


@dataclass
class Runtime:
    """Every wired collaborator, plus the hooks that release external connections."""

    settings: Settings
    clock: Clock
    repository: Repository
    directory: AdminDirectory
    gateway: EventGateway
    fired_keys: FiredKeyStore
    transactions: TransactionService
    disputes: DisputeService
    balancer: AdminWorkloadBalancer
    engine: WorkflowEngine
    closers: list[Callable[[], Awaitable[None]]] = field(default_factory=list)

    async def add_admin(self, admin: AdminWorkload, position: int = 0) -> None:
        """Register an admin in whichever directory backs this runtime."""
        if isinstance(self.directory, InMemoryAdminDirectory):
            self.directory.add(admin)
        else:
            await self.directory.upsert_admin(  # type: ignore[attr-defined]
                admin, position=position
            )

    async def close(self) -> None:
        await self.engine.stop()
        await _close_all(self.closers)


async def _close_all(closers: list[Callable[[], Awaitable[None]]]) -> None:
    """Run close hooks newest first; a failing hook does not stop the rest."""
    for closer in reversed(closers):
        try:
            await closer()
        except Exception:
            logger.exception("runtime.close_failed")
    closers.clear()


async def build_runtime(
    settings: Settings | None = None,
    in_memory: bool = False,
    clock: Clock | None = None,
) -> Runtime:
    """Wire repositories, gateways, services, and the workflow engine.

    Raises:
        DependencyUnavailableError: If Redis cannot be reached outside
            in-memory mode. Connections opened so far are closed first.
    """
    settings = settings or get_settings()
    clock = clock or SystemClock()
    closers: list[Callable[[], Awaitable[None]]] = []

    repository: Repository
    directory: AdminDirectory
    if in_memory:
        repository = InMemoryRepository()
        directory = InMemoryAdminDirectory()
    else:
        from escrow_coordinator.infrastructure.database import (
            SqlAdminDirectory,
            SqlRepository,
            close_db,
            get_session_factory,
            init_db,
        )

        await init_db()
        closers.append(close_db)
        session_factory = get_session_factory()
        repository = SqlRepository(session_factory)
        directory = SqlAdminDirectory(session_factory)

    gateway: EventGateway
    fired_keys: FiredKeyStore
    if in_memory:
        gateway = InMemoryEventBus()
        fired_keys = InMemoryFiredKeyStore(clock)
    else:
        from escrow_coordinator.infrastructure import redis_client

        try:
            redis = await redis_client.init_redis()
        except Exception as exc:
            logger.error("runtime.redis_unavailable", error=str(exc))
            closers.append(redis_client.close_redis)
            await _close_all(closers)
            raise DependencyUnavailableError("Redis", str(exc)) from exc
        closers.append(redis_client.close_redis)
        gateway = redis_client.RedisEventGateway(redis, prefix=settings.event_channel_prefix)
        fired_keys = redis_client.RedisFiredKeyStore(
            redis, prefix=settings.event_channel_prefix
        )

    balancer = AdminWorkloadBalancer(directory)
    transactions = TransactionService(
        repository,
        gateway,
        clock,
        locks=KeyedLock(),
        fee_percent=settings.escrow_fee_percent,
        default_currency=settings.default_currency,
    )
    disputes = DisputeService(repository, transactions, balancer, gateway, clock)
    rules, matrix = configured_rules(settings)
    engine = WorkflowEngine(
        repository,
        disputes,
        balancer,
        gateway,
        GatewayNotifier(gateway),
        fired_keys,
        clock,
        rules=rules,
        escalation_matrix=matrix,
        interval_seconds=settings.workflow_interval_seconds,
        fired_key_ttl_seconds=settings.fired_key_ttl_seconds,
        claim_grace_seconds=settings.scheduled_claim_grace_seconds,
    )
    logger.info(
        "runtime.built",
        in_memory=in_memory,
        rules=engine.rule_ids,
    )
    return Runtime(
        settings=settings,
        clock=clock,
        repository=repository,
        directory=directory,
        gateway=gateway,
        fired_keys=fired_keys,
        transactions=transactions,
        disputes=disputes,
        balancer=balancer,
        engine=engine,
        closers=closers,
    )


def parse_admin(spec: str) -> AdminWorkload:
    """Parse ``id[:SPECIALTY,...][@max_load]`` into an AdminWorkload."""
    spec, _, max_load = spec.partition("@")
    admin_id, _, specialties = spec.partition(":")
    if not admin_id:
        raise argparse.ArgumentTypeError(f"invalid admin '{spec}'")
    try:
        load = int(max_load) if max_load else 10
    except ValueError as err:
        raise argparse.ArgumentTypeError(f"invalid max load in '{spec}'") from err
    return AdminWorkload(
        admin_id=admin_id,
        name=admin_id,
        max_load=load,
        specialties=[s.strip().upper() for s in specialties.split(",") if s.strip()],
    )


async def run(
    once: bool = False,
    in_memory: bool = False,
    admins: list[AdminWorkload] | None = None,
) -> None:
    """Run the workflow engine until interrupted (or for a single tick)."""
    settings = get_settings()
    setup_logging(log_level=settings.app_log_level, json_logs=not settings.is_development)
    logger.info("runtime.starting", env=settings.app_env, once=once, in_memory=in_memory)

    runtime = await build_runtime(settings, in_memory=in_memory)
    try:
        for position, admin in enumerate(admins or []):
            await runtime.add_admin(admin, position=position)

        if once:
            report = await runtime.engine.run_once()
            logger.info("runtime.tick_done", aborted=report.aborted, **report.summary())
            return

        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            with suppress(NotImplementedError):
                loop.add_signal_handler(sig, stop_event.set)

        runtime.engine.start()
        logger.info("runtime.started", interval_seconds=settings.workflow_interval_seconds)
        await stop_event.wait()
    finally:
        logger.info("runtime.shutting_down")
        await runtime.close()
        logger.info("runtime.stopped")


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Escrow coordinator workflow runtime")
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single workflow tick and exit.",
    )
    parser.add_argument(
        "--in-memory",
        action="store_true",
        help="Use in-memory storage, events, and fired keys (no PostgreSQL or Redis).",
    )
    parser.add_argument(
        "--admin",
        dest="admins",
        action="append",
        type=parse_admin,
        default=[],
        metavar="ID[:SPECIALTIES][@MAX_LOAD]",
        help="Register a dispute admin before starting. Repeatable.",
    )
    args = parser.parse_args(argv)
    asyncio.run(run(once=args.once, in_memory=args.in_memory, admins=args.admins))


if __name__ == "__main__":
    main()
