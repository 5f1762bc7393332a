"""
Wiring of the migration components.

The HTTP service, the scheduler jobs and every CLI command build one
``MigrationServices`` container and pass it explicitly; nothing below it reads
module-level migration state.
"""

from dataclasses import dataclass
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from schema_compat.adapters import ConversationAdapter, EffectDispatcher, TradeAdapter
from schema_compat.core.database import get_database
from schema_compat.migrations.cleanup import LegacyCleanup
from schema_compat.migrations.executor import BatchMigrationExecutor
from schema_compat.migrations.index_verifier import IndexVerifier
from schema_compat.migrations.monitoring import ConsistencySampler, HealthMonitor, OperationStats
from schema_compat.migrations.registry import MigrationRegistry
from schema_compat.migrations.rollback import RollbackManager


@dataclass
class MigrationServices:
    db: AsyncIOMotorDatabase
    registry: MigrationRegistry
    stats: OperationStats
    sampler: ConsistencySampler
    rollback: RollbackManager
    monitor: HealthMonitor
    dispatcher: EffectDispatcher
    executor: BatchMigrationExecutor
    cleanup: LegacyCleanup
    verifier: IndexVerifier
    trades: TradeAdapter
    conversations: ConversationAdapter


async def build_services(
    db: Optional[AsyncIOMotorDatabase] = None,
    verifier: Optional[IndexVerifier] = None,
) -> MigrationServices:
    """Create every component around one database and initialize the registry."""
    db = db if db is not None else get_database()
    registry = MigrationRegistry(db)
    await registry.initialize()

    stats = OperationStats()
    sampler = ConsistencySampler(db, stats)
    rollback = RollbackManager(registry, db)
    dispatcher = EffectDispatcher(db)
    return MigrationServices(
        db=db,
        registry=registry,
        stats=stats,
        sampler=sampler,
        rollback=rollback,
        monitor=HealthMonitor(registry, stats, sampler, rollback),
        dispatcher=dispatcher,
        executor=BatchMigrationExecutor(db, registry),
        cleanup=LegacyCleanup(db, registry),
        verifier=verifier or IndexVerifier(),
        trades=TradeAdapter(db, registry, stats, dispatcher),
        conversations=ConversationAdapter(db, registry, stats, dispatcher),
    )
