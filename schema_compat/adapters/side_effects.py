"""
Deferred side effects of adapter updates.

An update never performs its side effects inside the conditional write.
Instead the requested effects are appended to the document's
``_pendingEffects`` list in that same write, dispatched once the write has
committed, and pulled from the list after they are applied. Effects that fail
stay pending and are picked up by the redrive job, so handlers must be
idempotent.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from motor.motor_asyncio import AsyncIOMotorDatabase
from schema_compat.core.config import settings
from schema_compat.core.alerts import raise_alert
from schema_compat.core.exceptions import EffectTargetMissing, StoreUnavailable
from schema_compat.core.metrics import SIDE_EFFECT_FAILURES
from schema_compat.core.queries import id_filter
from schema_compat.core.retry import retry_with_backoff, translate_store_errors
from schema_compat.entities.base import APPLIED_EFFECTS_FIELD, PENDING_EFFECTS_FIELD, REVISION_FIELD
from schema_compat.log.logging import logger


@dataclass(frozen=True)
class SideEffect:
    """
    A side effect requested by an update.

    Attributes:
        name: Registered handler name.
        params: Handler parameters; must be storable in a document.
        effect_id: Unique id, used by handlers to apply the effect at most once.
        requested_at: When the update requested the effect.
    """

    name: str
    params: dict[str, Any] = field(default_factory=dict)
    effect_id: str = field(default_factory=lambda: uuid4().hex)
    requested_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "effect_id": self.effect_id,
            "name": self.name,
            "params": dict(self.params),
            "requested_at": self.requested_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SideEffect":
        return cls(
            name=data["name"],
            params=data.get("params") or {},
            effect_id=data["effect_id"],
            requested_at=data.get("requested_at") or datetime.utcnow(),
        )


EffectHandler = Callable[[AsyncIOMotorDatabase, SideEffect], Awaitable[None]]


@translate_store_errors
async def increment_counter(db: AsyncIOMotorDatabase, effect: SideEffect) -> None:
    """
    Increment a numeric field on another document, at most once per effect.

    Params: ``collection``, ``id``, ``field`` and optional ``amount`` (default 1).
    The target remembers the last ``side_effect_applied_history`` effect ids.

    Raises:
        EffectTargetMissing: If no document has the target id.
    """
    params = effect.params
    coll = db[params["collection"]]
    target = id_filter(params["id"])
    result = await coll.update_one(
        {**target, APPLIED_EFFECTS_FIELD: {"$ne": effect.effect_id}},
        {
            "$inc": {params["field"]: params.get("amount", 1)},
            "$push": {
                APPLIED_EFFECTS_FIELD: {
                    "$each": [effect.effect_id],
                    "$slice": -settings.side_effect_applied_history,
                }
            },
        },
    )
    if result.matched_count == 0:
        if await coll.find_one({**target, APPLIED_EFFECTS_FIELD: effect.effect_id}) is not None:
            return
        raise EffectTargetMissing(
            f"Counter target {params['collection']}/{params['id']} does not exist",
            collection=params["collection"],
            target_id=params["id"],
            effect_id=effect.effect_id,
        )


class EffectDispatcher:
    """Applies pending side effects and removes them from their documents."""

    def __init__(self, db: AsyncIOMotorDatabase, max_attempts: Optional[int] = None):
        self._db = db
        self._max_attempts = settings.side_effect_max_attempts if max_attempts is None else max_attempts
        self._handlers: dict[str, EffectHandler] = {"increment_counter": increment_counter}

    def register(self, name: str, handler: EffectHandler) -> None:
        self._handlers[name] = handler

    @property
    def handlers(self) -> dict[str, EffectHandler]:
        return dict(self._handlers)

    async def dispatch(self, collection: str, document_id: Any, effects: list[SideEffect]) -> list[SideEffect]:
        """
        Apply effects of a committed update.

        Returns:
            Effects that failed and remain pending on the document.
        """
        failed = []
        for effect in effects:
            if not await self._apply(collection, document_id, effect, alert=True):
                failed.append(effect)
        return failed

    async def redrive(self, collection: str, limit: int = 100) -> dict[str, int]:
        """Retry effects still pending on documents of a collection."""
        applied = failed = 0
        cursor = self._db[collection].find({f"{PENDING_EFFECTS_FIELD}.0": {"$exists": True}}).limit(limit)
        async for document in cursor:
            for data in document.get(PENDING_EFFECTS_FIELD) or []:
                if await self._apply(collection, document["_id"], SideEffect.from_dict(data)):
                    applied += 1
                else:
                    failed += 1

        if applied or failed:
            logger.info(
                "Redrove pending side effects for {collection}",
                collection=collection,
                applied=applied,
                failed=failed,
                event_type="side_effects_redriven",
            )
        return {"applied": applied, "failed": failed}

    async def _apply(self, collection: str, document_id: Any, effect: SideEffect, alert: bool = False) -> bool:
        handler = self._handlers.get(effect.name)
        if handler is None:
            logger.error(
                "No handler registered for side effect {effect}",
                effect=effect.name,
                effect_id=effect.effect_id,
                event_type="side_effect_unknown",
            )
            SIDE_EFFECT_FAILURES.labels(effect=effect.name).inc()
            return False

        try:
            await retry_with_backoff(
                handler,
                self._db,
                effect,
                max_retries=self._max_attempts - 1,
                retryable_exceptions=(StoreUnavailable,),
            )
            await self._acknowledge(collection, document_id, effect)
        except Exception as e:
            # The update has committed; a failed effect stays pending for redrive
            SIDE_EFFECT_FAILURES.labels(effect=effect.name).inc()
            logger.warning(
                "Side effect {effect} failed; left pending",
                effect=effect.name,
                effect_id=effect.effect_id,
                collection=collection,
                document_id=str(document_id),
                error=str(e),
                error_type=type(e).__name__,
                event_type="side_effect_failed",
            )
            if alert and isinstance(e, EffectTargetMissing):
                await raise_alert(
                    "side_effect_target_missing",
                    f"Side effect {effect.name} on {collection}/{document_id} has no target",
                    severity="warning",
                    **{key: str(value) for key, value in e.context.items()},
                )
            return False

        logger.debug(
            "Side effect {effect} applied",
            effect=effect.name,
            effect_id=effect.effect_id,
            document_id=str(document_id),
            event_type="side_effect_applied",
        )
        return True

    @translate_store_errors
    async def _acknowledge(self, collection: str, document_id: Any, effect: SideEffect) -> None:
        await self._db[collection].update_one(
            {"_id": document_id},
            {
                "$pull": {PENDING_EFFECTS_FIELD: {"effect_id": effect.effect_id}},
                "$inc": {REVISION_FIELD: 1},
            },
        )
