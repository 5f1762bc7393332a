"""Trade compatibility adapter."""

from typing import Optional

from schema_compat.adapters.base import CompatibilityAdapter, FilterSpec, sort_entities
from schema_compat.entities.trade import Trade, trade_codec


class TradeAdapter(CompatibilityAdapter[Trade]):
    codec = trade_codec

    async def by_creator(self, user_id: str, status: Optional[str] = None, limit: int = 50) -> list[Trade]:
        where = {"creator_id": user_id}
        if status is not None:
            where["status"] = status
        return await self.query(FilterSpec(where=where, limit=limit))

    async def by_participant(self, user_id: str, limit: int = 50) -> list[Trade]:
        return await self.query(FilterSpec(where={"participant_id": user_id}, limit=limit))

    async def by_user(self, user_id: str, limit: int = 50) -> list[Trade]:
        """Trades the user created or joined, newest first."""
        merged = {trade.id: trade for trade in await self.by_creator(user_id, limit=limit)}
        for trade in await self.by_participant(user_id, limit=limit):
            merged.setdefault(trade.id, trade)
        return sort_entities(list(merged.values()), (("created_at", -1),))[:limit]

    async def by_skill(self, skill_name: str, offered: bool = True, status: str = "active", limit: int = 50) -> list[Trade]:
        attr = "skill_offered" if offered else "skill_wanted"
        return await self.query(FilterSpec(where={attr: skill_name, "status": status}, limit=limit))
