"""Conversation compatibility adapter."""

from schema_compat.adapters.base import CompatibilityAdapter, FilterSpec
from schema_compat.entities.conversation import Conversation, conversation_codec


class ConversationAdapter(CompatibilityAdapter[Conversation]):
    codec = conversation_codec

    async def for_participant(self, user_id: str, limit: int = 50) -> list[Conversation]:
        """Conversations a user takes part in, most recently updated first."""
        return await self.query(
            FilterSpec(where={"participant_id": user_id}, sort=(("updated_at", -1),), limit=limit)
        )

    async def for_trade(self, trade_id: str, limit: int = 50) -> list[Conversation]:
        return await self.query(
            FilterSpec(where={"related_trade_id": trade_id}, sort=(("updated_at", -1),), limit=limit)
        )
