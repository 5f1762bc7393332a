"""
Compatibility adapters exposing schema-agnostic entity access.
"""

from schema_compat.adapters.base import CompatibilityAdapter, FilterSpec
from schema_compat.adapters.conversation import ConversationAdapter
from schema_compat.adapters.side_effects import EffectDispatcher, SideEffect
from schema_compat.adapters.trade import TradeAdapter

ADAPTERS: dict[str, type[CompatibilityAdapter]] = {
    TradeAdapter.codec.collection: TradeAdapter,
    ConversationAdapter.codec.collection: ConversationAdapter,
}

__all__ = [
    "ADAPTERS",
    "CompatibilityAdapter",
    "ConversationAdapter",
    "EffectDispatcher",
    "FilterSpec",
    "SideEffect",
    "TradeAdapter",
]
