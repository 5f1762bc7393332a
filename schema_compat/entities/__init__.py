"""
Entity models and their legacy/new document codecs.
"""

from schema_compat.entities.base import EntityCodec, IndexSpec, SchemaVersion, schema_version_of
from schema_compat.entities.conversation import Conversation, ConversationCodec, conversation_codec
from schema_compat.entities.trade import Trade, TradeCodec, trade_codec

CODECS: dict[str, EntityCodec] = {codec.collection: codec for codec in (trade_codec, conversation_codec)}


def get_codec(collection: str) -> EntityCodec:
    """Codec registered for a collection."""
    try:
        return CODECS[collection]
    except KeyError:
        raise KeyError(f"No codec registered for collection '{collection}'") from None


__all__ = [
    "CODECS",
    "Conversation",
    "ConversationCodec",
    "EntityCodec",
    "IndexSpec",
    "SchemaVersion",
    "Trade",
    "TradeCodec",
    "conversation_codec",
    "get_codec",
    "schema_version_of",
    "trade_codec",
]
