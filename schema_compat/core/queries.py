"""
Query fragments shared by adapters, the migration executor and cleanup.
"""

import uuid
from datetime import datetime
from typing import Any, Optional

from bson import Binary, Decimal128, Int64, ObjectId

# BSON comparison order of the types an ``_id`` may hold
ID_TYPE_ORDER = ("number", "string", "object", "binData", "objectId", "bool", "date")


def bson_type_of(value: Any) -> Optional[str]:
    """``$type`` alias of a value, or None for types outside ``ID_TYPE_ORDER``."""
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, (int, float, Int64, Decimal128)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, dict):
        return "object"
    if isinstance(value, (bytes, Binary, uuid.UUID)):
        return "binData"
    if isinstance(value, ObjectId):
        return "objectId"
    if isinstance(value, datetime):
        return "date"
    return None


def id_filter(entity_id: Any) -> dict[str, Any]:
    """Match an id given as a string against string or ObjectId ``_id`` values."""
    if isinstance(entity_id, str) and ObjectId.is_valid(entity_id):
        return {"_id": {"$in": [entity_id, ObjectId(entity_id)]}}
    return {"_id": entity_id}


def after_id(cursor: Any) -> dict[str, Any]:
    """
    Match documents whose ``_id`` sorts after ``cursor`` in ascending ``_id`` order.

    ``$gt`` only compares values of the same BSON type, so a collection mixing
    string and ObjectId ids would stop at the first type boundary. Ids of every
    later type are matched by ``$type`` as well.

    Args:
        cursor: Last ``_id`` already processed, or None to start from the beginning.
    """
    if cursor is None:
        return {}
    kind = bson_type_of(cursor)
    if kind is None:
        return {"_id": {"$gt": cursor}}
    later = list(ID_TYPE_ORDER[ID_TYPE_ORDER.index(kind) + 1 :])
    if not later:
        return {"_id": {"$gt": cursor}}
    return {"$or": [{"_id": {"$gt": cursor}}, {"_id": {"$type": later}}]}
