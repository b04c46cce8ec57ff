from typing import Any, Dict, Optional

from bson import ObjectId


def to_object_id(value: Any) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    if isinstance(value, str) and ObjectId.is_valid(value):
        return ObjectId(value)
    return None


def stringify_ids(doc: Dict[str, Any], *fields: str) -> Dict[str, Any]:
    for field in ("_id",) + fields:
        if field in doc and doc[field] is not None:
            doc[field] = str(doc[field])
    return doc
