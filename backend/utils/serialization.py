from datetime import date, datetime
from typing import Any, Dict, Optional

from bson import ObjectId
from bson.errors import InvalidId


def json_safe(value: Any) -> Any:
    """Convert Mongo documents (ObjectId, datetime, nested containers) into JSON-ready values."""
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [json_safe(v) for v in value]
    return str(value)


def serialize_doc(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Mongo document -> dict with ``id`` instead of ``_id``"""
    if doc is None:
        return None
    data = {k: v for k, v in doc.items() if k != "_id"}
    data["id"] = str(doc.get("_id", ""))
    return json_safe(data)


def serialize_account(user: Dict[str, Any]) -> Dict[str, Any]:
    """Public view of an account document; never includes the password hash."""
    return json_safe({
        "id": str(user.get("_id", "")),
        "name": user.get("name", ""),
        "email": user.get("email", ""),
        "phone": user.get("phone") or "",
        "is_verified": bool(user.get("is_verified", False)),
        "preferences": user.get("preferences") or {},
        "created_at": user.get("created_at"),
        "last_login": user.get("last_login"),
    })


def parse_object_id(value: str) -> Optional[ObjectId]:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None
