from datetime import datetime, timezone
import logging
import math
import re
from typing import Any, Dict, Optional

from fastapi import HTTPException
from pymongo import ReturnDocument

from db.mongodb import require_mongo_db
from schemas.transaction_schema import TransactionCreate, TransactionType, TransactionUpdate
from utils.serialization import parse_object_id, serialize_doc
from utils.timing import timeit

logger = logging.getLogger(__name__)

SORTABLE_FIELDS = {"date", "amount", "category", "type", "description", "created_at"}
MAX_PAGE_SIZE = 100


def to_naive_utc(value: datetime) -> datetime:
    """Stored datetimes are naive UTC; aware inputs are converted first."""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _period_fields(when: datetime) -> Dict[str, int]:
    return {"month": when.month, "year": when.year}


def build_filter(
    user_id: str,
    type: Optional[str] = None,
    category: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
) -> Dict[str, Any]:
    query: Dict[str, Any] = {"user_id": user_id}
    if type in (TransactionType.INCOME.value, TransactionType.EXPENSE.value):
        query["type"] = type
    if category:
        query["category"] = {"$regex": f"^{re.escape(category)}$", "$options": "i"}
    if start_date or end_date:
        date_range = {}
        if start_date:
            date_range["$gte"] = to_naive_utc(start_date)
        if end_date:
            date_range["$lte"] = to_naive_utc(end_date)
        query["date"] = date_range
    return query


async def summarize(query: Dict[str, Any], db=None) -> Dict[str, Any]:
    mongo = db if db is not None else require_mongo_db()
    totals = {"income": 0.0, "expense": 0.0}
    count = 0
    async for row in mongo.transactions.aggregate([
        {"$match": query},
        {"$group": {"_id": "$type", "total": {"$sum": "$amount"}, "count": {"$sum": 1}}},
    ]):
        totals[row["_id"]] = float(row.get("total") or 0)
        count += row.get("count", 0)
    return {
        "total_income": round(totals["income"], 2),
        "total_expense": round(totals["expense"], 2),
        "net_amount": round(totals["income"] - totals["expense"], 2),
        "total_transactions": count,
    }


@timeit("list_transactions")
async def list_transactions(
    user_id: str,
    page: int = 1,
    limit: int = 10,
    type: Optional[str] = None,
    category: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    sort_by: str = "date",
    sort_order: str = "desc",
    db=None,
):
    mongo = db if db is not None else require_mongo_db()
    page = max(int(page), 1)
    limit = min(max(int(limit), 1), MAX_PAGE_SIZE)
    if sort_by not in SORTABLE_FIELDS:
        raise HTTPException(status_code=400, detail=f"Cannot sort by '{sort_by}'")
    direction = 1 if sort_order == "asc" else -1

    query = build_filter(user_id, type, category, start_date, end_date)
    cursor = (
        mongo.transactions.find(query)
        .sort([(sort_by, direction), ("_id", direction)])
        .skip((page - 1) * limit)
        .limit(limit)
    )
    items = [serialize_doc(doc) async for doc in cursor]
    total_count = await mongo.transactions.count_documents(query)
    total_pages = math.ceil(total_count / limit) if total_count else 0

    return {
        "transactions": items,
        "pagination": {
            "current_page": page,
            "total_pages": total_pages,
            "total_count": total_count,
            "has_next_page": page < total_pages,
            "has_prev_page": page > 1,
        },
        "summary": await summarize(query, db=mongo),
    }


async def _find_owned(user_id: str, transaction_id: str, mongo) -> dict:
    oid = parse_object_id(transaction_id)
    doc = await mongo.transactions.find_one({"_id": oid, "user_id": user_id}) if oid is not None else None
    if not doc:
        raise HTTPException(status_code=404, detail="Transaction not found")
    return doc


async def get_transaction(user_id: str, transaction_id: str, db=None):
    mongo = db if db is not None else require_mongo_db()
    return {"transaction": serialize_doc(await _find_owned(user_id, transaction_id, mongo))}


@timeit("create_transaction")
async def create_transaction(user_id: str, payload: TransactionCreate, db=None):
    mongo = db if db is not None else require_mongo_db()
    now = datetime.utcnow()
    when = to_naive_utc(payload.date) if payload.date else now
    doc = payload.model_dump(mode="json", exclude={"date"})
    doc.update({
        "user_id": user_id,
        "date": when,
        **_period_fields(when),
        "created_at": now,
        "updated_at": now,
    })
    if not doc.get("is_recurring"):
        doc["recurring_frequency"] = None
    result = await mongo.transactions.insert_one(doc)
    doc["_id"] = result.inserted_id
    logger.info(f"Created {doc['type']} transaction {result.inserted_id} for {user_id}")
    return {"message": "Transaction created successfully", "transaction": serialize_doc(doc)}


async def update_transaction(user_id: str, transaction_id: str, payload: TransactionUpdate, db=None):
    mongo = db if db is not None else require_mongo_db()
    existing = await _find_owned(user_id, transaction_id, mongo)

    changes = payload.model_dump(mode="json", exclude_unset=True, exclude={"date"})
    if payload.date is not None:
        when = to_naive_utc(payload.date)
        changes["date"] = when
        changes.update(_period_fields(when))

    is_recurring = changes.get("is_recurring", existing.get("is_recurring", False))
    frequency = changes.get("recurring_frequency", existing.get("recurring_frequency"))
    if is_recurring and not frequency:
        raise HTTPException(status_code=400, detail="recurring_frequency is required for recurring transactions")
    if not is_recurring:
        changes["recurring_frequency"] = None

    changes["updated_at"] = datetime.utcnow()
    updated = await mongo.transactions.find_one_and_update(
        {"_id": existing["_id"], "user_id": user_id},
        {"$set": changes},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise HTTPException(status_code=404, detail="Transaction not found")
    return {"message": "Transaction updated successfully", "transaction": serialize_doc(updated)}


async def delete_transaction(user_id: str, transaction_id: str, db=None):
    mongo = db if db is not None else require_mongo_db()
    oid = parse_object_id(transaction_id)
    deleted = await mongo.transactions.find_one_and_delete({"_id": oid, "user_id": user_id}) if oid is not None else None
    if not deleted:
        raise HTTPException(status_code=404, detail="Transaction not found")
    return {"message": "Transaction deleted successfully", "deleted_transaction": serialize_doc(deleted)}


async def bulk_delete_transactions(user_id: str, transaction_ids, db=None):
    mongo = db if db is not None else require_mongo_db()
    if not transaction_ids:
        raise HTTPException(status_code=400, detail="Transaction IDs are required")
    oids = [oid for oid in (parse_object_id(t) for t in transaction_ids) if oid is not None]
    if not oids:
        raise HTTPException(status_code=400, detail="No valid transaction IDs supplied")
    result = await mongo.transactions.delete_many({"_id": {"$in": oids}, "user_id": user_id})
    logger.info(f"Bulk deleted {result.deleted_count} transaction(s) for {user_id}")
    return {
        "message": f"{result.deleted_count} transactions deleted successfully",
        "deleted_count": result.deleted_count,
    }


async def get_categories(user_id: str, db=None):
    """Categories the account has used, most frequent first."""
    mongo = db if db is not None else require_mongo_db()
    rows = [
        row async for row in mongo.transactions.aggregate([
            {"$match": {"user_id": user_id}},
            {"$group": {"_id": "$category", "count": {"$sum": 1}}},
        ])
    ]
    rows.sort(key=lambda r: (-r["count"], r["_id"] or ""))
    return {"categories": [{"category": r["_id"], "count": r["count"]} for r in rows]}
