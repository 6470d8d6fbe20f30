from datetime import datetime, time, timedelta
from typing import Any, Dict, List, Optional, Tuple
import calendar
import logging

from fastapi import HTTPException

from db.mongodb import require_mongo_db
from schemas.transaction_schema import TransactionType
from utils.serialization import serialize_doc
from utils.timing import timeit

logger = logging.getLogger(__name__)

SUMMARY_PERIODS = ("all", "today", "week", "month", "year", "custom")
TREND_PERIODS = ("day", "week", "month")
RECENT_TRANSACTIONS = 5


def parse_date_param(value: Optional[str], *, end_of_day: bool = False) -> Optional[datetime]:
    """Query-string date (yyyy-mm-dd or ISO datetime) -> naive UTC datetime."""
    if not value:
        return None
    value = value.strip()
    if not value:
        return None
    try:
        # yyyy-mm-dd from date picker
        if len(value) == 10 and value[4] == "-" and value[7] == "-":
            base = datetime.strptime(value, "%Y-%m-%d")
            return datetime.combine(base.date(), time.max if end_of_day else time.min)
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        if dt.tzinfo is not None:
            dt = (dt - dt.utcoffset()).replace(tzinfo=None)
        return dt
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid date filter: {value}")


def shift_month(year: int, month: int, delta: int) -> Tuple[int, int]:
    index = year * 12 + (month - 1) + delta
    return index // 12, index % 12 + 1


def resolve_period_range(
    period: str,
    now: datetime,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
) -> Dict[str, datetime]:
    """Date bounds (as a Mongo range filter) for a named reporting period."""
    today = datetime.combine(now.date(), time.min)
    if period == "all":
        return {}
    if period == "today":
        return {"$gte": today, "$lt": today + timedelta(days=1)}
    if period == "week":
        # Weeks start on Sunday
        days_since_sunday = (today.weekday() + 1) % 7
        start = today - timedelta(days=days_since_sunday)
        return {"$gte": start, "$lt": start + timedelta(days=7)}
    if period == "month":
        start = today.replace(day=1)
        year, month = shift_month(start.year, start.month, 1)
        return {"$gte": start, "$lt": start.replace(year=year, month=month)}
    if period == "year":
        return {"$gte": datetime(now.year, 1, 1), "$lt": datetime(now.year + 1, 1, 1)}
    if period == "custom":
        bounds = {}
        if start_date:
            bounds["$gte"] = start_date
        if end_date:
            bounds["$lte"] = end_date
        return bounds
    raise HTTPException(status_code=400, detail=f"Unsupported period '{period}'")


def _match(user_id: str, date_range: Dict[str, datetime], **extra) -> Dict[str, Any]:
    query: Dict[str, Any] = {"user_id": user_id, **extra}
    if date_range:
        query["date"] = date_range
    return query


async def _totals_by_type(mongo, query: Dict[str, Any]) -> Dict[str, Dict[str, float]]:
    totals = {t.value: {"total": 0.0, "count": 0} for t in TransactionType}
    async for row in mongo.transactions.aggregate([
        {"$match": query},
        {"$group": {"_id": "$type", "total": {"$sum": "$amount"}, "count": {"$sum": 1}}},
    ]):
        if row["_id"] in totals:
            totals[row["_id"]] = {"total": float(row.get("total") or 0), "count": int(row.get("count") or 0)}
    return totals


def _average(bucket: Dict[str, float]) -> float:
    return round(bucket["total"] / bucket["count"], 2) if bucket["count"] else 0.0


@timeit("analytics_summary")
async def get_summary(
    user_id: str,
    period: str = "all",
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    now: Optional[datetime] = None,
    db=None,
):
    mongo = db if db is not None else require_mongo_db()
    now = now or datetime.utcnow()
    date_range = resolve_period_range(period, now, start_date, end_date)
    totals = await _totals_by_type(mongo, _match(user_id, date_range))
    income, expense = totals["income"], totals["expense"]

    recent = await (
        mongo.transactions.find({"user_id": user_id})
        .sort([("date", -1), ("_id", -1)])
        .limit(RECENT_TRANSACTIONS)
        .to_list(length=RECENT_TRANSACTIONS)
    )
    return {
        "summary": {
            "total_income": round(income["total"], 2),
            "total_expense": round(expense["total"], 2),
            "net_amount": round(income["total"] - expense["total"], 2),
            "total_transactions": income["count"] + expense["count"],
            "avg_income": _average(income),
            "avg_expense": _average(expense),
            "income_count": income["count"],
            "expense_count": expense["count"],
        },
        "recent_transactions": [serialize_doc(doc) for doc in recent],
        "period": period,
    }


def _trend_key(when: datetime, period: str) -> Dict[str, int]:
    if period == "day":
        return {"year": when.year, "month": when.month, "day": when.day}
    if period == "week":
        iso_year, iso_week, _ = when.isocalendar()
        return {"year": iso_year, "week": iso_week}
    return {"year": when.year, "month": when.month}


@timeit("analytics_trends")
async def get_trends(user_id: str, period: str = "month", months: int = 6, now: Optional[datetime] = None, db=None):
    """Income/expense per day, ISO week, or month over the trailing window."""
    mongo = db if db is not None else require_mongo_db()
    if period not in TREND_PERIODS:
        raise HTTPException(status_code=400, detail=f"Unsupported trend period '{period}'")
    if months < 1:
        raise HTTPException(status_code=400, detail="months must be at least 1")
    now = now or datetime.utcnow()

    if period == "month":
        year, month = shift_month(now.year, now.month, -months)
        since = datetime(year, month, 1)
    elif period == "week":
        since = now - timedelta(weeks=4 * months)
    else:
        since = now - timedelta(days=30 * months)

    buckets: Dict[Tuple, Dict[str, Any]] = {}
    cursor = mongo.transactions.find(
        {"user_id": user_id, "date": {"$gte": since}},
        {"date": 1, "type": 1, "amount": 1},
    )
    async for doc in cursor:
        key = _trend_key(doc["date"], period)
        bucket = buckets.setdefault(tuple(key.values()), {
            **key, "income": 0.0, "expense": 0.0, "income_count": 0, "expense_count": 0,
        })
        kind = doc.get("type")
        if kind in ("income", "expense"):
            bucket[kind] += float(doc.get("amount") or 0)
            bucket[f"{kind}_count"] += 1

    trends = []
    for key in sorted(buckets):
        bucket = buckets[key]
        bucket["income"] = round(bucket["income"], 2)
        bucket["expense"] = round(bucket["expense"], 2)
        bucket["net"] = round(bucket["income"] - bucket["expense"], 2)
        trends.append(bucket)
    return {"trends": trends, "period": period}


@timeit("analytics_categories")
async def get_category_breakdown(
    user_id: str,
    type: str = "expense",
    period: str = "month",
    now: Optional[datetime] = None,
    db=None,
):
    mongo = db if db is not None else require_mongo_db()
    if type not in (TransactionType.INCOME.value, TransactionType.EXPENSE.value):
        raise HTTPException(status_code=400, detail="type must be 'income' or 'expense'")
    if period == "custom":
        raise HTTPException(status_code=400, detail="Category breakdown does not support custom periods")
    now = now or datetime.utcnow()
    date_range = resolve_period_range(period, now)

    rows: List[Dict[str, Any]] = []
    async for row in mongo.transactions.aggregate([
        {"$match": _match(user_id, date_range, type=type)},
        {"$group": {"_id": "$category", "total": {"$sum": "$amount"}, "count": {"$sum": 1}}},
    ]):
        total = float(row.get("total") or 0)
        count = int(row.get("count") or 0)
        rows.append({
            "category": row["_id"],
            "total": round(total, 2),
            "count": count,
            "avg_amount": round(total / count, 2) if count else 0.0,
        })

    total_amount = sum(r["total"] for r in rows)
    for r in rows:
        r["percentage"] = round(r["total"] / total_amount * 100, 2) if total_amount > 0 else 0.0
    rows.sort(key=lambda r: (-r["total"], r["category"] or ""))
    return {"categories": rows, "total_amount": round(total_amount, 2), "period": period, "type": type}


@timeit("analytics_monthly_comparison")
async def get_monthly_comparison(user_id: str, months: int = 6, now: Optional[datetime] = None, db=None):
    mongo = db if db is not None else require_mongo_db()
    if months < 1:
        raise HTTPException(status_code=400, detail="months must be at least 1")
    now = now or datetime.utcnow()
    year, month = shift_month(now.year, now.month, -months)
    since = datetime(year, month, 1)

    per_month: Dict[Tuple[int, int], Dict[str, Any]] = {}
    async for row in mongo.transactions.aggregate([
        {"$match": {"user_id": user_id, "date": {"$gte": since}}},
        {"$group": {
            "_id": {"year": "$year", "month": "$month", "type": "$type"},
            "total": {"$sum": "$amount"},
        }},
    ]):
        key = row["_id"]
        entry = per_month.setdefault((key["year"], key["month"]), {
            "year": key["year"],
            "month": key["month"],
            "month_name": calendar.month_abbr[key["month"]],
            "income": 0.0,
            "expense": 0.0,
        })
        if key.get("type") in ("income", "expense"):
            entry[key["type"]] += float(row.get("total") or 0)

    comparison = []
    for key in sorted(per_month):
        entry = per_month[key]
        entry["income"] = round(entry["income"], 2)
        entry["expense"] = round(entry["expense"], 2)
        entry["net"] = round(entry["income"] - entry["expense"], 2)
        comparison.append(entry)
    return {"comparison": comparison}


async def get_goals_progress(user_id: str, now: Optional[datetime] = None, db=None):
    """Current-month savings and savings rate."""
    mongo = db if db is not None else require_mongo_db()
    now = now or datetime.utcnow()
    totals = await _totals_by_type(mongo, _match(user_id, {"$gte": datetime(now.year, now.month, 1)}))
    income = totals["income"]["total"]
    expense = totals["expense"]["total"]
    savings_rate = round((income - expense) / income * 100, 2) if income > 0 else 0.0
    return {
        "current_month": {
            "income": round(income, 2),
            "expense": round(expense, 2),
            "savings": round(income - expense, 2),
            "savings_rate": savings_rate,
        }
    }
