from datetime import datetime
import logging
from typing import Any, Dict

from fastapi import HTTPException
from pymongo.errors import DuplicateKeyError

from core.errors import AuthError, OtpNotFound, TooSoon
from core.security import dummy_verify_password, get_password_hash, verify_password
from db.mongodb import require_mongo_db
from schemas.otp_schema import OtpPurpose
from schemas.user_schema import ChangePasswordRequest, ProfileUpdate, SignupRequest
from services.otp_service import OtpLedger, normalize_identifier, otp_ledger
from utils.serialization import json_safe, parse_object_id, serialize_account
from utils.timing import timeit

logger = logging.getLogger(__name__)

# Preference keys a client may store, with the JSON type each must have
ALLOWED_PREFERENCES = {
    "currency": str,
    "dateFormat": str,
    "theme": str,
    "language": str,
    "emailNotifications": bool,
    "pushNotifications": bool,
    "defaultTransactionType": str,
    "dashboardLayout": dict,
}

DEFAULT_PREFERENCES = {
    "currency": "USD",
    "dateFormat": "MM/DD/YYYY",
    "theme": "light",
    "language": "en",
    "emailNotifications": True,
    "pushNotifications": False,
    "defaultTransactionType": "expense",
}


def sanitize_preferences(preferences: Dict[str, Any]) -> Dict[str, Any]:
    """Keep only whitelisted keys whose value has the expected type."""
    clean = {}
    for key, value in (preferences or {}).items():
        expected = ALLOWED_PREFERENCES.get(key)
        if expected is None:
            continue
        # bool is a subclass of int; only exact types are accepted
        if type(value) is expected:
            clean[key] = value
    return clean


async def _load_user(user_id: str, mongo) -> dict:
    oid = parse_object_id(user_id)
    user = await mongo.users.find_one({"_id": oid}) if oid is not None else None
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


@timeit("create_user")
async def create_user(signup: SignupRequest, db=None, ledger: OtpLedger = None):
    """Create an unverified account and send the signup verification code."""
    mongo = db if db is not None else require_mongo_db()
    ledger = ledger or otp_ledger
    email = normalize_identifier(signup.email)
    try:
        existing = await mongo.users.find_one({"email": email})
        if existing:
            if existing.get("is_verified", False):
                raise HTTPException(status_code=409, detail="User already exists with this email")
            # Unverified leftover signup: refresh its details and send a new code
            await mongo.users.update_one(
                {"_id": existing["_id"]},
                {"$set": {
                    "name": signup.name.strip(),
                    "phone": signup.phone or "",
                    "hashed_password": get_password_hash(signup.password),
                    "updated_at": datetime.utcnow(),
                }},
            )
        else:
            now = datetime.utcnow()
            await mongo.users.insert_one({
                "name": signup.name.strip(),
                "email": email,
                "phone": signup.phone or "",
                "hashed_password": get_password_hash(signup.password),
                "is_verified": False,
                "preferences": {},
                "last_login": None,
                "created_at": now,
                "updated_at": now,
            })
        await ledger.issue(email, OtpPurpose.SIGNUP_VERIFY)
        logger.info(f"Signup started for {email}")
        return {
            "message": "User registered successfully. Please check your email for the verification code.",
            "email": email,
            "requires_verification": True,
        }
    except DuplicateKeyError:
        raise HTTPException(status_code=409, detail="User already exists with this email")
    except (HTTPException, AuthError):
        raise
    except Exception as e:
        logger.error(f"Error creating user: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")


@timeit("get_profile")
async def get_profile(user_id: str, db=None):
    mongo = db if db is not None else require_mongo_db()
    user = await _load_user(user_id, mongo)
    profile = serialize_account(user)
    profile["updated_at"] = json_safe(user.get("updated_at"))
    return {"user": profile}


async def update_profile(user_id: str, update: ProfileUpdate, db=None, ledger: OtpLedger = None):
    """Update name/phone/email. A new email must be re-verified before the next login."""
    mongo = db if db is not None else require_mongo_db()
    ledger = ledger or otp_ledger
    user = await _load_user(user_id, mongo)

    changes: Dict[str, Any] = {}
    if update.name is not None:
        changes["name"] = update.name.strip()
    if update.phone is not None:
        changes["phone"] = update.phone

    new_email = normalize_identifier(update.email) if update.email else None
    email_changed = bool(new_email) and new_email != user["email"]
    if email_changed:
        if await mongo.users.find_one({"email": new_email, "_id": {"$ne": user["_id"]}}):
            raise HTTPException(status_code=409, detail="Email already exists")
        changes["email"] = new_email
        changes["is_verified"] = False

    if not changes:
        return {"message": "Nothing to update", "user": serialize_account(user)}

    changes["updated_at"] = datetime.utcnow()
    try:
        await mongo.users.update_one({"_id": user["_id"]}, {"$set": changes})
    except DuplicateKeyError:
        raise HTTPException(status_code=409, detail="Email already exists")

    if email_changed:
        await ledger.discard(user["email"])
        await ledger.issue(new_email, OtpPurpose.SIGNUP_VERIFY)
        logger.info(f"Account {user_id} changed email; verification code sent to new address")

    updated = {**user, **changes}
    return {
        "message": "Profile updated successfully",
        "requires_verification": email_changed,
        "user": serialize_account(updated),
    }


async def change_password(user_id: str, request: ChangePasswordRequest, db=None):
    mongo = db if db is not None else require_mongo_db()
    user = await _load_user(user_id, mongo)
    if not verify_password(request.current_password, user.get("hashed_password", "")):
        raise HTTPException(status_code=400, detail="Current password is incorrect")
    await mongo.users.update_one(
        {"_id": user["_id"]},
        {"$set": {
            "hashed_password": get_password_hash(request.new_password),
            "updated_at": datetime.utcnow(),
            "password_changed_at": datetime.utcnow(),
        }},
    )
    logger.info(f"Password changed for account {user_id}")
    return {"message": "Password changed successfully"}


async def update_preferences(user_id: str, preferences: Dict[str, Any], db=None):
    mongo = db if db is not None else require_mongo_db()
    if not isinstance(preferences, dict):
        raise HTTPException(status_code=400, detail="Valid preferences object is required")
    user = await _load_user(user_id, mongo)
    clean = sanitize_preferences(preferences)
    await mongo.users.update_one(
        {"_id": user["_id"]},
        {"$set": {"preferences": clean, "updated_at": datetime.utcnow()}},
    )
    return {"message": "Preferences updated successfully", "preferences": clean}


async def get_settings(user_id: str, db=None):
    mongo = db if db is not None else require_mongo_db()
    user = await _load_user(user_id, mongo)
    return {
        "settings": json_safe({
            "profile": {
                "name": user.get("name", ""),
                "email": user.get("email", ""),
                "is_verified": bool(user.get("is_verified", False)),
                "member_since": user.get("created_at"),
            },
            "preferences": user.get("preferences") or dict(DEFAULT_PREFERENCES),
            "security": {
                "two_factor_enabled": True,
                "password_last_changed": user.get("password_changed_at") or user.get("created_at"),
                "last_login": user.get("last_login"),
            },
        })
    }


@timeit("get_user_stats")
async def get_user_stats(user_id: str, db=None):
    mongo = db if db is not None else require_mongo_db()
    user = await _load_user(user_id, mongo)
    now = datetime.utcnow()
    match = {"user_id": user_id}

    totals = {"income": 0.0, "expense": 0.0}
    async for row in mongo.transactions.aggregate([
        {"$match": match},
        {"$group": {"_id": "$type", "total": {"$sum": "$amount"}}},
    ]):
        totals[row["_id"]] = float(row.get("total") or 0)

    total_count = await mongo.transactions.count_documents(match)
    this_month = await mongo.transactions.count_documents({**match, "year": now.year, "month": now.month})
    categories = await mongo.transactions.distinct("category", match)
    latest = await mongo.transactions.find_one(match, sort=[("date", -1)])

    created_at = user.get("created_at")
    days_since_joining = (now - created_at).days if isinstance(created_at, datetime) else 0
    return {
        "stats": json_safe({
            "profile": {
                "days_since_joining": days_since_joining,
                "is_verified": bool(user.get("is_verified", False)),
                "member_since": created_at,
            },
            "transactions": {
                "total": total_count,
                "this_month": this_month,
                "categories_used": len(categories),
                "last_activity": latest.get("date") if latest else None,
            },
            "financial": {
                "total_income": round(totals["income"], 2),
                "total_expenses": round(totals["expense"], 2),
                "net_amount": round(totals["income"] - totals["expense"], 2),
            },
        })
    }


async def export_user_data(user_id: str, db=None):
    """Everything stored for the account, minus the password hash."""
    mongo = db if db is not None else require_mongo_db()
    user = await _load_user(user_id, mongo)
    transactions = await mongo.transactions.find({"user_id": user_id}).sort("date", -1).to_list(length=None)

    income = sum(t.get("amount", 0) for t in transactions if t.get("type") == "income")
    expenses = sum(t.get("amount", 0) for t in transactions if t.get("type") == "expense")
    account = serialize_account(user)
    account.pop("id", None)
    return {
        "export_info": {
            "export_date": datetime.utcnow().isoformat(),
            "data_type": "complete",
            "user_id": user_id,
        },
        "profile": account,
        "transactions": [
            {
                "id": str(t["_id"]),
                "type": t.get("type"),
                "amount": t.get("amount"),
                "category": t.get("category"),
                "description": t.get("description"),
                "date": t["date"].isoformat() if isinstance(t.get("date"), datetime) else t.get("date"),
                "created_at": t["created_at"].isoformat() if isinstance(t.get("created_at"), datetime) else None,
            }
            for t in transactions
        ],
        "summary": {
            "total_transactions": len(transactions),
            "total_income": round(income, 2),
            "total_expenses": round(expenses, 2),
            "categories": sorted({t.get("category") for t in transactions if t.get("category")}),
        },
    }


async def delete_account(user_id: str, confirm_password: str, db=None, ledger: OtpLedger = None):
    mongo = db if db is not None else require_mongo_db()
    ledger = ledger or otp_ledger
    if not confirm_password:
        raise HTTPException(status_code=400, detail="Password confirmation is required")
    user = await _load_user(user_id, mongo)
    if not verify_password(confirm_password, user.get("hashed_password", "")):
        raise HTTPException(status_code=400, detail="Invalid password")

    removed = await mongo.transactions.delete_many({"user_id": user_id})
    await ledger.discard(user["email"])
    await mongo.users.delete_one({"_id": user["_id"]})
    logger.info(f"Deleted account {user_id} and {removed.deleted_count} transaction(s)")
    return {"message": "Account deleted successfully"}


async def request_password_reset(email: str, db=None, ledger: OtpLedger = None):
    """Send a password_reset code.

    A missing account and a request inside the resend cooldown get the same reply as a
    fresh send. Only a delivery failure for a real account answers differently.
    """
    mongo = db if db is not None else require_mongo_db()
    ledger = ledger or otp_ledger
    email = normalize_identifier(email)
    generic = {"message": "If an account exists, an OTP has been sent"}

    user = await mongo.users.find_one({"email": email})
    if not user:
        logger.info(f"Password reset requested for unknown email {email}")
        return generic
    try:
        await ledger.resend(email, OtpPurpose.PASSWORD_RESET, template=None)
    except TooSoon:
        # The code sent moments ago is still valid
        logger.info(f"Password reset for {email} requested again within the cooldown")
    return generic


async def reset_password_with_otp(email: str, otp_code: str, new_password: str, db=None, ledger: OtpLedger = None):
    mongo = db if db is not None else require_mongo_db()
    ledger = ledger or otp_ledger
    email = normalize_identifier(email)

    user = await mongo.users.find_one({"email": email})
    if not user:
        dummy_verify_password()
        # Same failure as a missing code so the endpoint does not reveal accounts
        raise OtpNotFound()
    await ledger.verify(email, OtpPurpose.PASSWORD_RESET, otp_code)
    now = datetime.utcnow()
    await mongo.users.update_one(
        {"_id": user["_id"]},
        {"$set": {
            "hashed_password": get_password_hash(new_password),
            "updated_at": now,
            "password_changed_at": now,
        }},
    )
    logger.info(f"Password reset completed for account {user['_id']}")
    return {"message": "Password reset successful"}
