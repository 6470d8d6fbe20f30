"""
Session issuing: password check, second factor, token minting.

Passwords alone never produce a token. ``authenticate_with_password`` only
starts the OTP step; tokens come out of ``complete_login`` / ``verify_signup``
after the OTP ledger has consumed a code, or out of ``refresh`` for a caller
that already holds a valid token.
"""
from datetime import datetime
import logging

from fastapi import HTTPException
from pymongo import ReturnDocument

from core.config import settings
from core.errors import InvalidCredentials, NotVerified, Unauthorized
from core.security import create_access_token, decode_access_token, dummy_verify_password, verify_password
from db.mongodb import require_mongo_db
from schemas.otp_schema import OtpPurpose
from services.otp_service import OtpLedger, normalize_identifier, otp_ledger
from utils.serialization import parse_object_id, serialize_account
from utils.timing import timeit

logger = logging.getLogger(__name__)


def _token_response(user: dict) -> dict:
    return {
        "access_token": create_access_token(str(user["_id"]), user["email"]),
        "token_type": "bearer",
        "expires_in": settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        "user": serialize_account(user),
    }


async def issue_session(user: dict, db=None) -> dict:
    """Record the login and mint a token for an already-verified identity."""
    mongo = db if db is not None else require_mongo_db()
    now = datetime.utcnow()
    await mongo.users.update_one({"_id": user["_id"]}, {"$set": {"last_login": now}})
    logger.info(f"Session issued for account {user['_id']}")
    return _token_response({**user, "last_login": now})


@timeit("authenticate_with_password")
async def authenticate_with_password(identifier: str, password: str, db=None, ledger: OtpLedger = None) -> dict:
    mongo = db if db is not None else require_mongo_db()
    ledger = ledger or otp_ledger
    email = normalize_identifier(identifier)

    user = await mongo.users.find_one({"email": email})
    if not user:
        dummy_verify_password()
        raise InvalidCredentials()
    if not verify_password(password, user.get("hashed_password", "")):
        raise InvalidCredentials()

    if not user.get("is_verified", False):
        await ledger.issue(email, OtpPurpose.SIGNUP_VERIFY)
        raise NotVerified(email=email)

    await ledger.issue(email, OtpPurpose.LOGIN)
    return {
        "message": "OTP sent to your email for verification",
        "email": email,
        "requires_otp": True,
    }


@timeit("complete_login")
async def complete_login(identifier: str, otp_code: str, db=None, ledger: OtpLedger = None) -> dict:
    mongo = db if db is not None else require_mongo_db()
    ledger = ledger or otp_ledger
    email = normalize_identifier(identifier)

    await ledger.verify(email, OtpPurpose.LOGIN, otp_code)
    user = await mongo.users.find_one({"email": email})
    if not user:
        # Account removed between the password step and the OTP step
        raise InvalidCredentials()
    return {"message": "Login successful", **await issue_session(user, db=mongo)}


async def verify_signup(identifier: str, otp_code: str, db=None, ledger: OtpLedger = None) -> dict:
    mongo = db if db is not None else require_mongo_db()
    ledger = ledger or otp_ledger
    email = normalize_identifier(identifier)

    await ledger.verify(email, OtpPurpose.SIGNUP_VERIFY, otp_code)
    user = await mongo.users.find_one_and_update(
        {"email": email},
        {"$set": {"is_verified": True, "updated_at": datetime.utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return {"message": "Account verified successfully", **await issue_session(user, db=mongo)}


async def refresh(token: str, db=None) -> dict:
    """Reissue a token with a fresh expiry for a caller holding a valid one."""
    mongo = db if db is not None else require_mongo_db()
    payload = decode_access_token(token)
    account_id = parse_object_id(payload.get("sub"))
    if account_id is None:
        raise Unauthorized("Invalid token")
    user = await mongo.users.find_one({"_id": account_id})
    if not user:
        raise Unauthorized("Account no longer exists")
    return {"message": "Token refreshed successfully", **_token_response(user)}


async def resend_otp(identifier: str, purpose: OtpPurpose, db=None, ledger: OtpLedger = None) -> dict:
    mongo = db if db is not None else require_mongo_db()
    ledger = ledger or otp_ledger
    email = normalize_identifier(identifier)
    purpose = OtpPurpose(purpose)

    if purpose == OtpPurpose.SIGNUP_VERIFY:
        user = await mongo.users.find_one({"email": email})
        if not user:
            raise HTTPException(status_code=404, detail="User not found")
        if user.get("is_verified", False):
            raise HTTPException(status_code=400, detail="User is already verified")
        await ledger.resend(email, purpose)
    else:
        # Login and password-reset codes are only re-sent for a flow that was already started
        await ledger.resend(email, purpose, require_existing=True)
    return {"message": "New OTP sent successfully"}
