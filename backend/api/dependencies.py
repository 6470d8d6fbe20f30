from fastapi import Depends
from core.errors import NotVerified, Unauthorized
from core.security import decode_access_token, oauth2_scheme
from schemas.user_schema import CurrentUser
from db.mongodb import require_mongo_db
from utils.serialization import parse_object_id
import logging

logger = logging.getLogger(__name__)


async def get_bearer_token(token: str = Depends(oauth2_scheme)) -> str:
    if not token:
        raise Unauthorized("Not authenticated")
    return token


async def get_current_user(token: str = Depends(get_bearer_token)) -> CurrentUser:
    """Resolve the bearer token to a live, verified account."""
    payload = decode_access_token(token)
    account_id = parse_object_id(payload.get("sub"))
    if account_id is None:
        raise Unauthorized("Invalid token")

    doc = await require_mongo_db().users.find_one({"_id": account_id})
    if not doc:
        logger.info(f"Token presented for missing account {payload.get('sub')}")
        raise Unauthorized("Account no longer exists")
    if not doc.get("is_verified", False):
        # Email changed since the token was issued and has not been re-verified
        raise NotVerified("Please verify your email address to continue", email=doc.get("email", ""))

    return CurrentUser(
        id=str(doc["_id"]),
        name=doc.get("name", ""),
        email=doc.get("email", ""),
        is_verified=True,
    )
