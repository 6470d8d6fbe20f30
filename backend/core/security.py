from datetime import datetime, timedelta
from typing import Optional
from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext
from fastapi.security import OAuth2PasswordBearer
from core.config import settings
from core.errors import Unauthorized
import logging

logger = logging.getLogger(__name__)

ACCESS_TOKEN_TYPE = "access"

# Password hashing
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

# Bearer scheme for protected routes; tokens are issued by the OTP verify endpoints
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/verify-login-otp", auto_error=False)

def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a password against its hash"""
    if not hashed_password:
        return False
    return pwd_context.verify(plain_password, hashed_password)

def dummy_verify_password() -> None:
    """Spend the same time as a real verification when the account does not exist"""
    pwd_context.dummy_verify()

def get_password_hash(password: str) -> str:
    """Generate password hash"""
    return pwd_context.hash(password)

def create_access_token(account_id: str, email: str, expires_delta: Optional[timedelta] = None) -> str:
    """Create a signed session token for an account"""
    if not settings.SECRET_KEY:
        raise RuntimeError("SECRET_KEY is not configured")
    issued_at = datetime.utcnow()
    expire = issued_at + (expires_delta if expires_delta is not None else timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode = {
        "sub": str(account_id),
        "email": email,
        "type": ACCESS_TOKEN_TYPE,
        "iat": issued_at,
        "exp": expire,
    }
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)

def decode_access_token(token: str) -> dict:
    """Verify signature and expiry; raise Unauthorized on anything else"""
    if not token:
        raise Unauthorized("Not authenticated")
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except ExpiredSignatureError:
        raise Unauthorized("Token expired", expired=True)
    except JWTError as e:
        logger.warning(f"JWT decode failed: {e}")
        raise Unauthorized("Invalid token")
    if payload.get("type") != ACCESS_TOKEN_TYPE or not payload.get("sub"):
        raise Unauthorized("Invalid token")
    return payload

def verify_token(token: str) -> Optional[dict]:
    """Lenient variant for logging context: payload or None"""
    try:
        return decode_access_token(token)
    except Unauthorized:
        return None
