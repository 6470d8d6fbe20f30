"""
One-time passcode ledger.

A single document per (identifier, purpose) lives in the ``otps`` collection.
Issuing a code upserts that document in one operation, which invalidates any
earlier code for the same pair. Verification consumes the document through a
conditional ``find_one_and_update`` so that, of several concurrent verifiers,
at most one succeeds.
"""
import asyncio
import logging
import math
import secrets
from datetime import datetime, timedelta
from typing import Callable, Optional, Union

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError
from starlette.concurrency import run_in_threadpool

from core.config import settings
from core.errors import AttemptsExceeded, DeliveryFailed, OtpExpired, OtpMismatch, OtpNotFound, TooSoon
from db.mongodb import require_mongo_db
from schemas.otp_schema import OtpPurpose
from utils.email import send_otp_email

logger = logging.getLogger(__name__)

OTP_LENGTH = 6
# Superseded codes remembered per record so a stale code reads as "gone", not as a wrong guess
ISSUED_CODES_KEPT = 5

Notifier = Callable[[str, str, str], bool]


def generate_code(length: int = OTP_LENGTH) -> str:
    """Uniformly random numeric code; leading zeros are kept."""
    return f"{secrets.randbelow(10 ** length):0{length}d}"


def normalize_identifier(identifier: str) -> str:
    return (identifier or "").strip().lower()


class OtpLedger:
    def __init__(
        self,
        *,
        db=None,
        notifier: Optional[Notifier] = None,
        clock: Optional[Callable[[], datetime]] = None,
        ttl_minutes: Optional[int] = None,
        max_attempts: Optional[int] = None,
        cooldown_seconds: Optional[int] = None,
    ) -> None:
        self._db = db
        self._notifier = notifier or send_otp_email
        self._clock = clock or datetime.utcnow
        self.ttl = timedelta(minutes=ttl_minutes if ttl_minutes is not None else settings.OTP_EXPIRE_MINUTES)
        self.max_attempts = max_attempts if max_attempts is not None else settings.OTP_MAX_ATTEMPTS
        self.cooldown_seconds = cooldown_seconds if cooldown_seconds is not None else settings.OTP_RESEND_COOLDOWN_SECONDS

    @property
    def collection(self):
        db = self._db if self._db is not None else require_mongo_db()
        return db.otps

    def now(self) -> datetime:
        return self._clock()

    async def issue(self, identifier: str, purpose: Union[OtpPurpose, str], template: Optional[str] = None) -> str:
        """Mint a code for (identifier, purpose), replacing any earlier one, and deliver it."""
        identifier = normalize_identifier(identifier)
        purpose = OtpPurpose(purpose)
        code = generate_code()
        now = self.now()

        selector = {"identifier": identifier, "purpose": purpose.value}
        update = {
            "$set": {
                "code": code,
                "attempts": 0,
                "consumed": False,
                "consumed_at": None,
                "created_at": now,
                "expires_at": now + self.ttl,
            },
            "$push": {"issued_codes": {"$each": [code], "$slice": -ISSUED_CODES_KEPT}},
        }
        try:
            await self.collection.update_one(selector, update, upsert=True)
        except DuplicateKeyError:
            # Lost an upsert race on the unique (identifier, purpose) index; the record exists now
            await self.collection.update_one(selector, update)

        await self._deliver(identifier, purpose, code, template or purpose.template)
        logger.info(f"Issued {purpose.value} OTP for {identifier}")
        return code

    async def _deliver(self, identifier: str, purpose: OtpPurpose, code: str, template: str) -> None:
        try:
            sent = await run_in_threadpool(self._notifier, identifier, code, template)
        except Exception as e:
            logger.error(f"OTP delivery to {identifier} raised: {e}")
            sent = False
        if sent:
            return
        # An undeliverable code must not remain the only valid one
        await self.collection.delete_one(
            {"identifier": identifier, "purpose": purpose.value, "code": code, "consumed": False}
        )
        raise DeliveryFailed()

    async def verify(self, identifier: str, purpose: Union[OtpPurpose, str], code: str) -> None:
        """Consume the active code for (identifier, purpose) or raise the specific failure."""
        identifier = normalize_identifier(identifier)
        purpose = OtpPurpose(purpose)
        code = (code or "").strip()
        now = self.now()

        active = {"identifier": identifier, "purpose": purpose.value, "consumed": False}
        record = await self.collection.find_one(active)
        if record is None:
            raise OtpNotFound()
        current = record.get("code", "")
        if code != current and code in record.get("issued_codes", []):
            raise OtpNotFound("This code has been replaced by a newer one. Please use the latest code.")
        if record["expires_at"] <= now:
            raise OtpExpired()
        if record.get("attempts", 0) >= self.max_attempts:
            raise AttemptsExceeded()

        # Every write re-checks the state read above, so a concurrent consume, reissue or
        # expiry turns this call into a failure instead of acting on stale data.
        live = {
            **active,
            "_id": record["_id"],
            "code": current,
            "expires_at": {"$gt": now},
            "attempts": {"$lt": self.max_attempts},
        }
        if secrets.compare_digest(code.encode(), current.encode()):
            consumed = await self.collection.find_one_and_update(
                live, {"$set": {"consumed": True, "consumed_at": now}}
            )
            if consumed is None:
                raise OtpNotFound()
            logger.info(f"Consumed {purpose.value} OTP for {identifier}")
            return

        updated = await self.collection.find_one_and_update(
            live, {"$inc": {"attempts": 1}}, return_document=ReturnDocument.AFTER
        )
        if updated is None:
            raise OtpNotFound()
        logger.info(f"Wrong {purpose.value} OTP for {identifier} (attempt {updated['attempts']})")
        raise OtpMismatch(attempts_remaining=max(self.max_attempts - updated["attempts"], 0))

    async def resend(
        self,
        identifier: str,
        purpose: Union[OtpPurpose, str],
        *,
        require_existing: bool = False,
        template: Optional[str] = "resend",
    ) -> str:
        """Re-issue a code unless the current one is still inside its cooldown window."""
        identifier = normalize_identifier(identifier)
        purpose = OtpPurpose(purpose)
        now = self.now()
        record = await self.collection.find_one({"identifier": identifier, "purpose": purpose.value})
        pending = record is not None and not record.get("consumed") and record["expires_at"] > now
        if require_existing and not pending:
            # A finished or lapsed flow has to be started again from its first step
            raise OtpNotFound("No pending verification for this account. Please start again.")
        if pending:
            elapsed = (now - record["created_at"]).total_seconds()
            if elapsed < self.cooldown_seconds:
                raise TooSoon(retry_after=max(1, math.ceil(self.cooldown_seconds - elapsed)))
        return await self.issue(identifier, purpose, template=template)

    async def discard(self, identifier: str) -> int:
        result = await self.collection.delete_many({"identifier": normalize_identifier(identifier)})
        return result.deleted_count

    async def sweep_expired(self) -> int:
        """Delete records that can never verify again (expired or already consumed)."""
        result = await self.collection.delete_many(
            {"$or": [{"expires_at": {"$lte": self.now()}}, {"consumed": True}]}
        )
        return result.deleted_count


otp_ledger = OtpLedger()


async def run_otp_sweeper(ledger: Optional[OtpLedger] = None, interval_seconds: Optional[int] = None) -> None:
    """Background loop started with the app; cancelled on shutdown."""
    ledger = ledger or otp_ledger
    interval = interval_seconds or settings.OTP_SWEEP_INTERVAL_SECONDS
    while True:
        try:
            removed = await ledger.sweep_expired()
            if removed:
                logger.info(f"OTP sweep removed {removed} record(s)")
        except Exception as e:
            logger.warning(f"OTP sweep failed: {e}")
        await asyncio.sleep(interval)
