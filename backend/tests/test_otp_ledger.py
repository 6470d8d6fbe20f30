"""
Unit tests for the OTP ledger: issuance, verification, resend cooldown and sweeping.
"""
import asyncio
from unittest.mock import patch

import pytest

from core.errors import AttemptsExceeded, DeliveryFailed, OtpExpired, OtpMismatch, OtpNotFound, TooSoon
from schemas.otp_schema import OtpPurpose
from services.otp_service import OtpLedger, generate_code, normalize_identifier, run_otp_sweeper
from conftest import wrong_code

EMAIL = "a@x.com"


class StaleReadCollection:
    """Answers ``find_one`` with an earlier snapshot; every write reaches the real collection."""

    def __init__(self, collection, snapshot):
        self._collection = collection
        self._snapshot = snapshot

    async def find_one(self, *args, **kwargs):
        return dict(self._snapshot)

    def __getattr__(self, name):
        return getattr(self._collection, name)


class TestCodeGeneration:
    def test_codes_are_six_digits(self):
        for _ in range(200):
            code = generate_code()
            assert len(code) == 6
            assert code.isdigit()

    def test_leading_zeros_are_kept(self):
        with patch("services.otp_service.secrets.randbelow", return_value=42):
            assert generate_code() == "000042"

    def test_identifier_is_normalized(self):
        assert normalize_identifier("  A@X.com ") == "a@x.com"


class TestIssue:
    @pytest.mark.asyncio
    async def test_issue_stores_single_record_and_delivers(self, ledger, mongo_db, outbox, clock):
        code = await ledger.issue(EMAIL, OtpPurpose.LOGIN)

        records = await mongo_db.otps.find({"identifier": EMAIL, "purpose": "login"}).to_list(length=None)
        assert len(records) == 1
        record = records[0]
        assert record["code"] == code
        assert record["attempts"] == 0
        assert record["consumed"] is False
        assert (record["expires_at"] - record["created_at"]).total_seconds() == 600
        assert outbox.messages == [{"to": EMAIL, "code": code, "template": "login"}]

    @pytest.mark.asyncio
    async def test_reissue_keeps_one_record_and_invalidates_first_code(self, ledger, mongo_db, clock):
        first = await ledger.issue(EMAIL, OtpPurpose.LOGIN)
        clock.advance(seconds=5)
        with patch("services.otp_service.generate_code", return_value=wrong_code(first)):
            second = await ledger.issue(EMAIL, OtpPurpose.LOGIN)

        assert await mongo_db.otps.count_documents({"identifier": EMAIL, "purpose": "login"}) == 1
        with pytest.raises(OtpNotFound):
            await ledger.verify(EMAIL, OtpPurpose.LOGIN, first)
        # The stale code did not count as a wrong guess
        await ledger.verify(EMAIL, OtpPurpose.LOGIN, second)

    @pytest.mark.asyncio
    async def test_purposes_are_independent(self, ledger, mongo_db):
        login_code = await ledger.issue(EMAIL, OtpPurpose.LOGIN)
        signup_code = await ledger.issue(EMAIL, OtpPurpose.SIGNUP_VERIFY)

        assert await mongo_db.otps.count_documents({"identifier": EMAIL}) == 2
        await ledger.verify(EMAIL, OtpPurpose.SIGNUP_VERIFY, signup_code)
        await ledger.verify(EMAIL, OtpPurpose.LOGIN, login_code)

    @pytest.mark.asyncio
    async def test_delivery_failure_removes_record(self, ledger, mongo_db, outbox):
        outbox.fail = True
        with pytest.raises(DeliveryFailed):
            await ledger.issue(EMAIL, OtpPurpose.LOGIN)
        assert await mongo_db.otps.count_documents({"identifier": EMAIL}) == 0

    @pytest.mark.asyncio
    async def test_notifier_exception_is_delivery_failure(self, mongo_db, clock):
        def broken(to_email, code, template):
            raise ConnectionRefusedError("smtp down")

        ledger = OtpLedger(db=mongo_db, notifier=broken, clock=clock)
        with pytest.raises(DeliveryFailed):
            await ledger.issue(EMAIL, OtpPurpose.LOGIN)
        assert await mongo_db.otps.count_documents({"identifier": EMAIL}) == 0


class TestVerify:
    @pytest.mark.asyncio
    async def test_correct_code_succeeds_once(self, ledger, mongo_db):
        code = await ledger.issue(EMAIL, OtpPurpose.LOGIN)

        await ledger.verify(EMAIL, OtpPurpose.LOGIN, code)
        record = await mongo_db.otps.find_one({"identifier": EMAIL, "purpose": "login"})
        assert record["consumed"] is True

        with pytest.raises(OtpNotFound):
            await ledger.verify(EMAIL, OtpPurpose.LOGIN, code)

    @pytest.mark.asyncio
    async def test_no_record_is_not_found(self, ledger):
        with pytest.raises(OtpNotFound):
            await ledger.verify(EMAIL, OtpPurpose.LOGIN, "123456")

    @pytest.mark.asyncio
    async def test_wrong_code_counts_attempts(self, ledger, mongo_db):
        code = await ledger.issue(EMAIL, OtpPurpose.LOGIN)

        with pytest.raises(OtpMismatch) as exc_info:
            await ledger.verify(EMAIL, OtpPurpose.LOGIN, wrong_code(code))
        assert exc_info.value.extra["attempts_remaining"] == 2

        record = await mongo_db.otps.find_one({"identifier": EMAIL, "purpose": "login"})
        assert record["attempts"] == 1

    @pytest.mark.asyncio
    async def test_correct_code_rejected_after_max_attempts(self, ledger):
        code = await ledger.issue(EMAIL, OtpPurpose.LOGIN)
        for _ in range(3):
            with pytest.raises(OtpMismatch):
                await ledger.verify(EMAIL, OtpPurpose.LOGIN, wrong_code(code))

        with pytest.raises(AttemptsExceeded):
            await ledger.verify(EMAIL, OtpPurpose.LOGIN, code)

    @pytest.mark.asyncio
    async def test_expired_code_rejected_even_when_correct(self, ledger, clock):
        code = await ledger.issue(EMAIL, OtpPurpose.LOGIN)
        clock.advance(minutes=10, seconds=1)

        with pytest.raises(OtpExpired):
            await ledger.verify(EMAIL, OtpPurpose.LOGIN, code)

    @pytest.mark.asyncio
    async def test_code_valid_just_before_expiry(self, ledger, clock):
        code = await ledger.issue(EMAIL, OtpPurpose.LOGIN)
        clock.advance(minutes=9, seconds=59)
        await ledger.verify(EMAIL, OtpPurpose.LOGIN, code)

    @pytest.mark.asyncio
    async def test_identifier_case_does_not_matter(self, ledger):
        code = await ledger.issue("A@X.com", OtpPurpose.LOGIN)
        await ledger.verify(" a@x.COM ", OtpPurpose.LOGIN, code)

    @pytest.mark.asyncio
    async def test_concurrent_verifiers_only_one_wins(self, ledger):
        code = await ledger.issue(EMAIL, OtpPurpose.LOGIN)

        results = await asyncio.gather(
            *(ledger.verify(EMAIL, OtpPurpose.LOGIN, code) for _ in range(5)),
            return_exceptions=True,
        )
        successes = [r for r in results if r is None]
        assert len(successes) == 1
        assert all(isinstance(r, OtpNotFound) for r in results if r is not None)

    @pytest.mark.asyncio
    async def test_verifier_holding_stale_read_loses(self, ledger, mongo_db, monkeypatch):
        code = await ledger.issue(EMAIL, OtpPurpose.LOGIN)
        snapshot = await mongo_db.otps.find_one({"identifier": EMAIL, "purpose": "login"})
        await ledger.verify(EMAIL, OtpPurpose.LOGIN, code)

        stale = StaleReadCollection(mongo_db.otps, snapshot)
        monkeypatch.setattr(OtpLedger, "collection", property(lambda self: stale))

        with pytest.raises(OtpNotFound):
            await ledger.verify(EMAIL, OtpPurpose.LOGIN, code)

    @pytest.mark.asyncio
    async def test_wrong_guess_against_stale_read_is_not_counted(self, ledger, mongo_db, monkeypatch):
        code = await ledger.issue(EMAIL, OtpPurpose.LOGIN)
        snapshot = await mongo_db.otps.find_one({"identifier": EMAIL, "purpose": "login"})
        await ledger.verify(EMAIL, OtpPurpose.LOGIN, code)

        stale = StaleReadCollection(mongo_db.otps, snapshot)
        monkeypatch.setattr(OtpLedger, "collection", property(lambda self: stale))

        with pytest.raises(OtpNotFound):
            await ledger.verify(EMAIL, OtpPurpose.LOGIN, wrong_code(code))
        record = await mongo_db.otps.find_one({"identifier": EMAIL, "purpose": "login"})
        assert record["attempts"] == 0
        assert record["consumed"] is True


class TestResend:
    @pytest.mark.asyncio
    async def test_resend_within_cooldown_is_too_soon(self, ledger, clock):
        await ledger.issue(EMAIL, OtpPurpose.LOGIN)
        clock.advance(seconds=30)

        with pytest.raises(TooSoon) as exc_info:
            await ledger.resend(EMAIL, OtpPurpose.LOGIN)
        assert exc_info.value.extra["retry_after"] == 30

    @pytest.mark.asyncio
    async def test_resend_after_cooldown_issues_new_code(self, ledger, outbox, clock):
        first = await ledger.issue(EMAIL, OtpPurpose.LOGIN)
        clock.advance(seconds=61)

        with patch("services.otp_service.generate_code", return_value=wrong_code(first)):
            second = await ledger.resend(EMAIL, OtpPurpose.LOGIN)

        assert second != first
        assert outbox.messages[-1]["template"] == "resend"
        with pytest.raises(OtpNotFound):
            await ledger.verify(EMAIL, OtpPurpose.LOGIN, first)
        await ledger.verify(EMAIL, OtpPurpose.LOGIN, second)

    @pytest.mark.asyncio
    async def test_resend_allowed_once_code_consumed(self, ledger, clock):
        code = await ledger.issue(EMAIL, OtpPurpose.LOGIN)
        await ledger.verify(EMAIL, OtpPurpose.LOGIN, code)
        clock.advance(seconds=1)
        await ledger.resend(EMAIL, OtpPurpose.LOGIN)

    @pytest.mark.asyncio
    async def test_resend_requiring_existing_flow(self, ledger):
        with pytest.raises(OtpNotFound):
            await ledger.resend(EMAIL, OtpPurpose.PASSWORD_RESET, require_existing=True)

    @pytest.mark.asyncio
    async def test_resend_requiring_existing_refuses_consumed_code(self, ledger, outbox, clock):
        code = await ledger.issue(EMAIL, OtpPurpose.LOGIN)
        await ledger.verify(EMAIL, OtpPurpose.LOGIN, code)
        clock.advance(seconds=61)

        with pytest.raises(OtpNotFound):
            await ledger.resend(EMAIL, OtpPurpose.LOGIN, require_existing=True)
        assert len(outbox.messages) == 1

    @pytest.mark.asyncio
    async def test_resend_requiring_existing_refuses_expired_code(self, ledger, outbox, clock):
        await ledger.issue(EMAIL, OtpPurpose.PASSWORD_RESET)
        clock.advance(minutes=11)

        with pytest.raises(OtpNotFound):
            await ledger.resend(EMAIL, OtpPurpose.PASSWORD_RESET, require_existing=True)
        assert len(outbox.messages) == 1

    @pytest.mark.asyncio
    async def test_resend_requiring_existing_replaces_live_code(self, ledger, clock):
        first = await ledger.issue(EMAIL, OtpPurpose.LOGIN)
        clock.advance(seconds=61)

        with patch("services.otp_service.generate_code", return_value=wrong_code(first)):
            second = await ledger.resend(EMAIL, OtpPurpose.LOGIN, require_existing=True)
        await ledger.verify(EMAIL, OtpPurpose.LOGIN, second)


class TestSweep:
    @pytest.mark.asyncio
    async def test_sweep_removes_expired_and_consumed(self, ledger, mongo_db, clock):
        consumed = await ledger.issue("consumed@x.com", OtpPurpose.LOGIN)
        await ledger.verify("consumed@x.com", OtpPurpose.LOGIN, consumed)
        await ledger.issue("expired@x.com", OtpPurpose.LOGIN)
        clock.advance(minutes=5)
        await ledger.issue("live@x.com", OtpPurpose.LOGIN)
        clock.advance(minutes=6)

        removed = await ledger.sweep_expired()

        assert removed == 2
        remaining = await mongo_db.otps.find({}).to_list(length=None)
        assert [r["identifier"] for r in remaining] == ["live@x.com"]

    @pytest.mark.asyncio
    async def test_discard_removes_every_purpose(self, ledger, mongo_db):
        await ledger.issue(EMAIL, OtpPurpose.LOGIN)
        await ledger.issue(EMAIL, OtpPurpose.PASSWORD_RESET)

        assert await ledger.discard(EMAIL) == 2
        assert await mongo_db.otps.count_documents({}) == 0

    @pytest.mark.asyncio
    async def test_sweeper_loop_keeps_running_after_errors(self, ledger):
        calls = []

        async def flaky_sweep():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("storage hiccup")
            return 0

        ledger.sweep_expired = flaky_sweep
        task = asyncio.create_task(run_otp_sweeper(ledger, interval_seconds=0.01))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert len(calls) >= 2
