"""Unit tests for the OTP manager.

Covers:
- single-use verification
- mismatch and wrong-purpose attempts keeping the challenge
- lazy expiry
- registration conflicts
- rollback when dispatch fails or times out
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from farmauth.service.errors import (
    AuthError,
    AuthReason,
    ConflictError,
    DispatchFailure,
    ValidationError,
)
from farmauth.service.otp import OTPManager, generate_numeric_code
from farmauth.storage.memory import MemoryChallengeStore, MemoryStore
from farmauth.storage.models import (
    Account,
    Channel,
    LoginPayload,
    OTPPurpose,
    RegistrationPayload,
)

PHONE = "+254712345678"


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class RecordingDispatcher:
    def __init__(self):
        self.sent = []

    async def send(self, channel, identifier, message):
        self.sent.append((channel, identifier, message))


class FailingDispatcher:
    async def send(self, channel, identifier, message):
        raise DispatchFailure("gateway down")


class BrokenDispatcher:
    async def send(self, channel, identifier, message):
        raise ConnectionResetError("peer reset")


class SlowDispatcher:
    async def send(self, channel, identifier, message):
        await asyncio.sleep(5)


class GatedFailingDispatcher:
    """Fails only once the test opens the gate."""

    def __init__(self):
        self.entered = asyncio.Event()
        self.gate = asyncio.Event()

    async def send(self, channel, identifier, message):
        self.entered.set()
        await self.gate.wait()
        raise DispatchFailure("gateway down")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def accounts():
    return MemoryStore()


@pytest.fixture
def challenges():
    return MemoryChallengeStore()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def account(accounts):
    return accounts.create_account(Account.new("Wanjiru", phone=PHONE, is_verified=True))


def make_manager(challenges, accounts, dispatcher, clock, codes=("4242",), **kwargs):
    sequence = iter(codes)
    return OTPManager(
        challenges,
        accounts,
        dispatcher,
        clock=clock,
        code_generator=lambda: next(sequence),
        **kwargs,
    )


@pytest.fixture
def manager(challenges, accounts, dispatcher, clock):
    return make_manager(challenges, accounts, dispatcher, clock)


class TestVerification:
    async def test_code_verifies_once(self, manager, account):
        await manager.request_otp(OTPPurpose.LOGIN, PHONE, LoginPayload(account.id))

        payload = await manager.verify_otp(PHONE, "4242", OTPPurpose.LOGIN)
        assert payload == LoginPayload(account.id)

        with pytest.raises(AuthError) as exc_info:
            await manager.verify_otp(PHONE, "4242", OTPPurpose.LOGIN)
        assert exc_info.value.reason == AuthReason.NOT_FOUND

    async def test_mismatch_keeps_challenge(self, manager, challenges, account):
        await manager.request_otp(OTPPurpose.LOGIN, PHONE, LoginPayload(account.id))

        with pytest.raises(AuthError) as exc_info:
            await manager.verify_otp(PHONE, "0000", OTPPurpose.LOGIN)
        assert exc_info.value.reason == AuthReason.MISMATCH
        assert await challenges.get(PHONE) is not None

        payload = await manager.verify_otp(PHONE, "4242", OTPPurpose.LOGIN)
        assert payload.account_id == account.id

    async def test_expired_code_is_deleted(self, manager, challenges, clock, account):
        await manager.request_otp(OTPPurpose.LOGIN, PHONE, LoginPayload(account.id))
        clock.advance(minutes=10, seconds=1)

        with pytest.raises(AuthError) as exc_info:
            await manager.verify_otp(PHONE, "4242", OTPPurpose.LOGIN)
        assert exc_info.value.reason == AuthReason.EXPIRED
        assert await challenges.get(PHONE) is None

        with pytest.raises(AuthError) as exc_info:
            await manager.verify_otp(PHONE, "4242", OTPPurpose.LOGIN)
        assert exc_info.value.reason == AuthReason.NOT_FOUND

    async def test_code_valid_until_expiry_instant(self, manager, clock, account):
        await manager.request_otp(OTPPurpose.LOGIN, PHONE, LoginPayload(account.id))
        clock.advance(minutes=10)

        payload = await manager.verify_otp(PHONE, "4242", OTPPurpose.LOGIN)
        assert payload.account_id == account.id

    async def test_wrong_purpose_keeps_challenge(self, manager, challenges, account):
        await manager.request_otp(OTPPurpose.LOGIN, PHONE, LoginPayload(account.id))

        with pytest.raises(AuthError) as exc_info:
            await manager.verify_otp(PHONE, "4242", OTPPurpose.REGISTRATION)
        assert exc_info.value.reason == AuthReason.WRONG_PURPOSE
        assert exc_info.value.status_code == 400
        assert await challenges.get(PHONE) is not None

    async def test_new_request_overwrites_pending_code(
        self, challenges, accounts, dispatcher, clock, account
    ):
        manager = make_manager(
            challenges, accounts, dispatcher, clock, codes=("1111", "2222")
        )
        await manager.request_otp(OTPPurpose.LOGIN, PHONE, LoginPayload(account.id))
        await manager.request_otp(OTPPurpose.LOGIN, PHONE, LoginPayload(account.id))

        with pytest.raises(AuthError) as exc_info:
            await manager.verify_otp(PHONE, "1111", OTPPurpose.LOGIN)
        assert exc_info.value.reason == AuthReason.MISMATCH
        await manager.verify_otp(PHONE, "2222", OTPPurpose.LOGIN)

    async def test_identifier_is_normalized_on_both_sides(self, manager, account):
        await manager.request_otp(
            OTPPurpose.LOGIN, "+254 712-345-678", LoginPayload(account.id)
        )
        payload = await manager.verify_otp(PHONE, " 4242 ", OTPPurpose.LOGIN)
        assert payload.account_id == account.id

    async def test_concurrent_verifications_have_one_winner(self, manager, account):
        await manager.request_otp(OTPPurpose.LOGIN, PHONE, LoginPayload(account.id))

        results = await asyncio.gather(
            *(manager.verify_otp(PHONE, "4242", OTPPurpose.LOGIN) for _ in range(5)),
            return_exceptions=True,
        )
        successes = [r for r in results if isinstance(r, LoginPayload)]
        failures = [r for r in results if isinstance(r, AuthError)]
        assert len(successes) == 1
        assert len(failures) == 4
        assert all(f.reason == AuthReason.NOT_FOUND for f in failures)


class TestRequest:
    async def test_dispatches_code_to_channel(self, manager, dispatcher, account):
        result = await manager.request_otp(
            OTPPurpose.LOGIN, PHONE, LoginPayload(account.id)
        )
        assert result == {"identifier": PHONE, "channel": "phone"}
        assert len(dispatcher.sent) == 1
        channel, identifier, message = dispatcher.sent[0]
        assert channel == Channel.PHONE
        assert identifier == PHONE
        assert "4242" in message
        assert "10 minutes" in message

    async def test_email_identifier_uses_email_channel(self, manager, dispatcher):
        payload = RegistrationPayload(name="Otieno", email="otieno@example.com")
        result = await manager.request_otp(
            OTPPurpose.REGISTRATION, "Otieno@Example.com", payload
        )
        assert result["channel"] == "email"
        assert dispatcher.sent[0][1] == "otieno@example.com"

    async def test_registration_conflict_writes_no_challenge(
        self, manager, challenges, dispatcher, account
    ):
        payload = RegistrationPayload(name="Someone", phone=PHONE)
        with pytest.raises(ConflictError) as exc_info:
            await manager.request_otp(OTPPurpose.REGISTRATION, PHONE, payload)
        assert exc_info.value.status_code == 400
        assert await challenges.get(PHONE) is None
        assert dispatcher.sent == []

    async def test_registration_conflict_on_secondary_identifier(
        self, manager, accounts
    ):
        accounts.create_account(Account.new("Existing", email="taken@example.com"))
        payload = RegistrationPayload(
            name="New", phone=PHONE, email="taken@example.com"
        )
        with pytest.raises(ConflictError):
            await manager.request_otp(OTPPurpose.REGISTRATION, PHONE, payload)

    async def test_registration_requires_name(self, manager):
        with pytest.raises(ValidationError):
            await manager.request_otp(
                OTPPurpose.REGISTRATION, PHONE, RegistrationPayload(name=" ", phone=PHONE)
            )

    async def test_empty_identifier_rejected(self, manager, account):
        with pytest.raises(ValidationError):
            await manager.request_otp(OTPPurpose.LOGIN, "  ", LoginPayload(account.id))

    async def test_payload_must_match_purpose(self, manager, account):
        with pytest.raises(ValidationError):
            await manager.request_otp(
                OTPPurpose.REGISTRATION, PHONE, LoginPayload(account.id)
            )


class TestDispatchRollback:
    @pytest.mark.parametrize(
        "failing", [FailingDispatcher(), BrokenDispatcher()], ids=["failure", "error"]
    )
    async def test_failed_dispatch_removes_challenge(
        self, challenges, accounts, clock, account, failing
    ):
        manager = make_manager(challenges, accounts, failing, clock)
        with pytest.raises(DispatchFailure) as exc_info:
            await manager.request_otp(OTPPurpose.LOGIN, PHONE, LoginPayload(account.id))
        assert exc_info.value.status_code == 500
        assert await challenges.get(PHONE) is None

    async def test_dispatch_timeout_removes_challenge(
        self, challenges, accounts, clock, account
    ):
        manager = make_manager(
            challenges, accounts, SlowDispatcher(), clock, dispatch_timeout=0.05
        )
        with pytest.raises(DispatchFailure):
            await manager.request_otp(OTPPurpose.LOGIN, PHONE, LoginPayload(account.id))
        assert await challenges.get(PHONE) is None

    async def test_rollback_spares_a_newer_challenge(self, challenges, clock, account):
        manager = make_manager(
            challenges, MemoryStore(), RecordingDispatcher(), clock, codes=("9999",)
        )
        await manager.request_otp(OTPPurpose.LOGIN, PHONE, LoginPayload(account.id))

        assert await challenges.discard(PHONE, "some-older-write") is False
        assert (await challenges.get(PHONE)).code == "9999"

    async def test_late_failure_keeps_newer_challenge_with_same_code(
        self, challenges, accounts, clock, account
    ):
        gated = GatedFailingDispatcher()
        older = make_manager(challenges, accounts, gated, clock)
        newer = make_manager(challenges, accounts, RecordingDispatcher(), clock)

        pending = asyncio.create_task(
            older.request_otp(OTPPurpose.LOGIN, PHONE, LoginPayload(account.id))
        )
        await gated.entered.wait()
        await newer.request_otp(OTPPurpose.LOGIN, PHONE, LoginPayload(account.id))
        gated.gate.set()
        with pytest.raises(DispatchFailure):
            await pending

        payload = await newer.verify_otp(PHONE, "4242", OTPPurpose.LOGIN)
        assert payload.account_id == account.id


def test_generated_codes_are_fixed_width_digits():
    for length in (4, 6):
        code = generate_numeric_code(length)
        assert len(code) == length
        assert code.isdigit()
