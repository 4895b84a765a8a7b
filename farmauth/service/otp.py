from __future__ import annotations

import asyncio
import secrets
import string
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

from farmauth.logging import get_logger
from farmauth.service.dispatch import Dispatcher
from farmauth.service.errors import (
    AuthError,
    AuthReason,
    ConflictError,
    DispatchFailure,
    ValidationError,
)
from farmauth.service.identifiers import normalize_identifier
from farmauth.storage.common import AccountStore, ChallengeStore, ConsumeStatus
from farmauth.storage.models import (
    ChallengePayload,
    OTPChallenge,
    OTPPurpose,
    RegistrationPayload,
)

logger = get_logger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def generate_numeric_code(length: int = 4) -> str:
    return "".join(secrets.choice(string.digits) for _ in range(length))


_FAILURES = {
    ConsumeStatus.NOT_FOUND: (AuthReason.NOT_FOUND, "no pending code for this identifier"),
    ConsumeStatus.EXPIRED: (AuthReason.EXPIRED, "code has expired, request a new one"),
    ConsumeStatus.MISMATCH: (AuthReason.MISMATCH, "incorrect code"),
    ConsumeStatus.WRONG_PURPOSE: (
        AuthReason.WRONG_PURPOSE,
        "code was issued for a different action",
    ),
}


class OTPManager:
    """Issues, validates and expires one-time passcodes.

    One challenge per identifier lives in the injected ``ChallengeStore``;
    a new request overwrites the previous one. Expiry is checked lazily when
    a code is verified.
    """

    def __init__(
        self,
        challenges: ChallengeStore,
        accounts: AccountStore,
        dispatcher: Dispatcher,
        *,
        code_length: int = 4,
        ttl: timedelta = timedelta(minutes=10),
        dispatch_timeout: float = 10.0,
        app_name: str = "FarmConnect",
        clock: Optional[Clock] = None,
        code_generator: Optional[Callable[[], str]] = None,
    ) -> None:
        self.challenges = challenges
        self.accounts = accounts
        self.dispatcher = dispatcher
        self.code_length = code_length
        self.ttl = ttl
        self.dispatch_timeout = dispatch_timeout
        self.app_name = app_name
        self._clock = clock or utc_now
        self._code_generator = code_generator or (
            lambda: generate_numeric_code(self.code_length)
        )

    def _now(self) -> datetime:
        return self._clock()

    def _validate_registration(self, payload: RegistrationPayload) -> None:
        if not (payload.name or "").strip():
            raise ValidationError("name is required", detail={"field": "name"})
        if not payload.phone and not payload.email:
            raise ValidationError(
                "phone or email is required", detail={"field": "identifier"}
            )
        for value in (payload.phone, payload.email):
            if value and self.accounts.find_by_identifier(value):
                logger.info("otp_registration_conflict", identifier=value)
                raise ConflictError(
                    "an account already exists for this identifier, please log in"
                )

    def _message(self, code: str) -> str:
        minutes = int(self.ttl.total_seconds() // 60)
        return (
            f"Your {self.app_name} verification code is {code}. "
            f"It expires in {minutes} minutes."
        )

    async def request_otp(
        self, purpose: OTPPurpose, identifier: str, payload: ChallengePayload
    ) -> Dict[str, str]:
        identifier, channel = normalize_identifier(identifier)
        if payload.purpose != purpose:
            raise ValidationError(
                f"{purpose.value} request carries a {payload.purpose.value} payload"
            )
        if isinstance(payload, RegistrationPayload):
            self._validate_registration(payload)

        code = self._code_generator()
        now = self._now()
        challenge = OTPChallenge(
            identifier=identifier,
            code=code,
            purpose=purpose,
            expires_at=now + self.ttl,
            payload=payload,
        )
        await self.challenges.put(challenge, now)

        try:
            await asyncio.wait_for(
                self.dispatcher.send(channel, identifier, self._message(code)),
                timeout=self.dispatch_timeout,
            )
        except asyncio.TimeoutError as exc:
            await self.challenges.discard(identifier, challenge.nonce)
            logger.error(
                "otp_dispatch_timeout",
                identifier=identifier,
                channel=channel.value,
                timeout=self.dispatch_timeout,
            )
            raise DispatchFailure("timed out sending verification code") from exc
        except DispatchFailure as exc:
            await self.challenges.discard(identifier, challenge.nonce)
            logger.error(
                "otp_dispatch_failed",
                identifier=identifier,
                channel=channel.value,
                error=exc.message,
            )
            raise
        except asyncio.CancelledError:
            await self.challenges.discard(identifier, challenge.nonce)
            raise
        except Exception as exc:
            await self.challenges.discard(identifier, challenge.nonce)
            logger.error(
                "otp_dispatch_failed",
                identifier=identifier,
                channel=channel.value,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise DispatchFailure("could not send verification code") from exc

        logger.info(
            "otp_requested",
            identifier=identifier,
            channel=channel.value,
            purpose=purpose.value,
            expires_at=challenge.expires_at.isoformat(),
        )
        return {"identifier": identifier, "channel": channel.value}

    async def verify_otp(
        self, identifier: str, code: str, expected_purpose: OTPPurpose
    ) -> ChallengePayload:
        identifier, _ = normalize_identifier(identifier)
        result = await self.challenges.consume(
            identifier, (code or "").strip(), expected_purpose, self._now()
        )
        if result.status != ConsumeStatus.OK or result.challenge is None:
            reason, message = _FAILURES.get(
                result.status, (AuthReason.NOT_FOUND, "no pending code for this identifier")
            )
            logger.warning(
                "otp_verification_failed",
                identifier=identifier,
                purpose=expected_purpose.value,
                reason=reason.value,
            )
            raise AuthError(reason, message)
        logger.info(
            "otp_verified", identifier=identifier, purpose=expected_purpose.value
        )
        return result.challenge.payload
