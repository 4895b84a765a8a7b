"""Storage contracts shared by the memory, Redis and Postgres backends.

The services only depend on these protocols, so every backend has to honour
the same atomicity rules: a challenge is consumed in one indivisible step,
and an account's refresh slot is swapped with compare-and-set semantics.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional, Protocol

from farmauth.storage.models import Account, OTPChallenge, OTPPurpose


class ConsumeStatus(str, Enum):
    OK = "ok"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    MISMATCH = "mismatch"
    WRONG_PURPOSE = "wrong_purpose"


@dataclass(frozen=True)
class ConsumeResult:
    status: ConsumeStatus
    challenge: Optional[OTPChallenge] = None


def evaluate_challenge(
    challenge: Optional[OTPChallenge],
    code: str,
    purpose: OTPPurpose,
    now: datetime,
    *,
    codes_match,
) -> ConsumeStatus:
    """Decide the outcome of a verification attempt.

    Check order is fixed: missing, expired, wrong code, wrong purpose. Only
    EXPIRED and OK remove the entry; callers apply the deletion inside the
    same critical section that read the challenge.
    """
    if challenge is None:
        return ConsumeStatus.NOT_FOUND
    if challenge.is_expired(now):
        return ConsumeStatus.EXPIRED
    if not codes_match(challenge.code, code):
        return ConsumeStatus.MISMATCH
    if challenge.purpose != purpose:
        return ConsumeStatus.WRONG_PURPOSE
    return ConsumeStatus.OK


class ChallengeStore(Protocol):
    async def put(
        self, challenge: OTPChallenge, now: Optional[datetime] = None
    ) -> None: ...

    async def get(self, identifier: str) -> Optional[OTPChallenge]: ...

    async def discard(self, identifier: str, nonce: str) -> bool:
        """Delete the challenge only while it is still the write tagged ``nonce``."""
        ...

    async def consume(
        self, identifier: str, code: str, purpose: OTPPurpose, now: datetime
    ) -> ConsumeResult: ...


class AccountStore(Protocol):
    def find_by_identifier(self, identifier: str) -> Optional[Account]: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def create_account(self, account: Account) -> Account: ...

    def save_account(self, account: Account) -> Account: ...

    def set_refresh_token(self, account_id: str, token: Optional[str]) -> bool: ...

    def swap_refresh_token(
        self, account_id: str, expected: str, new: Optional[str]
    ) -> bool: ...


__all__ = [
    "AccountStore",
    "ChallengeStore",
    "ConsumeResult",
    "ConsumeStatus",
    "evaluate_challenge",
]
