from __future__ import annotations

import copy
import hmac
import json
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from farmauth.logging import get_logger
from farmauth.storage.common import ConsumeResult, ConsumeStatus, evaluate_challenge
from farmauth.storage.errors import ConstraintViolation
from farmauth.storage.models import (
    Account,
    Location,
    Marketplace,
    OTPChallenge,
    OTPPurpose,
)

logger = get_logger(__name__)


def _safe_compare(left: str, right: str) -> bool:
    return hmac.compare_digest(left.encode("utf-8"), right.encode("utf-8"))


class MemoryStore:
    """In-memory account store, optionally snapshotted to a JSON file."""

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        # RLock so helpers can be called while the lock is already held
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "accounts.json"

    def _check_unique(self, account: Account) -> None:
        for existing in self.accounts.values():
            if existing.id == account.id:
                continue
            if account.phone and existing.phone == account.phone:
                raise ConstraintViolation("phone already registered", field="phone")
            if account.email and existing.email == account.email:
                raise ConstraintViolation("email already registered", field="email")

    def find_by_identifier(self, identifier: str) -> Optional[Account]:
        with self._data_lock:
            match = next(
                (
                    a
                    for a in self.accounts.values()
                    if identifier in a.identifiers()
                ),
                None,
            )
            return copy.deepcopy(match) if match else None

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return copy.deepcopy(account) if account else None

    def create_account(self, account: Account) -> Account:
        with self._data_lock:
            if account.id in self.accounts:
                raise ConstraintViolation("account id already exists", field="id")
            self._check_unique(account)
            self.accounts[account.id] = copy.deepcopy(account)
            self._persist_state()
            self.logger.info("account_created", account_id=account.id)
            return copy.deepcopy(account)

    def save_account(self, account: Account) -> Account:
        with self._data_lock:
            if account.id not in self.accounts:
                raise KeyError(account.id)
            self._check_unique(account)
            account.updated_at = datetime.now(timezone.utc)
            self.accounts[account.id] = copy.deepcopy(account)
            self._persist_state()
            return copy.deepcopy(account)

    def set_refresh_token(self, account_id: str, token: Optional[str]) -> bool:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return False
            account.refresh_token = token
            account.updated_at = datetime.now(timezone.utc)
            self._persist_state()
            return True

    def swap_refresh_token(
        self, account_id: str, expected: str, new: Optional[str]
    ) -> bool:
        """Replace the refresh slot only if it still holds ``expected``."""
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account or account.refresh_token is None:
                return False
            if not _safe_compare(account.refresh_token, expected):
                return False
            account.refresh_token = new
            account.updated_at = datetime.now(timezone.utc)
            self._persist_state()
            return True

    @staticmethod
    def _serialize_account(account: Account) -> Dict[str, Any]:
        return {
            "id": account.id,
            "name": account.name,
            "phone": account.phone,
            "email": account.email,
            "location": account.location.to_dict(),
            "marketplace": account.marketplace.to_dict(),
            "is_verified": account.is_verified,
            "refresh_token": account.refresh_token,
            "created_at": account.created_at.isoformat(),
            "updated_at": account.updated_at.isoformat(),
        }

    @staticmethod
    def _deserialize_account(data: Dict[str, Any]) -> Account:
        return Account(
            id=data["id"],
            name=data["name"],
            phone=data.get("phone"),
            email=data.get("email"),
            location=Location.from_dict(data.get("location")),
            marketplace=Marketplace.from_dict(data.get("marketplace")),
            is_verified=bool(data.get("is_verified", False)),
            refresh_token=data.get("refresh_token"),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
        )

    def _persist_state(self) -> None:
        if not self.fs_root:
            return
        state = {
            "accounts": [self._serialize_account(a) for a in self.accounts.values()]
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(state))
        tmp_path.replace(path)

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self.logger.info("memory_store_loaded", accounts=len(self.accounts))
        return True


class MemoryChallengeStore:
    """Process-local OTP challenge map keyed by identifier.

    Not shared between server instances; use ``RedisChallengeStore`` when
    more than one process serves requests. Every ``purge_every`` writes the
    map is swept for challenges expired longer than ``retention_seconds``,
    the same window the Redis backend keeps them for.
    """

    def __init__(self, *, retention_seconds: int = 3600, purge_every: int = 100) -> None:
        self._challenges: Dict[str, OTPChallenge] = {}
        self._lock = threading.Lock()
        self.retention = timedelta(seconds=retention_seconds)
        self.purge_every = max(1, purge_every)
        self._writes = 0

    async def put(self, challenge: OTPChallenge, now: Optional[datetime] = None) -> None:
        with self._lock:
            self._challenges[challenge.identifier] = challenge
            self._writes += 1
            sweep = self._writes % self.purge_every == 0
        if sweep:
            self.purge_expired(now)

    async def get(self, identifier: str) -> Optional[OTPChallenge]:
        with self._lock:
            return self._challenges.get(identifier)

    async def discard(self, identifier: str, nonce: str) -> bool:
        with self._lock:
            current = self._challenges.get(identifier)
            if current is None or current.nonce != nonce:
                return False
            del self._challenges[identifier]
            return True

    async def consume(
        self, identifier: str, code: str, purpose: OTPPurpose, now: datetime
    ) -> ConsumeResult:
        with self._lock:
            challenge = self._challenges.get(identifier)
            status = evaluate_challenge(
                challenge, code, purpose, now, codes_match=_safe_compare
            )
            if status in (ConsumeStatus.OK, ConsumeStatus.EXPIRED):
                del self._challenges[identifier]
            return ConsumeResult(
                status=status,
                challenge=challenge if status == ConsumeStatus.OK else None,
            )

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Drop challenges past the retention window; returns how many."""
        cutoff = (now or datetime.now(timezone.utc)) - self.retention
        with self._lock:
            stale = [
                identifier
                for identifier, challenge in self._challenges.items()
                if challenge.is_expired(cutoff)
            ]
            for identifier in stale:
                del self._challenges[identifier]
        if stale:
            logger.info("otp_challenges_purged", count=len(stale))
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._challenges)
