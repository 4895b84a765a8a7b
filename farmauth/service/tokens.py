from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from farmauth.logging import get_logger
from farmauth.service.errors import AuthError, AuthReason, NotFoundError
from farmauth.service.otp import Clock, utc_now
from farmauth.storage.common import AccountStore
from farmauth.storage.models import Account, TokenPair

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


def account_claims(account: Account) -> Dict[str, Any]:
    """Identity claims embedded in access tokens."""
    return {"phone": account.phone, "email": account.email}


class TokenService:
    """Mints, rotates and revokes access/refresh token pairs.

    Each account holds exactly one refresh token. Issuing a pair overwrites
    it, and a refresh only succeeds while the presented token is still the
    stored one, so any older token is rejected as reuse.
    """

    def __init__(
        self,
        store: AccountStore,
        *,
        access_secret: str,
        refresh_secret: str,
        issuer: str,
        audience: str,
        access_ttl: timedelta = timedelta(hours=1),
        refresh_ttl: timedelta = timedelta(days=7),
        clock: Optional[Clock] = None,
        leeway: timedelta = timedelta(seconds=30),
    ) -> None:
        if not access_secret or not refresh_secret:
            raise ValueError("both signing secrets are required")
        if access_secret == refresh_secret:
            raise ValueError("access and refresh tokens must use distinct secrets")
        self.store = store
        self._access_secret = access_secret.encode()
        self._refresh_secret = refresh_secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self._clock = clock or utc_now
        # Allowance for small clock skew across nodes
        self._leeway = leeway

    def _now(self) -> datetime:
        return self._clock()

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, secret: bytes) -> str:
        return self._encode_segment(
            hmac.new(secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any], secret: bytes) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, secret)}"

    def _decode_jwt(self, token: str, secret: bytes, token_type: str) -> dict[str, Any]:
        invalid = AuthError(AuthReason.INVALID_SIGNATURE, "invalid token")
        try:
            header_b64, payload_b64, sig_b64 = (token or "").split(".")
        except ValueError:
            raise invalid from None

        # Reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            raise invalid from None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            raise invalid

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", secret)
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode("utf-8")):
            raise invalid
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise invalid from None
        if not isinstance(payload, dict):
            raise invalid
        if payload.get("iss") != self.issuer or payload.get("aud") != self.audience:
            raise invalid
        if payload.get("token_type") != token_type or not payload.get("sub"):
            raise invalid
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise invalid from None
        if exp_ts <= (self._now() - self._leeway).timestamp():
            raise AuthError(AuthReason.EXPIRED, f"{token_type} token has expired")
        return payload

    def _mint_pair(self, account_id: str, claims: Optional[Dict[str, Any]]) -> TokenPair:
        now = self._now()
        base = {"iss": self.issuer, "aud": self.audience, "sub": account_id, "iat": int(now.timestamp())}
        access_payload = {
            **(claims or {}),
            **base,
            "token_type": ACCESS,
            "jti": str(uuid.uuid4()),
            "exp": int((now + self.access_ttl).timestamp()),
        }
        # Refresh tokens carry only the account id
        refresh_payload = {
            **base,
            "token_type": REFRESH,
            "jti": str(uuid.uuid4()),
            "exp": int((now + self.refresh_ttl).timestamp()),
        }
        return TokenPair(
            access_token=self._encode_jwt(access_payload, self._access_secret),
            refresh_token=self._encode_jwt(refresh_payload, self._refresh_secret),
        )

    def issue_pair(
        self, account_id: str, claims: Optional[Dict[str, Any]] = None
    ) -> TokenPair:
        pair = self._mint_pair(account_id, claims)
        if not self.store.set_refresh_token(account_id, pair.refresh_token):
            raise NotFoundError("account not found", detail={"account_id": account_id})
        logger.info("token_pair_issued", account_id=account_id)
        return pair

    def refresh(self, presented: str) -> TokenPair:
        payload = self._decode_jwt(presented, self._refresh_secret, REFRESH)
        account_id = str(payload["sub"])
        account = self.store.get_account(account_id)
        if not account:
            logger.warning("refresh_account_missing", account_id=account_id)
            raise NotFoundError(
                "account not found", detail={"reason": "account_not_found"}
            )
        if account.refresh_token is None:
            logger.warning("refresh_without_session", account_id=account_id)
            raise AuthError(
                AuthReason.ACCOUNT_HAS_NO_SESSION,
                "no active session, please log in again",
            )
        if not hmac.compare_digest(
            account.refresh_token.encode(), presented.encode("utf-8")
        ):
            logger.warning("refresh_token_reuse_detected", account_id=account_id)
            raise AuthError(
                AuthReason.TOKEN_REUSE_DETECTED, "refresh token has already been used"
            )

        pair = self._mint_pair(account.id, account_claims(account))
        if not self.store.swap_refresh_token(account.id, presented, pair.refresh_token):
            # Another request rotated this token between our read and write
            logger.warning(
                "refresh_token_reuse_detected", account_id=account_id, concurrent=True
            )
            raise AuthError(
                AuthReason.TOKEN_REUSE_DETECTED, "refresh token has already been used"
            )
        logger.info("token_pair_rotated", account_id=account_id)
        return pair

    def revoke(self, account_id: str) -> None:
        self.store.set_refresh_token(account_id, None)
        logger.info("refresh_token_revoked", account_id=account_id)

    def decode_access(self, token: str) -> dict[str, Any]:
        return self._decode_jwt(token, self._access_secret, ACCESS)
