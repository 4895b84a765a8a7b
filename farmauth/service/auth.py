from __future__ import annotations

from typing import Any, Dict, Optional

from farmauth.logging import get_logger
from farmauth.service.errors import (
    AuthError,
    AuthReason,
    ConflictError,
    NotFoundError,
    ServerError,
    UnauthorizedError,
    ValidationError,
)
from farmauth.service.identifiers import (
    normalize_email,
    normalize_identifier,
    normalize_phone,
)
from farmauth.service.otp import OTPManager
from farmauth.service.tokens import TokenService, account_claims
from farmauth.storage.common import AccountStore
from farmauth.storage.errors import ConstraintViolation
from farmauth.storage.models import (
    Account,
    LoginPayload,
    Location,
    Marketplace,
    OTPPurpose,
    RegistrationPayload,
)

logger = get_logger(__name__)


class AuthService:
    """Passwordless registration and login on top of OTPs and rotating tokens."""

    def __init__(
        self, store: AccountStore, otp: OTPManager, tokens: TokenService
    ) -> None:
        self.store = store
        self.otp = otp
        self.tokens = tokens

    def _session(self, account: Account) -> Dict[str, Any]:
        pair = self.tokens.issue_pair(account.id, account_claims(account))
        return {"account": account.public_profile(), **pair.to_dict()}

    async def request_registration_otp(
        self,
        name: str,
        *,
        phone: Optional[str] = None,
        email: Optional[str] = None,
        location: Optional[Location] = None,
        marketplace: Optional[Marketplace] = None,
    ) -> Dict[str, str]:
        """Hold the pending account fields and send a code to its phone (or email)."""
        phone = normalize_phone(phone) if phone else None
        email = normalize_email(email) if email else None
        payload = RegistrationPayload(
            name=(name or "").strip(),
            phone=phone,
            email=email,
            location=location,
            marketplace=marketplace,
        )
        identifier = phone or email
        if not identifier:
            raise ValidationError(
                "phone or email is required", detail={"field": "identifier"}
            )
        return await self.otp.request_otp(OTPPurpose.REGISTRATION, identifier, payload)

    async def verify_registration_otp(self, identifier: str, code: str) -> Dict[str, Any]:
        payload = await self.otp.verify_otp(identifier, code, OTPPurpose.REGISTRATION)
        if not isinstance(payload, RegistrationPayload):
            raise ServerError("registration code carried an unexpected payload")
        account = Account.new(
            payload.name,
            phone=payload.phone,
            email=payload.email,
            location=payload.location,
            marketplace=payload.marketplace,
            is_verified=True,
        )
        try:
            account = self.store.create_account(account)
        except ConstraintViolation as exc:
            # Someone registered the same phone or email after the code was sent
            logger.warning("registration_conflict", field=exc.field)
            raise ConflictError(
                "an account already exists for this identifier, please log in",
                detail=exc.detail,
            ) from exc
        logger.info("account_registered", account_id=account.id)
        return self._session(account)

    async def request_login_otp(self, identifier: str) -> Dict[str, str]:
        identifier, _ = normalize_identifier(identifier)
        account = self.store.find_by_identifier(identifier)
        if not account:
            raise NotFoundError(
                "no account found for this identifier, please register"
            )
        return await self.otp.request_otp(
            OTPPurpose.LOGIN, identifier, LoginPayload(account_id=account.id)
        )

    async def verify_login_otp(self, identifier: str, code: str) -> Dict[str, Any]:
        payload = await self.otp.verify_otp(identifier, code, OTPPurpose.LOGIN)
        if not isinstance(payload, LoginPayload):
            raise ServerError("login code carried an unexpected payload")
        account = self.store.get_account(payload.account_id)
        if not account:
            raise NotFoundError("account not found")
        logger.info("account_logged_in", account_id=account.id)
        return self._session(account)

    def refresh(self, refresh_token: Optional[str]) -> Dict[str, str]:
        if not refresh_token:
            raise ValidationError(
                "refresh token is required", detail={"field": "refresh_token"}
            )
        return self.tokens.refresh(refresh_token).to_dict()

    def authenticate(self, access_token: Optional[str]) -> Account:
        """Resolve an access token to its account, raising ``UnauthorizedError``."""
        if not access_token:
            raise UnauthorizedError(AuthReason.NOT_FOUND, "missing access token")
        try:
            claims = self.tokens.decode_access(access_token)
        except AuthError as exc:
            raise UnauthorizedError(exc.reason, exc.message) from exc
        account = self.store.get_account(str(claims["sub"]))
        if not account:
            raise NotFoundError("account not found")
        return account

    def logout(self, access_token: Optional[str]) -> None:
        account = self.authenticate(access_token)
        self.tokens.revoke(account.id)
        logger.info("account_logged_out", account_id=account.id)

    def update_profile(
        self,
        account_id: str,
        *,
        name: Optional[str] = None,
        email: Optional[str] = None,
        location: Optional[Location] = None,
    ) -> Account:
        """Change the account's name, email or location.

        Blank values count as absent; at least one field has to change. An
        email held by another account is a ``ConflictError``.
        """
        name = (name or "").strip() or None
        email = normalize_email(email) if (email or "").strip() else None
        if name is None and email is None and location is None:
            raise ValidationError("at least one field is required to update")

        account = self.store.get_account(account_id)
        if not account:
            raise NotFoundError("account not found")
        if email and email not in account.identifiers():
            holder = self.store.find_by_identifier(email)
            if holder and holder.id != account.id:
                raise ConflictError("email is already in use", detail={"field": "email"})

        if name is not None:
            account.name = name
        if email is not None:
            account.email = email
        if location is not None:
            account.location = location
        try:
            account = self.store.save_account(account)
        except ConstraintViolation as exc:
            logger.warning("profile_update_conflict", account_id=account_id, field=exc.field)
            raise ConflictError("email is already in use", detail=exc.detail) from exc
        except KeyError as exc:
            raise NotFoundError("account not found") from exc
        logger.info("profile_updated", account_id=account.id)
        return account
