from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Header, Response

from farmauth.api.schemas import (
    AccountProfile,
    AuthResponse,
    Envelope,
    LoginOTPRequest,
    OTPRequestResponse,
    ProfileUpdateRequest,
    RegistrationOTPRequest,
    TokenPairResponse,
    TokenRefreshRequest,
    VerifyOTPRequest,
)
from farmauth.service.runtime import get_runtime
from farmauth.storage.models import Account

router = APIRouter(prefix="/v1")

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _apply_token_cookies(response: Response, tokens: dict) -> None:
    settings = get_runtime().settings
    response.set_cookie(
        ACCESS_COOKIE,
        tokens["access_token"],
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        max_age=settings.access_token_ttl_minutes * 60,
        path="/",
    )
    response.set_cookie(
        REFRESH_COOKIE,
        tokens["refresh_token"],
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        max_age=settings.refresh_token_ttl_minutes * 60,
        path="/",
    )


def _clear_token_cookies(response: Response) -> None:
    secure = get_runtime().settings.cookie_secure
    response.delete_cookie(ACCESS_COOKIE, path="/", secure=secure, samesite="lax")
    response.delete_cookie(REFRESH_COOKIE, path="/", secure=secure, samesite="lax")


def _access_token(
    authorization: Optional[str] = Header(None),
    access_token: Optional[str] = Cookie(None),
) -> Optional[str]:
    return _bearer_token(authorization) or access_token


async def get_account(token: Optional[str] = Depends(_access_token)) -> Account:
    return get_runtime().auth.authenticate(token)


def _auth_envelope(session: dict) -> Envelope:
    return Envelope(
        status="ok",
        data=AuthResponse(
            account=AccountProfile(**session["account"]),
            access_token=session["access_token"],
            refresh_token=session["refresh_token"],
        ),
    )


@router.post("/auth/register/otp", response_model=Envelope, tags=["auth"])
async def request_registration_otp(body: RegistrationOTPRequest):
    """Send a registration code to the new account's phone (or email)."""
    runtime = get_runtime()
    result = await runtime.auth.request_registration_otp(
        body.name,
        phone=body.phone,
        email=body.email,
        location=body.location.to_location() if body.location else None,
        marketplace=body.marketplace.to_marketplace() if body.marketplace else None,
    )
    return Envelope(status="ok", data=OTPRequestResponse(**result))


@router.post(
    "/auth/register/verify", response_model=Envelope, status_code=201, tags=["auth"]
)
async def verify_registration_otp(body: VerifyOTPRequest, response: Response):
    """Create the account held by a registration code and start a session."""
    runtime = get_runtime()
    session = await runtime.auth.verify_registration_otp(body.identifier, body.code)
    _apply_token_cookies(response, session)
    return _auth_envelope(session)


@router.post("/auth/login/otp", response_model=Envelope, tags=["auth"])
async def request_login_otp(body: LoginOTPRequest):
    runtime = get_runtime()
    result = await runtime.auth.request_login_otp(body.identifier)
    return Envelope(status="ok", data=OTPRequestResponse(**result))


@router.post("/auth/login/verify", response_model=Envelope, tags=["auth"])
async def verify_login_otp(body: VerifyOTPRequest, response: Response):
    runtime = get_runtime()
    session = await runtime.auth.verify_login_otp(body.identifier, body.code)
    _apply_token_cookies(response, session)
    return _auth_envelope(session)


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(
    response: Response,
    body: Optional[TokenRefreshRequest] = None,
    refresh_token: Optional[str] = Cookie(None),
):
    """Rotate the token pair.

    The refresh token is read from the request body when present, otherwise
    from the ``refresh_token`` cookie.
    """
    runtime = get_runtime()
    presented = (body.refresh_token if body else None) or refresh_token
    tokens = runtime.auth.refresh(presented)
    _apply_token_cookies(response, tokens)
    return Envelope(status="ok", data=TokenPairResponse(**tokens))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(response: Response, token: Optional[str] = Depends(_access_token)):
    runtime = get_runtime()
    runtime.auth.logout(token)
    _clear_token_cookies(response)
    return Envelope(status="ok", data={"message": "logged out"})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(account: Account = Depends(get_account)):
    return Envelope(status="ok", data=AccountProfile(**account.public_profile()))


@router.patch("/auth/me", response_model=Envelope, tags=["auth"])
async def update_me(body: ProfileUpdateRequest, account: Account = Depends(get_account)):
    """Update name, email or location of the signed-in account."""
    runtime = get_runtime()
    updated = runtime.auth.update_profile(
        account.id,
        name=body.name,
        email=body.email,
        location=body.location.to_location() if body.location else None,
    )
    return Envelope(status="ok", data=AccountProfile(**updated.public_profile()))
