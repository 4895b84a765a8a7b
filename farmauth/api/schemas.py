from __future__ import annotations

import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from farmauth.logging import get_correlation_id
from farmauth.storage.models import ContactInfo, Location, Marketplace

_VALID_ERROR_CODES = frozenset({
    "validation_error",
    "conflict",
    "auth_error",
    "unauthorized",
    "not_found",
    "dispatch_failed",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


def _clean_text(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    cleaned = unicodedata.normalize("NFKC", value).strip()
    return cleaned or None


class LocationModel(BaseModel):
    coordinates: List[float] = Field(default_factory=lambda: [0.0, 0.0])
    address: Optional[str] = Field(default=None, max_length=512)

    @field_validator("coordinates")
    @classmethod
    def _validate_coordinates(cls, value: List[float]) -> List[float]:
        if len(value) != 2:
            raise ValueError("coordinates must be [longitude, latitude]")
        lng, lat = value
        if not -180.0 <= lng <= 180.0 or not -90.0 <= lat <= 90.0:
            raise ValueError("coordinates out of range")
        return value

    def to_location(self) -> Location:
        return Location(coordinates=list(self.coordinates), address=_clean_text(self.address))


class ContactInfoModel(BaseModel):
    phone: Optional[str] = Field(default=None, max_length=32)
    email: Optional[str] = Field(default=None, max_length=254)


class MarketplaceModel(BaseModel):
    is_seller: bool = False
    shop_name: Optional[str] = Field(default=None, max_length=120)
    contact_info: ContactInfoModel = Field(default_factory=ContactInfoModel)

    def to_marketplace(self) -> Marketplace:
        return Marketplace(
            is_seller=self.is_seller,
            shop_name=_clean_text(self.shop_name),
            contact_info=ContactInfo(
                phone=self.contact_info.phone, email=self.contact_info.email
            ),
        )


class RegistrationOTPRequest(BaseModel):
    name: str = Field(..., max_length=120)
    phone: Optional[str] = Field(default=None, max_length=32)
    email: Optional[str] = Field(default=None, max_length=254)
    location: Optional[LocationModel] = None
    marketplace: Optional[MarketplaceModel] = None

    @field_validator("name")
    @classmethod
    def _normalize_name(cls, value: str) -> str:
        return _clean_text(value) or ""


class ProfileUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, max_length=120)
    email: Optional[str] = Field(default=None, max_length=254)
    location: Optional[LocationModel] = None

    @field_validator("name")
    @classmethod
    def _normalize_name(cls, value: Optional[str]) -> Optional[str]:
        return _clean_text(value)


class LoginOTPRequest(BaseModel):
    identifier: str = Field(..., max_length=254)


class VerifyOTPRequest(BaseModel):
    identifier: str = Field(..., max_length=254)
    code: str = Field(..., max_length=10)


class TokenRefreshRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class OTPRequestResponse(BaseModel):
    identifier: str
    channel: str


class AccountProfile(BaseModel):
    id: str
    name: str
    phone: Optional[str] = None
    email: Optional[str] = None
    location: dict
    is_seller: bool = False
    shop_name: Optional[str] = None
    is_verified: bool = False
    created_at: datetime


class TokenPairResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"


class AuthResponse(TokenPairResponse):
    account: AccountProfile
