from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Location:
    """GeoJSON point; coordinates are ``[longitude, latitude]``."""

    coordinates: List[float] = field(default_factory=lambda: [0.0, 0.0])
    address: Optional[str] = None
    type: str = "Point"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "coordinates": list(self.coordinates),
            "address": self.address,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Location":
        if not data:
            return cls()
        return cls(
            coordinates=[float(c) for c in data.get("coordinates") or [0.0, 0.0]],
            address=data.get("address"),
            type=data.get("type") or "Point",
        )


@dataclass
class ContactInfo:
    phone: Optional[str] = None
    email: Optional[str] = None


@dataclass
class Marketplace:
    is_seller: bool = False
    shop_name: Optional[str] = None
    contact_info: ContactInfo = field(default_factory=ContactInfo)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Marketplace":
        if not data:
            return cls()
        contact = data.get("contact_info") or {}
        return cls(
            is_seller=bool(data.get("is_seller", False)),
            shop_name=data.get("shop_name"),
            contact_info=ContactInfo(
                phone=contact.get("phone"), email=contact.get("email")
            ),
        )


@dataclass
class Account:
    id: str
    name: str
    phone: Optional[str] = None
    email: Optional[str] = None
    location: Location = field(default_factory=Location)
    marketplace: Marketplace = field(default_factory=Marketplace)
    is_verified: bool = False
    # Single-session slot: the only refresh token currently honoured.
    refresh_token: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(
        cls,
        name: str,
        *,
        phone: Optional[str] = None,
        email: Optional[str] = None,
        location: Optional[Location] = None,
        marketplace: Optional[Marketplace] = None,
        is_verified: bool = False,
    ) -> "Account":
        if not phone and not email:
            raise ValueError("an account needs a phone number or an email address")
        return cls(
            id=str(uuid.uuid4()),
            name=name,
            phone=phone,
            email=email,
            location=location or Location(),
            marketplace=marketplace or Marketplace(),
            is_verified=is_verified,
        )

    def identifiers(self) -> List[str]:
        """Every identifier the account can log in with."""
        return [value for value in (self.phone, self.email) if value]

    def public_profile(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "phone": self.phone,
            "email": self.email,
            "location": self.location.to_dict(),
            "is_seller": self.marketplace.is_seller,
            "shop_name": self.marketplace.shop_name,
            "is_verified": self.is_verified,
            "created_at": self.created_at,
        }


class OTPPurpose(str, Enum):
    REGISTRATION = "registration"
    LOGIN = "login"


class Channel(str, Enum):
    PHONE = "phone"
    EMAIL = "email"


@dataclass(frozen=True)
class RegistrationPayload:
    """Pending account fields held until the registration OTP is verified."""

    name: str
    phone: Optional[str] = None
    email: Optional[str] = None
    location: Optional[Location] = None
    marketplace: Optional[Marketplace] = None

    purpose = OTPPurpose.REGISTRATION

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.purpose.value,
            "name": self.name,
            "phone": self.phone,
            "email": self.email,
            "location": self.location.to_dict() if self.location else None,
            "marketplace": self.marketplace.to_dict() if self.marketplace else None,
        }


@dataclass(frozen=True)
class LoginPayload:
    account_id: str

    purpose = OTPPurpose.LOGIN

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.purpose.value, "account_id": self.account_id}


ChallengePayload = Union[RegistrationPayload, LoginPayload]


def payload_from_dict(data: Dict[str, Any]) -> ChallengePayload:
    kind = data.get("kind")
    if kind == OTPPurpose.LOGIN.value:
        return LoginPayload(account_id=data["account_id"])
    if kind == OTPPurpose.REGISTRATION.value:
        return RegistrationPayload(
            name=data["name"],
            phone=data.get("phone"),
            email=data.get("email"),
            location=Location.from_dict(data["location"]) if data.get("location") else None,
            marketplace=(
                Marketplace.from_dict(data["marketplace"])
                if data.get("marketplace")
                else None
            ),
        )
    raise ValueError(f"unknown challenge payload kind: {kind!r}")


@dataclass
class OTPChallenge:
    identifier: str
    code: str
    purpose: OTPPurpose
    expires_at: datetime
    payload: ChallengePayload
    # Distinguishes this write from a later one that drew the same code
    nonce: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self) -> None:
        if self.payload.purpose != self.purpose:
            raise ValueError(
                f"{self.purpose.value} challenge cannot carry a "
                f"{self.payload.purpose.value} payload"
            )

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identifier": self.identifier,
            "code": self.code,
            "purpose": self.purpose.value,
            "expires_at": self.expires_at.timestamp(),
            "payload": self.payload.to_dict(),
            "nonce": self.nonce,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OTPChallenge":
        return cls(
            identifier=data["identifier"],
            code=data["code"],
            purpose=OTPPurpose(data["purpose"]),
            expires_at=datetime.fromtimestamp(float(data["expires_at"]), tz=timezone.utc),
            payload=payload_from_dict(data["payload"]),
            nonce=data.get("nonce") or uuid.uuid4().hex,
        )


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str

    def to_dict(self) -> Dict[str, str]:
        return {"access_token": self.access_token, "refresh_token": self.refresh_token}
