from datetime import datetime, timedelta, timezone

import pytest

from farmauth.service.errors import ValidationError
from farmauth.service.identifiers import normalize_email, normalize_identifier, normalize_phone
from farmauth.storage.models import (
    Account,
    Channel,
    Location,
    LoginPayload,
    Marketplace,
    OTPChallenge,
    OTPPurpose,
    RegistrationPayload,
    payload_from_dict,
)


class TestIdentifiers:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("+254 712 345 678", "+254712345678"),
            ("(0712) 345-678", "0712345678"),
            ("0712.345.678", "0712345678"),
        ],
    )
    def test_phone_separators_stripped(self, raw, expected):
        assert normalize_phone(raw) == expected

    @pytest.mark.parametrize("raw", ["12345", "+25471234567890123", "07I2345678"])
    def test_invalid_phone(self, raw):
        with pytest.raises(ValidationError):
            normalize_phone(raw)

    def test_email_lowercased(self):
        assert normalize_email("  Farmer@Example.COM ") == "farmer@example.com"

    @pytest.mark.parametrize("raw", ["farmer@", "@example.com", "farmer@localhost", "a b@x.io"])
    def test_invalid_email(self, raw):
        with pytest.raises(ValidationError):
            normalize_email(raw)

    def test_channel_follows_identifier(self):
        assert normalize_identifier("farmer@example.com")[1] == Channel.EMAIL
        assert normalize_identifier("+254712345678")[1] == Channel.PHONE

    def test_blank_identifier(self):
        with pytest.raises(ValidationError) as exc_info:
            normalize_identifier("   ")
        assert exc_info.value.detail == {"field": "identifier"}


class TestModels:
    def test_account_needs_an_identifier(self):
        with pytest.raises(ValueError):
            Account.new("Nobody")

    def test_public_profile_hides_refresh_token(self):
        account = Account.new("Kamau", phone="+254700000002")
        account.refresh_token = "secret-token"
        profile = account.public_profile()

        assert "refresh_token" not in profile
        assert profile["location"] == {
            "type": "Point",
            "coordinates": [0.0, 0.0],
            "address": None,
        }
        assert profile["is_seller"] is False

    def test_challenge_rejects_mismatched_payload(self):
        with pytest.raises(ValueError):
            OTPChallenge(
                identifier="+254700000002",
                code="1234",
                purpose=OTPPurpose.REGISTRATION,
                expires_at=datetime.now(timezone.utc),
                payload=LoginPayload("acct"),
            )

    def test_challenge_serialization(self):
        expires = datetime(2024, 3, 1, 9, 10, tzinfo=timezone.utc)
        payload = RegistrationPayload(
            name="Kamau",
            phone="+254700000002",
            location=Location(coordinates=[36.8, -1.3], address="Nairobi"),
            marketplace=Marketplace(is_seller=True, shop_name="Kamau Greens"),
        )
        challenge = OTPChallenge("+254700000002", "1234", OTPPurpose.REGISTRATION, expires, payload)

        restored = OTPChallenge.from_dict(challenge.to_dict())

        assert restored == challenge
        assert restored.is_expired(expires + timedelta(seconds=1))
        assert not restored.is_expired(expires)

    def test_each_write_gets_its_own_nonce(self):
        expires = datetime(2024, 3, 1, 9, 10, tzinfo=timezone.utc)
        first = OTPChallenge("+254700000002", "1234", OTPPurpose.LOGIN, expires, LoginPayload("a"))
        second = OTPChallenge("+254700000002", "1234", OTPPurpose.LOGIN, expires, LoginPayload("a"))
        assert first.nonce != second.nonce

        stored = first.to_dict()
        del stored["nonce"]
        assert OTPChallenge.from_dict(stored).nonce

    def test_unknown_payload_kind(self):
        with pytest.raises(ValueError):
            payload_from_dict({"kind": "password_reset"})
