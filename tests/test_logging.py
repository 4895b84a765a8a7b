from farmauth.logging import _add_correlation_id, _redact_pii, set_correlation_id


def test_pii_fields_are_masked():
    event = _redact_pii(
        None,
        "info",
        {
            "event": "otp_requested",
            "identifier": "+254700000006",
            "refresh_token": "eyJhbGciOiJIUzI1NiJ9.payload.sig",
            "code": "4242",
            "account_id": "acct-1",
        },
    )
    assert event["event"] == "otp_requested"
    assert event["identifier"] == "+2***06"
    assert event["refresh_token"].startswith("ey***")
    assert event["code"] == "***"
    assert event["account_id"] == "acct-1"


def test_correlation_id_attached():
    cid = set_correlation_id("req-abc")
    event = _add_correlation_id(None, "info", {"event": "x"})
    assert cid == "req-abc"
    assert event["correlation_id"] == "req-abc"
