import pytest
from jose import jwt

from app.core.exceptions import ConfigurationError, ExpiredStateError, InvalidStateError
from app.services.oauth.state import StateTokenCodec

from conftest import STATE_SECRET, FakeClock


def test_issue_then_verify_returns_profile():
    codec = StateTokenCodec(STATE_SECRET, clock=FakeClock())
    for profile_id in ("user123", "00000000-0000-0000-0000-000000000001", "ünïcode-profile"):
        issued = codec.issue(profile_id, "meta")
        verified = codec.verify(issued.token, "meta")
        assert verified.profile_id == profile_id
        assert verified.provider == "meta"
        assert verified.target_platform is None


def test_target_platform_round_trips():
    codec = StateTokenCodec(STATE_SECRET, clock=FakeClock())
    issued = codec.issue("user123", "meta", target_platform="instagram")
    assert codec.verify(issued.token, "meta").target_platform == "instagram"


def test_issued_tokens_are_unique():
    codec = StateTokenCodec(STATE_SECRET, clock=FakeClock())
    first = codec.issue("user123", "meta")
    second = codec.issue("user123", "meta")
    assert first.token != second.token
    assert first.nonce != second.nonce


def test_expiry_reported_from_ttl():
    clock = FakeClock()
    codec = StateTokenCodec(STATE_SECRET, ttl_seconds=600, clock=clock)
    issued = codec.issue("user123", "meta")
    assert (issued.expires_at - issued.issued_at).total_seconds() == 600


def test_token_past_ttl_is_expired():
    clock = FakeClock()
    codec = StateTokenCodec(STATE_SECRET, ttl_seconds=600, clock=clock)
    issued = codec.issue("user123", "meta")

    clock.advance(601)
    with pytest.raises(ExpiredStateError):
        codec.verify(issued.token, "meta")


def test_token_at_ttl_boundary_still_valid():
    clock = FakeClock()
    codec = StateTokenCodec(STATE_SECRET, ttl_seconds=600, clock=clock)
    issued = codec.issue("user123", "meta")

    clock.advance(600)
    assert codec.verify(issued.token, "meta").profile_id == "user123"


def test_expired_state_is_an_invalid_state():
    # Callers that only care about "bad state" can catch the parent class.
    assert issubclass(ExpiredStateError, InvalidStateError)


def test_provider_mismatch_rejected():
    codec = StateTokenCodec(STATE_SECRET, clock=FakeClock())
    issued = codec.issue("user123", "meta")
    with pytest.raises(InvalidStateError) as exc_info:
        codec.verify(issued.token, "tiktok")
    assert not isinstance(exc_info.value, ExpiredStateError)


def test_wrong_secret_rejected():
    issued = StateTokenCodec("other-secret", clock=FakeClock()).issue("user123", "meta")
    codec = StateTokenCodec(STATE_SECRET, clock=FakeClock())
    with pytest.raises(InvalidStateError):
        codec.verify(issued.token, "meta")


def test_tampered_token_rejected():
    codec = StateTokenCodec(STATE_SECRET, clock=FakeClock())
    issued = codec.issue("user123", "meta")
    header, payload, signature = issued.token.split(".")
    forged_payload = jwt.encode(
        {"sub": "attacker", "provider": "meta", "nonce": "n", "iat": 0, "type": "oauth_state"},
        "guess",
    ).split(".")[1]
    with pytest.raises(InvalidStateError):
        codec.verify(f"{header}.{forged_payload}.{signature}", "meta")


@pytest.mark.parametrize("token", ["", "not-a-jwt", "a.b.c"])
def test_garbage_rejected(token):
    codec = StateTokenCodec(STATE_SECRET, clock=FakeClock())
    with pytest.raises(InvalidStateError):
        codec.verify(token, "meta")


def test_other_token_types_rejected():
    clock = FakeClock()
    codec = StateTokenCodec(STATE_SECRET, clock=clock)
    access_token = jwt.encode(
        {"sub": "user123", "provider": "meta", "nonce": "n", "iat": int(clock.now.timestamp())},
        STATE_SECRET,
        algorithm="HS256",
    )
    with pytest.raises(InvalidStateError):
        codec.verify(access_token, "meta")


def test_replayed_state_rejected():
    codec = StateTokenCodec(STATE_SECRET, clock=FakeClock())
    issued = codec.issue("user123", "meta")
    codec.verify(issued.token, "meta")
    with pytest.raises(InvalidStateError):
        codec.verify(issued.token, "meta")


def test_missing_secret_is_configuration_error():
    with pytest.raises(ConfigurationError):
        StateTokenCodec("")
