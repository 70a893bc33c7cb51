"""Basic unit tests for the diaspora-fed package."""

from diaspora_fed import (
    AsyncFederation,
    Federation,
    FederationConfig,
    FederationError,
    MalformedEnvelope,
    CryptoFailure,
    SignatureVerificationFailed,
    KeyResolutionFailure,
    SpoofedAuthor,
    UnsupportedMessageType,
    PrivacyViolation,
    TransportFailure,
    NoDestination,
    MessageType,
    __version__,
)


def test_version():
    assert __version__ == "0.1.0"


def test_public_exports():
    assert Federation is not None
    assert AsyncFederation is not None


def test_error_hierarchy():
    for cls in (MalformedEnvelope, CryptoFailure, SignatureVerificationFailed, KeyResolutionFailure,
                SpoofedAuthor, UnsupportedMessageType, PrivacyViolation, TransportFailure, NoDestination):
        assert issubclass(cls, FederationError)


def test_error_attributes():
    err = FederationError(code="test_code", message="something broke")
    assert err.code == "test_code"
    assert str(err) == "something broke"
    assert err.details is None

    spoofed = SpoofedAuthor("mallory@evil.example", "alice@example.com")
    assert spoofed.code == "spoofed_author"
    assert spoofed.details == {"declared": "mallory@evil.example", "sender": "alice@example.com"}

    missing = KeyResolutionFailure("nobody@example.com")
    assert missing.handle == "nobody@example.com"
    assert TransportFailure("boom", status_code=502).details == {"status_code": 502}


def test_message_types():
    assert MessageType.STATUS_MESSAGE == "status_message"
    assert MessageType.ACCOUNT_MIGRATION == "account_migration"
    assert len(MessageType) == 14


def test_config_defaults_and_relay_list(tmp_path):
    assert FederationConfig.load(tmp_path / "missing.json") == FederationConfig()

    path = tmp_path / "config.json"
    path.write_text('{"relay_servers": "https://a.example, https://b.example", "test_mode": true}')
    config = FederationConfig.load(path)
    assert config.relay_servers == ["https://a.example", "https://b.example"]
    assert config.test_mode is True
    assert config.enabled is True
    assert config.allow_unsigned_fetch is False

    path.write_text("{not json")
    assert FederationConfig.load(path) == FederationConfig()
