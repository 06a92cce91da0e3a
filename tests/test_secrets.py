import base64

import pytest
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from matrixci_common.config import SecureEntry
from matrixci_common.errors import SecretUnavailableError
from matrixci_common.secrets import Secret, SecretProvider


def test_secret_hides_value_and_wipes_on_release():
    s = Secret("GH_TOKEN", b"abc123")

    assert repr(s) == "<SECRET>"
    assert str(s) == "<SECRET>"
    assert s.get() == "abc123"

    s.release()
    assert s.released
    with pytest.raises(SecretUnavailableError):
        s.get()


def test_decrypts_named_and_unnamed_entries(encrypt, key_file):
    entries = [
        SecureEntry(secure=encrypt("GH_TOKEN=ghs_value")),
        SecureEntry(name="COVERALLS_REPO_TOKEN", secure=encrypt("cov-token")),
    ]

    with SecretProvider(entries, key_file=key_file).open() as scope:
        assert scope.names() == ["COVERALLS_REPO_TOKEN", "GH_TOKEN"]
        assert scope.env_for(["GH_TOKEN"]) == {"GH_TOKEN": "ghs_value"}
        assert scope.get("COVERALLS_REPO_TOKEN").get() == "cov-token"
        assert sorted(scope.redactions()) == ["cov-token", "ghs_value"]
        assert scope.failures == {}
        held = scope.get("GH_TOKEN")

    assert held.released
    assert scope.redactions() == []
    with pytest.raises(SecretUnavailableError):
        scope.get("GH_TOKEN")


def test_failed_decryption_is_never_an_empty_value(encrypt, key_file):
    entries = [
        SecureEntry(name="GH_TOKEN", secure="not base64!!"),
        SecureEntry(name="SHORT", secure=base64.b64encode(b"abc").decode()),
        SecureEntry(secure=encrypt("novalue")),
        SecureEntry(name="OK", secure=encrypt("fine")),
    ]

    with SecretProvider(entries, key_file=key_file).open() as scope:
        assert set(scope.failures) == {"GH_TOKEN", "SHORT", "secure[2]"}
        with pytest.raises(SecretUnavailableError) as exc:
            scope.env_for(["OK", "GH_TOKEN"])
        assert exc.value.name == "GH_TOKEN"
        assert "not_base64" in exc.value.reason
        assert scope.get("OK").get() == "fine"


def test_missing_key_fails_every_entry(tmp_path, encrypt):
    entries = [SecureEntry(name="GH_TOKEN", secure=encrypt("x"))]

    with SecretProvider(entries, key_file=str(tmp_path / "absent.pem")).open() as scope:
        with pytest.raises(SecretUnavailableError) as exc:
            scope.get("GH_TOKEN")
    assert "decryption_key_unreadable" in exc.value.reason


def test_undeclared_secret_mentions_undecrypted_entries(key_file):
    entries = [SecureEntry(secure="%%%")]

    with SecretProvider(entries, key_file=key_file).open() as scope:
        with pytest.raises(SecretUnavailableError) as exc:
            scope.get("GH_TOKEN")
    assert "secure[0]" in exc.value.reason


def test_no_entries_needs_no_key(tmp_path):
    with SecretProvider([], key_file=str(tmp_path / "absent.pem")).open() as scope:
        assert scope.names() == []
        assert scope.failures == {}


def test_plaintext_that_is_not_text_is_a_failure(rsa_key, key_file):
    def seal(public_key, plain: bytes) -> str:
        return base64.b64encode(public_key.encrypt(plain, padding.PKCS1v15())).decode("ascii")

    other_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    entries = [
        SecureEntry(name="BIN", secure=seal(rsa_key.public_key(), b"\xff\xfe\x00bin")),
        SecureEntry(secure=seal(other_key.public_key(), b"GH_TOKEN=meant-for-another-key")),
        SecureEntry(name="EMPTY", secure=seal(rsa_key.public_key(), b"")),
        SecureEntry(name="OK", secure=seal(rsa_key.public_key(), b"fine")),
    ]

    with SecretProvider(entries, key_file=key_file).open() as scope:
        assert "OK" in scope.names()
        assert "BIN" not in scope.names()
        assert scope.failures["BIN"] == "plaintext_not_utf8"
        assert scope.failures["EMPTY"] == "plaintext_empty"
        assert "fine" in scope.redactions()
        with pytest.raises(SecretUnavailableError):
            scope.get("GH_TOKEN")
