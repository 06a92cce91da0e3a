import base64
import copy

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from matrixci_common.errors import CommandError


@pytest.fixture(scope="session")
def rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture
def encrypt(rsa_key):
    def _encrypt(plain: str) -> str:
        ct = rsa_key.public_key().encrypt(plain.encode("utf-8"), padding.PKCS1v15())
        return base64.b64encode(ct).decode("ascii")

    return _encrypt


@pytest.fixture
def key_file(rsa_key, tmp_path):
    pem = rsa_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    p = tmp_path / "key.pem"
    p.write_bytes(pem)
    return str(p)


BASE_DOC = {
    "name": "ngrams",
    "channels": ["stable", "beta", "nightly"],
    "allow_failures": ["nightly"],
    "primary_channel": "stable",
    "stages": [
        {"name": "build", "run": "true"},
        {"name": "test", "run": "true"},
        {"name": "bench", "run": "true"},
        {"name": "doc", "run": "true", "only": ["stable"]},
    ],
    "notifications": {"on_success": "never"},
}


@pytest.fixture
def make_doc():
    def _make(**overrides):
        doc = copy.deepcopy(BASE_DOC)
        doc.update(overrides)
        return doc

    return _make


class FakeRunner:
    """Stands in for run_cmd; fails the commands listed in `fail`."""

    def __init__(self, fail=()):
        self.fail = set(fail)
        self.calls = []

    def __call__(self, args, cwd=None, env=None, timeout=None, redact=None):
        command = args[-1]
        self.calls.append((command, dict(env or {})))
        if command in self.fail:
            raise CommandError(f"Command failed (1): {args}", 1, "boom\n")
        return "ok\n"

    @property
    def commands(self):
        return [c for c, _ in self.calls]


@pytest.fixture
def fake_runner():
    return FakeRunner
