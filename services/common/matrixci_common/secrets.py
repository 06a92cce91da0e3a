"""Decrypt ``secure`` environment blobs for one pipeline invocation.

Blobs are base64 RSA PKCS#1 v1.5 ciphertext. An unnamed blob decrypts to
``NAME=value``; a blob declared with a ``name`` decrypts to the bare value.
The private key never lives in the pipeline document, it is read from
``MATRIXCI_DECRYPTION_KEY_FILE``.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
from typing import Dict, List, Optional, Sequence

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import padding

from .config import SecureEntry
from .errors import SecretDecryptionError, SecretUnavailableError
from .utils import read_secret_bytes

logger = logging.getLogger(__name__)

DECRYPTION_KEY_FILE = os.environ.get("MATRIXCI_DECRYPTION_KEY_FILE", "/secrets/matrixci_key.pem")


class Secret:
    """Decrypted value that prints as ``<SECRET>`` and can be wiped."""

    def __init__(self, name: str, value: bytes) -> None:
        self.name = name
        self.__value = bytearray(value)
        self.__released = False

    def get(self) -> str:
        if self.__released:
            raise SecretUnavailableError(self.name, "released")
        return self.__value.decode("utf-8")

    def release(self) -> None:
        for i in range(len(self.__value)):
            self.__value[i] = 0
        self.__value = bytearray()
        self.__released = True

    @property
    def released(self) -> bool:
        return self.__released

    def __repr__(self) -> str:
        return "<SECRET>"

    def __str__(self) -> str:
        return "<SECRET>"


def load_private_key(path: str):
    try:
        data = read_secret_bytes(path)
    except OSError as e:
        raise SecretDecryptionError(f"decryption_key_unreadable path={path} err={e.strerror}") from e
    try:
        return serialization.load_pem_private_key(data, password=None)
    except (ValueError, TypeError) as e:
        raise SecretDecryptionError(f"decryption_key_invalid path={path}") from e


def decrypt_blob(private_key, blob: str) -> bytes:
    try:
        ciphertext = base64.b64decode(blob, validate=True)
    except (binascii.Error, ValueError) as e:
        raise SecretDecryptionError("ciphertext_not_base64") from e
    try:
        return private_key.decrypt(ciphertext, padding.PKCS1v15())
    except ValueError as e:
        raise SecretDecryptionError("ciphertext_rejected") from e


class SecretScope:
    """Secrets of one invocation. Values are zeroed when the scope closes."""

    def __init__(self, entries: Sequence[SecureEntry], private_key=None, key_error: Optional[str] = None):
        self._entries = list(entries)
        self._private_key = private_key
        self._key_error = key_error
        self._secrets: Dict[str, Secret] = {}
        self.failures: Dict[str, str] = {}
        self._open = False

    def __enter__(self) -> "SecretScope":
        self.open()
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def open(self) -> None:
        if self._open:
            return
        self._open = True
        for i, entry in enumerate(self._entries):
            label = entry.name or f"secure[{i}]"
            if self._private_key is None:
                self.failures[label] = self._key_error or "no_decryption_key"
                continue
            try:
                plain = decrypt_blob(self._private_key, entry.secure)
            except SecretDecryptionError as e:
                self.failures[label] = str(e)
                continue
            try:
                text = plain.decode("utf-8")
            except UnicodeDecodeError:
                # a wrong key yields random bytes, not an error
                self.failures[label] = "plaintext_not_utf8"
                continue
            if entry.name:
                name, value = entry.name, text
            else:
                name, sep, value = text.partition("=")
                name = name.strip()
                if not sep or not name:
                    self.failures[label] = "plaintext_not_NAME=value"
                    continue
            if not value:
                self.failures[label] = "plaintext_empty"
                continue
            self._add(name, value)
        for label, reason in self.failures.items():
            logger.warning("Secret %s could not be decrypted: %s", label, reason)
        logger.info("Decrypted %d secret(s), %d failed", len(self._secrets), len(self.failures))

    def _add(self, name: str, value: str) -> None:
        if name in self._secrets:
            logger.warning("Secret %s declared more than once; keeping the last value", name)
            self._secrets[name].release()
        self._secrets[name] = Secret(name, value.encode("utf-8"))
        self.failures.pop(name, None)

    def close(self) -> None:
        for s in self._secrets.values():
            s.release()
        self._secrets.clear()
        self._private_key = None
        self._open = False

    def names(self) -> List[str]:
        return sorted(self._secrets)

    def get(self, name: str) -> Secret:
        s = self._secrets.get(name)
        if s is None:
            reason = self.failures.get(name)
            if reason is None:
                unnamed = [k for k in self.failures if k.startswith("secure[")]
                reason = f"not_provided undecrypted={','.join(unnamed)}" if unnamed else "not_provided"
            raise SecretUnavailableError(name, reason)
        return s

    def env_for(self, names: Sequence[str]) -> Dict[str, str]:
        return {n: self.get(n).get() for n in names}

    def redactions(self) -> List[str]:
        return [s.get() for s in self._secrets.values() if not s.released]


class SecretProvider:
    def __init__(self, entries: Sequence[SecureEntry], key_file: Optional[str] = None, private_key=None):
        self.entries = list(entries)
        self.key_file = key_file or DECRYPTION_KEY_FILE
        self.private_key = private_key

    def open(self) -> SecretScope:
        """Return a scope; decryption happens when it is entered."""
        key, key_error = self.private_key, None
        if key is None and self.entries:
            try:
                key = load_private_key(self.key_file)
            except SecretDecryptionError as e:
                key_error = str(e)
        return SecretScope(self.entries, private_key=key, key_error=key_error)
