from __future__ import annotations

import hashlib
import secrets
from typing import Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.hmac import HMAC
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from medguard.core.errors import IntegrityError, InvalidInputError


KEY_BYTES = 32  # AES-256
IV_BYTES = 16  # AES block size
TAG_BYTES = 32  # HMAC-SHA256
_HKDF_INFO = b"medguard.vault.v1"


def generate_vault_key_bytes() -> bytes:
    return secrets.token_bytes(KEY_BYTES)


def key_id_from_key_bytes(key: bytes) -> str:
    return hashlib.sha256(key).hexdigest()[:16]


def _derive_subkeys(master_key: bytes) -> Tuple[bytes, bytes]:
    okm = HKDF(algorithm=hashes.SHA256(), length=2 * KEY_BYTES, salt=None, info=_HKDF_INFO).derive(master_key)
    return okm[:KEY_BYTES], okm[KEY_BYTES:]


class Vault:
    """
    Symmetric envelope encryption for credentials and sensitive fields.

    - AES-256-CBC with PKCS7 padding and a fresh random IV per call.
    - Encrypt-then-MAC (HMAC-SHA256 over iv || ciphertext).
    - Envelope: "<iv hex>:<ciphertext hex>:<tag hex>", self-contained.

    The master key is fixed for the lifetime of the instance.
    """

    def __init__(self, key: bytes, *, logger=None):
        if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_BYTES:
            raise InvalidInputError("Vault key must be 32 bytes (AES-256).")
        self._enc_key, self._mac_key = _derive_subkeys(bytes(key))
        self.key_id = key_id_from_key_bytes(bytes(key))
        self.logger = logger

    @classmethod
    def from_hex(cls, key_hex: str, *, logger=None) -> "Vault":
        try:
            key = bytes.fromhex(str(key_hex or "").strip())
        except ValueError:
            raise InvalidInputError("Vault key must be hex encoded.") from None
        return cls(key, logger=logger)

    def _tag(self, iv: bytes, ciphertext: bytes) -> bytes:
        mac = HMAC(self._mac_key, hashes.SHA256())
        mac.update(iv)
        mac.update(ciphertext)
        return mac.finalize()

    def encrypt(self, plaintext: str) -> str:
        if not isinstance(plaintext, str):
            raise InvalidInputError("Plaintext must be a string.")
        iv = secrets.token_bytes(IV_BYTES)
        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()
        encryptor = Cipher(algorithms.AES(self._enc_key), modes.CBC(iv)).encryptor()
        ct = encryptor.update(padded) + encryptor.finalize()
        return ":".join([iv.hex(), ct.hex(), self._tag(iv, ct).hex()])

    def decrypt(self, envelope: str) -> str:
        iv, ct, tag = self._parse(envelope)
        mac = HMAC(self._mac_key, hashes.SHA256())
        mac.update(iv)
        mac.update(ct)
        try:
            mac.verify(tag)
        except InvalidSignature:
            self._report("tag_mismatch")
            raise IntegrityError(reason="tag_mismatch") from None
        decryptor = Cipher(algorithms.AES(self._enc_key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(ct) + decryptor.finalize()
        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        try:
            raw = unpadder.update(padded) + unpadder.finalize()
            return raw.decode("utf-8")
        except (ValueError, UnicodeDecodeError):
            self._report("bad_padding")
            raise IntegrityError(reason="bad_padding") from None

    def _parse(self, envelope: str) -> Tuple[bytes, bytes, bytes]:
        if not isinstance(envelope, str):
            self._report("not_a_string")
            raise IntegrityError(reason="not_a_string")
        parts = envelope.split(":")
        if len(parts) != 3:
            self._report("bad_structure")
            raise IntegrityError(reason="bad_structure")
        try:
            iv, ct, tag = (bytes.fromhex(p) for p in parts)
        except ValueError:
            self._report("bad_hex")
            raise IntegrityError(reason="bad_hex") from None
        if len(iv) != IV_BYTES or len(tag) != TAG_BYTES:
            self._report("truncated")
            raise IntegrityError(reason="truncated")
        if not ct or len(ct) % IV_BYTES != 0:
            self._report("truncated")
            raise IntegrityError(reason="truncated")
        return iv, ct, tag

    def _report(self, reason: str) -> None:
        # Possible tampering: surfaced at ERROR, never with envelope contents.
        if self.logger is not None:
            self.logger.error(f"vault integrity failure reason={reason} key_id={self.key_id}")
