"""
Symmetric envelope around the serialized will.

Key and iv are random, never password-derived. The key is the one secret
that leaves the system out-of-band (testator -> executor); it is kept in
the local encrypted artifact and never uploaded.

Padding: serialized hex of odd length gets one trailing '0' nibble before
hex->bytes. On the way back, an even-length hex ending in '0' loses exactly
one '0'. This misfires when the real payload ends in '0' at even length.
A serialized will always ends in the signature's v byte (0x1b / 0x1c), so
the case does not arise for wills, but it does for arbitrary payloads.
"""

import logging
import time
from dataclasses import dataclass
from typing import Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM, ChaCha20Poly1305

from .constants import (
    AEAD_ALGORITHMS,
    CRYPTO_LIMITS,
    CipherAlgorithm,
    iv_size_for,
)
from .errors import AuthenticationError, ValidationError
from .models import EncryptedWill, SerializedWill
from .primitives import generate_iv, generate_key

logger = logging.getLogger("willchain.encryption")


@dataclass(frozen=True)
class CipherResult:
    ciphertext: bytes
    auth_tag: bytes = b""


def parse_algorithm(value: Union[str, CipherAlgorithm]) -> CipherAlgorithm:
    try:
        return CipherAlgorithm(value)
    except ValueError:
        supported = ", ".join(a.value for a in CipherAlgorithm)
        raise ValidationError(
            f"Unsupported algorithm: {value}. Supported: {supported}", field="algorithm"
        ) from None


def _check_params(algorithm: CipherAlgorithm, key: bytes, iv: bytes) -> None:
    if len(key) != CRYPTO_LIMITS.KEY_SIZE:
        raise ValidationError(
            f"Key must be {CRYPTO_LIMITS.KEY_SIZE} bytes, got {len(key)}", field="key"
        )
    expected_iv = iv_size_for(algorithm)
    if len(iv) != expected_iv:
        raise ValidationError(
            f"IV for {algorithm.value} must be {expected_iv} bytes, got {len(iv)}", field="iv"
        )


# ============================================================
# RAW CIPHERS
# ============================================================

def encrypt(
    algorithm: Union[str, CipherAlgorithm], plaintext: bytes, key: bytes, iv: bytes
) -> CipherResult:
    algorithm = parse_algorithm(algorithm)
    _check_params(algorithm, key, iv)
    if len(plaintext) > CRYPTO_LIMITS.MAX_PLAINTEXT_SIZE:
        raise ValidationError(
            f"Plaintext too large: {len(plaintext)} bytes", field="plaintext"
        )

    if algorithm == CipherAlgorithm.AES_256_CTR:
        encryptor = Cipher(algorithms.AES(key), modes.CTR(iv)).encryptor()
        return CipherResult(ciphertext=encryptor.update(plaintext) + encryptor.finalize())

    aead = AESGCM(key) if algorithm == CipherAlgorithm.AES_256_GCM else ChaCha20Poly1305(key)
    sealed = aead.encrypt(iv, plaintext, None)
    tag_size = CRYPTO_LIMITS.AUTH_TAG_SIZE
    return CipherResult(ciphertext=sealed[:-tag_size], auth_tag=sealed[-tag_size:])


def decrypt(
    algorithm: Union[str, CipherAlgorithm],
    ciphertext: bytes,
    key: bytes,
    iv: bytes,
    auth_tag: bytes = b"",
) -> bytes:
    algorithm = parse_algorithm(algorithm)
    _check_params(algorithm, key, iv)
    if len(ciphertext) > CRYPTO_LIMITS.MAX_CIPHERTEXT_SIZE:
        raise ValidationError(
            f"Ciphertext too large: {len(ciphertext)} bytes", field="ciphertext"
        )

    if algorithm == CipherAlgorithm.AES_256_CTR:
        decryptor = Cipher(algorithms.AES(key), modes.CTR(iv)).decryptor()
        return decryptor.update(ciphertext) + decryptor.finalize()

    if len(auth_tag) != CRYPTO_LIMITS.AUTH_TAG_SIZE:
        raise AuthenticationError(
            f"{algorithm.value} requires a {CRYPTO_LIMITS.AUTH_TAG_SIZE}-byte auth tag"
        )
    aead = AESGCM(key) if algorithm == CipherAlgorithm.AES_256_GCM else ChaCha20Poly1305(key)
    try:
        return aead.decrypt(iv, ciphertext + auth_tag, None)
    except InvalidTag:
        # no key material in the message
        raise AuthenticationError(
            f"{algorithm.value} authentication failed: ciphertext or tag was tampered with"
        ) from None


# ============================================================
# HEX PADDING
# ============================================================

def pad_hex(hex_str: str) -> str:
    return hex_str + "0" if len(hex_str) % 2 == 1 else hex_str


def strip_padding(hex_str: str) -> str:
    if len(hex_str) % 2 == 0 and hex_str.endswith("0"):
        return hex_str[:-1]
    return hex_str


# ============================================================
# WILL ENVELOPE
# ============================================================

def encrypt_will(
    serialized: SerializedWill,
    algorithm: Union[str, CipherAlgorithm] = CipherAlgorithm.AES_256_CTR,
    key: Optional[bytes] = None,
    iv: Optional[bytes] = None,
    timestamp: Optional[int] = None,
) -> EncryptedWill:
    """Serialized -> Encrypted. The returned envelope carries the key."""
    algorithm = parse_algorithm(algorithm)
    key = generate_key() if key is None else key
    iv = generate_iv(algorithm) if iv is None else iv

    try:
        plaintext = bytes.fromhex(pad_hex(serialized.hex))
    except ValueError as e:
        raise ValidationError(f"Serialized will is not valid hex: {e}", field="hex") from e

    result = encrypt(algorithm, plaintext, key, iv)
    logger.info(
        f"Will encrypted: {algorithm.value} | {len(plaintext)} bytes | "
        f"tag={len(result.auth_tag)} bytes"
    )
    return EncryptedWill(
        algorithm=algorithm,
        iv=iv,
        auth_tag=result.auth_tag,
        ciphertext=result.ciphertext,
        timestamp=int(time.time()) if timestamp is None else timestamp,
        key=key,
    )


def decrypt_will(encrypted: EncryptedWill, key: Optional[bytes] = None) -> SerializedWill:
    """Encrypted/Downloaded -> Decrypted hex."""
    key = key if key is not None else encrypted.key
    if key is None:
        raise ValidationError("Decryption key is required", field="key")
    plaintext = decrypt(
        encrypted.algorithm, encrypted.ciphertext, key, encrypted.iv, encrypted.auth_tag
    )
    return SerializedWill(hex=strip_padding(plaintext.hex()))
