"""
Protocol Constants - Layer 0 (Fixed)

Byte widths, cipher parameters, Permit2 defaults and the ordered artifact
names of the will lifecycle. Everything here is part of the wire format or
the on-chain contract interface: changing a value breaks compatibility with
wills that were already serialized, encrypted or signed.

Designed for: digital-inheritance protocol core
"""

from dataclasses import dataclass
from enum import Enum
from typing import Final, Tuple


# ============================================================
# SERIALIZATION LAYOUT: fixed-width, big-endian, no 0x prefix
# ============================================================

@dataclass(frozen=True)
class FieldWidths:
    """Byte width of every field in the serialized will."""

    ADDRESS: Final[int] = 20
    AMOUNT: Final[int] = 16        # uint128
    SALT: Final[int] = 32          # uint256
    NONCE: Final[int] = 16         # uint128
    DEADLINE: Final[int] = 8       # uint64 seconds
    SIGNATURE: Final[int] = 65     # r || s || v

    @property
    def ESTATE(self) -> int:
        # beneficiary + token + amount
        return self.ADDRESS * 2 + self.AMOUNT

    @property
    def FIXED(self) -> int:
        # testator + executor + salt + will + nonce + deadline + signature
        return (
            self.ADDRESS * 2 + self.SALT + self.ADDRESS
            + self.NONCE + self.DEADLINE + self.SIGNATURE
        )


FIELD_WIDTHS = FieldWidths()

MAX_AMOUNT: Final[int] = 2 ** (FIELD_WIDTHS.AMOUNT * 8) - 1
MAX_NONCE: Final[int] = 2 ** (FIELD_WIDTHS.NONCE * 8) - 1
MAX_SALT: Final[int] = 2 ** (FIELD_WIDTHS.SALT * 8) - 1
MAX_DEADLINE: Final[int] = 2 ** (FIELD_WIDTHS.DEADLINE * 8) - 1


# ============================================================
# SYMMETRIC ENCRYPTION
# ============================================================

class CipherAlgorithm(str, Enum):
    AES_256_CTR = "aes-256-ctr"
    AES_256_GCM = "aes-256-gcm"
    CHACHA20_POLY1305 = "chacha20-poly1305"


@dataclass(frozen=True)
class CryptoLimits:
    KEY_SIZE: Final[int] = 32              # 256-bit key, never password-derived
    IV_SIZE: Final[int] = 16               # AES counter block / GCM nonce
    CHACHA_NONCE_SIZE: Final[int] = 12     # RFC 8439 nonce
    AUTH_TAG_SIZE: Final[int] = 16
    MAX_PLAINTEXT_SIZE: Final[int] = 10 * 1024 * 1024
    MAX_CIPHERTEXT_SIZE: Final[int] = 10 * 1024 * 1024
    MAX_HASH_INPUT_SIZE: Final[int] = 10 * 1024 * 1024
    SIGNATURE_HEX_LENGTH: Final[int] = 130


CRYPTO_LIMITS = CryptoLimits()

SUPPORTED_ALGORITHMS: Tuple[CipherAlgorithm, ...] = (
    CipherAlgorithm.AES_256_CTR,
    CipherAlgorithm.AES_256_GCM,
    CipherAlgorithm.CHACHA20_POLY1305,
)

AEAD_ALGORITHMS: Tuple[CipherAlgorithm, ...] = (
    CipherAlgorithm.AES_256_GCM,
    CipherAlgorithm.CHACHA20_POLY1305,
)


def iv_size_for(algorithm: CipherAlgorithm) -> int:
    """Nonce length each cipher accepts."""
    if algorithm == CipherAlgorithm.CHACHA20_POLY1305:
        return CRYPTO_LIMITS.CHACHA_NONCE_SIZE
    return CRYPTO_LIMITS.IV_SIZE


# ============================================================
# PERMIT2 (Uniswap signature transfer)
# ============================================================

@dataclass(frozen=True)
class Permit2Defaults:
    # Canonical deployment, identical address on every EVM chain
    ADDRESS: Final[str] = "0x000000000022D473030F116dDEE9F6B43aC78BA3"
    DOMAIN_NAME: Final[str] = "Permit2"
    DEFAULT_DURATION_SECONDS: Final[int] = 100 * 365 * 24 * 60 * 60
    NONCE_BYTES: Final[int] = 16
    SALT_BYTES: Final[int] = 32


PERMIT2 = Permit2Defaults()


# ============================================================
# NETWORKS
# ============================================================

ANVIL_CHAIN_ID: Final[int] = 31337
ARBITRUM_SEPOLIA_CHAIN_ID: Final[int] = 421614


# ============================================================
# LIFECYCLE ARTIFACTS: persisted in this order
# ============================================================

class WillType(str, Enum):
    RAW = "raw"
    FORMATTED = "formatted"
    ADDRESSED = "addressed"
    SIGNED = "signed"
    SERIALIZED = "serialized"
    ENCRYPTED = "encrypted"
    CID_UPLOAD_PROOF = "cid_upload_proof"
    UPLOADED = "uploaded"
    WITNESSED = "witnessed"
    NOTARIZED = "notarized"
    PROBATED = "probated"
    DOWNLOADED = "downloaded"
    DECRYPTED = "decrypted"
    DESERIALIZED = "deserialized"
    WILL_CREATION_PROOF = "will_creation_proof"
    EXECUTED = "executed"


WILL_STEP: dict[WillType, int] = {t: i + 1 for i, t in enumerate(WillType)}


class CircuitName(str, Enum):
    CID_UPLOAD = "cidUpload"
    WILL_CREATION = "willCreation"


# Contract TypedJsonObject value kinds
class JsonValueType(int, Enum):
    STRING = 0
    NUMBER = 1
    NUMBER_ARRAY = 2
