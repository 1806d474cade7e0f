"""
Stateless cryptographic primitives: keccak256, random salt/nonce/key/iv,
permit deadline.
"""

import json
import logging
import secrets
import time
from datetime import datetime, timezone
from typing import Any, Optional

from eth_utils import keccak

from .constants import CRYPTO_LIMITS, PERMIT2, CipherAlgorithm, MAX_DEADLINE, iv_size_for
from .errors import ValidationError

logger = logging.getLogger("willchain.primitives")


def _normalize_hash_input(value: Any) -> bytes:
    if value is None:
        raise ValidationError("Input cannot be null or undefined", field="input")
    if isinstance(value, (bytes, bytearray)):
        data = bytes(value)
    elif isinstance(value, str):
        data = value.encode("utf-8")
    elif isinstance(value, bool):
        # JS String(true) spelling
        data = ("true" if value else "false").encode()
    elif isinstance(value, (int, float)):
        data = str(value).encode()
    elif isinstance(value, (dict, list, tuple)):
        try:
            data = json.dumps(value, separators=(",", ":")).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Cannot serialize object to string: {e}", field="input") from e
    else:
        raise ValidationError(f"Unsupported input type: {type(value).__name__}", field="input")

    if len(data) > CRYPTO_LIMITS.MAX_HASH_INPUT_SIZE:
        raise ValidationError(
            f"Input too large: {len(data)} bytes (max: {CRYPTO_LIMITS.MAX_HASH_INPUT_SIZE} bytes)",
            field="input",
        )
    return data


def keccak256(value: Any) -> bytes:
    """keccak256 of the UTF-8 text (or JSON) form of `value`, 32 raw bytes."""
    return keccak(_normalize_hash_input(value))


def keccak256_hex(value: Any) -> str:
    return "0x" + keccak256(value).hex()


# ============================================================
# RANDOMNESS: always CSPRNG
# ============================================================

def generate_salt() -> int:
    return int.from_bytes(secrets.token_bytes(PERMIT2.SALT_BYTES), "big")


def generate_nonce() -> int:
    return int.from_bytes(secrets.token_bytes(PERMIT2.NONCE_BYTES), "big")


def generate_key() -> bytes:
    return secrets.token_bytes(CRYPTO_LIMITS.KEY_SIZE)


def generate_iv(algorithm: CipherAlgorithm = CipherAlgorithm.AES_256_CTR) -> bytes:
    return secrets.token_bytes(iv_size_for(algorithm))


def calculate_deadline(duration_seconds: Optional[int] = None, now: Optional[float] = None) -> int:
    """Unix seconds at which the permit signature expires."""
    if duration_seconds is None:
        duration_seconds = PERMIT2.DEFAULT_DURATION_SECONDS
    if duration_seconds <= 0:
        raise ValidationError("Deadline duration must be positive", field="duration")

    start = time.time() if now is None else now
    deadline = int(start + duration_seconds)
    if deadline > MAX_DEADLINE:
        raise ValidationError(f"Deadline {deadline} does not fit in 8 bytes", field="deadline")

    try:
        until = datetime.fromtimestamp(deadline, tz=timezone.utc).isoformat()
    except (OverflowError, OSError, ValueError):
        until = str(deadline)
    logger.debug(f"Permit signature valid until {until}")
    return deadline
