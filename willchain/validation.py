"""
Shape validators run before any network or crypto call.

The `is_*` predicates are used by the per-stage config loaders; the
`require_*` helpers raise ValidationError with a field-specific message.
"""

import re
from typing import Any, Optional

from eth_utils import is_address, to_checksum_address

from .constants import CRYPTO_LIMITS, MAX_AMOUNT
from .errors import SignatureFormatError, ValidationError

_PRIVATE_KEY_RE = re.compile(r"^(0x)?[0-9a-fA-F]{64}$")
_SIGNATURE_RE = re.compile(r"^0x[0-9a-fA-F]{%d}$" % CRYPTO_LIMITS.SIGNATURE_HEX_LENGTH)
# multibase 'b' (base32 lower, no padding) CIDv1
_CIDV1_RE = re.compile(r"^b[a-z2-7]{58,}$")
_HEX_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


def is_ethereum_address(value: Any) -> bool:
    return isinstance(value, str) and bool(_HEX_ADDRESS_RE.match(value)) and is_address(value)


def is_private_key(value: Any) -> bool:
    return isinstance(value, str) and bool(_PRIVATE_KEY_RE.match(value)) and int(value, 16) != 0


def is_signature(value: Any) -> bool:
    return isinstance(value, str) and bool(_SIGNATURE_RE.match(value))


def is_cidv1(value: Any) -> bool:
    return isinstance(value, str) and bool(_CIDV1_RE.match(value))


def require_address(value: Any, field: str = "address") -> str:
    """Validate and return the checksummed form."""
    if not is_ethereum_address(value):
        raise ValidationError(f"Invalid Ethereum address for {field}: {value!r}", field=field)
    return to_checksum_address(value)


def require_private_key(value: Any, field: str = "privateKey") -> str:
    if not is_private_key(value):
        # never echo the value, it may be a near-miss secret
        raise ValidationError(f"Invalid private key format for {field}", field=field)
    return value if value.startswith("0x") else "0x" + value


def require_signature(value: Any, field: str = "signature") -> str:
    if not isinstance(value, str):
        raise SignatureFormatError(f"{field} must be a hex string", field=field)
    if not is_signature(value):
        body = value[2:] if value.startswith("0x") else value
        raise SignatureFormatError(
            f"Invalid signature format for {field}: expected 0x + "
            f"{CRYPTO_LIMITS.SIGNATURE_HEX_LENGTH} hex chars, got {len(body)}",
            field=field,
        )
    return value.lower()


def require_cid(value: Any, field: str = "cid") -> str:
    if not is_cidv1(value):
        raise ValidationError(f"Invalid CIDv1 for {field}: {value!r}", field=field)
    return value


def require_amount(value: Any, field: str = "amount") -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer", field=field)
    if value <= 0 or value > MAX_AMOUNT:
        raise ValidationError(f"{field} must be in (0, 2^128), got {value}", field=field)
    return value


def require_byte_list(value: Any, field: str, length: Optional[int] = None) -> bytes:
    """HTTP bodies carry bytes as JSON number arrays."""
    if not isinstance(value, list):
        raise ValidationError(f"{field} must be an array of numbers", field=field)
    if not all(isinstance(b, int) and not isinstance(b, bool) and 0 <= b <= 255 for b in value):
        raise ValidationError(f"{field} must contain byte values 0-255", field=field)
    if length is not None and len(value) != length:
        raise ValidationError(f"{field} must be {length} bytes, got {len(value)}", field=field)
    return bytes(value)
