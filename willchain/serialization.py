"""
Fixed-layout will packing.

Layout (hex, no 0x, big-endian, left zero-padded):

    testator(20) executor(20)
    [beneficiary(20) token(20) amount(16)] * N
    salt(32) will(20) nonce(16) deadline(8) signature(65)

The estate count is not written. deserialize_will() takes it as an
argument or infers it from the length, and refuses any length that does
not fit the layout exactly.
"""

import logging
from typing import Any, Optional

from eth_utils import to_checksum_address

from .constants import FIELD_WIDTHS, MAX_AMOUNT, MAX_DEADLINE, MAX_NONCE, MAX_SALT
from .errors import SignatureFormatError, ValidationError
from .models import Estate, FormattedWill, Permit2Signature, SerializedWill, SignedWill, as_int
from .validation import require_address, require_amount, require_signature

logger = logging.getLogger("willchain.serialization")

_W = FIELD_WIDTHS


def _addr_hex(address: str, field: str) -> str:
    return require_address(address, field)[2:].lower()


def _uint_hex(value: int, width: int, limit: int, field: str) -> str:
    if value < 0 or value > limit:
        raise ValidationError(f"{field} does not fit in {width} bytes", field=field)
    return format(value, "x").zfill(width * 2)


# ============================================================
# FORMAT: raw user input -> Formatted
# ============================================================

def format_will(raw: dict[str, Any]) -> FormattedWill:
    """Normalize addresses to checksum form and amounts to int."""
    if not isinstance(raw, dict):
        raise ValidationError("Will must be an object", field="will")
    estates_raw = raw.get("estates")
    if not isinstance(estates_raw, list) or not estates_raw:
        raise ValidationError("Will must include at least one estate", field="estates")

    estates = []
    for i, e in enumerate(estates_raw):
        try:
            amount = as_int(e.get("amount"), f"estates[{i}].amount")
        except (TypeError, ValueError, AttributeError) as err:
            raise ValidationError(f"Invalid amount for estates[{i}]: {err}", field=f"estates[{i}].amount") from err
        estates.append(Estate(
            beneficiary=require_address(e.get("beneficiary"), f"estates[{i}].beneficiary"),
            token=require_address(e.get("token"), f"estates[{i}].token"),
            amount=require_amount(amount, f"estates[{i}].amount"),
        ))

    return FormattedWill(
        testator=require_address(raw.get("testator"), "testator"),
        executor=require_address(raw.get("executor"), "executor"),
        estates=tuple(estates),
    )


# ============================================================
# SERIALIZE / DESERIALIZE
# ============================================================

def serialized_length(estate_count: int) -> int:
    """Hex length of a will with `estate_count` estates."""
    return (_W.FIXED + _W.ESTATE * estate_count) * 2


def infer_estate_count(hex_str: str) -> int:
    extra = len(hex_str) - _W.FIXED * 2
    per_estate = _W.ESTATE * 2
    if extra <= 0 or extra % per_estate:
        raise ValidationError(
            f"Serialized will length {len(hex_str)} does not match the layout "
            f"({_W.FIXED * 2} + k*{per_estate} hex chars)",
            field="hex",
        )
    return extra // per_estate


def serialize_will(signed_will: SignedWill) -> SerializedWill:
    parts = [
        _addr_hex(signed_will.testator, "testator"),
        _addr_hex(signed_will.executor, "executor"),
    ]
    for i, estate in enumerate(signed_will.estates):
        parts.append(_addr_hex(estate.beneficiary, f"estates[{i}].beneficiary"))
        parts.append(_addr_hex(estate.token, f"estates[{i}].token"))
        parts.append(_uint_hex(estate.amount, _W.AMOUNT, MAX_AMOUNT, f"estates[{i}].amount"))

    parts.append(_uint_hex(signed_will.salt, _W.SALT, MAX_SALT, "salt"))
    parts.append(_addr_hex(signed_will.will, "will"))
    parts.append(_uint_hex(signed_will.permit2.nonce, _W.NONCE, MAX_NONCE, "nonce"))
    parts.append(_uint_hex(signed_will.permit2.deadline, _W.DEADLINE, MAX_DEADLINE, "deadline"))
    parts.append(require_signature(signed_will.permit2.signature)[2:])

    hex_str = "".join(parts)
    logger.debug(f"Serialized will: {len(signed_will.estates)} estate(s), {len(hex_str)} hex chars")
    return SerializedWill(hex=hex_str)


class _Reader:
    def __init__(self, hex_str: str):
        self.hex = hex_str
        self.pos = 0

    def take(self, width: int) -> str:
        chunk = self.hex[self.pos:self.pos + width * 2]
        self.pos += width * 2
        return chunk

    def address(self) -> str:
        return to_checksum_address("0x" + self.take(_W.ADDRESS))

    def uint(self, width: int) -> int:
        return int(self.take(width), 16)


def deserialize_will(hex_str: str, estate_count: Optional[int] = None) -> SignedWill:
    if hex_str.startswith(("0x", "0X")):
        hex_str = hex_str[2:]
    try:
        bytes.fromhex(hex_str)
    except ValueError as e:
        raise ValidationError(f"Serialized will is not valid hex: {e}", field="hex") from e

    inferred = infer_estate_count(hex_str)
    if estate_count is not None and estate_count != inferred:
        raise ValidationError(
            f"Estate count {estate_count} contradicts serialized length "
            f"{len(hex_str)} (expected {serialized_length(estate_count)})",
            field="estateCount",
        )

    r = _Reader(hex_str)
    testator = r.address()
    executor = r.address()
    estates = tuple(
        Estate(beneficiary=r.address(), token=r.address(), amount=r.uint(_W.AMOUNT))
        for _ in range(inferred)
    )
    salt = r.uint(_W.SALT)
    will = r.address()
    nonce = r.uint(_W.NONCE)
    deadline = r.uint(_W.DEADLINE)
    signature = "0x" + r.take(_W.SIGNATURE).lower()
    if len(signature) != 2 + _W.SIGNATURE * 2:
        raise SignatureFormatError("Truncated signature in serialized will", field="signature")

    return SignedWill(
        testator=testator,
        executor=executor,
        estates=estates,
        salt=salt,
        will=will,
        permit2=Permit2Signature(nonce=nonce, deadline=deadline, signature=signature),
    )
