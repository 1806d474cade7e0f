"""
Independent EIP-712 hashing, used on the verification path.

The signing path goes through eth_account; this module rebuilds the digest
from (domain, types, values) on its own so a permit produced by a browser
wallet and one produced here can be checked against the same 32 bytes.
Numbers may arrive as ints or decimal strings (wallet payloads stringify
big integers) and hash identically either way.
"""

import re
from typing import Any, Optional

from eth_abi import encode as abi_encode
from eth_utils import keccak, to_checksum_address

from .errors import ValidationError
from .models import as_bytes, as_int

# Order fixed by EIP-712
DOMAIN_FIELDS = (
    ("name", "string"),
    ("version", "string"),
    ("chainId", "uint256"),
    ("verifyingContract", "address"),
    ("salt", "bytes32"),
)

PRIMARY_TYPE_PRECEDENCE = ("PermitBatchTransferFrom", "PermitSingle", "PermitTransferFrom")

_ARRAY_RE = re.compile(r"^(.*)\[(\d*)\]$")


def strip_domain_type(types: dict) -> dict:
    return {k: v for k, v in types.items() if k != "EIP712Domain"}


def select_primary_type(types: dict) -> str:
    candidates = strip_domain_type(types)
    for name in PRIMARY_TYPE_PRECEDENCE:
        if name in candidates:
            return name
    for name in candidates:
        if name != "TokenPermissions":
            return name
    raise ValidationError("No primary type found in typed data", field="types")


def _find_dependencies(type_name: str, types: dict, found: set) -> set:
    base = _ARRAY_RE.sub(r"\1", type_name)
    while _ARRAY_RE.match(base):
        base = _ARRAY_RE.sub(r"\1", base)
    if base in found or base not in types:
        return found
    found.add(base)
    for member in types[base]:
        _find_dependencies(member["type"], types, found)
    return found


def encode_type(primary_type: str, types: dict) -> str:
    deps = _find_dependencies(primary_type, types, set())
    deps.discard(primary_type)
    ordered = [primary_type] + sorted(deps)
    return "".join(
        f"{name}(" + ",".join(f"{m['type']} {m['name']}" for m in types[name]) + ")"
        for name in ordered
    )


def type_hash(primary_type: str, types: dict) -> bytes:
    return keccak(text=encode_type(primary_type, types))


def _encode_value(type_name: str, value: Any, types: dict) -> tuple[str, Any]:
    if type_name in types:
        return "bytes32", hash_struct(type_name, value, types)

    array = _ARRAY_RE.match(type_name)
    if array:
        item_type = array.group(1)
        if not isinstance(value, (list, tuple)):
            raise ValidationError(f"Expected array for {type_name}", field=type_name)
        encoded = [_encode_value(item_type, item, types) for item in value]
        packed = b"".join(abi_encode([t], [v]) for t, v in encoded)
        return "bytes32", keccak(packed)

    if type_name == "string":
        return "bytes32", keccak(text=value)
    if type_name == "bytes":
        return "bytes32", keccak(as_bytes(value))
    if type_name == "address":
        return "address", to_checksum_address(value)
    if type_name == "bool":
        return "bool", bool(value)
    if type_name.startswith(("uint", "int")):
        return type_name, as_int(value, type_name)
    if type_name.startswith("bytes"):
        return type_name, as_bytes(value)
    raise ValidationError(f"Unsupported EIP-712 type: {type_name}", field=type_name)


def encode_data(primary_type: str, values: dict, types: dict) -> bytes:
    abi_types = ["bytes32"]
    abi_values: list = [type_hash(primary_type, types)]
    for member in types[primary_type]:
        if member["name"] not in values:
            raise ValidationError(
                f"Missing field {member['name']} for {primary_type}", field=member["name"]
            )
        t, v = _encode_value(member["type"], values[member["name"]], types)
        abi_types.append(t)
        abi_values.append(v)
    return abi_encode(abi_types, abi_values)


def hash_struct(primary_type: str, values: dict, types: dict) -> bytes:
    return keccak(encode_data(primary_type, values, types))


def domain_types(domain: dict) -> list[dict]:
    return [{"name": n, "type": t} for n, t in DOMAIN_FIELDS if n in domain]


def hash_domain(domain: dict) -> bytes:
    types = {"EIP712Domain": domain_types(domain)}
    return hash_struct("EIP712Domain", domain, types)


def typed_data_digest(
    domain: dict, types: dict, values: dict, primary_type: Optional[str] = None
) -> bytes:
    """keccak256(0x1901 || hashDomain || hashStruct)."""
    message_types = strip_domain_type(types)
    primary = primary_type or select_primary_type(message_types)
    return keccak(
        b"\x19\x01" + hash_domain(domain) + hash_struct(primary, values, message_types)
    )
