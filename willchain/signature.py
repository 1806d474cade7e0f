"""
Signer and Recovery: Personal-Message and Typed-Data Signatures.

Two schemes, never mixed:
  - String messages are hashed with keccak256 and the 32-byte digest is
    signed with EIP-191 personal_sign. On-chain verifiers recover with
    the matching "\\x19Ethereum Signed Message:\\n32" prefix.
  - Structured data is signed with EIP-712.

A signer is either a hex private key or an eth_account LocalAccount.
Signing and recovery are deterministic, so failures propagate at once.
"""

import logging
from typing import Union

from eth_account import Account
from eth_account.messages import SignableMessage, encode_defunct
from eth_account.signers.local import LocalAccount

from .errors import RecoveryError, SignatureFormatError, ValidationError
from .primitives import keccak256
from .validation import is_ethereum_address, require_address, require_signature

logger = logging.getLogger("willchain.signature")

Signer = Union[str, LocalAccount]


def as_account(signer: Signer) -> LocalAccount:
    if isinstance(signer, LocalAccount):
        return signer
    try:
        return Account.from_key(signer)
    except Exception as e:
        # the message from eth_keys can include the key, drop it
        raise ValidationError("Invalid private key", field="privateKey") from e


def _to_hex(signature) -> str:
    return "0x" + bytes(signature).hex()


def _digest_message(message: str) -> SignableMessage:
    digest = keccak256(message)
    if len(digest) != 32:
        raise ValidationError("Invalid hash bytes generated", field="message")
    return encode_defunct(primitive=digest)


# ============================================================
# PERSONAL-MESSAGE (keccak digest) SIGNATURES
# ============================================================

def sign_message(message: str, signer: Signer) -> str:
    """
    Sign keccak256(message) as a raw 32-byte personal message.

    The fresh signature is recovered once before returning so a broken
    signer never hands out an unverifiable signature.
    """
    account = as_account(signer)
    signed = Account.sign_message(_digest_message(message), private_key=account.key)
    signature = require_signature(_to_hex(signed.signature))

    if not verify(message, signature, account.address):
        raise RecoveryError("Generated signature failed immediate verification")
    return signature


# Same operation, named the way the witness CLI calls it
sign_string = sign_message


def recover_signer(message: str, signature: str) -> str:
    signature = require_signature(signature)
    try:
        recovered = Account.recover_message(_digest_message(message), signature=signature)
    except SignatureFormatError:
        raise
    except Exception as e:
        raise RecoveryError(f"Signer recovery failed: {e}", cause=e) from e

    if not is_ethereum_address(recovered):
        raise RecoveryError("Failed to recover valid address from signature")
    return recovered


def verify(message: str, signature: str, expected_signer: str) -> bool:
    """Case-insensitive comparison of the recovered signer."""
    require_address(expected_signer, "expectedSigner")
    return recover_signer(message, signature).lower() == expected_signer.lower()


# ============================================================
# EIP-712 TYPED DATA
# ============================================================

def sign_typed_data(domain: dict, types: dict, values: dict, signer: Signer) -> str:
    """
    Sign an EIP-712 (domain, types, values) triple. `types` must not carry
    the EIP712Domain entry; eth_account derives it from `domain`.
    """
    account = as_account(signer)
    message_types = {k: v for k, v in types.items() if k != "EIP712Domain"}
    try:
        signed = Account.sign_typed_data(
            account.key,
            domain_data=domain,
            message_types=message_types,
            message_data=values,
        )
    except Exception as e:
        raise ValidationError(f"Typed data signing failed: {e}", cause=e) from e
    return require_signature(_to_hex(signed.signature))


def recover_typed_data_signer(domain_separator: bytes, struct_hash: bytes, signature: str) -> str:
    """Recover from a precomputed EIP-712 domain separator and struct hash."""
    signature = require_signature(signature)
    signable = SignableMessage(version=b"\x01", header=domain_separator, body=struct_hash)
    try:
        recovered = Account.recover_message(signable, signature=signature)
    except Exception as e:
        raise RecoveryError(f"Typed data signer recovery failed: {e}", cause=e) from e
    if not is_ethereum_address(recovered):
        raise RecoveryError("Failed to recover valid address from typed data signature")
    return recovered
