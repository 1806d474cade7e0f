"""
Permit2 Signature-Transfer Authorization.

The testator signs one PermitBatchTransferFrom that names every estate's
(token, amount) pair and binds spender = predicted will address. The will
contract later calls Permit2 with this signature to pull the tokens, so the
digest computed here must match the one Permit2 computes on-chain and the
one a browser wallet computes, byte for byte.

Two independent routes to the digest:
  - server: get_permit_typed_data() -> eth_account signing/encoding
  - wallet: get_wallet_typed_data() -> eth_signTypedData_v4 payload,
    hashed by eip712.typed_data_digest()
Verification always takes the second route.
"""

import logging
from typing import Optional, Sequence

from .constants import MAX_NONCE, PERMIT2
from .eip712 import (
    domain_types,
    hash_domain,
    hash_struct,
    select_primary_type,
    strip_domain_type,
)
from .errors import SignerMismatchError, ValidationError
from .models import Estate, Permit2Data, Permit2Signature, PermittedToken, SignedWill, AddressedWill
from .primitives import calculate_deadline, generate_nonce
from .signature import Signer, as_account, recover_typed_data_signer, sign_typed_data
from .validation import require_address

logger = logging.getLogger("willchain.permit2")

TOKEN_PERMISSIONS = [
    {"name": "token", "type": "address"},
    {"name": "amount", "type": "uint256"},
]

PERMIT_BATCH_TRANSFER_FROM_TYPES = {
    "PermitBatchTransferFrom": [
        {"name": "permitted", "type": "TokenPermissions[]"},
        {"name": "spender", "type": "address"},
        {"name": "nonce", "type": "uint256"},
        {"name": "deadline", "type": "uint256"},
    ],
    "TokenPermissions": TOKEN_PERMISSIONS,
}


def create_permit_structure(
    estates: Sequence[Estate], will_address: str, nonce: int, deadline: int
) -> Permit2Data:
    """Pure mapping of estates onto permitted (token, amount) pairs."""
    return Permit2Data(
        permitted=tuple(PermittedToken(token=e.token, amount=e.amount) for e in estates),
        spender=will_address,
        nonce=nonce,
        deadline=deadline,
    )


def permit_from_signed_will(signed_will: SignedWill) -> Permit2Data:
    return create_permit_structure(
        signed_will.estates,
        signed_will.will,
        signed_will.permit2.nonce,
        signed_will.permit2.deadline,
    )


def _check_permit(permit: Permit2Data) -> None:
    if not permit.permitted:
        raise ValidationError("Permit must include at least one token", field="permitted")
    if permit.nonce < 0 or permit.nonce > MAX_NONCE:
        raise ValidationError("Permit nonce out of range", field="nonce")
    if permit.deadline <= 0:
        raise ValidationError("Permit deadline must be positive", field="deadline")


# ============================================================
# TYPED DATA: server and wallet renditions
# ============================================================

def get_permit_domain(permit2_address: str, chain_id: int) -> dict:
    return {
        "name": PERMIT2.DOMAIN_NAME,
        "chainId": int(chain_id),
        "verifyingContract": require_address(permit2_address, "permit2"),
    }


def get_permit_typed_data(
    permit: Permit2Data, permit2_address: str = PERMIT2.ADDRESS, chain_id: int = 0
) -> tuple[dict, dict, dict]:
    """Canonical (domain, types, values) with native ints."""
    _check_permit(permit)
    values = {
        "permitted": [
            {"token": require_address(p.token, "token"), "amount": int(p.amount)}
            for p in permit.permitted
        ],
        "spender": require_address(permit.spender, "spender"),
        "nonce": int(permit.nonce),
        "deadline": int(permit.deadline),
    }
    types = {name: list(fields) for name, fields in PERMIT_BATCH_TRANSFER_FROM_TYPES.items()}
    return get_permit_domain(permit2_address, chain_id), types, values


def get_wallet_typed_data(
    permit: Permit2Data, permit2_address: str = PERMIT2.ADDRESS, chain_id: int = 0
) -> dict:
    """
    eth_signTypedData_v4 payload as a browser wallet receives it: big
    integers as decimal strings, chainId as a number.
    """
    domain, types, values = get_permit_typed_data(permit, permit2_address, chain_id)
    message_types = strip_domain_type(types)
    wallet_values = {
        "permitted": [
            {"token": p["token"], "amount": str(p["amount"])} for p in values["permitted"]
        ],
        "spender": values["spender"],
        "nonce": str(values["nonce"]),
        "deadline": str(values["deadline"]),
    }
    return {
        "domain": domain,
        "types": {"EIP712Domain": domain_types(domain), **message_types},
        "primaryType": select_primary_type(message_types),
        "message": wallet_values,
    }


# ============================================================
# SIGN / RECOVER / VERIFY
# ============================================================

def sign_permit2(
    permit: Permit2Data,
    signer: Signer,
    chain_id: int,
    permit2_address: str = PERMIT2.ADDRESS,
) -> str:
    domain, types, values = get_permit_typed_data(permit, permit2_address, chain_id)
    signature = sign_typed_data(domain, types, values, signer)
    logger.info(
        f"Permit2 signed: {len(permit.permitted)} token(s) | spender={permit.spender} | "
        f"deadline={permit.deadline}"
    )
    return signature


def sign_will_permit(
    addressed: AddressedWill,
    signer: Signer,
    chain_id: int,
    permit2_address: str = PERMIT2.ADDRESS,
    nonce: Optional[int] = None,
    deadline: Optional[int] = None,
) -> SignedWill:
    """Addressed -> Signed: fresh nonce and deadline unless supplied."""
    account = as_account(signer)
    if account.address.lower() != addressed.testator.lower():
        raise SignerMismatchError(addressed.testator, account.address, what="Permit signer")

    nonce = generate_nonce() if nonce is None else nonce
    deadline = calculate_deadline() if deadline is None else deadline
    permit = create_permit_structure(addressed.estates, addressed.will, nonce, deadline)
    signature = sign_permit2(permit, account, chain_id, permit2_address)

    return SignedWill(
        testator=addressed.testator,
        executor=addressed.executor,
        estates=addressed.estates,
        salt=addressed.salt,
        will=addressed.will,
        permit2=Permit2Signature(nonce=nonce, deadline=deadline, signature=signature),
    )


def permit2_digest(
    permit: Permit2Data, permit2_address: str = PERMIT2.ADDRESS, chain_id: int = 0
) -> tuple[bytes, bytes]:
    """(domain separator, struct hash) rebuilt from the wallet payload."""
    payload = get_wallet_typed_data(permit, permit2_address, chain_id)
    types = strip_domain_type(payload["types"])
    primary = select_primary_type(types)
    return hash_domain(payload["domain"]), hash_struct(primary, payload["message"], types)


def recover_permit2_signer(
    permit: Permit2Data,
    signature: str,
    chain_id: int,
    permit2_address: str = PERMIT2.ADDRESS,
) -> str:
    domain_separator, struct_hash = permit2_digest(permit, permit2_address, chain_id)
    return recover_typed_data_signer(domain_separator, struct_hash, signature)


def verify_testator_signature(
    signed_will: SignedWill,
    chain_id: int,
    permit2_address: str = PERMIT2.ADDRESS,
) -> str:
    """
    Recover the permit signer and require it to be the testator.
    Returns the recovered address; raises SignerMismatchError otherwise.
    """
    recovered = recover_permit2_signer(
        permit_from_signed_will(signed_will),
        signed_will.permit2.signature,
        chain_id,
        permit2_address,
    )
    if recovered.lower() != signed_will.testator.lower():
        logger.error(f"Permit2 signer mismatch: testator={signed_will.testator} recovered={recovered}")
        raise SignerMismatchError(signed_will.testator, recovered, what="Permit2 signature")
    logger.info(f"Permit2 signature verified for testator {recovered}")
    return recovered
