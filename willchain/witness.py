"""
Witness / Notary Gate: two attestations over one CID, one notarization.

Per CID: NoWitnesses -> OneWitnessSigned -> BothWitnessesSigned -> Notarized

- Each slot has an expected witness address, fetched from the CID's
  on-chain record. A signer (or signature) that does not resolve to the
  slot's address is refused.
- Either witness may sign first.
- Before notarizeCid is submitted both signatures are recovered again
  and compared to their slots; a failure stops the call before any gas
  is spent. The contract repeats the check on-chain.
- notarizeCid is never retried. A second call after success is refused
  locally; a revert is surfaced as TransactionError.
"""

import logging
from enum import Enum
from typing import Awaitable, Callable, Optional

from .errors import SignerMismatchError, StageOrderError, TransactionError, ValidationError
from .models import WitnessSignatures
from .signature import Signer, as_account, recover_signer, sign_message
from .validation import require_address, require_cid, require_signature

logger = logging.getLogger("willchain.witness")


class WitnessState(str, Enum):
    NO_WITNESSES = "NoWitnesses"
    ONE_WITNESS_SIGNED = "OneWitnessSigned"
    BOTH_WITNESSES_SIGNED = "BothWitnessesSigned"
    NOTARIZED = "Notarized"


# async (cid, [sig1, sig2]) -> ChainTxResult
NotarizeFn = Callable[[str, list], Awaitable]


class WitnessAggregator:
    """Collects the two witness signatures for a single CID."""

    SLOTS = (1, 2)

    def __init__(self, cid: str, witness1: str, witness2: str):
        self.cid = require_cid(cid)
        self._expected = {
            1: require_address(witness1, "witness1"),
            2: require_address(witness2, "witness2"),
        }
        if self._expected[1].lower() == self._expected[2].lower():
            raise ValidationError("Witness addresses must be distinct", field="witnesses")
        self._signatures: dict[int, str] = {}
        self._notarized = False
        self.notarize_tx_hash: Optional[str] = None

    @classmethod
    def from_signatures(
        cls, cid: str, witness1: str, witness2: str,
        witness1_signature: Optional[str] = None, witness2_signature: Optional[str] = None,
    ) -> "WitnessAggregator":
        agg = cls(cid, witness1, witness2)
        if witness1_signature:
            agg.add_signature(1, witness1_signature)
        if witness2_signature:
            agg.add_signature(2, witness2_signature)
        return agg

    @property
    def state(self) -> WitnessState:
        if self._notarized:
            return WitnessState.NOTARIZED
        if len(self._signatures) == 2:
            return WitnessState.BOTH_WITNESSES_SIGNED
        if self._signatures:
            return WitnessState.ONE_WITNESS_SIGNED
        return WitnessState.NO_WITNESSES

    def expected(self, slot: int) -> str:
        if slot not in self.SLOTS:
            raise ValidationError(f"Witness slot must be 1 or 2, got {slot}", field="slot")
        return self._expected[slot]

    def signature_for(self, slot: int) -> Optional[str]:
        self.expected(slot)
        return self._signatures.get(slot)

    def slot_for(self, address: str) -> int:
        for slot, expected in self._expected.items():
            if expected.lower() == address.lower():
                return slot
        raise SignerMismatchError(
            f"{self._expected[1]} or {self._expected[2]}", address, what="Witness"
        )

    def _check_open(self) -> None:
        if self._notarized:
            raise StageOrderError(f"CID {self.cid} is already notarized")

    # ============================================================
    # COLLECTION
    # ============================================================

    def sign(self, signer: Signer, slot: Optional[int] = None) -> str:
        """Sign the CID with a witness key; slot is inferred from the address."""
        self._check_open()
        account = as_account(signer)
        if slot is None:
            slot = self.slot_for(account.address)
        expected = self.expected(slot)
        if account.address.lower() != expected.lower():
            raise SignerMismatchError(expected, account.address, what=f"Witness {slot}")

        signature = sign_message(self.cid, account)
        self._signatures[slot] = signature
        logger.info(f"Witness {slot} signed CID {self.cid[:16]}... ({self.state.value})")
        return signature

    def add_signature(self, slot: int, signature: str) -> None:
        """Accept a signature produced elsewhere (e.g. a browser wallet)."""
        self._check_open()
        expected = self.expected(slot)
        signature = require_signature(signature, f"witness{slot}Signature")
        recovered = recover_signer(self.cid, signature)
        if recovered.lower() != expected.lower():
            raise SignerMismatchError(expected, recovered, what=f"Witness {slot} signature")
        self._signatures[slot] = signature
        logger.info(f"Witness {slot} signature accepted ({self.state.value})")

    # ============================================================
    # NOTARIZATION
    # ============================================================

    def verify_all(self) -> None:
        """Recover both signatures again; raise on any mismatch or gap."""
        missing = [s for s in self.SLOTS if s not in self._signatures]
        if missing:
            raise StageOrderError(
                f"Cannot notarize CID {self.cid}: missing signature from witness "
                + " and ".join(str(s) for s in missing)
            )
        for slot in self.SLOTS:
            recovered = recover_signer(self.cid, self._signatures[slot])
            if recovered.lower() != self._expected[slot].lower():
                raise SignerMismatchError(
                    self._expected[slot], recovered, what=f"Witness {slot} signature"
                )

    def bundle(self) -> WitnessSignatures:
        self.verify_all()
        return WitnessSignatures(
            cid=self.cid,
            witness1=self._expected[1],
            witness2=self._expected[2],
            witness1_signature=self._signatures[1],
            witness2_signature=self._signatures[2],
        )

    async def notarize(self, submit: NotarizeFn):
        """Submit notarizeCid(cid, [sig1, sig2]) once both witnesses check out."""
        self._check_open()
        bundle = self.bundle()

        result = await submit(self.cid, bundle.signatures)
        if not result.success:
            raise TransactionError(
                f"notarizeCid failed: {result.error}", tx_hash=result.tx_hash
            )
        self._notarized = True
        self.notarize_tx_hash = result.tx_hash
        logger.info(f"CID {self.cid[:16]}... notarized: {result.tx_hash}")
        return result
