"""
Will record variants and their JSON forms.

Each variant is a superset of the previous one:
Formatted -> Addressed -> Signed -> Serialized -> Encrypted.
Big integers (amounts, salt, nonce) are written to JSON as decimal strings
and parsed back to int on read; byte fields travel as lists of ints.
"""

from dataclasses import dataclass, field
from typing import Any, Optional

from .constants import CipherAlgorithm


def as_int(value: Any, name: str = "value") -> int:
    """Accept int or decimal/0x-hex string, reject bools and floats."""
    if isinstance(value, bool):
        raise TypeError(f"{name} must be an integer, got bool")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        text = value.strip()
        if text.lower().startswith("0x"):
            return int(text, 16)
        return int(text, 10)
    raise TypeError(f"{name} must be an integer or decimal string, got {type(value).__name__}")


def as_bytes(value: Any, name: str = "value") -> bytes:
    """Accept bytes, list of ints (0-255) or hex string."""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, list):
        try:
            return bytes(value)
        except (TypeError, ValueError) as e:
            raise ValueError(f"{name} must be a list of byte values: {e}") from e
    if isinstance(value, str):
        text = value[2:] if value.lower().startswith("0x") else value
        return bytes.fromhex(text)
    raise TypeError(f"{name} must be bytes, list of ints or hex string")


# ============================================================
# ESTATES & PERMIT
# ============================================================

@dataclass(frozen=True)
class Estate:
    beneficiary: str
    token: str
    amount: int

    def to_dict(self) -> dict:
        return {"beneficiary": self.beneficiary, "token": self.token, "amount": str(self.amount)}

    @classmethod
    def from_dict(cls, data: dict) -> "Estate":
        return cls(
            beneficiary=data["beneficiary"],
            token=data["token"],
            amount=as_int(data["amount"], "amount"),
        )


@dataclass(frozen=True)
class PermittedToken:
    token: str
    amount: int


@dataclass(frozen=True)
class Permit2Data:
    """Transient signing structure, never persisted on its own."""
    permitted: tuple[PermittedToken, ...]
    spender: str
    nonce: int
    deadline: int


@dataclass(frozen=True)
class Permit2Signature:
    nonce: int
    deadline: int
    signature: str

    def to_dict(self) -> dict:
        return {"nonce": str(self.nonce), "deadline": self.deadline, "signature": self.signature}

    @classmethod
    def from_dict(cls, data: dict) -> "Permit2Signature":
        return cls(
            nonce=as_int(data["nonce"], "nonce"),
            deadline=as_int(data["deadline"], "deadline"),
            signature=data["signature"],
        )


# ============================================================
# WILL VARIANTS
# ============================================================

@dataclass(frozen=True)
class FormattedWill:
    testator: str
    executor: str
    estates: tuple[Estate, ...]

    def to_dict(self) -> dict:
        return {
            "testator": self.testator,
            "executor": self.executor,
            "estates": [e.to_dict() for e in self.estates],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "FormattedWill":
        return cls(
            testator=data["testator"],
            executor=data["executor"],
            estates=tuple(Estate.from_dict(e) for e in data["estates"]),
        )


@dataclass(frozen=True)
class AddressedWill(FormattedWill):
    salt: int
    will: str

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["salt"] = str(self.salt)
        d["will"] = self.will
        return d

    @classmethod
    def from_dict(cls, data: dict) -> "AddressedWill":
        base = FormattedWill.from_dict(data)
        return cls(
            testator=base.testator,
            executor=base.executor,
            estates=base.estates,
            salt=as_int(data["salt"], "salt"),
            will=data["will"],
        )


@dataclass(frozen=True)
class SignedWill(AddressedWill):
    permit2: Permit2Signature

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["permit2"] = self.permit2.to_dict()
        return d

    @classmethod
    def from_dict(cls, data: dict) -> "SignedWill":
        base = AddressedWill.from_dict(data)
        return cls(
            testator=base.testator,
            executor=base.executor,
            estates=base.estates,
            salt=base.salt,
            will=base.will,
            permit2=Permit2Signature.from_dict(data["permit2"]),
        )


@dataclass(frozen=True)
class SerializedWill:
    hex: str

    def to_dict(self) -> dict:
        return {"hex": self.hex}

    @classmethod
    def from_dict(cls, data: dict) -> "SerializedWill":
        return cls(hex=data["hex"])


@dataclass(frozen=True)
class EncryptedWill:
    """
    Cipher envelope. `key` is only present in the testator's local copy;
    it is dropped from anything uploaded.
    """
    algorithm: CipherAlgorithm
    iv: bytes
    auth_tag: bytes
    ciphertext: bytes
    timestamp: int
    key: Optional[bytes] = field(default=None, repr=False)

    def to_dict(self, include_key: bool = False) -> dict:
        d = {
            "algorithm": self.algorithm.value,
            "iv": list(self.iv),
            "authTag": list(self.auth_tag),
            "ciphertext": list(self.ciphertext),
            "timestamp": self.timestamp,
        }
        if include_key and self.key is not None:
            d["key"] = list(self.key)
        return d

    def public(self) -> "EncryptedWill":
        return EncryptedWill(
            algorithm=self.algorithm,
            iv=self.iv,
            auth_tag=self.auth_tag,
            ciphertext=self.ciphertext,
            timestamp=self.timestamp,
        )

    @classmethod
    def from_dict(cls, data: dict) -> "EncryptedWill":
        key = data.get("key")
        return cls(
            algorithm=CipherAlgorithm(data["algorithm"]),
            iv=as_bytes(data["iv"], "iv"),
            auth_tag=as_bytes(data.get("authTag") or [], "authTag"),
            ciphertext=as_bytes(data["ciphertext"], "ciphertext"),
            timestamp=as_int(data["timestamp"], "timestamp"),
            key=as_bytes(key, "key") if key is not None else None,
        )


# ============================================================
# PROOFS & WITNESSES
# ============================================================

@dataclass(frozen=True)
class Groth16Proof:
    proof: dict
    public_signals: tuple[str, ...]

    def to_dict(self) -> dict:
        return {"proof": self.proof, "publicSignals": list(self.public_signals)}

    @classmethod
    def from_dict(cls, data: dict) -> "Groth16Proof":
        return cls(
            proof=dict(data["proof"]),
            public_signals=tuple(str(s) for s in data["publicSignals"]),
        )


@dataclass(frozen=True)
class WitnessSignatures:
    cid: str
    witness1: str
    witness2: str
    witness1_signature: str
    witness2_signature: str

    @property
    def signatures(self) -> list[str]:
        return [self.witness1_signature, self.witness2_signature]

    def to_dict(self) -> dict:
        return {
            "cid": self.cid,
            "witness1Address": self.witness1,
            "witness2Address": self.witness2,
            "witness1Signature": self.witness1_signature,
            "witness2Signature": self.witness2_signature,
        }
