"""
Error taxonomy for the will protocol core.

Every stage raises one of these. Validation and ordering errors are the
caller's fault and map to 400 on the HTTP surface; integrity, remote-call
and proof failures map to 500. None of them are retried automatically.
"""

from typing import Optional


class WillchainError(Exception):
    """Base for all protocol errors."""

    code = "WILLCHAIN_ERROR"

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message}


# ============================================================
# INPUT SHAPE
# ============================================================

class ValidationError(WillchainError):
    code = "VALIDATION_ERROR"

    def __init__(self, message: str, field: Optional[str] = None, cause=None):
        super().__init__(message, cause)
        self.field = field


class SignatureFormatError(ValidationError):
    code = "SIGNATURE_FORMAT_ERROR"


class RecoveryError(WillchainError):
    code = "RECOVERY_ERROR"


# ============================================================
# CRYPTOGRAPHIC INTEGRITY: fatal, never retried
# ============================================================

class IntegrityError(WillchainError):
    code = "INTEGRITY_ERROR"


class AuthenticationError(IntegrityError):
    code = "AUTHENTICATION_ERROR"


class SignerMismatchError(IntegrityError):
    code = "SIGNER_MISMATCH"

    def __init__(self, expected: str, recovered: str, what: str = "signature"):
        super().__init__(
            f"{what} verification failed: recovered signer {recovered} "
            f"does not match expected {expected}"
        )
        self.expected = expected
        self.recovered = recovered


# ============================================================
# REMOTE CALLS
# ============================================================

class RemoteCallError(WillchainError):
    code = "REMOTE_CALL_ERROR"


class TransactionError(RemoteCallError):
    code = "TRANSACTION_ERROR"

    def __init__(self, message: str, tx_hash: Optional[str] = None, cause=None):
        super().__init__(message, cause)
        self.tx_hash = tx_hash


class StorageError(RemoteCallError):
    code = "STORAGE_ERROR"


# ============================================================
# ORDERING / CONFIG / PROOF
# ============================================================

class StageOrderError(WillchainError):
    code = "STAGE_ORDER_ERROR"


class ConfigError(WillchainError):
    code = "CONFIG_ERROR"

    def __init__(self, errors: list[str]):
        super().__init__("; ".join(errors) or "invalid configuration")
        self.errors = list(errors)


class ProofError(WillchainError):
    code = "PROOF_ERROR"
