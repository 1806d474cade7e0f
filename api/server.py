"""
willchain API Server - FastAPI Backend

Endpoints:
- POST /api/zkp/cidUpload          Groth16 proof for the upload gate
- POST /api/zkp/willCreation       Groth16 proof for the create gate
- POST /api/crypto/encrypt         Verify permit -> serialize -> encrypt
- POST /api/crypto/decrypt         Raw decrypt of an envelope
- GET  /api/utils/generate-salt    Random CREATE2 salt
- POST /api/utils/predict-will     Counterfactual will address
- GET  /health                     Heartbeat

The server holds no secrets. The symmetric key generated by /encrypt is
returned once and not kept.
"""

import logging
import os
from typing import Any, Optional, Sequence, Union

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from willchain.constants import CRYPTO_LIMITS, PERMIT2, CipherAlgorithm, CircuitName
from willchain.encryption import decrypt, encrypt_will, parse_algorithm, strip_padding
from willchain.errors import RemoteCallError, StageOrderError, ValidationError, WillchainError
from willchain.models import SignedWill, as_int
from willchain.permit2 import verify_testator_signature
from willchain.primitives import generate_salt
from willchain.serialization import format_will, serialize_will
from willchain.validation import require_byte_list
from willchain.zkp import build_proof_input

logger = logging.getLogger("willchain.api")


# ============================================================
# MODELS
# ============================================================

class ZkpRequest(BaseModel):
    ciphertext: list[int]
    key: list[int]
    iv: list[int]


class EncryptRequest(BaseModel):
    signedWill: dict[str, Any]


class DecryptRequest(BaseModel):
    ciphertext: list[int]
    key: list[int]
    iv: list[int]
    algorithm: Optional[str] = None
    authTag: list[int] = Field(default_factory=list)


class EstateBody(BaseModel):
    beneficiary: str
    token: str
    amount: Union[int, str]


class PredictWillRequest(BaseModel):
    testator: str
    executor: str
    estates: list[EstateBody] = Field(..., min_length=1)
    salt: Union[int, str]


def _status_for(error: WillchainError) -> int:
    return 400 if isinstance(error, (ValidationError, StageOrderError)) else 500


# ============================================================
# APP FACTORY
# ============================================================

def create_app(
    prover=None,
    chain_client=None,
    chain_id: int = 0,
    permit2_address: str = PERMIT2.ADDRESS,
    algorithm: Union[str, CipherAlgorithm] = CipherAlgorithm.AES_256_CTR,
    cors_origins: Optional[Sequence[str]] = None,
) -> FastAPI:
    """
    Create FastAPI app wired to the protocol adapters.

    prover: object with async generate_proof(circuit, input) -> Groth16Proof
    chain_client: WillFactoryClient (only /predict-will needs it)
    chain_id: used in the Permit2 domain when re-verifying signed wills
    cors_origins: allowed origins; CORS_ORIGINS env var when not given
    """
    default_algorithm = parse_algorithm(algorithm)

    app = FastAPI(
        title="willchain",
        description="Digital-inheritance protocol core: proofs, will envelope, helpers.",
        version="0.1.0",
    )

    # CORS: allow all in dev, restrict in production via CORS_ORIGINS
    if cors_origins is None:
        cors_origins = os.getenv("CORS_ORIGINS", "*").split(",")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ============================================================
    # ERROR MAPPING
    # ============================================================

    @app.exception_handler(WillchainError)
    async def willchain_error(request: Request, exc: WillchainError):
        status = _status_for(exc)
        if status >= 500:
            logger.error(f"{request.url.path} failed: {exc.message}")
        return JSONResponse(status_code=status, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_error(request: Request, exc: RequestValidationError):
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err.get('loc', ())[1:]) or 'body'}: {err.get('msg')}"
            for err in exc.errors()
        )
        return JSONResponse(
            status_code=400,
            content={"error": ValidationError.code, "message": f"Invalid request: {problems}"},
        )

    # ============================================================
    # ZKP ROUTES
    # ============================================================

    async def _prove(circuit: CircuitName, req: ZkpRequest) -> dict:
        if prover is None:
            raise RemoteCallError("No proof backend configured")
        proof_input = build_proof_input(req.ciphertext, req.key, req.iv)
        logger.info(f"Generating {circuit.value} proof ({len(req.ciphertext)} ciphertext bytes)")
        proof = await prover.generate_proof(circuit, proof_input)
        logger.info(f"{circuit.value} proof generated")
        return proof.to_dict()

    @app.post("/api/zkp/cidUpload")
    async def zkp_cid_upload(req: ZkpRequest):
        return await _prove(CircuitName.CID_UPLOAD, req)

    @app.post("/api/zkp/willCreation")
    async def zkp_will_creation(req: ZkpRequest):
        return await _prove(CircuitName.WILL_CREATION, req)

    # ============================================================
    # CRYPTO ROUTES
    # ============================================================

    @app.post("/api/crypto/encrypt")
    async def crypto_encrypt(req: EncryptRequest):
        """Signed will -> envelope. The key is in this response and nowhere else."""
        try:
            signed = SignedWill.from_dict(req.signedWill)
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"Malformed signedWill: {type(e).__name__}: {e}", field="signedWill") from e

        verify_testator_signature(signed, chain_id, permit2_address)
        encrypted = encrypt_will(serialize_will(signed), default_algorithm)
        logger.info(f"Encrypted will {signed.will[:10]}... for testator {signed.testator[:10]}...")
        return encrypted.to_dict(include_key=True)

    @app.post("/api/crypto/decrypt")
    async def crypto_decrypt(req: DecryptRequest):
        alg = parse_algorithm(req.algorithm or default_algorithm)
        plaintext = decrypt(
            alg,
            require_byte_list(req.ciphertext, "ciphertext"),
            require_byte_list(req.key, "key", CRYPTO_LIMITS.KEY_SIZE),
            require_byte_list(req.iv, "iv"),
            require_byte_list(req.authTag, "authTag"),
        )
        return {"plaintext": list(plaintext), "hex": strip_padding(plaintext.hex())}

    # ============================================================
    # UTILS
    # ============================================================

    @app.get("/api/utils/generate-salt")
    async def utils_generate_salt():
        return {"salt": str(generate_salt())}

    @app.post("/api/utils/predict-will")
    async def utils_predict_will(req: PredictWillRequest):
        if chain_client is None:
            raise RemoteCallError("No chain client configured")
        formatted = format_will({
            "testator": req.testator,
            "executor": req.executor,
            "estates": [e.model_dump() for e in req.estates],
        })
        try:
            salt = as_int(req.salt, "salt")
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Invalid salt: {e}", field="salt") from e
        will = await chain_client.predict_will(
            formatted.testator, formatted.executor, formatted.estates, salt
        )
        return {"willAddress": will}

    @app.get("/health")
    async def health():
        """Heartbeat endpoint."""
        return {"status": "ok"}

    return app
