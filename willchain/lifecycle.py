"""
Will Lifecycle: the fixed, linear sequence of stages a will goes through.

    format -> predictWill -> permitSigning -> serialize -> encrypt
    -> cidUploadProof -> upload -> witness -> notarize -> probate
    -> download -> decrypt -> deserialize -> willCreationProof -> execute

Each stage reads its required artifact(s) from the ArtifactStore, performs
one transformation or remote call, and writes one artifact. A missing or
malformed input artifact stops the stage before anything else happens.

The CID gates (witness, notarize, probate, download) are run by different
parties, usually on different machines. Given an explicit CID they act on it
without the previous artifact and record it as their input; a local artifact
that names another CID is a StageOrderError.

Stages never raise: they return a StageResult and the caller decides
whether to continue. run_sequence() stops at the first failure. Nothing is
retried here; remote-call retry policy lives in the adapters.

Collaborators are duck-typed so tests can pass fakes:
    chain  : predict_will, get_cid_witnesses, upload_cid, notarize_cid,
              probate_cid, create_will, signature_transfer_to_beneficiaries
    storage: put(document) -> cid, get(cid) -> bytes
    prover : generate_proof(circuit, input, on_progress) -> Groth16Proof
"""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Sequence

from .artifacts import ArtifactStore
from .constants import PERMIT2, CipherAlgorithm, CircuitName, WillType
from .encryption import decrypt_will, encrypt_will, parse_algorithm
from .errors import (
    SignerMismatchError,
    StageOrderError,
    TransactionError,
    ValidationError,
    WillchainError,
)
from .ipfs import cid_matches
from .models import (
    AddressedWill,
    EncryptedWill,
    FormattedWill,
    Groth16Proof,
    SerializedWill,
    SignedWill,
)
from .permit2 import sign_will_permit, verify_testator_signature
from .primitives import calculate_deadline, generate_salt
from .serialization import deserialize_will, format_will, serialize_will
from .signature import as_account
from .transform import encrypted_will_to_typed_json
from .validation import require_cid
from .witness import WitnessAggregator
from .zkp import ProgressFn, build_proof_input, format_proof_for_contract

logger = logging.getLogger("willchain.lifecycle")


class Stage(str, Enum):
    FORMAT = "format"
    PREDICT_WILL = "predictWill"
    PERMIT_SIGNING = "permitSigning"
    SERIALIZE = "serialize"
    ENCRYPT = "encrypt"
    CID_UPLOAD_PROOF = "cidUploadProof"
    UPLOAD = "upload"
    WITNESS = "witness"
    NOTARIZE = "notarize"
    PROBATE = "probate"
    DOWNLOAD = "download"
    DECRYPT = "decrypt"
    DESERIALIZE = "deserialize"
    WILL_CREATION_PROOF = "willCreationProof"
    EXECUTE = "execute"


# stage -> (required artifacts, produced artifact)
STAGE_GRAPH: dict[Stage, tuple[tuple[WillType, ...], WillType]] = {
    Stage.FORMAT: ((), WillType.FORMATTED),
    Stage.PREDICT_WILL: ((WillType.FORMATTED,), WillType.ADDRESSED),
    Stage.PERMIT_SIGNING: ((WillType.ADDRESSED,), WillType.SIGNED),
    Stage.SERIALIZE: ((WillType.SIGNED,), WillType.SERIALIZED),
    Stage.ENCRYPT: ((WillType.SERIALIZED,), WillType.ENCRYPTED),
    Stage.CID_UPLOAD_PROOF: ((WillType.ENCRYPTED,), WillType.CID_UPLOAD_PROOF),
    Stage.UPLOAD: ((WillType.ENCRYPTED, WillType.CID_UPLOAD_PROOF), WillType.UPLOADED),
    Stage.WITNESS: ((WillType.UPLOADED,), WillType.WITNESSED),
    Stage.NOTARIZE: ((WillType.UPLOADED,), WillType.NOTARIZED),
    Stage.PROBATE: ((WillType.NOTARIZED,), WillType.PROBATED),
    Stage.DOWNLOAD: ((WillType.PROBATED,), WillType.DOWNLOADED),
    Stage.DECRYPT: ((WillType.DOWNLOADED,), WillType.DECRYPTED),
    Stage.DESERIALIZE: ((WillType.DECRYPTED,), WillType.DESERIALIZED),
    Stage.WILL_CREATION_PROOF: ((WillType.DESERIALIZED, WillType.DOWNLOADED), WillType.WILL_CREATION_PROOF),
    Stage.EXECUTE: (
        (WillType.WILL_CREATION_PROOF, WillType.DESERIALIZED, WillType.DOWNLOADED),
        WillType.EXECUTED,
    ),
}

# stages another party can run on its own machine from a CID alone
CID_ADDRESSED = frozenset({Stage.WITNESS, Stage.NOTARIZE, Stage.PROBATE, Stage.DOWNLOAD})


@dataclass
class StageResult:
    success: bool
    stage: Stage
    artifact: Optional[WillType] = None
    data: dict = field(default_factory=dict)
    error: Optional[WillchainError] = None

    @property
    def message(self) -> str:
        return self.error.message if self.error else "ok"

    def to_dict(self) -> dict:
        d = {
            "success": self.success,
            "stage": self.stage.value,
            "artifact": self.artifact.value if self.artifact else None,
            "data": self.data,
        }
        if self.error:
            d["error"] = self.error.to_dict()
        return d


StageFn = Callable[[], Awaitable[StageResult]]


class WillLifecycle:

    def __init__(
        self,
        store: ArtifactStore,
        chain=None,
        storage=None,
        prover=None,
        chain_id: int = 0,
        permit2_address: str = PERMIT2.ADDRESS,
        algorithm: CipherAlgorithm = CipherAlgorithm.AES_256_CTR,
        deadline_seconds: int = PERMIT2.DEFAULT_DURATION_SECONDS,
    ):
        self.store = store
        self.chain = chain
        self.storage = storage
        self.prover = prover
        self.chain_id = chain_id
        self.permit2_address = permit2_address
        self.algorithm = parse_algorithm(algorithm)
        self.deadline_seconds = deadline_seconds

    # ============================================================
    # PLUMBING
    # ============================================================

    async def _run(
        self,
        stage: Stage,
        body: Callable[[], Awaitable[dict]],
        given_cid: Optional[str] = None,
    ) -> StageResult:
        """
        With given_cid set, a CID-addressed stage takes that CID as its input
        instead of the previous stage's artifact; the contract enforces the
        gate order on-chain.
        """
        required, produced = STAGE_GRAPH[stage]
        if given_cid and stage in CID_ADDRESSED:
            required = ()
        try:
            for name in required:
                if not self.store.exists(name):
                    raise StageOrderError(
                        f"Stage {stage.value} requires {self.store.path(name).name}; "
                        f"run the previous stage first"
                    )
            data = await body()
        except WillchainError as e:
            logger.error(f"Stage {stage.value} failed: {e.message}")
            return StageResult(False, stage, produced, error=e)
        except Exception as e:
            logger.error(f"Stage {stage.value} failed: {type(e).__name__}: {e}")
            logger.debug("Stage failure detail", exc_info=True)
            return StageResult(
                False, stage, produced,
                error=WillchainError(f"{type(e).__name__}: {e}", cause=e),
            )
        logger.info(f"Stage {stage.value} complete -> {produced.value}")
        return StageResult(True, stage, produced, data=data)

    def _need(self, collaborator: Any, what: str):
        if collaborator is None:
            raise StageOrderError(f"No {what} configured for this lifecycle")
        return collaborator

    def _read(self, name: WillType, parse):
        try:
            return parse(self.store.read(name))
        except (KeyError, TypeError, ValueError) as e:
            raise StageOrderError(
                f"Artifact {self.store.path(name).name} is malformed: {type(e).__name__}: {e}", cause=e
            ) from e

    def _resolve_key(self, key: Optional[bytes]) -> bytes:
        if key is not None:
            return key
        if self.store.exists(WillType.ENCRYPTED):
            local = self._read(WillType.ENCRYPTED, EncryptedWill.from_dict)
            if local.key is not None:
                return local.key
        raise ValidationError("Decryption key is required (not in local encrypted artifact)", field="key")

    def _check_cid(self, expected: str, given: Optional[str]) -> str:
        if given and given != expected:
            raise StageOrderError(f"CID {given} does not match the lifecycle's CID {expected}")
        return expected

    def _input_cid(self, name: WillType, given: Optional[str]) -> tuple[str, dict, bool]:
        """
        Resolve the CID a gate stage acts on.

        A local input artifact wins but must agree with a given CID. With
        no local artifact the given CID is used and the returned record is
        flagged external so the caller can store it once the stage succeeds.
        """
        if self.store.exists(name):
            record = self._read(name, dict)
            return self._check_cid(require_cid(record.get("cid")), given), record, False
        if not given:
            raise StageOrderError(f"No {self.store.path(name).name} and no CID given")
        the_cid = require_cid(given)
        return the_cid, {"cid": the_cid, "external": True}, True

    async def run_sequence(self, steps: Sequence[StageFn]) -> list[StageResult]:
        """Run stages in order; stop after the first failure."""
        results = []
        for step in steps:
            result = await step()
            results.append(result)
            if not result.success:
                break
        return results

    # ============================================================
    # TESTATOR: format, address, sign, serialize, encrypt
    # ============================================================

    async def format(self, raw: dict) -> StageResult:
        async def body():
            formatted = format_will(raw)
            self.store.write(WillType.FORMATTED, formatted.to_dict())
            return {"estates": len(formatted.estates)}
        return await self._run(Stage.FORMAT, body)

    async def predict_will(self, salt: Optional[int] = None) -> StageResult:
        async def body():
            chain = self._need(self.chain, "chain client")
            formatted = self._read(WillType.FORMATTED, FormattedWill.from_dict)
            use_salt = generate_salt() if salt is None else salt
            will = await chain.predict_will(
                formatted.testator, formatted.executor, formatted.estates, use_salt
            )
            addressed = AddressedWill(
                testator=formatted.testator,
                executor=formatted.executor,
                estates=formatted.estates,
                salt=use_salt,
                will=will,
            )
            self.store.write(WillType.ADDRESSED, addressed.to_dict())
            return {"will": will, "salt": str(use_salt)}
        return await self._run(Stage.PREDICT_WILL, body)

    async def sign_permit(self, testator_private_key: str) -> StageResult:
        async def body():
            addressed = self._read(WillType.ADDRESSED, AddressedWill.from_dict)
            signed = sign_will_permit(
                addressed,
                testator_private_key,
                self.chain_id,
                self.permit2_address,
                deadline=calculate_deadline(self.deadline_seconds),
            )
            self.store.write(WillType.SIGNED, signed.to_dict())
            return {
                "nonce": str(signed.permit2.nonce),
                "deadline": signed.permit2.deadline,
                "signature": signed.permit2.signature,
            }
        return await self._run(Stage.PERMIT_SIGNING, body)

    async def serialize(self) -> StageResult:
        async def body():
            signed = self._read(WillType.SIGNED, SignedWill.from_dict)
            # a bad permit must never reach encryption or upload
            verify_testator_signature(signed, self.chain_id, self.permit2_address)
            serialized = serialize_will(signed)
            self.store.write(WillType.SERIALIZED, serialized.to_dict())
            return {"length": len(serialized.hex)}
        return await self._run(Stage.SERIALIZE, body)

    async def encrypt(self, key: Optional[bytes] = None, iv: Optional[bytes] = None) -> StageResult:
        async def body():
            serialized = self._read(WillType.SERIALIZED, SerializedWill.from_dict)
            encrypted = encrypt_will(serialized, self.algorithm, key=key, iv=iv)
            # local copy keeps the key; it is stripped before upload
            self.store.write(WillType.ENCRYPTED, encrypted.to_dict(include_key=True))
            return {"algorithm": encrypted.algorithm.value, "bytes": len(encrypted.ciphertext)}
        return await self._run(Stage.ENCRYPT, body)

    # ============================================================
    # PROOFS
    # ============================================================

    async def _prove(self, circuit: CircuitName, encrypted: EncryptedWill, key: bytes,
                     on_progress: Optional[ProgressFn]) -> Groth16Proof:
        prover = self._need(self.prover, "proof backend")
        proof_input = build_proof_input(encrypted.ciphertext, key, encrypted.iv)
        return await prover.generate_proof(circuit, proof_input, on_progress)

    async def prove_cid_upload(self, on_progress: Optional[ProgressFn] = None) -> StageResult:
        async def body():
            encrypted = self._read(WillType.ENCRYPTED, EncryptedWill.from_dict)
            proof = await self._prove(
                CircuitName.CID_UPLOAD, encrypted, self._resolve_key(None), on_progress
            )
            self.store.write(WillType.CID_UPLOAD_PROOF, proof.to_dict())
            return {"publicSignals": len(proof.public_signals)}
        return await self._run(Stage.CID_UPLOAD_PROOF, body)

    async def prove_will_creation(
        self, key: Optional[bytes] = None, on_progress: Optional[ProgressFn] = None
    ) -> StageResult:
        async def body():
            downloaded = self._read(WillType.DOWNLOADED, EncryptedWill.from_dict)
            proof = await self._prove(
                CircuitName.WILL_CREATION, downloaded, self._resolve_key(key), on_progress
            )
            self.store.write(WillType.WILL_CREATION_PROOF, proof.to_dict())
            return {"publicSignals": len(proof.public_signals)}
        return await self._run(Stage.WILL_CREATION_PROOF, body)

    # ============================================================
    # CID GATES: upload, witness, notarize, probate
    # ============================================================

    async def upload(
        self,
        testator_private_key: str,
        witnesses: Sequence[str],
        cid: Optional[str] = None,
    ) -> StageResult:
        async def body():
            chain = self._need(self.chain, "chain client")
            storage = self._need(self.storage, "storage node")
            encrypted = self._read(WillType.ENCRYPTED, EncryptedWill.from_dict)
            proof = self._read(WillType.CID_UPLOAD_PROOF, Groth16Proof.from_dict)
            if len(witnesses) != 2:
                raise ValidationError("Exactly two witnesses are required", field="witnesses")

            document = encrypted.public().to_dict()
            stored_cid = await storage.put(document)
            if cid:
                self._check_cid(stored_cid, cid)

            result = await chain.upload_cid(
                testator_private_key,
                format_proof_for_contract(proof),
                encrypted_will_to_typed_json(encrypted),
                stored_cid,
                list(witnesses),
            )
            if not result.success:
                raise TransactionError(f"uploadCid failed: {result.error}", tx_hash=result.tx_hash)

            self.store.write(WillType.UPLOADED, {
                "cid": stored_cid,
                "witnesses": list(witnesses),
                "tx": result.to_dict(),
            })
            return {"cid": stored_cid, "txHash": result.tx_hash}
        return await self._run(Stage.UPLOAD, body)

    async def _witness_addresses(
        self, cid: str, uploaded: dict, given: Optional[Sequence[str]] = None
    ) -> tuple[str, str]:
        """Recorded upload first, then addresses passed in, then the factory."""
        if uploaded.get("witnesses") and len(uploaded["witnesses"]) == 2:
            return tuple(uploaded["witnesses"])
        if given and all(given):
            if len(given) != 2:
                raise ValidationError("Exactly two witnesses are required", field="witnesses")
            return tuple(given)
        chain = self._need(self.chain, "chain client")
        return tuple(await chain.get_cid_witnesses(cid))

    async def witness(
        self,
        witness_private_keys: Sequence[str],
        cid: Optional[str] = None,
        witnesses: Optional[Sequence[str]] = None,
    ) -> StageResult:
        """
        Sign the CID with one or both witness keys. Signatures already in
        the witnessed artifact are kept, so the two witnesses can sign in
        separate runs, in either order.

        A witness on their own machine passes the CID they were asked to
        attest. Witness addresses come from the recorded upload, then
        `witnesses`, then the factory.
        """
        async def body():
            the_cid, uploaded, external = self._input_cid(WillType.UPLOADED, cid)
            w1, w2 = await self._witness_addresses(the_cid, uploaded, witnesses)

            existing = {}
            if self.store.exists(WillType.WITNESSED):
                existing = self.store.read(WillType.WITNESSED)
                self._check_cid(the_cid, existing.get("cid"))
            aggregator = WitnessAggregator.from_signatures(
                the_cid, w1, w2,
                existing.get("witness1Signature"), existing.get("witness2Signature"),
            )
            for key in witness_private_keys:
                aggregator.sign(key)

            record = {
                "cid": the_cid,
                "witness1Address": aggregator.expected(1),
                "witness2Address": aggregator.expected(2),
                "witness1Signature": aggregator.signature_for(1),
                "witness2Signature": aggregator.signature_for(2),
                "state": aggregator.state.value,
            }
            if external:
                self.store.write(WillType.UPLOADED, {**uploaded, "witnesses": [w1, w2]})
            self.store.write(WillType.WITNESSED, record)
            return {"cid": the_cid, "state": aggregator.state.value}
        return await self._run(Stage.WITNESS, body, given_cid=cid)

    async def notarize(
        self,
        notary_private_key: str,
        signatures: Optional[Sequence[Optional[str]]] = None,
        cid: Optional[str] = None,
        witnesses: Optional[Sequence[str]] = None,
    ) -> StageResult:
        async def body():
            chain = self._need(self.chain, "chain client")
            the_cid, uploaded, external = self._input_cid(WillType.UPLOADED, cid)
            w1, w2 = await self._witness_addresses(the_cid, uploaded, witnesses)

            sigs = list(signatures) if signatures is not None else [None, None]
            if self.store.exists(WillType.WITNESSED):
                witnessed = self.store.read(WillType.WITNESSED)
                if witnessed.get("cid") == the_cid:
                    sigs[0] = sigs[0] or witnessed.get("witness1Signature")
                    sigs[1] = sigs[1] or witnessed.get("witness2Signature")

            aggregator = WitnessAggregator.from_signatures(the_cid, w1, w2, sigs[0], sigs[1])
            result = await aggregator.notarize(
                lambda c, s: chain.notarize_cid(notary_private_key, c, s)
            )
            if external:
                self.store.write(WillType.UPLOADED, {**uploaded, "witnesses": [w1, w2]})
            self.store.write(WillType.NOTARIZED, {
                **aggregator.bundle().to_dict(),
                "tx": result.to_dict(),
            })
            return {"cid": the_cid, "txHash": result.tx_hash}
        return await self._run(Stage.NOTARIZE, body, given_cid=cid)

    async def probate(self, oracle_private_key: str, cid: Optional[str] = None) -> StageResult:
        async def body():
            chain = self._need(self.chain, "chain client")
            the_cid, notarized, external = self._input_cid(WillType.NOTARIZED, cid)
            result = await chain.probate_cid(oracle_private_key, the_cid)
            if not result.success:
                raise TransactionError(f"probateCid failed: {result.error}", tx_hash=result.tx_hash)
            if external:
                self.store.write(WillType.NOTARIZED, notarized)
            self.store.write(WillType.PROBATED, {"cid": the_cid, "tx": result.to_dict()})
            return {"cid": the_cid, "txHash": result.tx_hash}
        return await self._run(Stage.PROBATE, body, given_cid=cid)

    # ============================================================
    # EXECUTOR: download, decrypt, deserialize, execute
    # ============================================================

    async def download(self, cid: Optional[str] = None) -> StageResult:
        """
        Fetch the encrypted will. Without a local probated artifact the
        executor passes the CID; createWill still fails on-chain unless
        the oracle has probated it.
        """
        async def body():
            storage = self._need(self.storage, "storage node")
            the_cid, probated, external = self._input_cid(WillType.PROBATED, cid)
            data = await storage.get(the_cid)
            if not cid_matches(the_cid, data):
                raise StageOrderError(f"Downloaded content does not hash to {the_cid}")
            try:
                document = json.loads(data)
                downloaded = EncryptedWill.from_dict(document)
            except (KeyError, TypeError, ValueError) as e:
                raise ValidationError(f"CID {the_cid} is not an encrypted will: {e}", field="cid") from e
            if external:
                self.store.write(WillType.PROBATED, probated)
            self.store.write(WillType.DOWNLOADED, downloaded.to_dict())
            return {"cid": the_cid, "bytes": len(downloaded.ciphertext)}
        return await self._run(Stage.DOWNLOAD, body, given_cid=cid)

    async def decrypt(self, key: Optional[bytes] = None) -> StageResult:
        async def body():
            downloaded = self._read(WillType.DOWNLOADED, EncryptedWill.from_dict)
            decrypted = decrypt_will(downloaded, self._resolve_key(key))
            self.store.write(WillType.DECRYPTED, decrypted.to_dict())
            return {"length": len(decrypted.hex)}
        return await self._run(Stage.DECRYPT, body)

    async def deserialize(self, estate_count: Optional[int] = None) -> StageResult:
        async def body():
            decrypted = self._read(WillType.DECRYPTED, SerializedWill.from_dict)
            signed = deserialize_will(decrypted.hex, estate_count)
            verify_testator_signature(signed, self.chain_id, self.permit2_address)
            self.store.write(WillType.DESERIALIZED, signed.to_dict())
            return {"will": signed.will, "estates": len(signed.estates)}
        return await self._run(Stage.DESERIALIZE, body)

    async def execute(self, executor_private_key: str, cid: Optional[str] = None) -> StageResult:
        """
        createWill then signatureTransferToBeneficiaries. The two calls are
        not atomic: a partial failure is reported with the half that
        succeeded and recorded, so a rerun only retries the transfer.
        """
        async def body():
            chain = self._need(self.chain, "chain client")
            signed = self._read(WillType.DESERIALIZED, SignedWill.from_dict)
            downloaded = self._read(WillType.DOWNLOADED, EncryptedWill.from_dict)
            proof = self._read(WillType.WILL_CREATION_PROOF, Groth16Proof.from_dict)

            executor = as_account(executor_private_key)
            if executor.address.lower() != signed.executor.lower():
                raise SignerMismatchError(signed.executor, executor.address, what="Executor key")

            source = (
                self.store.read(WillType.PROBATED) if self.store.exists(WillType.PROBATED)
                else self.store.read(WillType.UPLOADED) if self.store.exists(WillType.UPLOADED)
                else {}
            )
            the_cid = source.get("cid") or cid
            if not the_cid:
                raise StageOrderError("No CID recorded for this will; run download first")
            the_cid = self._check_cid(require_cid(the_cid), cid)

            previous = self.store.read(WillType.EXECUTED) if self.store.exists(WillType.EXECUTED) else {}
            create = previous.get("createWill")
            if previous.get("transfer", {}).get("success"):
                raise StageOrderError(f"Will {signed.will} was already executed")

            if not (create and create.get("success")):
                created = await chain.create_will(
                    executor_private_key,
                    the_cid,
                    format_proof_for_contract(proof),
                    encrypted_will_to_typed_json(downloaded),
                    signed.salt,
                )
                if not created.success:
                    raise TransactionError(
                        f"createWill failed, nothing was executed: {created.error}",
                        tx_hash=created.tx_hash,
                    )
                create = created.to_dict()
            else:
                logger.info(f"createWill already confirmed ({create.get('txHash')}), retrying transfer only")

            transfer = await chain.signature_transfer_to_beneficiaries(
                executor_private_key,
                signed.will,
                signed.permit2.nonce,
                signed.permit2.deadline,
                signed.permit2.signature,
            )
            record = {"cid": the_cid, "will": signed.will, "createWill": create, "transfer": transfer.to_dict()}
            self.store.write(WillType.EXECUTED, record)

            if not transfer.success:
                raise TransactionError(
                    f"createWill succeeded (tx {create.get('txHash')}) but "
                    f"signatureTransferToBeneficiaries failed: {transfer.error}",
                    tx_hash=transfer.tx_hash,
                )
            return {
                "will": signed.will,
                "createWillTx": create.get("txHash"),
                "transferTx": transfer.tx_hash,
            }
        return await self._run(Stage.EXECUTE, body)

    # ============================================================
    # CONVENIENCE
    # ============================================================

    async def prepare(self, raw: dict, testator_private_key: str, salt: Optional[int] = None) -> list[StageResult]:
        """Testator's offline half: format through encrypt."""
        return await self.run_sequence([
            lambda: self.format(raw),
            lambda: self.predict_will(salt),
            lambda: self.sign_permit(testator_private_key),
            self.serialize,
            self.encrypt,
        ])

