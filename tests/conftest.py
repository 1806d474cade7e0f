import os
import sys

import pytest
from eth_account import Account
from eth_utils import keccak, to_checksum_address

# Ensure the project root is importable when pytest runs from elsewhere
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from willchain.artifacts import ArtifactStore
from willchain.chain import ChainTxResult
from willchain.constants import ANVIL_CHAIN_ID
from willchain.ipfs import compute_cid, encode_document
from willchain.lifecycle import WillLifecycle
from willchain.models import Groth16Proof

# Well-known local devnet keys; never funded anywhere real
TESTATOR_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
EXECUTOR_KEY = "0x59c6995e998f97a5a0044966f0945389dc9e86dae88c7a8412f4603b6b78690d"
WITNESS1_KEY = "0x5de4111afa1a4b94908f83103eb1f1706367c2e68ca870fc3fb9a804cdab365a"
WITNESS2_KEY = "0x7c852118294e51e653712a81e05800f419141751be58f605c371e15141b007a6"
NOTARY_KEY = "0x47e179ec197488593b187f80a00eb0da91f1b9d0b13f8733639f19c30a34926a"
ORACLE_KEY = "0x8b3a350cf5c34c9194ca85829a2df0ec3153be0318b5e2d3348e872092edffba"

TESTATOR = Account.from_key(TESTATOR_KEY).address
EXECUTOR = Account.from_key(EXECUTOR_KEY).address
WITNESS1 = Account.from_key(WITNESS1_KEY).address
WITNESS2 = Account.from_key(WITNESS2_KEY).address

BENEFICIARY = to_checksum_address("0x" + "cc" * 20)
TOKEN = to_checksum_address("0x" + "dd" * 20)
BENEFICIARY2 = to_checksum_address("0x" + "ee" * 20)
TOKEN2 = to_checksum_address("0x" + "12" * 20)

CHAIN_ID = ANVIL_CHAIN_ID

SAMPLE_PROOF = {
    "pi_a": ["1", "2", "1"],
    "pi_b": [["3", "4"], ["5", "6"], ["1", "0"]],
    "pi_c": ["7", "8", "1"],
    "protocol": "groth16",
    "curve": "bn128",
}


def predicted_address(testator, executor, estates, salt) -> str:
    """Deterministic stand-in for the factory's CREATE2 prediction."""
    seed = repr((testator, executor, [(e.beneficiary, e.token, e.amount) for e in estates], salt))
    return to_checksum_address("0x" + keccak(text=seed)[12:].hex())


# ============================================================
# FAKE ADAPTERS
# ============================================================

class FakeChain:
    """Records every call; each write can be told to fail."""

    def __init__(self, fail=()):
        self.fail = set(fail)
        self.calls = []
        self._n = 0

    def _result(self, label):
        self._n += 1
        tx_hash = "0x" + f"{self._n:064x}"
        if label in self.fail:
            return ChainTxResult(success=False, tx_hash=tx_hash, error=f"{label} reverted")
        return ChainTxResult(success=True, tx_hash=tx_hash, block_number=self._n, gas_used=21000)

    async def predict_will(self, testator, executor, estates, salt):
        self.calls.append(("predictWill", salt))
        return predicted_address(testator, executor, estates, salt)

    async def get_cid_witnesses(self, cid):
        self.calls.append(("getCidWitnesses", cid))
        return WITNESS1, WITNESS2

    async def upload_cid(self, private_key, proof, typed_json, cid, witnesses):
        self.calls.append(("uploadCid", cid, tuple(witnesses)))
        return self._result("uploadCid")

    async def notarize_cid(self, private_key, cid, signatures):
        self.calls.append(("notarizeCid", cid, tuple(signatures)))
        return self._result("notarizeCid")

    async def probate_cid(self, private_key, cid):
        self.calls.append(("probateCid", cid))
        return self._result("probateCid")

    async def create_will(self, private_key, cid, proof, typed_json, salt):
        self.calls.append(("createWill", cid, salt))
        return self._result("createWill")

    async def signature_transfer_to_beneficiaries(self, private_key, will, nonce, deadline, signature):
        self.calls.append(("signatureTransfer", will, nonce, deadline, signature))
        return self._result("signatureTransfer")

    def called(self, label):
        return [c for c in self.calls if c[0] == label]


class FakeStorage:
    def __init__(self):
        self.blocks = {}

    async def put(self, document):
        data = encode_document(document)
        cid = compute_cid(data)
        self.blocks[cid] = data
        return cid

    async def get(self, cid):
        return self.blocks[cid]


class FakeProver:
    def __init__(self, error=None):
        self.error = error
        self.inputs = []

    async def generate_proof(self, circuit, proof_input, on_progress=None):
        self.inputs.append((circuit, proof_input))
        if self.error:
            raise self.error
        if on_progress:
            on_progress("Proof generated", 100)
        return Groth16Proof(proof=dict(SAMPLE_PROOF), public_signals=("9", "10"))


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def raw_will():
    return {
        "testator": TESTATOR,
        "executor": EXECUTOR,
        "estates": [
            {"beneficiary": BENEFICIARY, "token": TOKEN, "amount": "1000"},
            {"beneficiary": BENEFICIARY2, "token": TOKEN2, "amount": 5 * 10 ** 18},
        ],
    }


@pytest.fixture
def store(tmp_path):
    return ArtifactStore(tmp_path / "will")


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def prover():
    return FakeProver()


@pytest.fixture
def lifecycle(store, chain, storage, prover):
    return WillLifecycle(store, chain=chain, storage=storage, prover=prover, chain_id=CHAIN_ID)
