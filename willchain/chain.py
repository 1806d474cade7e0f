"""
Will Factory Client: On-Chain Gate Transitions

Submits the CID gate transitions (upload -> notarize -> probate -> create)
and the final Permit2 transfer, one signed transaction at a time.

Design:
- Sync Web3 calls run in the default executor
- Embedded minimal ABI covering the factory calls used here;
  a full ABI file can be passed in when the deployed contract differs
- Gas estimation + 20% buffer, nonce from chain
- A failed gas estimate means the call would revert: surface it, never send
- No automatic retry: a financial transaction is submitted at most once
- Each call returns only after its receipt shows status == 1

Designed for: digital-inheritance protocol core
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence, Union

from .errors import RemoteCallError, TransactionError, ValidationError
from .models import Estate
from .transform import typed_json_to_contract_arg
from .validation import require_address, require_cid

logger = logging.getLogger("willchain.chain")


# ============================================================
# MINIMAL ABI
# ============================================================

_ESTATE_TUPLE = {
    "name": "estates",
    "type": "tuple[]",
    "components": [
        {"name": "beneficiary", "type": "address"},
        {"name": "token", "type": "address"},
        {"name": "amount", "type": "uint256"},
    ],
}

_TYPED_JSON_TUPLE = {
    "type": "tuple",
    "components": [
        {"name": "keys", "type": "string[]"},
        {
            "name": "values",
            "type": "tuple[]",
            "components": [
                {"name": "value", "type": "string"},
                {"name": "numberArray", "type": "uint256[]"},
                {"name": "valueType", "type": "uint8"},
            ],
        },
    ],
}

_PROOF_INPUTS = [
    {"name": "pA", "type": "uint256[2]"},
    {"name": "pB", "type": "uint256[2][2]"},
    {"name": "pC", "type": "uint256[2]"},
    {"name": "pubSignals", "type": "uint256[]"},
]

WILL_FACTORY_ABI = [
    # predictWill(testator, executor, estates, salt) → address
    {
        "inputs": [
            {"name": "testator", "type": "address"},
            {"name": "executor", "type": "address"},
            _ESTATE_TUPLE,
            {"name": "salt", "type": "uint256"},
        ],
        "name": "predictWill",
        "outputs": [{"name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    },
    # getCidWitnesses(cid) → address[2]
    {
        "inputs": [{"name": "cid", "type": "string"}],
        "name": "getCidWitnesses",
        "outputs": [{"name": "", "type": "address[2]"}],
        "stateMutability": "view",
        "type": "function",
    },
    # uploadCid(pA, pB, pC, pubSignals, will, cid, witnesses)
    {
        "inputs": _PROOF_INPUTS + [
            dict(_TYPED_JSON_TUPLE, name="will"),
            {"name": "cid", "type": "string"},
            {"name": "witnesses", "type": "address[2]"},
        ],
        "name": "uploadCid",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    # notarizeCid(cid, signatures): notary only
    {
        "inputs": [
            {"name": "cid", "type": "string"},
            {"name": "signatures", "type": "bytes[2]"},
        ],
        "name": "notarizeCid",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    # probateCid(cid): oracle only
    {
        "inputs": [{"name": "cid", "type": "string"}],
        "name": "probateCid",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    # createWill(cid, pA, pB, pC, pubSignals, willData, salt) → address
    {
        "inputs": [{"name": "cid", "type": "string"}] + _PROOF_INPUTS + [
            dict(_TYPED_JSON_TUPLE, name="willData"),
            {"name": "salt", "type": "uint256"},
        ],
        "name": "createWill",
        "outputs": [{"name": "", "type": "address"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]

WILL_ABI = [
    # signatureTransferToBeneficiaries(nonce, deadline, signature): executor only
    {
        "inputs": [
            {"name": "nonce", "type": "uint256"},
            {"name": "deadline", "type": "uint256"},
            {"name": "signature", "type": "bytes"},
        ],
        "name": "signatureTransferToBeneficiaries",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]


@dataclass
class ChainTxResult:
    """Result of an on-chain transaction."""
    success: bool
    tx_hash: str = ""
    block_number: int = 0
    gas_used: int = 0
    error: str = ""

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "txHash": self.tx_hash,
            "blockNumber": self.block_number,
            "gasUsed": self.gas_used,
            "error": self.error,
        }


def _load_abi(abi: Union[None, str, Path, list], default: list) -> list:
    if abi is None:
        return default
    if isinstance(abi, list):
        return abi
    with open(abi, encoding="utf-8") as f:
        data = json.load(f)
    # foundry/hardhat artifacts wrap the ABI
    return data["abi"] if isinstance(data, dict) else data


def _estate_args(estates: Sequence[Estate]) -> list[tuple]:
    return [(require_address(e.beneficiary), require_address(e.token), int(e.amount)) for e in estates]


def _proof_args(calldata: dict) -> tuple:
    return calldata["pA"], calldata["pB"], calldata["pC"], calldata["pubSignals"]


class WillFactoryClient:
    """
    Thin adapter over the WillFactory and Will contracts.

    Construct with an RPC URL (or a ready Web3 instance in tests) and the
    factory address. `connect()` checks the node's chain id against the
    expected one before any transaction is built.
    """

    def __init__(
        self,
        factory_address: str,
        rpc_url: Optional[str] = None,
        expected_chain_id: Optional[int] = None,
        w3=None,
        factory_abi=None,
        will_abi=None,
        receipt_timeout: int = 120,
    ):
        self.factory_address = require_address(factory_address, "WILL_FACTORY")
        self.rpc_url = rpc_url
        self.expected_chain_id = expected_chain_id
        self.receipt_timeout = receipt_timeout
        self._factory_abi = _load_abi(factory_abi, WILL_FACTORY_ABI)
        self._will_abi = _load_abi(will_abi, WILL_ABI)
        self._w3 = w3
        self._factory = None
        self._chain_id: Optional[int] = None

    # ============================================================
    # CONNECTION
    # ============================================================

    def connect(self) -> "WillFactoryClient":
        from web3 import Web3

        if self._w3 is None:
            if not self.rpc_url:
                raise RemoteCallError("No RPC URL configured")
            self._w3 = Web3(Web3.HTTPProvider(self.rpc_url, request_kwargs={"timeout": 30}))

        try:
            chain_id = int(self._w3.eth.chain_id)
        except Exception as e:
            raise RemoteCallError(f"Cannot connect to RPC ({self.rpc_url}): {e}", cause=e) from e

        if self.expected_chain_id is not None and chain_id != self.expected_chain_id:
            raise RemoteCallError(
                f"Connected to chain {chain_id}, expected {self.expected_chain_id}"
            )
        self._chain_id = chain_id
        self._factory = self._w3.eth.contract(address=self.factory_address, abi=self._factory_abi)
        logger.info(f"Will factory client connected: chain={chain_id} | factory={self.factory_address[:10]}...")
        return self

    @property
    def w3(self):
        if self._w3 is None or self._factory is None:
            self.connect()
        return self._w3

    @property
    def factory(self):
        if self._factory is None:
            self.connect()
        return self._factory

    @property
    def chain_id(self) -> int:
        if self._chain_id is None:
            self.connect()
        return self._chain_id

    async def _call(self, fn):
        try:
            return await asyncio.get_running_loop().run_in_executor(None, fn.call)
        except Exception as e:
            raise RemoteCallError(f"{type(e).__name__}: {e}", cause=e) from e

    # ============================================================
    # VIEW CALLS
    # ============================================================

    async def predict_will(
        self, testator: str, executor: str, estates: Sequence[Estate], salt: int
    ) -> str:
        """CREATE2 address the factory would deploy; pure in its inputs."""
        fn = self.factory.functions.predictWill(
            require_address(testator, "testator"),
            require_address(executor, "executor"),
            _estate_args(estates),
            int(salt),
        )
        address = await self._call(fn)
        return require_address(address, "predictedWill")

    async def get_cid_witnesses(self, cid: str) -> tuple[str, str]:
        fn = self.factory.functions.getCidWitnesses(require_cid(cid))
        w1, w2 = await self._call(fn)
        return require_address(w1, "witness1"), require_address(w2, "witness2")

    # ============================================================
    # WRITE TRANSACTIONS
    # ============================================================

    async def _send_tx(self, private_key: str, tx_fn, label: str) -> ChainTxResult:
        """
        Build, sign, send and wait for one transaction.

        Returns ChainTxResult(success=False) on revert or RPC failure; never
        resubmits.
        """
        from eth_account import Account

        try:
            account = Account.from_key(private_key)
        except Exception as e:
            raise ValidationError("Invalid private key", field="privateKey") from e

        w3 = self.w3
        chain_id = self.chain_id

        def _execute():
            tx = tx_fn.build_transaction({
                "from": account.address,
                "nonce": w3.eth.get_transaction_count(account.address),
                "gasPrice": w3.eth.gas_price,
                "chainId": chain_id,
            })

            # Gas estimation + 20% buffer
            try:
                gas_estimate = w3.eth.estimate_gas(tx)
            except Exception as gas_err:
                raise TransactionError(f"{label} would revert: {gas_err}", cause=gas_err) from gas_err
            tx["gas"] = int(gas_estimate * 1.2)

            signed = w3.eth.account.sign_transaction(tx, account.key)
            tx_hash = w3.eth.send_raw_transaction(signed.raw_transaction)
            receipt = w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout)
            return receipt, "0x" + bytes(tx_hash).hex()

        try:
            receipt, tx_hash_hex = await asyncio.get_running_loop().run_in_executor(None, _execute)
        except TransactionError as e:
            logger.warning(f"TX REJECTED [{label}]: {e}")
            return ChainTxResult(success=False, error=str(e))
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            logger.warning(f"TX ERROR [{label}]: {error}")
            return ChainTxResult(success=False, error=error)

        if receipt["status"] == 1:
            gas_used = receipt.get("gasUsed", 0)
            logger.info(f"TX SUCCESS [{label}]: {tx_hash_hex[:16]}... | gas={gas_used}")
            return ChainTxResult(
                success=True,
                tx_hash=tx_hash_hex,
                block_number=receipt.get("blockNumber", 0),
                gas_used=gas_used,
            )

        error = f"TX reverted: {tx_hash_hex}"
        logger.warning(f"TX FAILED [{label}]: {error}")
        return ChainTxResult(success=False, tx_hash=tx_hash_hex, error=error)

    async def upload_cid(
        self,
        private_key: str,
        proof_calldata: dict,
        will_typed_json: dict,
        cid: str,
        witnesses: Sequence[str],
    ) -> ChainTxResult:
        if len(witnesses) != 2:
            raise ValidationError("Exactly two witnesses are required", field="witnesses")
        fn = self.factory.functions.uploadCid(
            *_proof_args(proof_calldata),
            typed_json_to_contract_arg(will_typed_json),
            require_cid(cid),
            [require_address(w, f"witness{i + 1}") for i, w in enumerate(witnesses)],
        )
        return await self._send_tx(private_key, fn, "uploadCid")

    async def notarize_cid(self, private_key: str, cid: str, signatures: Sequence[str]) -> ChainTxResult:
        if len(signatures) != 2:
            raise ValidationError("Exactly two witness signatures are required", field="signatures")
        fn = self.factory.functions.notarizeCid(
            require_cid(cid), [bytes.fromhex(s[2:]) for s in signatures]
        )
        return await self._send_tx(private_key, fn, "notarizeCid")

    async def probate_cid(self, private_key: str, cid: str) -> ChainTxResult:
        fn = self.factory.functions.probateCid(require_cid(cid))
        return await self._send_tx(private_key, fn, "probateCid")

    async def create_will(
        self,
        private_key: str,
        cid: str,
        proof_calldata: dict,
        will_typed_json: dict,
        salt: int,
    ) -> ChainTxResult:
        fn = self.factory.functions.createWill(
            require_cid(cid),
            *_proof_args(proof_calldata),
            typed_json_to_contract_arg(will_typed_json),
            int(salt),
        )
        return await self._send_tx(private_key, fn, "createWill")

    async def signature_transfer_to_beneficiaries(
        self,
        private_key: str,
        will_address: str,
        nonce: int,
        deadline: int,
        signature: str,
    ) -> ChainTxResult:
        will = self.w3.eth.contract(address=require_address(will_address, "will"), abi=self._will_abi)
        fn = will.functions.signatureTransferToBeneficiaries(
            int(nonce), int(deadline), bytes.fromhex(signature[2:])
        )
        return await self._send_tx(private_key, fn, "signatureTransferToBeneficiaries")
