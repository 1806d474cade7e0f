import asyncio
import dataclasses
import json

import pytest

from willchain.artifacts import ArtifactStore
from willchain.constants import CircuitName, WillType
from willchain.encryption import encrypt_will
from willchain.errors import SignerMismatchError, StageOrderError, TransactionError
from willchain.ipfs import compute_cid, encode_document
from willchain.lifecycle import Stage, WillLifecycle
from willchain.models import EncryptedWill, SerializedWill, SignedWill
from willchain.witness import WitnessAggregator

from conftest import (
    CHAIN_ID,
    EXECUTOR,
    EXECUTOR_KEY,
    NOTARY_KEY,
    ORACLE_KEY,
    TESTATOR_KEY,
    WITNESS1,
    WITNESS1_KEY,
    WITNESS2,
    WITNESS2_KEY,
    FakeChain,
)


def run(coro):
    return asyncio.run(coro)


def _ok(result):
    assert result.success, result.message
    return result


def prepare_and_upload(lifecycle, raw_will):
    results = run(lifecycle.prepare(raw_will, TESTATOR_KEY, salt=42))
    assert [r.success for r in results] == [True] * 5
    _ok(run(lifecycle.prove_cid_upload()))
    return _ok(run(lifecycle.upload(TESTATOR_KEY, [WITNESS1, WITNESS2])))


def through_deserialize(lifecycle, raw_will):
    prepare_and_upload(lifecycle, raw_will)
    _ok(run(lifecycle.witness([WITNESS1_KEY, WITNESS2_KEY])))
    _ok(run(lifecycle.notarize(NOTARY_KEY)))
    _ok(run(lifecycle.probate(ORACLE_KEY)))
    _ok(run(lifecycle.download()))
    _ok(run(lifecycle.decrypt()))
    _ok(run(lifecycle.deserialize()))
    _ok(run(lifecycle.prove_will_creation()))


# ============================================================
# HAPPY PATH
# ============================================================

def test_full_lifecycle(lifecycle, store, chain, raw_will):
    through_deserialize(lifecycle, raw_will)
    result = _ok(run(lifecycle.execute(EXECUTOR_KEY)))

    executed = store.read(WillType.EXECUTED)
    assert executed["createWill"]["success"] and executed["transfer"]["success"]
    assert result.data["transferTx"] == executed["transfer"]["txHash"]
    assert [c[0] for c in chain.calls] == [
        "predictWill", "uploadCid", "notarizeCid", "probateCid", "createWill", "signatureTransfer",
    ]


def test_prepared_artifacts(lifecycle, store, raw_will):
    prepare_and_upload(lifecycle, raw_will)
    assert store.names() == [
        "2_formatted.json", "3_addressed.json", "4_signed.json", "5_serialized.json",
        "6_encrypted.json", "7_cid_upload_proof.json", "8_uploaded.json",
    ]
    signed = store.read(WillType.SIGNED)
    assert signed["salt"] == "42"
    assert isinstance(signed["permit2"]["nonce"], str)


def test_uploaded_document_has_no_key(lifecycle, store, storage, raw_will):
    prepare_and_upload(lifecycle, raw_will)
    cid = store.read(WillType.UPLOADED)["cid"]
    document = json.loads(storage.blocks[cid])
    assert "key" not in document
    assert "key" in store.read(WillType.ENCRYPTED)


def test_proof_input_uses_encrypted_artifact(lifecycle, store, prover, raw_will):
    run(lifecycle.prepare(raw_will, TESTATOR_KEY, salt=42))
    _ok(run(lifecycle.prove_cid_upload()))
    circuit, proof_input = prover.inputs[0]
    encrypted = store.read(WillType.ENCRYPTED)
    assert circuit == CircuitName.CID_UPLOAD
    assert proof_input == {
        "ciphertext": encrypted["ciphertext"], "key": encrypted["key"], "iv": encrypted["iv"],
    }


def test_deserialized_matches_signed(lifecycle, store, raw_will):
    through_deserialize(lifecycle, raw_will)
    assert store.read(WillType.DESERIALIZED) == store.read(WillType.SIGNED)


def test_predict_will_is_idempotent(lifecycle, store, raw_will):
    _ok(run(lifecycle.format(raw_will)))
    first = _ok(run(lifecycle.predict_will(7))).data["will"]
    second = _ok(run(lifecycle.predict_will(7))).data["will"]
    assert first == second


# ============================================================
# FAIL-FAST
# ============================================================

def test_missing_artifact_fails_before_work(lifecycle, store, chain):
    result = run(lifecycle.serialize())
    assert not result.success
    assert isinstance(result.error, StageOrderError)
    assert "4_signed.json" in result.message
    assert not store.exists(WillType.SERIALIZED)


def test_sequence_stops_at_first_failure(lifecycle, store, raw_will):
    raw_will["estates"] = []
    results = run(lifecycle.prepare(raw_will, TESTATOR_KEY))
    assert len(results) == 1 and not results[0].success
    assert store.names() == []


def test_permit_mismatch_aborts_before_serialize(lifecycle, store, raw_will):
    run(lifecycle.format(raw_will))
    run(lifecycle.predict_will(42))
    run(lifecycle.sign_permit(TESTATOR_KEY))
    signed = SignedWill.from_dict(store.read(WillType.SIGNED))
    store.write(WillType.SIGNED, dataclasses.replace(signed, testator=EXECUTOR).to_dict())

    result = run(lifecycle.serialize())
    assert isinstance(result.error, SignerMismatchError)
    assert not store.exists(WillType.SERIALIZED)


def test_malformed_artifact_is_an_ordering_error(lifecycle, store):
    store.root.mkdir(parents=True)
    store.path(WillType.SIGNED).write_text("{not json", encoding="utf-8")
    result = run(lifecycle.serialize())
    assert isinstance(result.error, StageOrderError)


def test_stage_without_collaborator(store, raw_will):
    bare = WillLifecycle(store, chain_id=CHAIN_ID)
    run(bare.format(raw_will))
    result = run(bare.predict_will(1))
    assert isinstance(result.error, StageOrderError)
    assert result.stage == Stage.PREDICT_WILL


def test_failed_upload_writes_nothing(store, storage, prover, raw_will):
    chain = FakeChain(fail={"uploadCid"})
    lifecycle = WillLifecycle(store, chain=chain, storage=storage, prover=prover, chain_id=CHAIN_ID)
    run(lifecycle.prepare(raw_will, TESTATOR_KEY))
    run(lifecycle.prove_cid_upload())
    result = run(lifecycle.upload(TESTATOR_KEY, [WITNESS1, WITNESS2]))
    assert isinstance(result.error, TransactionError)
    assert not store.exists(WillType.UPLOADED)


# ============================================================
# WITNESS / NOTARY
# ============================================================

def test_witnesses_sign_in_separate_runs(lifecycle, store, chain, raw_will):
    prepare_and_upload(lifecycle, raw_will)
    assert _ok(run(lifecycle.witness([WITNESS2_KEY]))).data["state"] == "OneWitnessSigned"

    result = run(lifecycle.notarize(NOTARY_KEY))
    assert isinstance(result.error, StageOrderError)
    assert chain.called("notarizeCid") == []
    assert not store.exists(WillType.NOTARIZED)

    assert _ok(run(lifecycle.witness([WITNESS1_KEY]))).data["state"] == "BothWitnessesSigned"
    _ok(run(lifecycle.notarize(NOTARY_KEY)))
    assert len(chain.called("notarizeCid")) == 1


def test_outside_signer_cannot_witness(lifecycle, store, raw_will):
    prepare_and_upload(lifecycle, raw_will)
    result = run(lifecycle.witness([TESTATOR_KEY]))
    assert isinstance(result.error, SignerMismatchError)
    assert not store.exists(WillType.WITNESSED)


def test_notarize_rejects_other_cid(lifecycle, raw_will):
    prepare_and_upload(lifecycle, raw_will)
    run(lifecycle.witness([WITNESS1_KEY, WITNESS2_KEY]))
    result = run(lifecycle.notarize(NOTARY_KEY, cid="b" + "a" * 59))
    assert isinstance(result.error, StageOrderError)


def test_download_requires_probate(lifecycle, raw_will):
    prepare_and_upload(lifecycle, raw_will)
    result = run(lifecycle.download())
    assert isinstance(result.error, StageOrderError)


# ============================================================
# EXECUTE: two non-atomic calls
# ============================================================

def test_create_fails_nothing_executed(store, storage, prover, raw_will):
    chain = FakeChain(fail={"createWill"})
    lifecycle = WillLifecycle(store, chain=chain, storage=storage, prover=prover, chain_id=CHAIN_ID)
    through_deserialize(lifecycle, raw_will)

    result = run(lifecycle.execute(EXECUTOR_KEY))
    assert not result.success
    assert "nothing was executed" in result.message
    assert chain.called("signatureTransfer") == []
    assert not store.exists(WillType.EXECUTED)


def test_transfer_failure_reports_which_half_succeeded(store, storage, prover, raw_will):
    chain = FakeChain(fail={"signatureTransfer"})
    lifecycle = WillLifecycle(store, chain=chain, storage=storage, prover=prover, chain_id=CHAIN_ID)
    through_deserialize(lifecycle, raw_will)

    result = run(lifecycle.execute(EXECUTOR_KEY))
    assert not result.success
    assert "createWill succeeded" in result.message
    executed = store.read(WillType.EXECUTED)
    assert executed["createWill"]["success"] and not executed["transfer"]["success"]

    # rerun retries only the transfer
    chain.fail.clear()
    _ok(run(lifecycle.execute(EXECUTOR_KEY)))
    assert len(chain.called("createWill")) == 1
    assert len(chain.called("signatureTransfer")) == 2

    again = run(lifecycle.execute(EXECUTOR_KEY))
    assert isinstance(again.error, StageOrderError)


def test_execute_requires_the_named_executor(lifecycle, chain, raw_will):
    through_deserialize(lifecycle, raw_will)
    result = run(lifecycle.execute(NOTARY_KEY))
    assert isinstance(result.error, SignerMismatchError)
    assert chain.called("createWill") == []


# ============================================================
# EACH PARTY ON ITS OWN MACHINE
# ============================================================

OTHER_CID = compute_cid(encode_document({"not": "this will"}))


def party(tmp_path, name, **adapters):
    return WillLifecycle(ArtifactStore(tmp_path / name), chain_id=CHAIN_ID, **adapters)


def witness_signatures(cid):
    aggregator = WitnessAggregator(cid, WITNESS1, WITNESS2)
    return aggregator.sign(WITNESS1_KEY), aggregator.sign(WITNESS2_KEY)


def test_notary_acts_on_cid_alone(tmp_path, chain):
    notary = party(tmp_path, "notary", chain=chain)
    sig1, sig2 = witness_signatures(OTHER_CID)

    result = _ok(run(notary.notarize(NOTARY_KEY, [sig1, sig2], OTHER_CID)))

    assert result.data["cid"] == OTHER_CID
    assert chain.called("getCidWitnesses") == [("getCidWitnesses", OTHER_CID)]
    assert chain.called("notarizeCid") == [("notarizeCid", OTHER_CID, (sig1, sig2))]
    assert notary.store.read(WillType.UPLOADED) == {
        "cid": OTHER_CID, "external": True, "witnesses": [WITNESS1, WITNESS2],
    }
    assert notary.store.read(WillType.NOTARIZED)["cid"] == OTHER_CID


def test_notary_on_cid_alone_still_checks_signatures(tmp_path, chain):
    notary = party(tmp_path, "notary", chain=chain)
    sig1, sig2 = witness_signatures(OTHER_CID)

    result = run(notary.notarize(NOTARY_KEY, [sig2, sig1], OTHER_CID))

    assert isinstance(result.error, SignerMismatchError)
    assert chain.called("notarizeCid") == []
    assert not notary.store.exists(WillType.UPLOADED)
    assert not notary.store.exists(WillType.NOTARIZED)


def test_oracle_probates_on_cid_alone(tmp_path, chain):
    oracle = party(tmp_path, "oracle", chain=chain)

    _ok(run(oracle.probate(ORACLE_KEY, OTHER_CID)))

    assert chain.called("probateCid") == [("probateCid", OTHER_CID)]
    assert oracle.store.read(WillType.NOTARIZED) == {"cid": OTHER_CID, "external": True}
    assert oracle.store.read(WillType.PROBATED)["cid"] == OTHER_CID


def test_rejected_probate_records_nothing(tmp_path):
    chain = FakeChain(fail={"probateCid"})
    oracle = party(tmp_path, "oracle", chain=chain)

    result = run(oracle.probate(ORACLE_KEY, OTHER_CID))

    assert isinstance(result.error, TransactionError)
    assert not oracle.store.exists(WillType.NOTARIZED)
    assert not oracle.store.exists(WillType.PROBATED)


def test_gate_without_cid_or_artifact_fails_before_work(tmp_path, chain):
    oracle = party(tmp_path, "oracle", chain=chain)
    result = run(oracle.probate(ORACLE_KEY))
    assert isinstance(result.error, StageOrderError)
    assert chain.calls == []


def test_executor_downloads_on_cid_alone(tmp_path, storage):
    document = encrypt_will(SerializedWill(hex="abcd")).public().to_dict()
    cid = run(storage.put(document))
    executor = party(tmp_path, "executor", storage=storage)

    result = _ok(run(executor.download(cid)))

    assert result.data["cid"] == cid
    assert executor.store.read(WillType.PROBATED) == {"cid": cid, "external": True}
    assert executor.store.read(WillType.DOWNLOADED) == document


def test_witness_signs_the_cid_given(tmp_path, chain):
    witness = party(tmp_path, "witness", chain=chain)

    result = _ok(run(witness.witness([WITNESS1_KEY], OTHER_CID)))

    assert result.data == {"cid": OTHER_CID, "state": "OneWitnessSigned"}
    witnessed = witness.store.read(WillType.WITNESSED)
    assert witnessed["cid"] == OTHER_CID
    # verifies against the given CID
    WitnessAggregator.from_signatures(OTHER_CID, WITNESS1, WITNESS2, witnessed["witness1Signature"])


def test_witness_with_addresses_needs_no_chain(tmp_path):
    witness = party(tmp_path, "witness")
    result = _ok(run(witness.witness([WITNESS2_KEY], OTHER_CID, [WITNESS1, WITNESS2])))
    assert result.data["state"] == "OneWitnessSigned"


def test_witness_refuses_cid_other_than_uploaded(lifecycle, store, raw_will):
    uploaded = prepare_and_upload(lifecycle, raw_will).data["cid"]

    result = run(lifecycle.witness([WITNESS1_KEY, WITNESS2_KEY], OTHER_CID))

    assert isinstance(result.error, StageOrderError)
    assert uploaded in result.message and OTHER_CID in result.message
    assert not store.exists(WillType.WITNESSED)


def test_witness_accepts_matching_cid(lifecycle, store, raw_will):
    uploaded = prepare_and_upload(lifecycle, raw_will).data["cid"]
    _ok(run(lifecycle.witness([WITNESS1_KEY, WITNESS2_KEY], uploaded)))
    assert store.read(WillType.WITNESSED)["cid"] == uploaded


def test_parties_on_separate_machines(tmp_path, chain, storage, prover, raw_will):
    testator = party(tmp_path, "testator", chain=chain, storage=storage, prover=prover)
    cid = prepare_and_upload(testator, raw_will).data["cid"]
    key = EncryptedWill.from_dict(testator.store.read(WillType.ENCRYPTED)).key

    first = _ok(run(party(tmp_path, "witness1", chain=chain).witness([WITNESS1_KEY], cid)))
    second = _ok(run(party(tmp_path, "witness2", chain=chain).witness([WITNESS2_KEY], cid)))
    assert first.data["state"] == second.data["state"] == "OneWitnessSigned"
    signatures = [
        party(tmp_path, "witness1").store.read(WillType.WITNESSED)["witness1Signature"],
        party(tmp_path, "witness2").store.read(WillType.WITNESSED)["witness2Signature"],
    ]

    _ok(run(party(tmp_path, "notary", chain=chain).notarize(NOTARY_KEY, signatures, cid)))
    _ok(run(party(tmp_path, "oracle", chain=chain).probate(ORACLE_KEY, cid)))

    executor = party(tmp_path, "executor", chain=chain, storage=storage, prover=prover)
    _ok(run(executor.download(cid)))
    _ok(run(executor.decrypt(key)))
    _ok(run(executor.deserialize()))
    _ok(run(executor.prove_will_creation(key)))
    _ok(run(executor.execute(EXECUTOR_KEY, cid)))

    assert [c[0] for c in chain.calls] == [
        "predictWill", "uploadCid",
        "getCidWitnesses", "getCidWitnesses", "getCidWitnesses",
        "notarizeCid", "probateCid", "createWill", "signatureTransfer",
    ]
    assert chain.called("createWill")[0][1] == cid
