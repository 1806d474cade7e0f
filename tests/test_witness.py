import asyncio

import pytest

from willchain.chain import ChainTxResult
from willchain.errors import SignerMismatchError, StageOrderError, TransactionError, ValidationError
from willchain.ipfs import compute_cid
from willchain.signature import sign_message
from willchain.witness import WitnessAggregator, WitnessState

from conftest import TESTATOR_KEY, WITNESS1, WITNESS1_KEY, WITNESS2, WITNESS2_KEY

CID = compute_cid(b'{"will":"sealed"}')


class Submitter:
    def __init__(self, success=True):
        self.success = success
        self.calls = []

    async def __call__(self, cid, signatures):
        self.calls.append((cid, list(signatures)))
        if self.success:
            return ChainTxResult(success=True, tx_hash="0x" + "ab" * 32)
        return ChainTxResult(success=False, tx_hash="0x" + "cd" * 32, error="execution reverted")


@pytest.fixture
def aggregator():
    return WitnessAggregator(CID, WITNESS1, WITNESS2)


def test_states_advance(aggregator):
    assert aggregator.state == WitnessState.NO_WITNESSES
    aggregator.sign(WITNESS1_KEY)
    assert aggregator.state == WitnessState.ONE_WITNESS_SIGNED
    aggregator.sign(WITNESS2_KEY)
    assert aggregator.state == WitnessState.BOTH_WITNESSES_SIGNED


def test_either_witness_may_sign_first():
    first = WitnessAggregator(CID, WITNESS1, WITNESS2)
    first.sign(WITNESS2_KEY)
    first.sign(WITNESS1_KEY)
    second = WitnessAggregator(CID, WITNESS1, WITNESS2)
    second.sign(WITNESS1_KEY)
    second.sign(WITNESS2_KEY)
    assert first.bundle() == second.bundle()
    assert first.bundle().signatures == [second.signature_for(1), second.signature_for(2)]


def test_outsider_cannot_sign(aggregator):
    with pytest.raises(SignerMismatchError):
        aggregator.sign(TESTATOR_KEY)
    with pytest.raises(SignerMismatchError):
        aggregator.sign(WITNESS2_KEY, slot=1)


def test_signature_for_wrong_slot_is_refused(aggregator):
    signature = sign_message(CID, WITNESS2_KEY)
    with pytest.raises(SignerMismatchError):
        aggregator.add_signature(1, signature)
    aggregator.add_signature(2, signature)
    assert aggregator.state == WitnessState.ONE_WITNESS_SIGNED


def test_signature_over_other_cid_is_refused(aggregator):
    other = sign_message(compute_cid(b"{}"), WITNESS1_KEY)
    with pytest.raises(SignerMismatchError):
        aggregator.add_signature(1, other)


def test_witnesses_must_be_distinct():
    with pytest.raises(ValidationError):
        WitnessAggregator(CID, WITNESS1, WITNESS1.lower())


def test_invalid_slot(aggregator):
    with pytest.raises(ValidationError):
        aggregator.expected(3)


def test_notarize_with_one_signature_is_rejected_locally(aggregator):
    submit = Submitter()
    aggregator.sign(WITNESS1_KEY)
    with pytest.raises(StageOrderError):
        asyncio.run(aggregator.notarize(submit))
    assert submit.calls == []


def test_notarize_submits_both_signatures_once(aggregator):
    submit = Submitter()
    aggregator.sign(WITNESS1_KEY)
    aggregator.sign(WITNESS2_KEY)
    result = asyncio.run(aggregator.notarize(submit))

    assert result.success
    assert submit.calls == [(CID, [aggregator.signature_for(1), aggregator.signature_for(2)])]
    assert aggregator.state == WitnessState.NOTARIZED

    with pytest.raises(StageOrderError):
        asyncio.run(aggregator.notarize(submit))
    with pytest.raises(StageOrderError):
        aggregator.sign(WITNESS1_KEY)
    assert len(submit.calls) == 1


def test_reverted_notarization_surfaces_tx_hash(aggregator):
    aggregator.sign(WITNESS1_KEY)
    aggregator.sign(WITNESS2_KEY)
    with pytest.raises(TransactionError) as exc:
        asyncio.run(aggregator.notarize(Submitter(success=False)))
    assert exc.value.tx_hash == "0x" + "cd" * 32
    assert aggregator.state == WitnessState.BOTH_WITNESSES_SIGNED


def test_from_signatures_rebuilds_state():
    s1 = sign_message(CID, WITNESS1_KEY)
    s2 = sign_message(CID, WITNESS2_KEY)
    rebuilt = WitnessAggregator.from_signatures(CID, WITNESS1, WITNESS2, s1, s2)
    bundle = rebuilt.bundle()
    assert bundle.witness1 == WITNESS1 and bundle.witness2 == WITNESS2
    assert bundle.to_dict()["witness1Signature"] == s1
