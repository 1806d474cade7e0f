import asyncio
import base64
import hashlib

import aiohttp
import pytest

from willchain.errors import StorageError
from willchain.ipfs import IpfsNode, cid_matches, compute_cid, encode_document
from willchain.validation import is_cidv1

DOC = {"algorithm": "aes-256-ctr", "iv": [1, 2], "authTag": [], "ciphertext": [3], "timestamp": 1}
DATA = encode_document(DOC)
CID = compute_cid(DATA)


def _decode(cid):
    body = cid[1:].upper()
    return base64.b32decode(body + "=" * (-len(body) % 8))


def test_cid_encoding():
    assert is_cidv1(CID)
    raw = _decode(CID)
    # version 1, json codec 0x0200, sha2-256, 32-byte digest
    assert raw[:5] == bytes([0x01, 0x80, 0x04, 0x12, 0x20])
    assert raw[5:] == hashlib.sha256(DATA).digest()


def test_document_encoding_is_compact_and_ordered():
    assert DATA.startswith(b'{"algorithm":"aes-256-ctr","iv":[1,2]')


def test_cid_matches():
    assert cid_matches(CID, DATA)
    assert not cid_matches(CID, DATA + b" ")


class ScriptedNode(IpfsNode):
    """Answers each fetch from a queue instead of the network."""

    def __init__(self, responses, **kwargs):
        super().__init__(**kwargs)
        self.responses = list(responses)
        self.urls = []

    async def _fetch(self, method, url, **kwargs):
        self.urls.append(url)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def test_falls_back_across_gateways_and_skips_bad_content():
    node = ScriptedNode(
        [aiohttp.ClientConnectionError("refused"), asyncio.TimeoutError(), b"tampered", DATA],
        api_url="http://node:5001",
        gateways=["http://gw1", "http://gw2", "http://gw3"],
    )
    assert asyncio.run(node.get(CID)) == DATA
    assert node.urls == [
        "http://node:5001/api/v0/block/get",
        f"http://gw1/ipfs/{CID}",
        f"http://gw2/ipfs/{CID}",
        f"http://gw3/ipfs/{CID}",
    ]


def test_all_endpoints_failing_is_a_storage_error():
    node = ScriptedNode(
        [StorageError("HTTP 504"), b"wrong"],
        api_url=None,
        gateways=["http://gw1", "http://gw2"],
    )
    with pytest.raises(StorageError) as exc:
        asyncio.run(node.get(CID))
    assert "gw1" in exc.value.message and "gw2" in exc.value.message


def test_get_json():
    node = ScriptedNode([DATA], api_url=None, gateways=["http://gw"])
    assert asyncio.run(node.get_json(CID)) == DOC


def test_session_required_before_use():
    with pytest.raises(StorageError):
        IpfsNode().session


def test_context_manager_opens_and_closes_session():
    async def scenario():
        async with IpfsNode(gateways=[]) as node:
            session = node.session
            assert not session.closed
        assert session.closed
        with pytest.raises(StorageError):
            node.session

    asyncio.run(scenario())


def test_upload_without_node_api():
    async def scenario():
        async with IpfsNode(api_url=None) as node:
            await node.put(DOC)

    with pytest.raises(StorageError):
        asyncio.run(scenario())
