"""
Content-Addressed Storage: IPFS node HTTP API with gateway fallback.

The encrypted will is stored as a single JSON-codec block (CIDv1,
codec 0x0200, sha2-256, base32). The CID is computed locally as well, so
an upload is checked against what the node reports and every download is
checked against the CID that was asked for. A gateway that returns
anything else is skipped.

One IpfsNode per process: open it once (`async with` or start/stop),
pass it to every upload/download, and it is closed on every exit path.
"""

import asyncio
import base64
import hashlib
import json
import logging
from typing import Optional, Sequence, Union

import aiohttp

from .errors import StorageError, ValidationError
from .validation import require_cid

logger = logging.getLogger("willchain.ipfs")

JSON_CODEC = 0x0200
SHA2_256 = 0x12
CID_VERSION = 1

DEFAULT_GATEWAYS = (
    "http://127.0.0.1:8080",
    "https://ipfs.io",
    "https://gateway.ipfs.io",
    "https://cloudflare-ipfs.com",
)


def _varint(n: int) -> bytes:
    out = bytearray()
    while True:
        b = n & 0x7F
        n >>= 7
        if n:
            out.append(b | 0x80)
        else:
            out.append(b)
            return bytes(out)


def encode_document(document: dict) -> bytes:
    """Compact JSON, key order preserved."""
    return json.dumps(document, separators=(",", ":")).encode("utf-8")


def compute_cid(data: bytes, codec: int = JSON_CODEC) -> str:
    digest = hashlib.sha256(data).digest()
    raw = (
        _varint(CID_VERSION) + _varint(codec)
        + _varint(SHA2_256) + _varint(len(digest)) + digest
    )
    return "b" + base64.b32encode(raw).decode("ascii").lower().rstrip("=")


def cid_matches(cid: str, data: bytes) -> bool:
    return compute_cid(data) == cid


class IpfsNode:
    """put(document) -> CID, get(CID) -> bytes."""

    def __init__(
        self,
        api_url: Optional[str] = "http://127.0.0.1:5001",
        gateways: Sequence[str] = DEFAULT_GATEWAYS,
        timeout_seconds: float = 15.0,
    ):
        self.api_url = api_url.rstrip("/") if api_url else None
        self.gateways = [g.rstrip("/") for g in gateways]
        self.timeout_seconds = timeout_seconds
        self._session: Optional[aiohttp.ClientSession] = None

    # ============================================================
    # LIFECYCLE
    # ============================================================

    async def start(self) -> "IpfsNode":
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            logger.info(f"IPFS client started (api={self.api_url}, {len(self.gateways)} gateway(s))")
        return self

    async def stop(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
            logger.info("IPFS client stopped")
        self._session = None

    async def __aenter__(self) -> "IpfsNode":
        return await self.start()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            raise StorageError("IPFS client is not started")
        return self._session

    def _timeout(self) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(total=self.timeout_seconds)

    # ============================================================
    # PUT / GET
    # ============================================================

    async def put(self, document: Union[dict, bytes]) -> str:
        data = document if isinstance(document, bytes) else encode_document(document)
        expected = compute_cid(data)
        if not self.api_url:
            raise StorageError("No IPFS node API configured for upload")

        form = aiohttp.FormData()
        form.add_field("file", data, filename="will.json", content_type="application/json")
        url = f"{self.api_url}/api/v0/block/put"
        params = {"cid-codec": "json", "mhtype": "sha2-256", "pin": "true"}
        try:
            async with self.session.post(url, data=form, params=params, timeout=self._timeout()) as resp:
                if resp.status != 200:
                    body = await resp.text()
                    raise StorageError(f"IPFS block/put failed: HTTP {resp.status} {body[:200]}")
                result = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise StorageError(f"IPFS block/put failed: {type(e).__name__}: {e}", cause=e) from e

        cid = result.get("Key")
        if cid != expected:
            raise StorageError(f"IPFS node returned CID {cid}, expected {expected}")
        logger.info(f"Uploaded {len(data)} bytes to IPFS: {cid}")
        return cid

    async def _fetch(self, method: str, url: str, **kwargs) -> bytes:
        async with self.session.request(method, url, timeout=self._timeout(), **kwargs) as resp:
            if resp.status != 200:
                raise StorageError(f"HTTP {resp.status}")
            return await resp.read()

    async def get(self, cid: str) -> bytes:
        """Node API first, then each gateway; first verified response wins."""
        cid = require_cid(cid)
        attempts = []
        if self.api_url:
            attempts.append(("POST", f"{self.api_url}/api/v0/block/get", {"params": {"arg": cid}}))
        for gw in self.gateways:
            attempts.append((
                "GET", f"{gw}/ipfs/{cid}",
                {"params": {"format": "raw"}, "headers": {"Accept": "application/vnd.ipld.raw"}},
            ))

        errors = []
        for method, url, kwargs in attempts:
            try:
                data = await self._fetch(method, url, **kwargs)
            except (aiohttp.ClientError, asyncio.TimeoutError, StorageError) as e:
                logger.warning(f"IPFS fetch failed via {url}: {type(e).__name__}: {e}")
                errors.append(f"{url}: {e}")
                continue
            if not cid_matches(cid, data):
                logger.warning(f"IPFS content from {url} does not hash to {cid}, skipping")
                errors.append(f"{url}: content mismatch")
                continue
            logger.info(f"Downloaded {len(data)} bytes for {cid[:16]}... via {url}")
            return data

        raise StorageError(f"All IPFS endpoints failed for {cid}: " + "; ".join(errors))

    async def get_json(self, cid: str) -> dict:
        data = await self.get(cid)
        try:
            return json.loads(data)
        except json.JSONDecodeError as e:
            raise ValidationError(f"CID {cid} does not hold a JSON document: {e}", field="cid") from e
