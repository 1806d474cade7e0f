"""
Run one will lifecycle stage against the artifact directory.

Each invocation reads the previous stage's artifact from WILL_DIR, runs one
stage and writes its artifact. Secrets come from the environment (.env);
each stage checks its own variables up front and lists every problem.

Usage:
    python scripts/will_stage.py format --input will.json
    python scripts/will_stage.py predictWill [--salt N]
    python scripts/will_stage.py permitSigning
    python scripts/will_stage.py serialize
    python scripts/will_stage.py encrypt
    python scripts/will_stage.py cidUploadProof
    python scripts/will_stage.py uploadCid
    python scripts/will_stage.py witnessSigning [--slot 1|2]
    python scripts/will_stage.py notarizeCid
    python scripts/will_stage.py probateCid
    python scripts/will_stage.py ipfsDownload
    python scripts/will_stage.py decrypt
    python scripts/will_stage.py deserialize [--estates N]
    python scripts/will_stage.py willCreationProof
    python scripts/will_stage.py createWill

Exit status is 1 on any failure; the next stage is never started.
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))
load_dotenv(ROOT / ".env")

from willchain.artifacts import ArtifactStore
from willchain.chain import WillFactoryClient
from willchain.config import Settings, load_settings, load_stage_config
from willchain.errors import ConfigError, WillchainError
from willchain.ipfs import IpfsNode
from willchain.lifecycle import StageResult, WillLifecycle
from willchain.logging_utils import configure_logging
from willchain.models import as_bytes
from willchain.signature import as_account
from willchain.zkp import SnarkjsProver

logger = logging.getLogger("willchain.stage")

STAGES = (
    "format", "predictWill", "permitSigning", "serialize", "encrypt",
    "cidUploadProof", "uploadCid", "witnessSigning", "notarizeCid", "probateCid",
    "ipfsDownload", "decrypt", "deserialize", "willCreationProof", "createWill",
)


# ============================================================
# WIRING
# ============================================================

def _chain(settings: Settings, factory: str) -> WillFactoryClient:
    return WillFactoryClient(
        factory,
        rpc_url=settings.network.rpc_url,
        expected_chain_id=settings.network.chain_id,
    )


def _ipfs(settings: Settings) -> IpfsNode:
    return IpfsNode(settings.ipfs_api_url, settings.ipfs_gateways, settings.ipfs_timeout_seconds)


def _lifecycle(settings: Settings, **adapters) -> WillLifecycle:
    return WillLifecycle(
        ArtifactStore(settings.will_dir),
        chain_id=settings.network.chain_id,
        permit2_address=settings.permit2_address,
        algorithm=settings.crypto_algorithm,
        deadline_seconds=settings.permit2_deadline_seconds,
        **adapters,
    )


def _progress(status: str, pct: int) -> None:
    logger.info(f"[{pct:3d}%] {status}")


# ============================================================
# STAGES
# ============================================================

async def run_stage(stage: str, args: argparse.Namespace, settings: Settings) -> StageResult:
    if stage == "format":
        with open(args.input, encoding="utf-8") as f:
            raw = json.load(f)
        return await _lifecycle(settings).format(raw)

    if stage == "predictWill":
        cfg = load_stage_config("predictWill").require()
        return await _lifecycle(settings, chain=_chain(settings, cfg.will_factory)).predict_will(args.salt)

    if stage == "permitSigning":
        cfg = load_stage_config("permitSigning").require()
        lifecycle = _lifecycle(settings)
        lifecycle.permit2_address = cfg.permit2
        return await lifecycle.sign_permit(cfg.testator_private_key)

    if stage == "serialize":
        return await _lifecycle(settings).serialize()

    if stage == "encrypt":
        return await _lifecycle(settings).encrypt()

    if stage in ("cidUploadProof", "willCreationProof"):
        lifecycle = _lifecycle(settings, prover=SnarkjsProver(settings.zkp_dir, settings.snarkjs_bin))
        if stage == "cidUploadProof":
            return await lifecycle.prove_cid_upload(_progress)
        return await lifecycle.prove_will_creation(_decryption_key(), _progress)

    if stage == "uploadCid":
        cfg = load_stage_config("uploadCid").require()
        async with _ipfs(settings) as node:
            lifecycle = _lifecycle(settings, chain=_chain(settings, cfg.will_factory), storage=node)
            return await lifecycle.upload(
                cfg.testator_private_key, [cfg.witness1, cfg.witness2], cfg.cid or None
            )

    if stage == "witnessSigning":
        cfg = load_stage_config("witnessSigning").require()
        keys = {1: cfg.witness1_private_key, 2: cfg.witness2_private_key}
        chosen = [keys[args.slot]] if args.slot else [keys[1], keys[2]]
        if cfg.will_factory:
            # the factory's record of the CID's witnesses is authoritative
            lifecycle = _lifecycle(settings, chain=_chain(settings, cfg.will_factory))
            return await lifecycle.witness(chosen, cfg.cid)
        witnesses = [as_account(keys[1]).address, as_account(keys[2]).address]
        return await _lifecycle(settings).witness(chosen, cfg.cid, witnesses)

    if stage == "notarizeCid":
        cfg = load_stage_config("notarizeCid").require()
        lifecycle = _lifecycle(settings, chain=_chain(settings, cfg.will_factory))
        return await lifecycle.notarize(
            cfg.notary_private_key,
            [cfg.witness1_signature, cfg.witness2_signature],
            cfg.cid,
            [cfg.witness1, cfg.witness2],
        )

    if stage == "probateCid":
        cfg = load_stage_config("probateCid").require()
        lifecycle = _lifecycle(settings, chain=_chain(settings, cfg.will_factory))
        return await lifecycle.probate(cfg.oracle_private_key, cfg.cid)

    if stage == "ipfsDownload":
        cfg = load_stage_config("ipfsDownload").require()
        async with _ipfs(settings) as node:
            return await _lifecycle(settings, storage=node).download(cfg.cid)

    if stage == "decrypt":
        return await _lifecycle(settings).decrypt(_decryption_key())

    if stage == "deserialize":
        return await _lifecycle(settings).deserialize(args.estates)

    if stage == "createWill":
        cfg = load_stage_config("createWill").require()
        lifecycle = _lifecycle(settings, chain=_chain(settings, cfg.will_factory))
        return await lifecycle.execute(cfg.executor_private_key, cfg.cid)

    raise ValueError(f"Unknown stage: {stage}")


def _decryption_key():
    cfg = load_stage_config("decrypt").require()
    return as_bytes(cfg.decryption_key, "DECRYPTION_KEY") if cfg.decryption_key else None


# ============================================================
# MAIN
# ============================================================

def main() -> None:
    parser = argparse.ArgumentParser(description="Run one will lifecycle stage")
    parser.add_argument("stage", choices=STAGES, help="Stage to run")
    parser.add_argument("--input", type=Path, help="Raw will JSON (format stage)")
    parser.add_argument("--salt", type=int, default=None, help="CREATE2 salt (predictWill; random if omitted)")
    parser.add_argument("--slot", type=int, choices=(1, 2), default=None, help="Sign as one witness only")
    parser.add_argument("--estates", type=int, default=None, help="Estate count (deserialize; inferred if omitted)")
    args = parser.parse_args()

    if args.stage == "format" and not args.input:
        parser.error("format requires --input")

    configure_logging()
    try:
        settings = load_settings()
        result = asyncio.run(run_stage(args.stage, args, settings))
    except ConfigError as e:
        logger.error(f"{args.stage}: configuration invalid")
        for err in e.errors:
            print(f"  - {err}", file=sys.stderr)
        sys.exit(1)
    except WillchainError as e:
        print(f"{args.stage} failed: {e.message}", file=sys.stderr)
        sys.exit(1)
    except (OSError, json.JSONDecodeError) as e:
        print(f"{args.stage} failed: cannot read input: {e}", file=sys.stderr)
        sys.exit(1)

    print(json.dumps(result.to_dict(), indent=2))
    if not result.success:
        sys.exit(1)


if __name__ == "__main__":
    main()
