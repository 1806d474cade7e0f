"""
Groth16 Proof Adapter: snarkjs in a child process.

Proving is CPU/memory heavy and can run for minutes. The prover runs
`snarkjs groth16 fullprove` as an asyncio subprocess so the event loop stays
free, reports coarse progress through an optional callback, and kills the
child if the awaiting task is cancelled (abandoned by the user).

Circuit layout under ZKP_DIR:
    circuits/<name>/build/<name>_js/<name>.wasm
    circuits/<name>/keys/<name>_0001.zkey
"""

import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Callable, Optional, Union

from .constants import CircuitName
from .errors import ProofError, ValidationError
from .models import Groth16Proof
from .validation import require_byte_list

logger = logging.getLogger("willchain.zkp")

ProgressFn = Callable[[str, int], None]

DEFAULT_PROOF_TIMEOUT_SECONDS = 30 * 60


def build_proof_input(ciphertext, key, iv) -> dict:
    """Circuit input {ciphertext, key, iv} as byte arrays."""
    return {
        "ciphertext": list(require_byte_list(list(ciphertext), "ciphertext")),
        "key": list(require_byte_list(list(key), "key")),
        "iv": list(require_byte_list(list(iv), "iv")),
    }


def format_proof_for_contract(proof: Groth16Proof) -> dict:
    """
    Groth16 verifier calldata. pi_a/pi_c drop the projective z coordinate;
    pi_b's inner pairs are reversed for the bn254 G2 encoding.
    """
    p = proof.proof
    try:
        return {
            "pA": [int(x) for x in p["pi_a"][:2]],
            "pB": [
                [int(p["pi_b"][0][1]), int(p["pi_b"][0][0])],
                [int(p["pi_b"][1][1]), int(p["pi_b"][1][0])],
            ],
            "pC": [int(x) for x in p["pi_c"][:2]],
            "pubSignals": [int(s) for s in proof.public_signals],
        }
    except (KeyError, IndexError, TypeError, ValueError) as e:
        raise ValidationError(f"Malformed Groth16 proof: {e}", field="proof") from e


class SnarkjsProver:
    """generate_proof(circuit, input) -> Groth16Proof."""

    def __init__(
        self,
        zkp_dir: Union[str, Path],
        snarkjs_bin: str = "snarkjs",
        timeout_seconds: float = DEFAULT_PROOF_TIMEOUT_SECONDS,
    ):
        self.zkp_dir = Path(zkp_dir)
        self.snarkjs_bin = snarkjs_bin
        self.timeout_seconds = timeout_seconds

    def circuit_files(self, circuit: Union[str, CircuitName]) -> tuple[Path, Path]:
        name = CircuitName(circuit).value
        base = self.zkp_dir / "circuits" / name
        wasm = base / "build" / f"{name}_js" / f"{name}.wasm"
        zkey = base / "keys" / f"{name}_0001.zkey"
        missing = [str(p) for p in (wasm, zkey) if not p.is_file()]
        if missing:
            raise ProofError(f"Circuit files not found: {', '.join(missing)}")
        return wasm, zkey

    async def generate_proof(
        self,
        circuit: Union[str, CircuitName],
        proof_input: dict,
        on_progress: Optional[ProgressFn] = None,
    ) -> Groth16Proof:
        def progress(status: str, pct: int) -> None:
            if on_progress:
                on_progress(status, pct)

        wasm, zkey = self.circuit_files(circuit)
        name = CircuitName(circuit).value
        progress("Preparing circuit input", 10)

        with tempfile.TemporaryDirectory(prefix=f"{name}-") as work:
            input_path = os.path.join(work, "input.json")
            proof_path = os.path.join(work, "proof.json")
            public_path = os.path.join(work, "public.json")
            with open(input_path, "w", encoding="utf-8") as f:
                json.dump(proof_input, f)

            try:
                proc = await asyncio.create_subprocess_exec(
                    self.snarkjs_bin, "groth16", "fullprove",
                    input_path, str(wasm), str(zkey), proof_path, public_path,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except FileNotFoundError as e:
                raise ProofError(f"snarkjs not found: {self.snarkjs_bin}", cause=e) from e

            progress("Generating proof", 50)
            logger.info(f"Proving {name} (this can take minutes)")
            try:
                _, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout_seconds)
            except asyncio.TimeoutError:
                proc.kill()
                await proc.wait()
                raise ProofError(f"{name} proof timed out after {self.timeout_seconds}s") from None
            except asyncio.CancelledError:
                proc.kill()
                await proc.wait()
                logger.warning(f"{name} proof generation abandoned")
                raise

            if proc.returncode != 0:
                detail = stderr.decode("utf-8", errors="replace").strip()[-500:]
                raise ProofError(f"{name} proof generation failed (exit {proc.returncode}): {detail}")

            try:
                with open(proof_path, encoding="utf-8") as f:
                    proof = json.load(f)
                with open(public_path, encoding="utf-8") as f:
                    public_signals = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                raise ProofError(f"{name} proof output unreadable: {e}", cause=e) from e

        progress("Proof generated", 100)
        logger.info(f"{name} proof generated: {len(public_signals)} public signal(s)")
        return Groth16Proof(proof=proof, public_signals=tuple(str(s) for s in public_signals))
