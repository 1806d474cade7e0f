"""
Configuration: process settings and per-stage secrets.

Process-wide settings come from the environment (loaded from .env by the
entry points). Each lifecycle stage that touches keys or contracts gets
its own frozen config built from a named subset of variables; loading
returns a ValidationResult listing every problem at once instead of
failing on the first.
"""

import os
import re
from dataclasses import dataclass, field, fields
from typing import Any, Callable, Generic, Mapping, Optional, TypeVar

from .constants import (
    ANVIL_CHAIN_ID,
    ARBITRUM_SEPOLIA_CHAIN_ID,
    PERMIT2,
    CipherAlgorithm,
)
from .errors import ConfigError
from .ipfs import DEFAULT_GATEWAYS
from .validation import is_cidv1, is_ethereum_address, is_private_key, is_signature

T = TypeVar("T")

_SYMMETRIC_KEY_RE = re.compile(r"^(0x)?[0-9a-fA-F]{64}$")


# ============================================================
# VALIDATION RESULT
# ============================================================

@dataclass
class ValidationResult(Generic[T]):
    is_valid: bool
    data: Optional[T] = None
    errors: list[str] = field(default_factory=list)

    def require(self) -> T:
        if not self.is_valid:
            raise ConfigError(self.errors)
        return self.data


def _env(env: Optional[Mapping[str, str]]) -> Mapping[str, str]:
    return os.environ if env is None else env


def validate_environment(
    required: list[str],
    optional: Optional[list[str]] = None,
    validators: Optional[dict[str, Callable[[str], bool]]] = None,
    env: Optional[Mapping[str, str]] = None,
) -> ValidationResult[dict]:
    """Collect required/optional variables and run shape validators on what is present."""
    source = _env(env)
    errors: list[str] = []
    data: dict[str, str] = {}

    for name in required:
        value = source.get(name)
        if not value:
            errors.append(f"Environment variable {name} is not set")
            continue
        data[name] = value

    for name in optional or []:
        value = source.get(name)
        if value:
            data[name] = value

    for name, check in (validators or {}).items():
        value = data.get(name)
        if value and not check(value):
            errors.append(f"Invalid format for environment variable {name}")

    return ValidationResult(is_valid=not errors, data=data, errors=errors)


# ============================================================
# PER-STAGE CONFIGS
# ============================================================

@dataclass(frozen=True)
class PermitSigningConfig:
    testator_private_key: str = field(repr=False)
    permit2: str = PERMIT2.ADDRESS


@dataclass(frozen=True)
class PredictWillConfig:
    will_factory: str


@dataclass(frozen=True)
class UploadCidConfig:
    will_factory: str
    testator_private_key: str = field(repr=False)
    cid: str = ""
    witness1: str = ""
    witness2: str = ""


@dataclass(frozen=True)
class WitnessSigningConfig:
    witness1_private_key: str = field(repr=False)
    witness2_private_key: str = field(repr=False)
    cid: str = ""
    will_factory: str = ""


@dataclass(frozen=True)
class NotarizeCidConfig:
    will_factory: str
    notary_private_key: str = field(repr=False)
    cid: str = ""
    witness1_signature: str = ""
    witness2_signature: str = ""
    witness1: Optional[str] = None
    witness2: Optional[str] = None


@dataclass(frozen=True)
class ProbateCidConfig:
    oracle_private_key: str = field(repr=False)
    will_factory: str = ""
    cid: str = ""


@dataclass(frozen=True)
class IpfsDownloadConfig:
    cid: str


@dataclass(frozen=True)
class CreateWillConfig:
    will_factory: str
    executor_private_key: str = field(repr=False)
    cid: str = ""


@dataclass(frozen=True)
class DecryptConfig:
    decryption_key: Optional[str] = field(default=None, repr=False)


def _validator_for(name: str) -> Callable[[str], bool]:
    if name.endswith("_PRIVATE_KEY"):
        return is_private_key
    if name.endswith("_SIGNATURE"):
        return is_signature
    if name == "CID":
        return is_cidv1
    if name == "DECRYPTION_KEY":
        return lambda v: bool(_SYMMETRIC_KEY_RE.match(v))
    return is_ethereum_address


# stage -> (config type, required, optional)
STAGE_PRESETS: dict[str, tuple[type, list[str], list[str]]] = {
    "permitSigning": (PermitSigningConfig, ["TESTATOR_PRIVATE_KEY"], ["PERMIT2"]),
    "predictWill": (PredictWillConfig, ["WILL_FACTORY"], []),
    "uploadCid": (
        UploadCidConfig,
        ["WILL_FACTORY", "TESTATOR_PRIVATE_KEY", "WITNESS1", "WITNESS2"],
        ["CID"],
    ),
    "witnessSigning": (
        WitnessSigningConfig, ["WITNESS1_PRIVATE_KEY", "WITNESS2_PRIVATE_KEY", "CID"], ["WILL_FACTORY"],
    ),
    "notarizeCid": (
        NotarizeCidConfig,
        ["WILL_FACTORY", "NOTARY_PRIVATE_KEY", "CID", "WITNESS1_SIGNATURE", "WITNESS2_SIGNATURE"],
        ["WITNESS1", "WITNESS2"],
    ),
    "probateCid": (ProbateCidConfig, ["ORACLE_PRIVATE_KEY", "WILL_FACTORY", "CID"], []),
    "ipfsDownload": (IpfsDownloadConfig, ["CID"], []),
    "createWill": (CreateWillConfig, ["WILL_FACTORY", "EXECUTOR_PRIVATE_KEY", "CID"], []),
    "decrypt": (DecryptConfig, [], ["DECRYPTION_KEY"]),
}


def load_stage_config(stage: str, env: Optional[Mapping[str, str]] = None) -> ValidationResult:
    try:
        config_type, required, optional = STAGE_PRESETS[stage]
    except KeyError:
        return ValidationResult(is_valid=False, errors=[f"Unknown stage: {stage}"])

    result = validate_environment(
        required,
        optional,
        {name: _validator_for(name) for name in required + optional},
        env,
    )
    if not result.is_valid:
        return ValidationResult(is_valid=False, data=None, errors=result.errors)

    known = {f.name for f in fields(config_type)}
    kwargs = {k.lower(): v for k, v in result.data.items() if k.lower() in known}
    return ValidationResult(is_valid=True, data=config_type(**kwargs))


# ============================================================
# PROCESS SETTINGS
# ============================================================

@dataclass(frozen=True)
class NetworkConfig:
    name: str
    rpc_url: Optional[str]
    chain_id: int
    use_anvil: bool


@dataclass(frozen=True)
class Settings:
    network: NetworkConfig
    will_dir: str = "will"
    zkp_dir: str = "zkp"
    snarkjs_bin: str = "snarkjs"
    ipfs_api_url: Optional[str] = "http://127.0.0.1:5001"
    ipfs_gateways: tuple[str, ...] = DEFAULT_GATEWAYS
    ipfs_timeout_seconds: float = 15.0
    crypto_algorithm: CipherAlgorithm = CipherAlgorithm.AES_256_CTR
    permit2_address: str = PERMIT2.ADDRESS
    permit2_deadline_seconds: int = PERMIT2.DEFAULT_DURATION_SECONDS
    backend_port: int = 3001
    cors_origins: tuple[str, ...] = ("*",)
    log_level: str = "INFO"


def _as_bool(value: Any) -> bool:
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def network_config(env: Optional[Mapping[str, str]] = None) -> NetworkConfig:
    source = _env(env)
    use_anvil = _as_bool(source.get("USE_ANVIL", "false"))
    if use_anvil:
        name, rpc, chain_id = "Anvil Local", source.get("ANVIL_RPC_URL", "http://127.0.0.1:8545"), ANVIL_CHAIN_ID
    else:
        name, rpc, chain_id = "Arbitrum Sepolia", source.get("ARB_SEPOLIA_RPC_URL"), ARBITRUM_SEPOLIA_CHAIN_ID
    if source.get("CHAIN_ID"):
        chain_id = int(source["CHAIN_ID"])
    return NetworkConfig(name=name, rpc_url=rpc, chain_id=chain_id, use_anvil=use_anvil)


def _split(value: Optional[str], default: tuple[str, ...]) -> tuple[str, ...]:
    if not value:
        return default
    return tuple(v.strip() for v in value.split(",") if v.strip())


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    source = _env(env)
    errors = []

    try:
        algorithm = CipherAlgorithm(source.get("CRYPTO_ALGORITHM", CipherAlgorithm.AES_256_CTR.value))
    except ValueError:
        errors.append("Invalid format for environment variable CRYPTO_ALGORITHM")
        algorithm = CipherAlgorithm.AES_256_CTR

    permit2 = source.get("PERMIT2") or PERMIT2.ADDRESS
    if not is_ethereum_address(permit2):
        errors.append("Invalid format for environment variable PERMIT2")

    numbers = {}
    for name, default, cast in (
        ("IPFS_TIMEOUT_SECONDS", 15.0, float),
        ("PERMIT2_DEADLINE_SECONDS", PERMIT2.DEFAULT_DURATION_SECONDS, int),
        ("BACKEND_PORT", 3001, int),
        ("CHAIN_ID", None, int),
    ):
        raw = source.get(name)
        try:
            numbers[name] = cast(raw) if raw else default
        except ValueError:
            errors.append(f"Invalid format for environment variable {name}")
            numbers[name] = default

    if errors:
        raise ConfigError(errors)

    return Settings(
        network=network_config(source),
        will_dir=source.get("WILL_DIR", "will"),
        zkp_dir=source.get("ZKP_DIR", "zkp"),
        snarkjs_bin=source.get("SNARKJS_BIN", "snarkjs"),
        ipfs_api_url=source.get("IPFS_API_URL", "http://127.0.0.1:5001") or None,
        ipfs_gateways=_split(source.get("IPFS_GATEWAYS"), DEFAULT_GATEWAYS),
        ipfs_timeout_seconds=numbers["IPFS_TIMEOUT_SECONDS"],
        crypto_algorithm=algorithm,
        permit2_address=permit2,
        permit2_deadline_seconds=numbers["PERMIT2_DEADLINE_SECONDS"],
        backend_port=numbers["BACKEND_PORT"],
        cors_origins=_split(source.get("CORS_ORIGINS"), ("*",)),
        log_level=source.get("LOG_LEVEL", "INFO").upper(),
    )
