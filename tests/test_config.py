import pytest

from willchain.config import (
    NotarizeCidConfig,
    PermitSigningConfig,
    load_settings,
    load_stage_config,
    validate_environment,
)
from willchain.constants import PERMIT2, CipherAlgorithm
from willchain.errors import ConfigError

from conftest import NOTARY_KEY, TESTATOR_KEY, WITNESS1, WITNESS2

FACTORY = "0x" + "fa" * 20
CID = "b" + "a" * 59
SIG = "0x" + "11" * 65


def test_permit_signing_defaults_permit2_address():
    result = load_stage_config("permitSigning", {"TESTATOR_PRIVATE_KEY": TESTATOR_KEY})
    assert result.is_valid
    assert isinstance(result.data, PermitSigningConfig)
    assert result.data.permit2 == PERMIT2.ADDRESS
    assert TESTATOR_KEY not in repr(result.data)


def test_missing_variable_is_reported_by_name():
    result = load_stage_config("permitSigning", {})
    assert not result.is_valid
    assert result.errors == ["Environment variable TESTATOR_PRIVATE_KEY is not set"]


def test_bad_format_is_reported_by_name():
    result = load_stage_config("permitSigning", {"TESTATOR_PRIVATE_KEY": "0xnope", "PERMIT2": "0x12"})
    assert set(result.errors) == {
        "Invalid format for environment variable TESTATOR_PRIVATE_KEY",
        "Invalid format for environment variable PERMIT2",
    }


def test_every_problem_is_listed_at_once():
    result = load_stage_config("notarizeCid", {"CID": "QmOld", "WITNESS1_SIGNATURE": SIG})
    assert not result.is_valid
    assert "Environment variable WILL_FACTORY is not set" in result.errors
    assert "Environment variable NOTARY_PRIVATE_KEY is not set" in result.errors
    assert "Environment variable WITNESS2_SIGNATURE is not set" in result.errors
    assert "Invalid format for environment variable CID" in result.errors
    with pytest.raises(ConfigError) as exc:
        result.require()
    assert len(exc.value.errors) == len(result.errors)


def test_notarize_config_with_optional_witnesses():
    env = {
        "WILL_FACTORY": FACTORY,
        "NOTARY_PRIVATE_KEY": NOTARY_KEY,
        "CID": CID,
        "WITNESS1_SIGNATURE": SIG,
        "WITNESS2_SIGNATURE": SIG,
        "WITNESS1": WITNESS1,
        "WITNESS2": WITNESS2,
    }
    config = load_stage_config("notarizeCid", env).require()
    assert isinstance(config, NotarizeCidConfig)
    assert config.cid == CID
    assert config.witness1 == WITNESS1


def test_upload_cid_does_not_need_a_cid():
    env = {"WILL_FACTORY": FACTORY, "TESTATOR_PRIVATE_KEY": TESTATOR_KEY, "WITNESS1": WITNESS1, "WITNESS2": WITNESS2}
    assert load_stage_config("uploadCid", env).require().cid == ""


def test_decrypt_key_is_optional():
    assert load_stage_config("decrypt", {}).require().decryption_key is None
    assert not load_stage_config("decrypt", {"DECRYPTION_KEY": "abc"}).is_valid


def test_unknown_stage():
    assert load_stage_config("launchRocket", {}).errors == ["Unknown stage: launchRocket"]


def test_validate_environment_custom_validator():
    result = validate_environment(["A"], ["B"], {"A": str.isdigit}, {"A": "12", "B": "x"})
    assert result.is_valid and result.data == {"A": "12", "B": "x"}


# process settings

def test_settings_default_to_arbitrum_sepolia():
    settings = load_settings({})
    assert settings.network.chain_id == 421614
    assert settings.network.use_anvil is False
    assert settings.crypto_algorithm == CipherAlgorithm.AES_256_CTR
    assert settings.permit2_address == PERMIT2.ADDRESS
    assert settings.backend_port == 3001


def test_settings_anvil_and_overrides():
    settings = load_settings({
        "USE_ANVIL": "true",
        "CRYPTO_ALGORITHM": "chacha20-poly1305",
        "IPFS_GATEWAYS": "http://a:8080, https://b",
        "BACKEND_PORT": "4000",
    })
    assert settings.network.chain_id == 31337
    assert settings.network.rpc_url == "http://127.0.0.1:8545"
    assert settings.crypto_algorithm == CipherAlgorithm.CHACHA20_POLY1305
    assert settings.ipfs_gateways == ("http://a:8080", "https://b")
    assert settings.backend_port == 4000


def test_settings_collect_errors():
    with pytest.raises(ConfigError) as exc:
        load_settings({"CRYPTO_ALGORITHM": "rot13", "BACKEND_PORT": "http"})
    assert exc.value.errors == [
        "Invalid format for environment variable CRYPTO_ALGORITHM",
        "Invalid format for environment variable BACKEND_PORT",
    ]


def test_witness_signing_factory_is_optional():
    env = {"WITNESS1_PRIVATE_KEY": TESTATOR_KEY, "WITNESS2_PRIVATE_KEY": NOTARY_KEY, "CID": CID}
    assert load_stage_config("witnessSigning", env).require().will_factory == ""
    config = load_stage_config("witnessSigning", dict(env, WILL_FACTORY=FACTORY)).require()
    assert config.cid == CID and config.will_factory == FACTORY
    assert not load_stage_config("witnessSigning", dict(env, WILL_FACTORY="0x12")).is_valid


def test_settings_cors_origins():
    assert load_settings({}).cors_origins == ("*",)
    assert load_settings({"CORS_ORIGINS": "https://a, https://b"}).cors_origins == ("https://a", "https://b")
