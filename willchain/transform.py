"""
Encrypted will -> TypedJsonObject, the shape the factory's JSON/CID
verifier reconstructs and hashes on-chain. Key order matters: it must
match the order the document was uploaded in.
"""

from .constants import JsonValueType
from .models import EncryptedWill


def _entry(value: str = "", number_array=None, value_type: JsonValueType = JsonValueType.STRING) -> dict:
    return {
        "value": value,
        "numberArray": [str(n) for n in (number_array or [])],
        "valueType": int(value_type),
    }


def encrypted_will_to_typed_json(encrypted: EncryptedWill) -> dict:
    doc = encrypted.to_dict()
    return {
        "keys": ["algorithm", "iv", "authTag", "ciphertext", "timestamp"],
        "values": [
            _entry(doc["algorithm"]),
            _entry(number_array=doc["iv"], value_type=JsonValueType.NUMBER_ARRAY),
            _entry(number_array=doc["authTag"], value_type=JsonValueType.NUMBER_ARRAY),
            _entry(number_array=doc["ciphertext"], value_type=JsonValueType.NUMBER_ARRAY),
            _entry(str(doc["timestamp"]), value_type=JsonValueType.NUMBER),
        ],
    }


def typed_json_to_contract_arg(typed: dict) -> tuple:
    """(keys, [(value, numberArray, valueType)]) as web3 expects a tuple arg."""
    return (
        list(typed["keys"]),
        [
            (v["value"], [int(n) for n in v["numberArray"]], int(v["valueType"]))
            for v in typed["values"]
        ],
    )
