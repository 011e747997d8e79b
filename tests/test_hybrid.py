import json

import pytest

from iotca.errors import DecryptionError, ValidationError
from iotca.hybrid import SealedPayload, open_sealed, seal, unwrap_key
from iotca.keys import ALGORITHMS, get_key_codec


@pytest.mark.parametrize("algorithm", ALGORITHMS)
def test_seal_and_open(algorithm):
    codec = get_key_codec(algorithm)
    pair = codec.generate_key_pair()
    reading = json.dumps({"sensor": "co2-1", "ppm": 612}).encode()
    sealed = seal(codec, pair.public_key, reading)
    assert open_sealed(codec, pair.private_key, sealed) == reading
    assert len(unwrap_key(codec, pair.private_key, sealed)) == 32


def test_wire_shape_is_hex():
    codec = get_key_codec("x25519")
    pair = codec.generate_key_pair()
    wire = seal(codec, pair.public_key, b"payload").to_wire()
    assert set(wire) == {"encryptedData", "iv", "encryptedSymmetricKey"}
    assert len(wire["iv"]) == 32
    for value in wire.values():
        bytes.fromhex(value)

    parsed = SealedPayload.from_wire(wire)
    assert open_sealed(codec, pair.private_key, parsed) == b"payload"


def test_from_wire_accepts_legacy_key_field():
    codec = get_key_codec("x25519")
    pair = codec.generate_key_pair()
    wire = seal(codec, pair.public_key, b"legacy").to_wire()
    wire["encryptedAESKey"] = wire.pop("encryptedSymmetricKey")
    assert open_sealed(codec, pair.private_key, SealedPayload.from_wire(wire)) == b"legacy"


@pytest.mark.parametrize("field,value", [
    ("encryptedData", "not-hex"),
    ("iv", "abcd"),
    ("encryptedSymmetricKey", ""),
    ("encryptedData", "abc"),
])
def test_from_wire_rejects_malformed_fields(field, value):
    wire = {"encryptedData": "00" * 16, "iv": "11" * 16, "encryptedSymmetricKey": "22" * 96}
    wire[field] = value
    with pytest.raises(ValidationError) as exc:
        SealedPayload.from_wire(wire)
    assert exc.value.field == f"record.{field}"


def test_open_with_wrong_recipient_fails():
    codec = get_key_codec("rsa")
    alice = codec.generate_key_pair()
    bob = codec.generate_key_pair()
    sealed = seal(codec, alice.public_key, b"for alice")
    with pytest.raises(DecryptionError):
        open_sealed(codec, bob.private_key, sealed)
