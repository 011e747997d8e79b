import pytest

from iotca import cipher
from iotca.errors import DecryptionError, InvalidKeyError


def test_round_trip():
    key = cipher.generate_key()
    ct, iv = cipher.encrypt(key, b'{"co2": 415.2, "unit": "ppm"}')
    assert cipher.decrypt(key, ct, iv) == b'{"co2": 415.2, "unit": "ppm"}'


def test_same_plaintext_encrypts_differently():
    key = cipher.generate_key()
    ct1, iv1 = cipher.encrypt(key, b"same reading")
    ct2, iv2 = cipher.encrypt(key, b"same reading")
    assert iv1 != iv2
    assert ct1 != ct2


def test_iv_and_padding_sizes():
    key = cipher.generate_key()
    ct, iv = cipher.encrypt(key, b"")
    assert len(key) == cipher.KEY_SIZE
    assert len(iv) == cipher.IV_SIZE
    assert len(ct) == 16
    assert cipher.decrypt(key, ct, iv) == b""

    ct, _ = cipher.encrypt(key, b"x" * 16)
    assert len(ct) == 32


def test_encrypt_rejects_bad_key():
    with pytest.raises(InvalidKeyError):
        cipher.encrypt(b"short", b"data")


@pytest.mark.parametrize("mutate", [
    lambda key, ct, iv: (key[:16], ct, iv),
    lambda key, ct, iv: (key, ct, iv[:8]),
    lambda key, ct, iv: (key, ct[:-1], iv),
    lambda key, ct, iv: (key, b"", iv),
])
def test_decrypt_rejects_malformed_input(mutate):
    key = cipher.generate_key()
    ct, iv = cipher.encrypt(key, b"payload")
    with pytest.raises(DecryptionError):
        cipher.decrypt(*mutate(key, ct, iv))


def test_decrypt_rejects_bad_padding():
    key = cipher.generate_key()
    ct, iv = cipher.encrypt(key, b"0123456789abcdef")
    # Last block is pure padding (0x10 * 16); flipping a byte of the previous
    # block's ciphertext corrupts it deterministically.
    tampered = bytearray(ct)
    tampered[-17] ^= 0x01
    with pytest.raises(DecryptionError):
        cipher.decrypt(key, bytes(tampered), iv)
