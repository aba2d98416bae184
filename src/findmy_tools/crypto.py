"""
Cryptographic building blocks for the Find My offline-finding protocol.

- ANSI X9.63 KDF with SHA-256
- P-224 key diversification (d_i = d * u_i + v_i mod n)
- "s2k" password hashing for the GSA handshake
- AES-CBC decryption of the GSA session payload (spd)
"""

import hashlib
import hmac

from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

# P-224 curve order
P224_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFF16A2E0B8F03E13DD29455C5C2A3D

# Size of a P-224 private scalar / public x-coordinate
P224_KEY_SIZE = 28

# Shared-info labels used by the accessory key schedule
LABEL_UPDATE = b"update"
LABEL_DIVERSIFY = b"diversify"


# ---------------------------------------------------------------------------
# ANSI X9.63 KDF (SHA-256)
# ---------------------------------------------------------------------------


def kdf_x963(
    input_data: bytes, shared_info: bytes, output_len: int
) -> bytes:
    """ANSI X9.63 Key Derivation Function using SHA-256.

    output = SHA256(input || counter_be32 || shared_info), iterated.
    """
    result = b""
    counter = 1
    while len(result) < output_len:
        h = hashlib.sha256()
        h.update(input_data)
        h.update(counter.to_bytes(4, "big"))
        h.update(shared_info)
        result += h.digest()
        counter += 1
    return result[:output_len]


def bytes_to_int(data: bytes) -> int:
    """Interpret bytes as a big-endian unsigned integer."""
    return int.from_bytes(data, "big")


# ---------------------------------------------------------------------------
# Rolling key derivation
# ---------------------------------------------------------------------------


def next_secret(sk: bytes) -> bytes:
    """Advance a rotating shared secret by one step."""
    return kdf_x963(sk, LABEL_UPDATE, 32)


def derive_ps_key(private_key: bytes, sk: bytes) -> bytes:
    """Derive the primary or secondary private key for one time slot.

    :param private_key: master private key generated during pairing
    :param sk: rotating shared secret for this slot (SKN or SKS chain)
    :return: 28-byte big-endian private scalar
    """
    at = kdf_x963(sk, LABEL_DIVERSIFY, 72)
    u = bytes_to_int(at[:36]) % (P224_ORDER - 1) + 1
    v = bytes_to_int(at[36:72]) % (P224_ORDER - 1) + 1

    key = (u * bytes_to_int(private_key) + v) % P224_ORDER
    return key.to_bytes(P224_KEY_SIZE, "big")


# ---------------------------------------------------------------------------
# GSA helpers
# ---------------------------------------------------------------------------


def encrypt_password(password: str, salt: bytes, iterations: int) -> bytes:
    """Hash a password the "s2k" way: PBKDF2-HMAC-SHA256 over SHA256(password)."""
    p = hashlib.sha256(password.encode("utf-8")).digest()
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(p)


def hmac_sha256(key: bytes, data: bytes) -> bytes:
    return hmac.new(key, data, hashlib.sha256).digest()


def _spd_key_iv(session_key: bytes) -> tuple[bytes, bytes]:
    extra_data_key = hmac_sha256(session_key, b"extra data key:")
    extra_data_iv = hmac_sha256(session_key, b"extra data iv:")[:16]
    return extra_data_key, extra_data_iv


def decrypt_spd_aes_cbc(session_key: bytes, data: bytes) -> bytes:
    """Decrypt the spd blob of a GSA response using the SRP session key.

    Raises ValueError on bad block size or padding.
    """
    key, iv = _spd_key_iv(session_key)

    cipher = Cipher(algorithms.AES(key), modes.CBC(iv))
    decryptor = cipher.decryptor()
    data = decryptor.update(data) + decryptor.finalize()

    unpadder = padding.PKCS7(128).unpadder()
    return unpadder.update(data) + unpadder.finalize()


def encrypt_spd_aes_cbc(session_key: bytes, data: bytes) -> bytes:
    """Inverse of `decrypt_spd_aes_cbc`."""
    key, iv = _spd_key_iv(session_key)

    padder = padding.PKCS7(128).padder()
    data = padder.update(data) + padder.finalize()

    cipher = Cipher(algorithms.AES(key), modes.CBC(iv))
    encryptor = cipher.encryptor()
    return encryptor.update(data) + encryptor.finalize()
