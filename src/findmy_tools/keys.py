"""P-224 key pairs as used by Find My accessories."""

import base64
import binascii
import hashlib
from enum import Enum

from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from findmy_tools.crypto import P224_KEY_SIZE
from findmy_tools.errors import InvalidKeyError

CURVE = ec.SECP224R1()

# Uncompressed SEC1 point: 0x04 || X || Y
PUBLIC_POINT_SIZE = 1 + 2 * P224_KEY_SIZE


class KeyType(Enum):
    UNKNOWN = 0
    PRIMARY = 1
    SECONDARY = 2


class KeyPair:
    """Private-public key pair for a trackable Find My accessory.

    Construction never fails on an out-of-range scalar: the key is then
    marked invalid (`is_valid` is False) and refuses every operation that
    needs the public key. Equality and hashing only look at the
    advertisement key, never at the private scalar.
    """

    def __init__(
        self, private_key: bytes, key_type: KeyType = KeyType.UNKNOWN
    ) -> None:
        self._private_key_bytes = bytes(private_key)
        self._key_type = key_type

        self._priv: ec.EllipticCurvePrivateKey | None = None
        self._adv_key: bytes = b""

        if 0 < len(private_key) <= P224_KEY_SIZE:
            try:
                self._priv = ec.derive_private_key(
                    int.from_bytes(private_key, "big"), CURVE
                )
            except ValueError:
                self._priv = None

        if self._priv is not None:
            x = self._priv.public_key().public_numbers().x
            self._adv_key = x.to_bytes(P224_KEY_SIZE, "big")

    @classmethod
    def from_b64(
        cls, key_b64: str, key_type: KeyType = KeyType.UNKNOWN
    ) -> "KeyPair":
        """Create a key pair from a base64-encoded private key.

        Raises InvalidKeyError if the string is not valid base64.
        """
        try:
            key = base64.b64decode(key_b64, validate=True)
        except binascii.Error as e:
            raise InvalidKeyError(f"Malformed base64 private key: {e}") from e
        return cls(key, key_type)

    @classmethod
    def new(cls, key_type: KeyType = KeyType.UNKNOWN) -> "KeyPair":
        """Generate a random key pair."""
        priv = ec.generate_private_key(CURVE)
        d = priv.private_numbers().private_value
        return cls(d.to_bytes(P224_KEY_SIZE, "big"), key_type)

    @property
    def is_valid(self) -> bool:
        return self._priv is not None

    @property
    def key_type(self) -> KeyType:
        return self._key_type

    @property
    def private_key_bytes(self) -> bytes:
        return self._private_key_bytes

    @property
    def private_key_b64(self) -> str:
        return base64.b64encode(self._private_key_bytes).decode()

    def _require_valid(self) -> ec.EllipticCurvePrivateKey:
        if self._priv is None:
            raise InvalidKeyError("Key pair does not hold a valid P-224 key")
        return self._priv

    @property
    def private_key(self) -> ec.EllipticCurvePrivateKey:
        return self._require_valid()

    @property
    def adv_key_bytes(self) -> bytes:
        """The public x-coordinate broadcast by the accessory."""
        self._require_valid()
        return self._adv_key

    @property
    def adv_key_b64(self) -> str:
        return base64.b64encode(self.adv_key_bytes).decode()

    @property
    def hashed_adv_key_bytes(self) -> bytes:
        """SHA-256 of the advertisement key, used as the report lookup id."""
        return hashlib.sha256(self.adv_key_bytes).digest()

    @property
    def hashed_adv_key_b64(self) -> str:
        return base64.b64encode(self.hashed_adv_key_bytes).decode()

    def public_point(self) -> bytes:
        """Public key as an uncompressed SEC1 point (57 bytes)."""
        return (
            self._require_valid()
            .public_key()
            .public_bytes(Encoding.X962, PublicFormat.UncompressedPoint)
        )

    def exchange(
        self, other: "KeyPair | bytes | ec.EllipticCurvePublicKey"
    ) -> bytes:
        """ECDH shared secret with another public key.

        `other` may be a KeyPair, a cryptography public key or an encoded
        SEC1 point. Raises InvalidKeyError on invalid input.
        """
        priv = self._require_valid()

        if isinstance(other, KeyPair):
            peer = other.private_key.public_key()
        elif isinstance(other, (bytes, bytearray)):
            try:
                peer = ec.EllipticCurvePublicKey.from_encoded_point(
                    CURVE, bytes(other)
                )
            except ValueError as e:
                raise InvalidKeyError(f"Invalid public point: {e}") from e
        else:
            peer = other

        return priv.exchange(ec.ECDH(), peer)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, KeyPair):
            return NotImplemented
        if not (self.is_valid and other.is_valid):
            return self is other
        return self._adv_key == other._adv_key

    def __hash__(self) -> int:
        if not self.is_valid:
            return id(self)
        return hash(self._adv_key)

    def __repr__(self) -> str:
        if not self.is_valid:
            return f"KeyPair(<invalid>, type={self._key_type.name})"
        return (
            f'KeyPair(public_key="{self.adv_key_b64}",'
            f" type={self._key_type.name})"
        )
