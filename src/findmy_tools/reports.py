"""
Location report decryption and aggregation.

Report payload layout (bytes):
    [0:4]    timestamp, seconds since 2001-01-01 (big-endian)
    [4]      confidence / unused
    [5:62]   ephemeral P-224 public key (uncompressed SEC1)
    [62:72]  AES-GCM ciphertext
    [72:]    AES-GCM tag
"""

import base64
import datetime
import functools
import hashlib
import logging
import struct
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from findmy_tools.errors import InvalidKeyError, ReportDecodeError
from findmy_tools.keys import PUBLIC_POINT_SIZE, KeyPair

if TYPE_CHECKING:
    from findmy_tools.account import AppleAccount

logger = logging.getLogger(__name__)

# Apple's reference epoch: 2001-01-01 00:00:00 UTC, 11323 days after Unix epoch
APPLE_EPOCH = 11323 * 86400

MIN_PAYLOAD_SIZE = 73

# Newer reports carry one extra byte at offset 4
EXTENDED_PAYLOAD_SIZE = 88


@functools.total_ordering
@dataclass(frozen=True, eq=False)
class LocationReport:
    """Decrypted location report of a KeyPair.

    Ordered and compared by (timestamp, hashed advertisement key).
    """

    key: KeyPair
    published_at: datetime.datetime
    timestamp: datetime.datetime
    description: str
    latitude: float
    longitude: float
    confidence: int
    status: int

    @property
    def key_id(self) -> str:
        return self.key.hashed_adv_key_b64

    def _sort_key(self) -> tuple[datetime.datetime, bytes]:
        return self.timestamp, self.key.hashed_adv_key_bytes

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, LocationReport):
            return NotImplemented
        return self._sort_key() == other._sort_key()

    def __lt__(self, other: "LocationReport") -> bool:
        if not isinstance(other, LocationReport):
            return NotImplemented
        return self._sort_key() < other._sort_key()

    def __hash__(self) -> int:
        return hash(self._sort_key())

    def to_dict(self) -> dict[str, Any]:
        return {
            "key_id": self.key_id,
            "lat": self.latitude,
            "lon": self.longitude,
            "confidence": self.confidence,
            "status": self.status,
            "timestamp": int(self.timestamp.timestamp()),
            "datetime": self.timestamp.isoformat(),
            "published_at": self.published_at.isoformat(),
            "description": self.description,
        }


def decode_report(
    payload: bytes,
    key: KeyPair,
    published_at: datetime.datetime | None = None,
    description: str = "",
) -> LocationReport:
    """Decrypt a single location report payload with its owning key.

    Raises ReportDecodeError if the payload is too short, the ephemeral key
    is not a curve point, or the GCM tag does not verify.
    """
    try:
        key_id = key.hashed_adv_key_b64
    except InvalidKeyError as e:
        raise ReportDecodeError(str(e)) from e

    if len(payload) < MIN_PAYLOAD_SIZE:
        raise ReportDecodeError(
            f"Payload too short: {len(payload)} bytes", key_id
        )
    if len(payload) > EXTENDED_PAYLOAD_SIZE:
        payload = payload[:4] + payload[5:]

    timestamp = int.from_bytes(payload[0:4], "big") + APPLE_EPOCH

    eph_key_bytes = payload[5 : 5 + PUBLIC_POINT_SIZE]
    try:
        shared_key = key.exchange(eph_key_bytes)
    except InvalidKeyError as e:
        raise ReportDecodeError(str(e), key_id) from e

    # Single-block X9.63 mix, counter fixed at 1
    sym_key = hashlib.sha256(
        shared_key + b"\x00\x00\x00\x01" + eph_key_bytes
    ).digest()
    decryption_key = sym_key[:16]
    iv = sym_key[16:]

    enc_data = payload[62:72]
    tag = payload[72:]

    try:
        cipher = Cipher(algorithms.AES(decryption_key), modes.GCM(iv, tag))
        decryptor = cipher.decryptor()
        plaintext = decryptor.update(enc_data) + decryptor.finalize()
    except InvalidTag:
        raise ReportDecodeError("Authentication tag mismatch", key_id) from None
    except ValueError as e:
        raise ReportDecodeError(f"Bad GCM parameters: {e}", key_id) from e

    lat, lon, confidence, status = struct.unpack(">iiBB", plaintext)

    return LocationReport(
        key=key,
        published_at=published_at
        or datetime.datetime.fromtimestamp(timestamp, tz=datetime.timezone.utc),
        timestamp=datetime.datetime.fromtimestamp(
            timestamp, tz=datetime.timezone.utc
        ),
        description=description,
        latitude=lat / 10000000.0,
        longitude=lon / 10000000.0,
        confidence=confidence,
        status=status,
    )


def decode_raw_reports(
    results: Iterable[dict], keys: Iterable[KeyPair]
) -> dict[KeyPair, list[LocationReport]]:
    """Decode raw report records against their keys.

    Records for unknown ids and records that fail to decode are dropped.
    Duplicates (same timestamp and key) are merged. Each key's list is
    sorted oldest first.
    """
    key_map = {key.hashed_adv_key_b64: key for key in keys}
    decoded: dict[KeyPair, dict[LocationReport, None]] = {
        key: {} for key in key_map.values()
    }

    for record in results:
        if not isinstance(record, dict):
            logger.warning("Dropping non-object report record: %r", record)
            continue

        record_id = record.get("id")
        key = key_map.get(record_id) if isinstance(record_id, str) else None
        if key is None:
            logger.debug("Dropping report for unrequested id %s", record_id)
            continue

        try:
            payload = base64.b64decode(record["payload"])
            published_at = datetime.datetime.fromtimestamp(
                record["datePublished"] / 1000, tz=datetime.timezone.utc
            )
        except (KeyError, TypeError, ValueError, OverflowError, OSError) as e:
            logger.warning("Dropping malformed report record for %s: %s", key, e)
            continue

        try:
            report = decode_report(
                payload, key, published_at, record.get("description", "")
            )
        except ReportDecodeError as e:
            logger.warning("Dropping undecodable report for %s: %s", key, e)
            continue

        decoded[key].setdefault(report, None)

    return {key: sorted(reports) for key, reports in decoded.items()}


def _to_epoch_ms(dt: datetime.datetime) -> int:
    return int(dt.timestamp() * 1000)


class LocationReportsFetcher:
    """Fetches raw reports through an account and decrypts them."""

    def __init__(self, account: "AppleAccount") -> None:
        self._account = account

    async def fetch_reports(
        self,
        date_from: datetime.datetime,
        date_to: datetime.datetime,
        keys: KeyPair | Sequence[KeyPair],
    ) -> list[LocationReport] | dict[KeyPair, list[LocationReport]]:
        """Fetch reports of `keys` between `date_from` and `date_to`.

        Returns a sorted list when given a single KeyPair, otherwise a
        mapping from each key to its own sorted list.
        """
        if isinstance(keys, KeyPair):
            # an invalid key is filtered out and has no entry
            reports = await self._fetch(date_from, date_to, [keys])
            return reports.get(keys, [])
        return await self._fetch(date_from, date_to, keys)

    async def _fetch(
        self,
        date_from: datetime.datetime,
        date_to: datetime.datetime,
        keys: Sequence[KeyPair],
    ) -> dict[KeyPair, list[LocationReport]]:
        valid_keys = []
        for key in keys:
            if key.is_valid:
                valid_keys.append(key)
            else:
                logger.warning("Ignoring invalid key %r", key)

        ids = [key.hashed_adv_key_b64 for key in valid_keys]
        if not ids:
            return {}
        data = await self._account.fetch_raw_reports(
            _to_epoch_ms(date_from), _to_epoch_ms(date_to), ids
        )
        results = data.get("results", [])
        logger.info("Received %d raw reports for %d keys", len(results), len(ids))

        return decode_raw_reports(results, valid_keys)
