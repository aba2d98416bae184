"""
Rolling key schedule of a Find My accessory.

An accessory holds a master private key and two rotating shared secrets:
SKN rotates every 15 minutes (primary keys), SKS once a day at 4 AM local
time (secondary keys). Every slot's private key is the master key
diversified with the slot's secret.
"""

import base64
import datetime
import json
import logging
import plistlib
import secrets
from pathlib import Path

from findmy_tools.crypto import P224_KEY_SIZE, derive_ps_key, next_secret
from findmy_tools.keys import KeyPair, KeyType

logger = logging.getLogger(__name__)

# Primary key rotation interval
KEY_ROTATION_SECS = 900  # 15 minutes
KEY_ROTATION = datetime.timedelta(seconds=KEY_ROTATION_SECS)

# Primary slots per secondary (daily) key
SLOTS_PER_DAY = 96

# Local hour at which the secondary key rolls over
SECONDARY_ROLLOVER_HOUR = 4


class RollingSecretChain:
    """Forward-only hash chain of shared secrets with a memoized cursor.

    Requesting an index behind the cursor resets to the initial secret and
    replays forward; the KDF is never inverted. Not safe to share between
    threads without external locking.
    """

    def __init__(self, initial_secret: bytes) -> None:
        self._initial = bytes(initial_secret)
        self._current = self._initial
        self._index = 0

    @property
    def initial_secret(self) -> bytes:
        return self._initial

    def secret_at(self, index: int) -> bytes:
        if index < 0:
            raise ValueError(f"Secret index must be non-negative, got {index}")
        if index < self._index:
            # behind the cursor, replay from the start
            self._current = self._initial
            self._index = 0
        while self._index < index:
            self._current = next_secret(self._current)
            self._index += 1
        return self._current


class AccessoryKeyGenerator:
    """Key pairs of one chain (primary or secondary), by slot index."""

    def __init__(
        self, master_key: bytes, initial_secret: bytes, key_type: KeyType
    ) -> None:
        self._master_key = bytes(master_key)
        self._chain = RollingSecretChain(initial_secret)
        self._key_type = key_type

    @property
    def master_key(self) -> bytes:
        return self._master_key

    @property
    def initial_secret(self) -> bytes:
        return self._chain.initial_secret

    @property
    def key_type(self) -> KeyType:
        return self._key_type

    def key_at(self, index: int) -> KeyPair:
        sk = self._chain.secret_at(index)
        return KeyPair(derive_ps_key(self._master_key, sk), self._key_type)

    def __getitem__(self, index: int) -> KeyPair:
        return self.key_at(index)


def _to_aware(dt: datetime.datetime) -> datetime.datetime:
    # naive datetimes are taken as local time
    return dt if dt.tzinfo is not None else dt.astimezone()


class FindMyAccessory:
    """A findable Find My accessory using the official key rollover."""

    def __init__(
        self,
        master_key: bytes,
        skn: bytes,
        sks: bytes,
        paired_at: datetime.datetime,
        name: str | None = None,
        tz: datetime.tzinfo | None = None,
    ) -> None:
        """
        :param master_key: private master key (28 bytes)
        :param skn: initial shared secret of the primary chain
        :param sks: initial shared secret of the secondary chain
        :param paired_at: pairing date
        :param name: optional display name
        :param tz: timezone of the 4 AM secondary rollover, host-local if None
        """
        if len(master_key) != P224_KEY_SIZE:
            raise ValueError(
                f"Master key must be {P224_KEY_SIZE} bytes, got {len(master_key)}"
            )
        self._primary = AccessoryKeyGenerator(master_key, skn, KeyType.PRIMARY)
        self._secondary = AccessoryKeyGenerator(
            master_key, sks, KeyType.SECONDARY
        )
        self._paired_at = _to_aware(paired_at)
        self._tz = tz
        self.name = name

    @property
    def master_key(self) -> bytes:
        return self._primary.master_key

    @property
    def skn(self) -> bytes:
        return self._primary.initial_secret

    @property
    def sks(self) -> bytes:
        return self._secondary.initial_secret

    @property
    def paired_at(self) -> datetime.datetime:
        return self._paired_at

    def first_rollover(self) -> datetime.datetime:
        """First 4 AM (local) at or after the pairing date."""
        paired_local = self._paired_at.astimezone(self._tz)
        rollover = paired_local.replace(
            hour=SECONDARY_ROLLOVER_HOUR, minute=0, second=0, microsecond=0
        )
        if rollover < paired_local:
            rollover += datetime.timedelta(days=1)
        return rollover

    def secondary_offset(self) -> int:
        """Number of primary slots until the first secondary rollover."""
        delta = self.first_rollover() - self._paired_at
        return int(delta.total_seconds() // KEY_ROTATION_SECS) + 1

    def index_at(self, date: datetime.datetime) -> int:
        """Primary slot index at `date`."""
        date = _to_aware(date)
        if date < self._paired_at:
            raise ValueError(
                f"{date.isoformat()} is before pairing date"
                f" {self._paired_at.isoformat()}"
            )
        delta = date - self._paired_at
        return int(delta.total_seconds() // KEY_ROTATION_SECS) + 1

    def keys_at(self, date: datetime.datetime) -> set[KeyPair]:
        """All keys the accessory may be broadcasting at `date`."""
        return self.keys_at_index(self.index_at(date), self.secondary_offset())

    def keys_at_index(self, index: int, secondary_offset: int = 0) -> set[KeyPair]:
        """All keys the accessory may be broadcasting at slot `index`.

        The primary key is unambiguous. A rebooted accessory uses the next
        day's secondary key, and the first day after pairing is anchored at
        the first 4 AM rollover rather than at the pairing time, so up to
        two secondary keys are returned.
        """
        candidates = [
            self._primary[index],
            self._secondary[index // SLOTS_PER_DAY + 1],
        ]
        if index > secondary_offset:
            candidates.append(
                self._secondary[
                    (index - secondary_offset) // SLOTS_PER_DAY + 2
                ]
            )

        keys = set()
        for key in candidates:
            if not key.is_valid:
                logger.debug("Skipping invalid %s key at index %d", key.key_type.name, index)
                continue
            keys.add(key)
        return keys

    def keys_between(
        self,
        date_from: datetime.datetime,
        date_to: datetime.datetime | None = None,
    ) -> set[KeyPair]:
        """Union of the key sets of every 15-minute slot in [date_from, date_to)."""
        date_to = _to_aware(date_to) if date_to else datetime.datetime.now(
            tz=datetime.timezone.utc
        )
        date = max(_to_aware(date_from), self._paired_at)
        offset = self.secondary_offset()

        keys: set[KeyPair] = set()
        while date < date_to:
            keys |= self.keys_at_index(self.index_at(date), offset)
            date += KEY_ROTATION
        return keys

    async def fetch_reports(
        self,
        account,
        date_from: datetime.datetime,
        date_to: datetime.datetime | None = None,
    ) -> list:
        """Fetch and decrypt this accessory's reports, oldest first.

        `account` must be a logged-in `AppleAccount`.
        """
        keys = self.keys_between(date_from, date_to)
        logger.debug("Generated %d candidate keys", len(keys))
        reports = await account.fetch_reports(list(keys), date_from, date_to)
        return sorted(r for key_reports in reports.values() for r in key_reports)

    async def fetch_last_reports(self, account, hours: int = 7 * 24) -> list:
        """Fetch this accessory's reports for the last `hours` hours."""
        date_from = datetime.datetime.now(tz=datetime.timezone.utc) - (
            datetime.timedelta(hours=hours)
        )
        return await self.fetch_reports(account, date_from)

    # -----------------------------------------------------------------------
    # Import / export
    # -----------------------------------------------------------------------

    @classmethod
    def generate(
        cls, paired_at: datetime.datetime | None = None, name: str | None = None
    ) -> "FindMyAccessory":
        """Create an accessory with fresh random key material."""
        master = KeyPair.new(KeyType.UNKNOWN)
        paired_at = paired_at or datetime.datetime.now(tz=datetime.timezone.utc)
        return cls(
            master.private_key_bytes,
            secrets.token_bytes(32),
            secrets.token_bytes(32),
            paired_at,
            name=name,
        )

    def to_json(self, path: str | Path | None = None) -> dict:
        result = {
            "master_key": base64.b64encode(self.master_key).decode(),
            "skn": base64.b64encode(self.skn).decode(),
            "sks": base64.b64encode(self.sks).decode(),
            "paired_at": self._paired_at.isoformat(),
            "name": self.name,
        }
        if path is not None:
            Path(path).expanduser().write_text(json.dumps(result, indent=2))
        return result

    @classmethod
    def from_json(
        cls, data: str | Path | dict, tz: datetime.tzinfo | None = None
    ) -> "FindMyAccessory":
        """Load an accessory from a `to_json` export (dict or file path)."""
        if isinstance(data, (str, Path)):
            data = json.loads(Path(data).expanduser().read_text())
        try:
            return cls(
                base64.b64decode(data["master_key"]),
                base64.b64decode(data["skn"]),
                base64.b64decode(data["sks"]),
                datetime.datetime.fromisoformat(data["paired_at"]),
                name=data.get("name"),
                tz=tz,
            )
        except KeyError as e:
            raise ValueError(f"Missing accessory field: {e}") from None

    @classmethod
    def from_plist(
        cls,
        data: str | Path | bytes | dict,
        name: str | None = None,
        tz: datetime.tzinfo | None = None,
    ) -> "FindMyAccessory":
        """Load an accessory from a decrypted OwnedBeacons plist."""
        if isinstance(data, (str, Path)):
            data = Path(data).expanduser().read_bytes()
        if isinstance(data, bytes):
            data = plistlib.loads(data)

        try:
            master_key = data["privateKey"]["key"]["data"][-P224_KEY_SIZE:]
            skn = data["sharedSecret"]["key"]["data"]
            if "secondarySharedSecret" in data:
                # AirTag
                sks = data["secondarySharedSecret"]["key"]["data"]
            else:
                # iDevice
                sks = data["secureLocationsSharedSecret"]["key"]["data"]
            paired_at = data["pairingDate"]
        except KeyError as e:
            raise ValueError(f"Missing accessory field: {e}") from None

        # plistlib returns naive UTC datetimes
        if paired_at.tzinfo is None:
            paired_at = paired_at.replace(tzinfo=datetime.timezone.utc)

        return cls(master_key, skn, sks, paired_at, name=name, tz=tz)

    def __repr__(self) -> str:
        return (
            f"FindMyAccessory(name={self.name!r},"
            f" paired_at={self._paired_at.isoformat()})"
        )
