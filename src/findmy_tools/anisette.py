"""
Anisette device-attestation headers.

Apple's auth endpoints want a set of `X-Apple-I-MD*` headers proving the
request comes from a real device. We rely on an anisette-v3-server to
produce the one-time password and machine id:
    https://github.com/Dadoum/anisette-v3-server
"""

import base64
import datetime
import locale
from abc import ABC, abstractmethod

from findmy_tools.errors import UnhandledProtocolError
from findmy_tools.http import HttpSession

DEFAULT_ANISETTE_URL = "http://localhost:6969"


class BaseAnisetteProvider(ABC):
    """Supplies Anisette headers for a (user id, device id, serial) triple."""

    @property
    def client(self) -> str:
        """Client string: <MODEL> <OS;VERSION;BUILD> <AUTHKIT (APP)>."""
        return (
            "<MacBookPro18,3> <Mac OS X;13.4.1;22F8>"
            " <com.apple.AOSKit/282 (com.apple.dt.Xcode/3594.4.19)>"
        )

    @property
    def timestamp(self) -> str:
        return (
            datetime.datetime.now(tz=datetime.timezone.utc)
            .replace(microsecond=0)
            .isoformat()
            .replace("+00:00", "Z")
        )

    @property
    def timezone(self) -> str:
        return str(datetime.datetime.now().astimezone().tzinfo)

    @property
    def locale(self) -> str:
        return locale.getlocale()[0] or "en_US"

    @property
    def router(self) -> str:
        # 17106176 or 50660608, either is accepted
        return "17106176"

    @abstractmethod
    async def get_otp_machine(self) -> tuple[str, str]:
        """Return the (one-time password, machine id) pair."""
        raise NotImplementedError

    async def get_headers(
        self,
        user_id: str,
        device_id: str,
        serial: str = "0",
        with_client_info: bool = False,
    ) -> dict[str, str]:
        """Complete dictionary of Anisette headers."""
        otp, machine = await self.get_otp_machine()

        headers = {
            # Current time
            "X-Apple-I-Client-Time": self.timestamp,
            "X-Apple-I-TimeZone": self.timezone,
            # Locale
            "loc": self.locale,
            "X-Apple-Locale": self.locale,
            # 'One Time Password'
            "X-Apple-I-MD": otp,
            # 'Local User ID'
            "X-Apple-I-MD-LU": base64.b64encode(user_id.encode()).decode(),
            # 'Machine ID'
            "X-Apple-I-MD-M": machine,
            # 'Routing Info'
            "X-Apple-I-MD-RINFO": self.router,
            # 'Device Unique Identifier'
            "X-Mme-Device-Id": device_id.upper(),
            # 'Device Serial Number'
            "X-Apple-I-SRL-NO": serial,
        }

        if with_client_info:
            headers["X-Mme-Client-Info"] = self.client
            headers["X-Apple-App-Info"] = "com.apple.gs.xcode.auth"
            headers["X-Xcode-Version"] = "11.2 (11B41)"

        return headers

    async def get_cpd(
        self, user_id: str, device_id: str, serial: str = "0"
    ) -> dict:
        """Client provided data for GSA requests."""
        cpd = {
            "bootstrap": True,
            "icscrec": True,
            "pbe": False,
            "prkgen": True,
            "svct": "iCloud",
        }
        cpd.update(await self.get_headers(user_id, device_id, serial))
        return cpd

    async def close(self) -> None:
        pass


class RemoteAnisetteProvider(BaseAnisetteProvider):
    """Fetches Anisette data from an anisette-v3-server on every request."""

    def __init__(
        self, url: str = DEFAULT_ANISETTE_URL, http: HttpSession | None = None
    ) -> None:
        self.url = url
        self._http = http or HttpSession(timeout=5)

    async def get_otp_machine(self) -> tuple[str, str]:
        r = await self._http.get(self.url)
        if not r.ok:
            raise UnhandledProtocolError(
                f"Anisette server returned {r.status_code}", r.status_code
            )
        h = r.json()
        try:
            return h["X-Apple-I-MD"], h["X-Apple-I-MD-M"]
        except KeyError as e:
            raise UnhandledProtocolError(
                f"Anisette server response is missing {e}"
            ) from None

    async def close(self) -> None:
        await self._http.close()
