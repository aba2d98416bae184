"""Second-factor authentication methods for an Apple account."""

import json
import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

import bs4

from findmy_tools.state import LoginState

if TYPE_CHECKING:
    from findmy_tools.account import AppleAccount

logger = logging.getLogger(__name__)


def extract_phone_numbers(html: str) -> list[dict]:
    """Pull the trusted phone numbers out of the GSA auth page.

    Raises ValueError if the page does not embed the expected JSON blob.
    """
    soup = bs4.BeautifulSoup(html, features="html.parser")
    data_elem = soup.find("script", {"class": "boot_args"})
    if not data_elem:
        raise ValueError("Could not find HTML element containing phone numbers")

    try:
        data = json.loads(data_elem.text)
    except json.JSONDecodeError as e:
        raise ValueError(f"Malformed boot_args JSON: {e}") from e

    return (
        data.get("direct", {})
        .get("phoneNumberVerification", {})
        .get("trustedPhoneNumbers", [])
    )


class SecondFactorMethod(ABC):
    """A way of completing the second-factor challenge."""

    def __init__(self, account: "AppleAccount") -> None:
        self.account = account

    @abstractmethod
    async def request(self) -> None:
        """Ask Apple to send a code through this method."""
        raise NotImplementedError

    @abstractmethod
    async def submit(self, code: str) -> LoginState:
        """Submit the received code and finish logging in."""
        raise NotImplementedError


class SmsSecondFactor(SecondFactorMethod):
    """Code sent by SMS to one of the account's trusted phone numbers."""

    def __init__(
        self, account: "AppleAccount", phone_number_id: int, phone_number: str
    ) -> None:
        super().__init__(account)
        self.phone_number_id = phone_number_id
        # may be masked, only use it for display
        self.phone_number = phone_number

    async def request(self) -> None:
        await self.account.sms_2fa_request(self.phone_number_id)

    async def submit(self, code: str) -> LoginState:
        return await self.account.sms_2fa_submit(self.phone_number_id, code)

    def __repr__(self) -> str:
        return f"SmsSecondFactor({self.phone_number!r})"


class TrustedDeviceSecondFactor(SecondFactorMethod):
    """Code pushed to the account's trusted Apple devices."""

    async def request(self) -> None:
        await self.account.td_2fa_request()

    async def submit(self, code: str) -> LoginState:
        return await self.account.td_2fa_submit(code)

    def __repr__(self) -> str:
        return "TrustedDeviceSecondFactor()"
