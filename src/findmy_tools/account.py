"""
Apple account login state machine.

    LOGGED_OUT --login--> REQUIRE_2FA | AUTHENTICATED
    REQUIRE_2FA --2FA submit--> AUTHENTICATED
    AUTHENTICATED --mobileme login--> LOGGED_IN

Authentication is the GSA ("Grand Slam") SRP-6a handshake; the session is
completed by exchanging the resulting token for a search-party token, which
is then used to fetch location reports.
"""

import base64
import datetime
import functools
import json
import logging
import plistlib
import uuid
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any

import srp._pysrp as srp

from findmy_tools import crypto
from findmy_tools.anisette import BaseAnisetteProvider
from findmy_tools.errors import (
    InvalidAccountDataError,
    InvalidCredentialsError,
    InvalidStateError,
    MissingCredentialsError,
    UnauthorizedError,
    UnhandledProtocolError,
)
from findmy_tools.http import HttpSession, decode_plist
from findmy_tools.keys import KeyPair
from findmy_tools.reports import LocationReport, LocationReportsFetcher
from findmy_tools.state import (
    AuthenticatedData,
    LoggedInData,
    LoggedOutData,
    LoginState,
    RequireTwoFactorData,
    StateData,
    state_data_from_dict,
    state_data_to_dict,
)
from findmy_tools.twofactor import (
    SecondFactorMethod,
    SmsSecondFactor,
    TrustedDeviceSecondFactor,
    extract_phone_numbers,
)

logger = logging.getLogger(__name__)

DEFAULT_ACCOUNT_PATH = "~/.config/findmy-tools/account.json"

# Apple's SRP variant: RFC 5054 padding, username left out of x
srp.rfc5054_enable()
srp.no_username_in_x()

SECOND_FACTOR_AUTH = ("secondaryAuth", "trustedDeviceSecondaryAuth")


def require_login_state(*states: LoginState):
    """Enforce a login state as precondition for a method."""

    def decorator(func):
        @functools.wraps(func)
        def wrapper(acc: "AppleAccount", *args, **kwargs):
            if acc.login_state not in states:
                raise InvalidStateError(
                    f"Invalid login state! Currently: {acc.login_state}"
                    f" but should be one of: {', '.join(map(str, states))}"
                )
            return func(acc, *args, **kwargs)

        return wrapper

    return decorator


def exclusive(func):
    """Refuse to start a login step while another one is in flight."""

    @functools.wraps(func)
    async def wrapper(acc: "AppleAccount", *args, **kwargs):
        if acc._busy:
            raise InvalidStateError("Another login operation is in progress")
        acc._busy = True
        try:
            return await func(acc, *args, **kwargs)
        finally:
            acc._busy = False

    return wrapper


class AppleAccount:
    """An Apple account able to fetch Find My location reports.

    All network operations are coroutines. A step that fails or is
    cancelled leaves the login state untouched.
    """

    # auth endpoints
    ENDPOINT_GSA = "https://gsa.apple.com/grandslam/GsService2"
    ENDPOINT_LOGIN_MOBILEME = (
        "https://setup.icloud.com/setup/iosbuddy/loginDelegates"
    )

    # 2fa auth endpoints
    ENDPOINT_2FA_METHODS = "https://gsa.apple.com/auth"
    ENDPOINT_2FA_SMS_REQUEST = "https://gsa.apple.com/auth/verify/phone"
    ENDPOINT_2FA_SMS_SUBMIT = (
        "https://gsa.apple.com/auth/verify/phone/securitycode"
    )
    ENDPOINT_2FA_TD_REQUEST = "https://gsa.apple.com/auth/verify/trusteddevice"
    ENDPOINT_2FA_TD_SUBMIT = "https://gsa.apple.com/grandslam/GsService2/validate"

    # reports endpoint
    ENDPOINT_REPORTS_FETCH = "https://gateway.icloud.com/acsnservice/fetch"

    def __init__(
        self,
        anisette: BaseAnisetteProvider,
        user_id: str | None = None,
        device_id: str | None = None,
        http: HttpSession | None = None,
    ) -> None:
        self._anisette = anisette
        self._uid = user_id or str(uuid.uuid4())
        self._devid = device_id or str(uuid.uuid4())

        self._username: str | None = None
        self._password: str | None = None

        self._login_state = LoginState.LOGGED_OUT
        self._state_data: StateData = LoggedOutData()

        self._account_info: dict[str, Any] | None = None

        self._http = http or HttpSession()
        self._reports = LocationReportsFetcher(self)
        self._busy = False

    # -----------------------------------------------------------------------
    # State
    # -----------------------------------------------------------------------

    def _set_login_state(self, data: StateData) -> LoginState:
        state = data.state
        # clear account info if downgrading state (e.g. LOGGED_IN -> LOGGED_OUT)
        if state < self._login_state:
            logger.debug("Clearing cached account information")
            self._account_info = None

        logger.info(
            "Transitioning login state: %s -> %s", self._login_state, state
        )
        self._login_state = state
        self._state_data = data
        return state

    def _data(self, cls):
        # state data is always consistent with the login state
        if not isinstance(self._state_data, cls):
            raise InvalidStateError(
                f"No {cls.__name__} in state {self._login_state}"
            )
        return self._state_data

    @property
    def login_state(self) -> LoginState:
        return self._login_state

    @property
    def user_id(self) -> str:
        return self._uid

    @property
    def device_id(self) -> str:
        return self._devid

    def _info(self, field: str) -> str | None:
        if self._login_state < LoginState.REQUIRE_2FA:
            raise InvalidStateError(
                f"Account info is not available while {self._login_state}"
            )
        return self._account_info.get(field) if self._account_info else None

    @property
    def account_name(self) -> str | None:
        """Name of the account, usually an e-mail address."""
        return self._info("account_name")

    @property
    def first_name(self) -> str | None:
        return self._info("first_name")

    @property
    def last_name(self) -> str | None:
        return self._info("last_name")

    # -----------------------------------------------------------------------
    # Persistence
    # -----------------------------------------------------------------------

    def to_json(self, path: str | Path | None = None) -> dict:
        """Export the account state so that logging in can be skipped later.

        The export contains the password in clear text; store it safely.
        """
        result = {
            "ids": {"uid": self._uid, "devid": self._devid},
            "account": {
                "username": self._username,
                "password": self._password,
                "info": self._account_info,
            },
            "login_state": {
                "state": self._login_state.value,
                "data": state_data_to_dict(self._state_data),
            },
        }
        if path is not None:
            p = Path(path).expanduser()
            p.parent.mkdir(parents=True, exist_ok=True)
            p.write_text(json.dumps(result, indent=2))
        return result

    def from_json(self, data: str | Path | Mapping) -> None:
        """Restore a previous `to_json` export (mapping or file path)."""
        if self._busy:
            raise InvalidStateError("Cannot restore while a login is in progress")
        if isinstance(data, (str, Path)):
            try:
                data = json.loads(Path(data).expanduser().read_text())
            except json.JSONDecodeError as e:
                raise InvalidAccountDataError(
                    f"Account file is not valid JSON: {e}"
                ) from e

        try:
            uid = data["ids"]["uid"]
            devid = data["ids"]["devid"]
            username = data["account"]["username"]
            password = data["account"]["password"]
            info = data["account"]["info"]
            state = LoginState(data["login_state"]["state"])
            state_data = state_data_from_dict(state, data["login_state"]["data"])
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidAccountDataError(
                f"Failed to restore account data: {e!r}"
            ) from None

        self._uid = uid
        self._devid = devid
        self._username = username
        self._password = password
        self._set_login_state(state_data)
        self._account_info = info

    @classmethod
    def from_file(
        cls,
        path: str | Path,
        anisette: BaseAnisetteProvider,
        http: HttpSession | None = None,
    ) -> "AppleAccount":
        acc = cls(anisette, http=http)
        acc.from_json(path)
        return acc

    async def close(self) -> None:
        await self._anisette.close()
        await self._http.close()

    # -----------------------------------------------------------------------
    # Login flow
    # -----------------------------------------------------------------------

    @require_login_state(LoginState.LOGGED_OUT)
    @exclusive
    async def login(self, username: str, password: str) -> LoginState:
        """Log in with a username and password.

        Returns REQUIRE_2FA if a second factor is needed, LOGGED_IN otherwise.
        """
        # LOGGED_OUT -> (REQUIRE_2FA or AUTHENTICATED)
        new_state = await self._gsa_authenticate(username, password)
        if new_state == LoginState.REQUIRE_2FA:
            return new_state

        # AUTHENTICATED -> LOGGED_IN
        return await self._login_mobileme()

    @require_login_state(LoginState.AUTHENTICATED)
    @exclusive
    async def complete_session(self) -> LoginState:
        """Finish an interrupted login: AUTHENTICATED -> LOGGED_IN."""
        return await self._login_mobileme()

    def logout(self) -> LoginState:
        """Drop all session data. Stored credentials are kept."""
        if self._busy:
            raise InvalidStateError("Cannot log out while a login is in progress")
        return self._set_login_state(LoggedOutData())

    @require_login_state(LoginState.REQUIRE_2FA)
    async def get_2fa_methods(self) -> list[SecondFactorMethod]:
        """Second-factor methods available for this login attempt."""
        methods: list[SecondFactorMethod] = []

        if self._account_info and self._account_info.get("trusted_device_2fa"):
            methods.append(TrustedDeviceSecondFactor(self))

        auth_page = await self._2fa_request("GET", self.ENDPOINT_2FA_METHODS)
        try:
            phone_numbers = extract_phone_numbers(auth_page)
        except ValueError:
            logger.warning("Unable to extract phone numbers from login page")
            return methods

        methods.extend(
            SmsSecondFactor(
                self,
                number.get("id") or -1,
                number.get("numberWithDialCode") or "-",
            )
            for number in phone_numbers
        )
        return methods

    @require_login_state(LoginState.REQUIRE_2FA)
    async def sms_2fa_request(self, phone_number_id: int) -> None:
        """Ask for a code to be sent to a phone number id."""
        data = {"phoneNumber": {"id": phone_number_id}, "mode": "sms"}
        await self._2fa_request("PUT", self.ENDPOINT_2FA_SMS_REQUEST, data)

    @require_login_state(LoginState.REQUIRE_2FA)
    @exclusive
    async def sms_2fa_submit(self, phone_number_id: int, code: str) -> LoginState:
        """Submit an SMS code and finish logging in."""
        data = {
            "phoneNumber": {"id": phone_number_id},
            "securityCode": {"code": str(code)},
            "mode": "sms",
        }
        await self._2fa_request("POST", self.ENDPOINT_2FA_SMS_SUBMIT, data)
        return await self._complete_2fa()

    @require_login_state(LoginState.REQUIRE_2FA)
    async def td_2fa_request(self) -> None:
        """Push a code to the trusted devices."""
        headers = {
            "Content-Type": "text/x-xml-plist",
            "Accept": "text/x-xml-plist",
        }
        await self._2fa_request(
            "GET", self.ENDPOINT_2FA_TD_REQUEST, headers=headers
        )

    @require_login_state(LoginState.REQUIRE_2FA)
    @exclusive
    async def td_2fa_submit(self, code: str) -> LoginState:
        """Submit a trusted-device code and finish logging in."""
        headers = {
            "security-code": str(code),
            "Content-Type": "text/x-xml-plist",
            "Accept": "text/x-xml-plist",
        }
        await self._2fa_request(
            "GET", self.ENDPOINT_2FA_TD_SUBMIT, headers=headers
        )
        return await self._complete_2fa()

    async def _complete_2fa(self) -> LoginState:
        # REQUIRE_2FA -> AUTHENTICATED
        new_state = await self._gsa_authenticate()
        if new_state != LoginState.AUTHENTICATED:
            raise UnhandledProtocolError(
                f"Unexpected state after submitting 2FA: {new_state}"
            )

        # AUTHENTICATED -> LOGGED_IN
        return await self._login_mobileme()

    async def _gsa_authenticate(
        self, username: str | None = None, password: str | None = None
    ) -> LoginState:
        # use stored values for re-authentication
        username = username or self._username
        password = password or self._password
        if not username or not password:
            raise MissingCredentialsError("No username or password specified")

        logger.info("Attempting authentication for user %s", username)

        usr = srp.User(username, b"", hash_alg=srp.SHA256, ng_type=srp.NG_2048)
        _, a2k = usr.start_authentication()
        r = await self._gsa_request(
            {"A2k": a2k, "u": username, "ps": ["s2k", "s2k_fo"], "o": "init"}
        )

        logger.debug("Verifying response to auth request")
        self._check_gsa_status(r, "Email verification failed")

        sp = r.get("sp")
        if sp != "s2k":
            raise UnhandledProtocolError(
                f"This implementation only supports s2k. Server returned {sp}"
            )
        try:
            salt, iterations, server_b, cookie = r["s"], r["i"], r["B"], r["c"]
        except KeyError as e:
            raise UnhandledProtocolError(f"GSA init response is missing {e}") from None

        logger.debug("Attempting password challenge")

        # the SRP password is the s2k hash, which needs the salt first
        usr.p = crypto.encrypt_password(password, salt, iterations)
        m1 = usr.process_challenge(salt, server_b)
        if m1 is None:
            raise UnhandledProtocolError("Failed to process SRP challenge")

        r = await self._gsa_request(
            {"c": cookie, "M1": m1, "u": username, "o": "complete"}
        )

        logger.debug("Verifying password challenge response")
        self._check_gsa_status(r, "Password authentication failed")

        usr.verify_session(r.get("M2"))
        if not usr.authenticated():
            raise UnhandledProtocolError("Failed to verify server session proof")

        logger.debug("Decrypting SPD data in response")
        session_key = usr.get_session_key()
        if not session_key or "spd" not in r:
            raise UnhandledProtocolError("GSA complete response has no session data")
        try:
            spd = decode_plist(crypto.decrypt_spd_aes_cbc(session_key, r["spd"]))
        except (ValueError, plistlib.InvalidFileException) as e:
            raise UnhandledProtocolError(f"Could not decrypt spd: {e}") from e

        info = {
            "account_name": spd.get("acname"),
            "first_name": spd.get("fn"),
            "last_name": spd.get("ln"),
            "trusted_device_2fa": False,
        }

        au = r["Status"].get("au")
        try:
            if au in SECOND_FACTOR_AUTH:
                logger.info("Detected 2FA requirement: %s", au)
                info["trusted_device_2fa"] = au == "trustedDeviceSecondaryAuth"
                data = RequireTwoFactorData(
                    adsid=spd["adsid"], idms_token=spd["GsIdmsToken"]
                )
            elif au is None:
                logger.info("GSA authentication successful")
                idms_pet = (
                    spd.get("t", {})
                    .get("com.apple.gs.idms.pet", {})
                    .get("token", "")
                )
                data = AuthenticatedData(idms_pet=idms_pet, adsid=spd["adsid"])
            else:
                raise UnhandledProtocolError(f"Unknown auth value: {au}")
        except KeyError as e:
            raise UnhandledProtocolError(f"spd is missing {e}") from None

        self._username = username
        self._password = password
        new_state = self._set_login_state(data)
        self._account_info = info
        return new_state

    @staticmethod
    def _check_gsa_status(r: dict, what: str) -> None:
        status = r.get("Status")
        if not isinstance(status, dict):
            raise UnhandledProtocolError("GSA response has no Status")
        if status.get("ec") != 0:
            raise InvalidCredentialsError(f"{what}: {status.get('em')}")

    @require_login_state(LoginState.AUTHENTICATED)
    async def _login_mobileme(self) -> LoginState:
        logger.info("Logging into com.apple.mobileme")
        state = self._data(AuthenticatedData)
        data = plistlib.dumps(
            {
                "apple-id": self._username,
                "delegates": {"com.apple.mobileme": {}},
                "password": state.idms_pet,
                "client-id": self._uid,
            }
        )

        headers = {
            "X-Apple-ADSID": state.adsid,
            "User-Agent": "com.apple.iCloudHelper/282 CFNetwork/1408.0.4 Darwin/22.5.0",
            "X-Mme-Client-Info": "<MacBookPro18,3> <Mac OS X;13.4.1;22F8>"
            " <com.apple.AOSKit/282 (com.apple.accountsd/113)>",
        }
        headers.update(await self.get_anisette_headers())

        resp = await self._http.post(
            self.ENDPOINT_LOGIN_MOBILEME,
            auth=(self._username or "", state.idms_pet),
            data=data,
            headers=headers,
        )
        if resp.status_code != 200:
            raise UnhandledProtocolError(
                f"com.apple.mobileme login returned {resp.status_code}",
                resp.status_code,
            )
        try:
            body = resp.plist()
        except plistlib.InvalidFileException as e:
            raise UnhandledProtocolError(f"Bad mobileme response: {e}") from e

        mobileme_data = body.get("delegates", {}).get("com.apple.mobileme", {})
        status = mobileme_data.get("status", body.get("status"))
        if status != 0:
            status_message = mobileme_data.get("status-message") or body.get(
                "status-message"
            )
            raise UnhandledProtocolError(
                f"com.apple.mobileme login failed with status {status}: {status_message}"
            )

        try:
            service_data = mobileme_data["service-data"]
            logged_in = LoggedInData(
                dsid=str(body["dsid"]),
                search_party_token=service_data["tokens"]["searchPartyToken"],
                mobileme_data=service_data,
            )
        except KeyError as e:
            raise UnhandledProtocolError(f"mobileme response is missing {e}") from None

        return self._set_login_state(logged_in)

    async def _2fa_request(
        self,
        method: str,
        url: str,
        data: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> str:
        state = self._data(RequireTwoFactorData)
        identity_token = base64.b64encode(
            (state.adsid + ":" + state.idms_token).encode()
        ).decode()

        headers = dict(headers or {})
        headers.update(
            {
                "User-Agent": "Xcode",
                "Accept-Language": "en-us",
                "X-Apple-Identity-Token": identity_token,
            }
        )
        headers.update(await self.get_anisette_headers(with_client_info=True))

        r = await self._http.request(method, url, json=data, headers=headers)
        if r.status_code != 200:
            raise UnhandledProtocolError(
                f"2FA request failed: {r.status_code}", r.status_code
            )
        return r.text()

    async def _gsa_request(self, parameters: dict[str, Any]) -> dict[str, Any]:
        body = {
            "Header": {"Version": "1.0.1"},
            "Request": {
                "cpd": await self._anisette.get_cpd(self._uid, self._devid),
                **parameters,
            },
        }
        headers = {
            "Content-Type": "text/x-xml-plist",
            "Accept": "*/*",
            "User-Agent": "akd/1.0 CFNetwork/978.0.7 Darwin/18.7.0",
            "X-MMe-Client-Info": self._anisette.client,
        }

        resp = await self._http.post(
            self.ENDPOINT_GSA, headers=headers, data=plistlib.dumps(body)
        )
        if resp.status_code != 200:
            raise UnhandledProtocolError(
                f"Error response for GSA request: {resp.status_code}",
                resp.status_code,
            )
        try:
            return resp.plist()["Response"]
        except (KeyError, plistlib.InvalidFileException) as e:
            raise UnhandledProtocolError(f"Malformed GSA response: {e!r}") from e

    async def get_anisette_headers(
        self, with_client_info: bool = False, serial: str = "0"
    ) -> dict[str, str]:
        return await self._anisette.get_headers(
            self._uid, self._devid, serial, with_client_info
        )

    # -----------------------------------------------------------------------
    # Reports
    # -----------------------------------------------------------------------

    @require_login_state(LoginState.LOGGED_IN)
    async def fetch_raw_reports(
        self, start: int, end: int, ids: list[str]
    ) -> dict[str, Any]:
        """Request raw reports for hashed key ids between two epoch-millis."""
        state = self._data(LoggedInData)
        data = {"search": [{"startDate": start, "endDate": end, "ids": ids}]}

        r = await self._http.post(
            self.ENDPOINT_REPORTS_FETCH,
            auth=(state.dsid, state.search_party_token),
            headers=await self.get_anisette_headers(),
            json=data,
        )
        if r.status_code == 401:
            raise UnauthorizedError(
                "Not authorized to fetch reports, log in again", 401
            )
        if r.status_code != 200:
            raise UnhandledProtocolError(
                f"Failed to fetch reports: {r.status_code}", r.status_code
            )
        try:
            resp = r.json()
        except json.JSONDecodeError as e:
            raise UnhandledProtocolError(f"Report response is not JSON: {e}") from e
        if str(resp.get("statusCode", "200")) != "200":
            raise UnhandledProtocolError(
                f"Failed to fetch reports: {resp.get('statusCode')}"
            )
        return resp

    @require_login_state(LoginState.LOGGED_IN)
    async def fetch_reports(
        self,
        keys: KeyPair | Sequence[KeyPair],
        date_from: datetime.datetime,
        date_to: datetime.datetime | None = None,
    ) -> list[LocationReport] | dict[KeyPair, list[LocationReport]]:
        """Fetch decrypted location reports of `keys`.

        Returns a sorted list for a single KeyPair, a mapping otherwise.
        """
        date_to = date_to or datetime.datetime.now(tz=datetime.timezone.utc)
        return await self._reports.fetch_reports(date_from, date_to, keys)

    async def fetch_last_reports(
        self, keys: KeyPair | Sequence[KeyPair], hours: int = 7 * 24
    ) -> list[LocationReport] | dict[KeyPair, list[LocationReport]]:
        """Fetch reports of `keys` for the last `hours` hours."""
        end = datetime.datetime.now(tz=datetime.timezone.utc)
        start = end - datetime.timedelta(hours=hours)
        return await self.fetch_reports(keys, start, end)
