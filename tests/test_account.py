"""Unit tests for the Apple account login state machine and report fetch."""

import asyncio
import base64
import datetime
import json
import plistlib

import pytest

from findmy_tools.account import AppleAccount
from findmy_tools.errors import (
    InvalidAccountDataError,
    InvalidCredentialsError,
    InvalidStateError,
    MissingCredentialsError,
    UnauthorizedError,
    UnhandledProtocolError,
)
from findmy_tools.keys import KeyPair
from findmy_tools.state import LoginState
from findmy_tools.twofactor import SmsSecondFactor, TrustedDeviceSecondFactor

from conftest import FakeAnisette

KEY_B64 = "U4kzq8+TUZ57FhlkoRYF/l2NWLmHNRgVn1/23A=="
KEY2_B64 = "OGdC9DRvZHAd/W4t4hXfbU8cYY3ssIJEvFHm2A=="

APPLE_TS = 760000000


def run(coro):
    return asyncio.run(coro)


def test_login_without_2fa(account, apple, fake_srp):
    """A login without second factor goes straight to LOGGED_IN."""
    state = run(account.login("jane@example.com", "hunter2"))

    assert state == LoginState.LOGGED_IN
    assert account.login_state == LoginState.LOGGED_IN
    assert account.account_name == "jane@example.com"
    assert account.first_name == "Jane"
    assert account.last_name == "Doe"

    gsa = apple.calls_to(AppleAccount.ENDPOINT_GSA)
    assert len(gsa) == 2
    # the SRP password is the s2k-derived hash, not the clear password
    assert isinstance(fake_srp.last.p, bytes)
    assert fake_srp.last.p != b"hunter2"

    (mobileme,) = apple.calls_to(AppleAccount.ENDPOINT_LOGIN_MOBILEME)
    assert mobileme["auth"] == ("jane@example.com", "PET")
    assert mobileme["headers"]["X-Apple-ADSID"] == "ADSID"
    assert mobileme["headers"]["X-Apple-I-MD"] == "OTP"


def test_login_sends_anisette_cpd(account, apple):
    run(account.login("jane@example.com", "hunter2"))

    init = plistlib.loads(apple.calls_to(AppleAccount.ENDPOINT_GSA)[0]["data"])
    req = init["Request"]
    assert req["o"] == "init"
    assert req["u"] == "jane@example.com"
    assert req["ps"] == ["s2k", "s2k_fo"]
    assert req["cpd"]["X-Apple-I-MD-M"] == "MACHINE"
    assert req["cpd"]["X-Mme-Device-Id"] == "DEVICE-ID"


def test_trusted_device_2fa(account, apple):
    """Trusted-device 2FA: REQUIRE_2FA, then LOGGED_IN after the code."""
    apple.au = ["trustedDeviceSecondaryAuth", None]

    assert run(account.login("jane@example.com", "hunter2")) == LoginState.REQUIRE_2FA
    assert account.login_state == LoginState.REQUIRE_2FA

    methods = run(account.get_2fa_methods())
    assert isinstance(methods[0], TrustedDeviceSecondFactor)
    assert isinstance(methods[1], SmsSecondFactor)
    assert methods[1].phone_number_id == 1

    run(methods[0].request())
    state = run(methods[0].submit("123456"))

    assert state == LoginState.LOGGED_IN
    (submit,) = apple.calls_to(AppleAccount.ENDPOINT_2FA_TD_SUBMIT)
    assert submit["method"] == "GET"
    assert submit["headers"]["security-code"] == "123456"
    token = base64.b64decode(submit["headers"]["X-Apple-Identity-Token"])
    assert token == b"ADSID:IDMS"
    # init + complete, twice
    assert len(apple.calls_to(AppleAccount.ENDPOINT_GSA)) == 4


def test_sms_2fa(account, apple):
    apple.au = ["secondaryAuth", None]
    run(account.login("jane@example.com", "hunter2"))

    methods = run(account.get_2fa_methods())
    assert len(methods) == 1
    sms = methods[0]
    assert isinstance(sms, SmsSecondFactor)
    assert sms.phone_number.endswith("42")

    run(sms.request())
    assert run(sms.submit("000111")) == LoginState.LOGGED_IN

    (req,) = apple.calls_to(AppleAccount.ENDPOINT_2FA_SMS_REQUEST)
    assert req["method"] == "PUT"
    assert req["json"] == {"phoneNumber": {"id": 1}, "mode": "sms"}
    (sub,) = apple.calls_to(AppleAccount.ENDPOINT_2FA_SMS_SUBMIT)
    assert sub["json"]["securityCode"] == {"code": "000111"}


def test_2fa_methods_without_phone_page(account, apple):
    """A page without phone numbers still offers the trusted device."""
    apple.au = ["trustedDeviceSecondaryAuth"]
    apple.AUTH_PAGE = "<html></html>"
    run(account.login("jane@example.com", "hunter2"))

    methods = run(account.get_2fa_methods())
    assert len(methods) == 1
    assert isinstance(methods[0], TrustedDeviceSecondFactor)


def test_login_with_real_srp(srp_account, srp_apple):
    """The s2k-hashed password completes a real SRP-6a handshake."""
    state = run(srp_account.login("jane@example.com", "correct horse"))

    assert state == LoginState.LOGGED_IN
    assert srp_apple.verifier.authenticated()
    assert srp_account.first_name == "Jane"


def test_real_srp_wrong_password(srp_account):
    with pytest.raises(InvalidCredentialsError):
        run(srp_account.login("jane@example.com", "battery staple"))
    assert srp_account.login_state == LoginState.LOGGED_OUT


def test_invalid_credentials(account, apple):
    """A rejected password leaves the account logged out."""
    apple.complete_ec = -20101

    with pytest.raises(InvalidCredentialsError):
        run(account.login("jane@example.com", "wrong"))
    assert account.login_state == LoginState.LOGGED_OUT


def test_unknown_user(account, apple):
    apple.init_ec = -20209
    with pytest.raises(InvalidCredentialsError):
        run(account.login("nobody@example.com", "pw"))
    assert account.login_state == LoginState.LOGGED_OUT


def test_unsupported_protocol(account, apple):
    apple.sp = "s2k_fo"
    with pytest.raises(UnhandledProtocolError):
        run(account.login("jane@example.com", "hunter2"))
    assert account.login_state == LoginState.LOGGED_OUT


def test_bad_server_proof(account, apple):
    apple.m2 = b"forged"
    with pytest.raises(UnhandledProtocolError):
        run(account.login("jane@example.com", "hunter2"))
    assert account.login_state == LoginState.LOGGED_OUT


def test_gsa_http_error(account, apple):
    apple.status_override[AppleAccount.ENDPOINT_GSA] = 503
    with pytest.raises(UnhandledProtocolError) as exc:
        run(account.login("jane@example.com", "hunter2"))
    assert exc.value.status_code == 503


def test_mobileme_failure_can_be_resumed(account, apple):
    """A failed mobileme step keeps AUTHENTICATED and can be completed later."""
    apple.status_override[AppleAccount.ENDPOINT_LOGIN_MOBILEME] = 500
    with pytest.raises(UnhandledProtocolError):
        run(account.login("jane@example.com", "hunter2"))
    assert account.login_state == LoginState.AUTHENTICATED

    del apple.status_override[AppleAccount.ENDPOINT_LOGIN_MOBILEME]
    assert run(account.complete_session()) == LoginState.LOGGED_IN


def test_operations_in_wrong_state(account):
    """Operations outside their state raise InvalidStateError."""
    with pytest.raises(InvalidStateError):
        run(account.td_2fa_submit("123456"))
    with pytest.raises(InvalidStateError):
        run(account.get_2fa_methods())
    with pytest.raises(InvalidStateError):
        run(account.fetch_raw_reports(0, 1, []))
    with pytest.raises(InvalidStateError):
        account.account_name

    run(account.login("jane@example.com", "hunter2"))
    with pytest.raises(InvalidStateError):
        run(account.login("jane@example.com", "hunter2"))


def test_concurrent_login_rejected(account, apple):
    """A second login while one is in flight fails without side effects."""

    async def scenario():
        apple.gate = asyncio.Event()
        first = asyncio.create_task(account.login("jane@example.com", "hunter2"))
        while not apple.calls:
            await asyncio.sleep(0)

        with pytest.raises(InvalidStateError):
            await account.login("jane@example.com", "hunter2")

        apple.gate.set()
        return await first

    assert run(scenario()) == LoginState.LOGGED_IN
    # only the first login reached the server
    assert len(apple.calls_to(AppleAccount.ENDPOINT_GSA)) == 2


def test_cancelled_login(account, apple):
    """Cancelling a login leaves the state untouched."""

    async def scenario():
        apple.gate = asyncio.Event()
        task = asyncio.create_task(account.login("jane@example.com", "hunter2"))
        while not apple.calls:
            await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    run(scenario())
    assert account.login_state == LoginState.LOGGED_OUT
    assert account._busy is False

    apple.gate = None
    assert run(account.login("jane@example.com", "hunter2")) == LoginState.LOGGED_IN


def test_missing_credentials(account, apple):
    with pytest.raises(MissingCredentialsError):
        run(account.login("", ""))
    assert apple.calls == []


def test_logout(account):
    run(account.login("jane@example.com", "hunter2"))

    assert account.logout() == LoginState.LOGGED_OUT
    assert account.login_state == LoginState.LOGGED_OUT
    with pytest.raises(InvalidStateError):
        account.first_name


def test_json_round_trip(account, apple, tmp_path):
    """An exported session can be restored without logging in again."""
    run(account.login("jane@example.com", "hunter2"))
    path = tmp_path / "sub" / "account.json"
    exported = account.to_json(path)

    assert json.loads(path.read_text()) == exported
    assert exported["login_state"]["state"] == LoginState.LOGGED_IN.value

    restored = AppleAccount.from_file(path, FakeAnisette(), http=apple)
    assert restored.login_state == LoginState.LOGGED_IN
    assert restored.user_id == "user-id"
    assert restored.device_id == "device-id"
    assert restored.account_name == "jane@example.com"
    assert restored.to_json() == exported


def test_from_json_rejects_bad_data(account, tmp_path):
    with pytest.raises(InvalidAccountDataError):
        account.from_json({"ids": {"uid": "x"}})

    bad_state = account.to_json()
    bad_state["login_state"] = {"state": 3, "data": {}}
    with pytest.raises(InvalidAccountDataError):
        account.from_json(bad_state)

    path = tmp_path / "broken.json"
    path.write_text("{not json")
    with pytest.raises(InvalidAccountDataError):
        account.from_json(path)

    assert account.login_state == LoginState.LOGGED_OUT


def _raw(key, payload):
    return {
        "id": key.hashed_adv_key_b64,
        "datePublished": 1738000000000,
        "description": "found",
        "payload": base64.b64encode(payload).decode(),
    }


def test_fetch_reports(account, apple, make_payload):
    """Reports are requested with the search-party token and decrypted."""
    key = KeyPair.from_b64(KEY_B64)
    key2 = KeyPair.from_b64(KEY2_B64)
    apple.results = [
        _raw(key, make_payload(key, APPLE_TS + 60, 2.0, 2.0)),
        _raw(key, make_payload(key, APPLE_TS, 1.0, 1.0)),
        _raw(key2, make_payload(key2, APPLE_TS, 3.0, 3.0)),
    ]
    run(account.login("jane@example.com", "hunter2"))

    start = datetime.datetime(2025, 1, 1, tzinfo=datetime.timezone.utc)
    end = start + datetime.timedelta(days=1)

    reports = run(account.fetch_reports(key, start, end))
    assert [r.latitude for r in reports] == pytest.approx([1.0, 2.0])

    by_key = run(account.fetch_reports([key, key2], start, end))
    assert set(by_key) == {key, key2}
    assert len(by_key[key2]) == 1

    fetch = apple.calls_to(AppleAccount.ENDPOINT_REPORTS_FETCH)
    assert fetch[0]["auth"] == ("123456", "SPT")
    (search,) = fetch[0]["json"]["search"]
    assert search["ids"] == [key.hashed_adv_key_b64]
    assert search["startDate"] == int(start.timestamp() * 1000)
    assert search["endDate"] == int(end.timestamp() * 1000)
    assert fetch[1]["json"]["search"][0]["ids"] == [
        key.hashed_adv_key_b64,
        key2.hashed_adv_key_b64,
    ]


def test_fetch_skips_invalid_keys(account, apple):
    run(account.login("jane@example.com", "hunter2"))
    invalid = KeyPair(b"\x00" * 28)
    valid = KeyPair.from_b64(KEY_B64)

    reports = run(account.fetch_last_reports([invalid, valid], hours=1))

    assert list(reports) == [valid]
    fetch = apple.calls_to(AppleAccount.ENDPOINT_REPORTS_FETCH)
    assert fetch[0]["json"]["search"][0]["ids"] == [valid.hashed_adv_key_b64]


def test_fetch_unauthorized(account, apple):
    run(account.login("jane@example.com", "hunter2"))
    apple.status_override[AppleAccount.ENDPOINT_REPORTS_FETCH] = 401

    with pytest.raises(UnauthorizedError) as exc:
        run(account.fetch_last_reports(KeyPair.from_b64(KEY_B64)))
    assert exc.value.status_code == 401
    # no automatic re-authentication
    assert account.login_state == LoginState.LOGGED_IN


def test_fetch_server_error(account, apple):
    run(account.login("jane@example.com", "hunter2"))
    apple.status_override[AppleAccount.ENDPOINT_REPORTS_FETCH] = 500

    with pytest.raises(UnhandledProtocolError) as exc:
        run(account.fetch_last_reports(KeyPair.from_b64(KEY_B64)))
    assert not isinstance(exc.value, UnauthorizedError)
