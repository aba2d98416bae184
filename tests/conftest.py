"""Shared fixtures: in-memory fakes for Apple's servers and report payloads."""

import asyncio
import hashlib
import json
import plistlib

import pytest
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat
import srp._pysrp as srp_module

from findmy_tools import account as account_module
from findmy_tools.account import AppleAccount
from findmy_tools.anisette import BaseAnisetteProvider
from findmy_tools.crypto import encrypt_password, encrypt_spd_aes_cbc
from findmy_tools.http import HttpResponse

SESSION_KEY = bytes(range(32))

PASSWORD_SALT = b"\x01" * 16


class FakeAnisette(BaseAnisetteProvider):
    async def get_otp_machine(self):
        return "OTP", "MACHINE"


class FakeSrpUser:
    """Stands in for srp.User; the SRP math itself is the library's job."""

    last = None

    def __init__(self, username, password, hash_alg=None, ng_type=None):
        self.username = username
        self.p = password
        self._verified = False
        FakeSrpUser.last = self

    def start_authentication(self):
        return self.username, b"A" * 256

    def process_challenge(self, salt, server_b):
        return b"M1"

    def verify_session(self, m2):
        self._verified = m2 == b"M2"

    def authenticated(self):
        return self._verified

    def get_session_key(self):
        return SESSION_KEY


class FakeApple:
    """Routes requests to handlers emulating GSA, mobileme and report fetch."""

    AUTH_PAGE = (
        "<html><body><script class=\"boot_args\" type=\"application/json\">"
        + json.dumps(
            {
                "direct": {
                    "phoneNumberVerification": {
                        "trustedPhoneNumbers": [
                            {"id": 1, "numberWithDialCode": "+1 (•••) •••-••42"}
                        ]
                    }
                }
            }
        )
        + "</script></body></html>"
    )

    def __init__(self):
        self.calls = []
        # "au" status values returned by successive complete steps
        self.au = [None]
        self.init_ec = 0
        self.complete_ec = 0
        self.sp = "s2k"
        self.m2 = b"M2"
        self.status_override = {}
        self.results = []
        self.gate: asyncio.Event | None = None
        self.spd = {
            "acname": "jane@example.com",
            "fn": "Jane",
            "ln": "Doe",
            "adsid": "ADSID",
            "GsIdmsToken": "IDMS",
            "t": {"com.apple.gs.idms.pet": {"token": "PET"}},
        }

    def calls_to(self, url):
        return [c for c in self.calls if c["url"] == url]

    async def request(self, method, url, *, headers=None, data=None, json=None, auth=None):
        self.calls.append(
            {
                "method": method,
                "url": url,
                "headers": headers or {},
                "data": data,
                "json": json,
                "auth": auth,
            }
        )
        if self.gate is not None:
            await self.gate.wait()
        if url in self.status_override:
            return HttpResponse(self.status_override[url], b"")

        if url == AppleAccount.ENDPOINT_GSA:
            return self._gsa(plistlib.loads(data)["Request"])
        if url == AppleAccount.ENDPOINT_LOGIN_MOBILEME:
            return self._plist(
                {
                    "dsid": 123456,
                    "delegates": {
                        "com.apple.mobileme": {
                            "status": 0,
                            "service-data": {
                                "tokens": {"searchPartyToken": "SPT"}
                            },
                        }
                    },
                }
            )
        if url == AppleAccount.ENDPOINT_2FA_METHODS:
            return HttpResponse(200, self.AUTH_PAGE.encode())
        if url == AppleAccount.ENDPOINT_REPORTS_FETCH:
            body = {"statusCode": "200", "results": self.results}
            return HttpResponse(200, _json_dumps(body))
        return HttpResponse(200, b"")

    async def get(self, url, **kwargs):
        return await self.request("GET", url, **kwargs)

    async def post(self, url, **kwargs):
        return await self.request("POST", url, **kwargs)

    async def close(self):
        pass

    @staticmethod
    def _plist(obj):
        return HttpResponse(200, plistlib.dumps(obj))

    def _gsa(self, req):
        if req["o"] == "init":
            return self._plist(
                {
                    "Response": {
                        "Status": {"ec": self.init_ec, "em": "no such user"},
                        "sp": self.sp,
                        "s": PASSWORD_SALT,
                        "i": 10,
                        "B": b"B" * 256,
                        "c": "cookie",
                    }
                }
            )

        au = self.au.pop(0) if len(self.au) > 1 else self.au[0]
        status = {"ec": self.complete_ec, "em": "bad password"}
        if au is not None:
            status["au"] = au
        spd = encrypt_spd_aes_cbc(SESSION_KEY, plistlib.dumps(self.spd))
        return self._plist(
            {"Response": {"Status": status, "M2": self.m2, "spd": spd}}
        )


class SrpApple(FakeApple):
    """FakeApple whose GSA endpoint runs a real SRP-6a verifier.

    The verifier is built from the s2k hash of `password`, the way Apple
    stores it, so only a client that hashes the password correctly gets in.
    """

    ITERATIONS = 1000

    def __init__(self, password):
        super().__init__()
        self.password = password
        self.verifier = None

    def _gsa(self, req):
        if req["o"] == "init":
            hash_class = hashlib.sha256
            n, g = srp_module.get_ng(srp_module.NG_2048, None, None)
            s2k = encrypt_password(self.password, PASSWORD_SALT, self.ITERATIONS)
            x = srp_module.gen_x(hash_class, PASSWORD_SALT, req["u"], s2k)
            v = srp_module.long_to_bytes(pow(g, x, n))
            self.verifier = srp_module.Verifier(
                req["u"],
                PASSWORD_SALT,
                v,
                req["A2k"],
                hash_alg=srp_module.SHA256,
                ng_type=srp_module.NG_2048,
            )
            salt, server_b = self.verifier.get_challenge()
            return self._plist(
                {
                    "Response": {
                        "Status": {"ec": 0},
                        "sp": "s2k",
                        "s": salt,
                        "i": self.ITERATIONS,
                        "B": server_b,
                        "c": "cookie",
                    }
                }
            )

        h_amk = self.verifier.verify_session(req["M1"])
        if h_amk is None:
            return self._plist(
                {
                    "Response": {
                        "Status": {"ec": -20101, "em": "incorrect password"}
                    }
                }
            )
        spd = encrypt_spd_aes_cbc(
            self.verifier.get_session_key(), plistlib.dumps(self.spd)
        )
        return self._plist(
            {"Response": {"Status": {"ec": 0}, "M2": h_amk, "spd": spd}}
        )


def _json_dumps(obj):
    return json.dumps(obj).encode()


@pytest.fixture
def fake_srp(monkeypatch):
    monkeypatch.setattr(account_module.srp, "User", FakeSrpUser)
    return FakeSrpUser


@pytest.fixture
def apple():
    return FakeApple()


@pytest.fixture
def account(apple, fake_srp):
    return AppleAccount(
        FakeAnisette(), user_id="user-id", device_id="device-id", http=apple
    )


def _encrypt_report(public_key, timestamp, plaintext):
    eph = ec.generate_private_key(ec.SECP224R1())
    eph_bytes = eph.public_key().public_bytes(
        Encoding.X962, PublicFormat.UncompressedPoint
    )
    shared = eph.exchange(ec.ECDH(), public_key)
    sym_key = hashlib.sha256(shared + b"\x00\x00\x00\x01" + eph_bytes).digest()

    encryptor = Cipher(
        algorithms.AES(sym_key[:16]), modes.GCM(sym_key[16:])
    ).encryptor()
    ct = encryptor.update(plaintext) + encryptor.finalize()

    return (
        timestamp.to_bytes(4, "big") + b"\x00" + eph_bytes + ct + encryptor.tag
    )


@pytest.fixture
def make_payload():
    """Build an encrypted report payload for a KeyPair."""

    def _make(key, timestamp, lat, lon, confidence=50, status=0x20):
        plaintext = (
            int(round(lat * 1e7)).to_bytes(4, "big", signed=True)
            + int(round(lon * 1e7)).to_bytes(4, "big", signed=True)
            + bytes([confidence, status])
        )
        return _encrypt_report(key.private_key.public_key(), timestamp, plaintext)

    return _make


@pytest.fixture
def srp_apple():
    return SrpApple("correct horse")


@pytest.fixture
def srp_account(srp_apple):
    return AppleAccount(
        FakeAnisette(), user_id="user-id", device_id="device-id", http=srp_apple
    )
