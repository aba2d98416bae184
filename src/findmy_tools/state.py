"""Login states of an Apple account and the data each state carries."""

from dataclasses import asdict, dataclass, field
from enum import IntEnum
from typing import Any


class LoginState(IntEnum):
    """Login state of an `AppleAccount`.

    A state is "less than" another if it is an earlier stage of the login
    process, going from LOGGED_OUT to LOGGED_IN.
    """

    LOGGED_OUT = 0
    REQUIRE_2FA = 1
    AUTHENTICATED = 2
    LOGGED_IN = 3

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class LoggedOutData:
    state = LoginState.LOGGED_OUT


@dataclass(frozen=True)
class RequireTwoFactorData:
    adsid: str
    idms_token: str

    state = LoginState.REQUIRE_2FA


@dataclass(frozen=True)
class AuthenticatedData:
    idms_pet: str
    adsid: str

    state = LoginState.AUTHENTICATED


@dataclass(frozen=True)
class LoggedInData:
    dsid: str
    search_party_token: str
    mobileme_data: dict = field(default_factory=dict)

    state = LoginState.LOGGED_IN


StateData = LoggedOutData | RequireTwoFactorData | AuthenticatedData | LoggedInData

_STATE_DATA_TYPES: dict[LoginState, type] = {
    LoginState.LOGGED_OUT: LoggedOutData,
    LoginState.REQUIRE_2FA: RequireTwoFactorData,
    LoginState.AUTHENTICATED: AuthenticatedData,
    LoginState.LOGGED_IN: LoggedInData,
}


def state_data_to_dict(data: StateData) -> dict[str, Any]:
    return asdict(data)


def state_data_from_dict(state: LoginState, data: dict[str, Any]) -> StateData:
    """Rebuild the data of `state`; raises TypeError on missing/unknown fields."""
    return _STATE_DATA_TYPES[state](**data)
