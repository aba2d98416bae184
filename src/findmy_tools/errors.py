"""Exception classes raised by findmy_tools."""


class FindMyError(Exception):
    """Base class for all errors raised by this package."""


class InvalidCredentialsError(FindMyError):
    """Raised when the username or password is rejected by Apple.

    Never retry this automatically.
    """


class UnhandledProtocolError(FindMyError):
    """Raised when a server response cannot be interpreted.

    Usually means Apple changed something on their end. Safe to retry.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class UnauthorizedError(UnhandledProtocolError):
    """Raised when the report endpoint rejects the stored search-party token."""


class InvalidStateError(FindMyError):
    """Raised when an operation conflicts with the current login state.

    For example: submitting a 2FA code while logged out.
    """


class InvalidAccountDataError(FindMyError):
    """Raised when restoring an account from malformed exported data."""


class MissingCredentialsError(FindMyError, ValueError):
    """Raised when no username or password is available to authenticate."""


class InvalidKeyError(FindMyError, ValueError):
    """Raised when an invalid key pair is used for a cryptographic operation."""


class ReportDecodeError(FindMyError, ValueError):
    """Raised when a single location report cannot be decrypted."""

    def __init__(self, message: str, key_id: str | None = None) -> None:
        super().__init__(message)
        self.key_id = key_id
