"""Awaitable HTTP transport built on requests."""

import asyncio
import json
import logging
import plistlib
from dataclasses import dataclass, field
from typing import Any

import requests

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30

# Some plists (spd) arrive without the XML prolog, which plistlib needs
PLIST_HEADER = b"""\
<?xml version='1.0' encoding='UTF-8'?>
<!DOCTYPE plist PUBLIC '-//Apple//DTD PLIST 1.0//EN' 'http://www.apple.com/DTDs/PropertyList-1.0.dtd'>
"""


def decode_plist(data: bytes) -> Any:
    """Parse a property list, adding the XML header if it is missing."""
    try:
        return plistlib.loads(data)
    except plistlib.InvalidFileException:
        return plistlib.loads(PLIST_HEADER + data)


@dataclass
class HttpResponse:
    status_code: int
    content: bytes
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    def text(self) -> str:
        return self.content.decode("utf-8", errors="replace")

    def json(self) -> Any:
        return json.loads(self.content)

    def plist(self) -> Any:
        return decode_plist(self.content)


class HttpSession:
    """requests.Session whose calls run in a worker thread.

    Awaiting a request can be cancelled; the underlying thread finishes on
    its own but its result is discarded.
    """

    def __init__(self, timeout: float = DEFAULT_TIMEOUT) -> None:
        self._session = requests.Session()
        self._timeout = timeout

    def _request_sync(self, method: str, url: str, **kwargs) -> HttpResponse:
        kwargs.setdefault("timeout", self._timeout)
        r = self._session.request(method, url, **kwargs)
        logger.debug("%s %s -> %d", method, url, r.status_code)
        return HttpResponse(r.status_code, r.content, dict(r.headers))

    async def request(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        data: bytes | None = None,
        json: Any = None,
        auth: tuple[str, str] | None = None,
    ) -> HttpResponse:
        return await asyncio.to_thread(
            self._request_sync,
            method,
            url,
            headers=headers,
            data=data,
            json=json,
            auth=auth,
        )

    async def get(self, url: str, **kwargs) -> HttpResponse:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs) -> HttpResponse:
        return await self.request("POST", url, **kwargs)

    async def close(self) -> None:
        self._session.close()
