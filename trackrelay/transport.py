from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Protocol

import requests


@dataclass(frozen=True)
class DeliveryResponse:
    """Outcome of a single POST.

    status_code is None when no HTTP response was received.
    """

    status_code: int | None
    error: str | None = None
    body_excerpt: str = ""

    @property
    def ok(self) -> bool:
        return self.status_code is not None and 200 <= self.status_code < 300


class Transport(Protocol):
    def post(self, url: str, body: bytes, headers: Mapping[str, str]) -> DeliveryResponse: ...


class HttpTransport:
    """POSTs request bodies with a shared requests.Session."""

    def __init__(self, session: requests.Session | None = None, *, timeout_s: float = 10.0) -> None:
        self.session = session or requests.Session()
        self.timeout_s = float(timeout_s)

    def post(self, url: str, body: bytes, headers: Mapping[str, str]) -> DeliveryResponse:
        try:
            resp = self.session.post(url, data=body, headers=dict(headers), timeout=self.timeout_s)
        except requests.RequestException as exc:
            return DeliveryResponse(status_code=None, error=f"{type(exc).__name__}: {exc}")
        return DeliveryResponse(status_code=int(resp.status_code), body_excerpt=resp.text[:200])

    def close(self) -> None:
        self.session.close()
