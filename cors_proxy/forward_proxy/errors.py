"""
Error taxonomy of the forwarding proxy.

Every error carries the HTTP status it maps to and a short machine-readable
code; the route boundary turns them into JSON responses.
"""

from typing import Optional


class ProxyError(Exception):
    status_code = 500
    error = "server_error"

    def __init__(self, detail: str, status_code: Optional[int] = None):
        super().__init__(detail)
        self.detail = detail
        if status_code is not None:
            self.status_code = status_code

    def to_payload(self) -> dict:
        return {"error": self.error, "detail": self.detail}


class InvalidURL(ProxyError):
    """The client-supplied path does not decode to an http(s) URL."""

    status_code = 400
    error = "invalid_url"


class InvalidHeader(ProxyError):
    """A header value cannot be sent on the wire (not latin-1)."""

    status_code = 400
    error = "invalid_header"


class UpstreamError(ProxyError):
    """
    The upstream network call itself failed.

    ``partial`` holds whatever was received before the failure (status,
    headers and the body read so far), or None when nothing arrived.
    """

    status_code = 502
    error = "upstream_error"

    def __init__(self, detail: str, status_code: Optional[int] = None, partial=None):
        super().__init__(detail, status_code)
        self.partial = partial


class ServerError(ProxyError):
    status_code = 500
    error = "server_error"


class ClientDisconnected(Exception):
    """The client went away while the upstream call was in flight."""
