from urllib.parse import unquote

import httpx
from starlette.requests import Request

from cors_proxy.forward_proxy.forwarder import UpstreamResponse


def upstream_response(status_code=200, headers=None, content=b"") -> UpstreamResponse:
    return UpstreamResponse(
        status_code=status_code,
        headers=httpx.Headers(headers or {}),
        content=content,
        reason_phrase=httpx.codes.get_reason_phrase(status_code),
    )


def httpx_response(status_code=200, headers=None, content=b"") -> httpx.Response:
    """A fully read httpx response, as ``AsyncClient.send`` would hand it back."""
    return httpx.Response(status_code, headers=headers or {}, content=content)


class BrokenStream(httpx.AsyncByteStream):
    """Yields some chunks, then fails like a connection dropped mid-body."""

    def __init__(self, chunks):
        self.chunks = chunks

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk
        raise httpx.ReadError("connection reset by peer")

    async def aclose(self):
        pass


def client_request(
    method="GET", raw_path="/", query=b"", headers=None, body=b"", host="proxy.local:3000"
) -> Request:
    """A real Starlette request as the ASGI server would build it."""
    header_list = [(b"host", host.encode())] + [
        (k.lower().encode("latin-1"), v.encode("latin-1"))
        for k, v in (headers or {}).items()
    ]
    scope = {
        "type": "http",
        "http_version": "1.1",
        "method": method,
        "scheme": "http",
        "path": unquote(raw_path),
        "raw_path": raw_path.encode("latin-1"),
        "root_path": "",
        "query_string": query,
        "headers": header_list,
        "server": ("proxy.local", 3000),
        "client": ("192.168.1.100", 51000),
    }

    async def receive():
        return {"type": "http.request", "body": body, "more_body": False}

    return Request(scope, receive)
